"""
aurbuild.resolver – dependency closure, classification and build order

The resolver walks the dependency graph depth first from the requested
packages.  Every requirement is classified as already satisfied (installed),
satisfiable from a sync repository, or buildable from the AUR; only AUR
packages are descended into.  Post-order appends give the build order.

One ``resolve()`` call owns its graph exclusively.  AUR lookups for sibling
requirements are batched through the client, which may spread them over a
worker pool, but the results are merged back into the graph here, in the
caller's thread.
"""

import logging
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple, Union

from .aur import AurClient
from .db import PackageDB
from .errors import (
    ConflictingPackages,
    ConflictingVersionConstraints,
    CyclicDependency,
    FetchFailed,
    MalformedVersion,
    UnresolvedDependency,
)
from .models import (
    SKIP_REPO,
    SKIP_SATISFIED,
    BuildPlan,
    NodeStatus,
    PackageRecord,
    PackageRef,
    Resolution,
    ResolutionNode,
    Source,
    VersionConstraint,
)
from .version import (
    check_intersection,
    parse_dependency,
    provision_satisfies,
    satisfies,
    satisfies_all,
)

LOGGER = logging.getLogger(__name__)

DEPENDS = "depends"
MAKEDEPENDS = "makedepends"

# errors that only invalidate the subtree of the request being resolved
SUBTREE_ERRORS = (FetchFailed, UnresolvedDependency, MalformedVersion)


class _Graph:
    """Traversal state for a single resolution, keyed by package name."""

    def __init__(self, force: FrozenSet[str]) -> None:
        self.force = force
        self.nodes: Dict[str, ResolutionNode] = {}
        self.aliases: Dict[str, str] = {}
        self.constraints: Dict[str, List[VersionConstraint]] = {}
        self.order: List[str] = []
        self.repo: Dict[str, PackageRecord] = {}
        self.requires: Dict[str, Set[str]] = {}

    def copy(self) -> "_Graph":
        other = _Graph(self.force)
        other.nodes = dict(self.nodes)
        other.aliases = dict(self.aliases)
        other.constraints = {k: list(v) for k, v in self.constraints.items()}
        other.order = list(self.order)
        other.repo = dict(self.repo)
        other.requires = {k: set(v) for k, v in self.requires.items()}
        return other

    def node_for(self, name: str) -> Optional[ResolutionNode]:
        concrete = self.aliases.get(name)
        return self.nodes.get(concrete) if concrete else None

    def add(self, node: ResolutionNode, requested: str) -> None:
        self.nodes[node.name] = node
        self.aliases[requested] = node.name
        self.aliases.setdefault(node.name, node.name)

    def drop(self, node: ResolutionNode) -> None:
        """Forget a skipped node so its name can be classified again."""
        del self.nodes[node.name]
        for alias in [a for a, target in self.aliases.items() if target == node.name]:
            del self.aliases[alias]
        # resolved packages may still rely on the repo package being installed first
        if node.name in self.repo and not any(
            node.name in deps for deps in self.requires.values()
        ):
            del self.repo[node.name]

    def constrain(self, ref: PackageRef) -> List[VersionConstraint]:
        bucket = self.constraints.setdefault(ref.name, [])
        if ref.constraint is not None and ref.constraint not in bucket:
            bucket.append(ref.constraint)
            check_intersection(ref.name, bucket)
        return bucket

    def slated(self) -> List[PackageRecord]:
        return [self.nodes[n].record for n in self.order] + list(self.repo.values())

    @staticmethod
    def ordering_name(node: ResolutionNode) -> Optional[str]:
        if node.build_required or node.skip_reason == SKIP_REPO:
            return node.name
        return None

    def to_plan(self, explicit: Iterable[str]) -> BuildPlan:
        return BuildPlan(
            entries=tuple(self.nodes[n].record for n in self.order),
            repo_prerequisites=tuple(self.repo),
            requires={n: frozenset(self.requires.get(n, ())) for n in self.order},
            explicit=frozenset(explicit),
        )


class DependencyResolver:
    """Turns requested package names into a BuildPlan."""

    def __init__(self, db: PackageDB, aur: AurClient) -> None:
        self.db = db
        self.aur = aur

    def resolve(
        self,
        targets: Iterable[Union[str, PackageRef]],
        force_aur: Iterable[str] = (),
    ) -> Resolution:
        """Resolve ``targets`` into a plan.

        ``force_aur`` names skip the installed/repo short-circuits and are
        always taken from the AUR (used by ``update``).

        Fetch failures and unresolvable names only drop the request whose
        subtree they occur in; they are reported in ``Resolution.failures``.
        Cycles and conflicts raise, since they invalidate the whole plan.
        """
        refs = [t if isinstance(t, PackageRef) else parse_dependency(t) for t in targets]
        graph = _Graph(frozenset(force_aur))
        failures = {}
        explicit: List[str] = []

        self._prefetch(graph, [ref.name for ref in refs])
        for ref in refs:
            snapshot = graph.copy()
            try:
                self._require(graph, ref, DEPENDS, [])
            except SUBTREE_ERRORS as e:
                LOGGER.error(f"Cannot resolve {ref}: {e}")
                failures[ref.name] = e
                graph = snapshot
                continue
            node = graph.node_for(ref.name)
            if node is not None and graph.ordering_name(node):
                explicit.append(node.name)

        satisfied = tuple(
            sorted(n.name for n in graph.nodes.values() if n.skip_reason == SKIP_SATISFIED)
        )
        plan = graph.to_plan(explicit)
        LOGGER.debug(
            f"Build order: {', '.join(plan.names) or '(none)'}; "
            f"repo prerequisites: {', '.join(plan.repo_prerequisites) or '(none)'}"
        )
        return Resolution(plan=plan, satisfied=satisfied, failures=failures)

    def locate(self, ref: PackageRef) -> Optional[Source]:
        """Where a single requirement would be satisfied from, without descending."""
        constraints = [ref.constraint] if ref.constraint else []
        if self._installed(ref.name, constraints) is not None:
            return Source.INSTALLED
        if self._from_repo(ref.name, constraints) is not None:
            return Source.SYNC_REPO
        outcome = self.aur.fetch([ref.name])[ref.name]
        if isinstance(outcome, FetchFailed):
            raise outcome
        if outcome is None:
            candidates = self.aur.search_providers(ref.name)
        else:
            candidates = [outcome]
        if any(self._meets(c, ref.name, constraints) for c in candidates):
            return Source.AUR
        return None

    # ------------------------------------------------------------------ #
    # Traversal                                                          #
    # ------------------------------------------------------------------ #

    def _require(
        self, graph: _Graph, ref: PackageRef, edge: str, path: List[str]
    ) -> Optional[str]:
        """Satisfy one requirement.

        Returns the name of the slated package (plan entry or repo
        prerequisite) the requirer has to be ordered after, or None when the
        requirement is met by what is already installed.
        """
        name = ref.name
        constraints = graph.constrain(ref)
        forced = name in graph.force

        node = graph.node_for(name)
        if node is not None:
            if node.status is NodeStatus.IN_PROGRESS:
                return self._close_cycle(graph, node, ref, edge, path)
            if self._meets(node.record, name, constraints) and not (
                forced and node.status is NodeStatus.SKIPPED
            ):
                return graph.ordering_name(node)
            if node.status is NodeStatus.RESOLVED:
                raise ConflictingVersionConstraints(
                    name,
                    [str(c) for c in constraints],
                    message=f"{node.name} {node.record.version} is already planned "
                    f"and does not satisfy {', '.join(str(c) for c in constraints)}",
                )
            LOGGER.info(
                f"{node.name} {node.record.version} does not satisfy {ref}, looking for an upgrade"
            )
            graph.drop(node)

        record, reason = self._classify(graph, name, constraints, forced)

        existing = graph.nodes.get(record.name)
        if existing is not None:
            graph.aliases[name] = existing.name
            if existing.status is NodeStatus.IN_PROGRESS:
                return self._close_cycle(graph, existing, ref, edge, path)
            if self._meets(existing.record, name, constraints):
                return graph.ordering_name(existing)
            raise ConflictingVersionConstraints(
                name,
                [str(c) for c in constraints],
                message=f"{existing.name} {existing.record.version} is already selected "
                f"and does not satisfy {ref}",
            )

        node = ResolutionNode(record)
        graph.add(node, name)
        if reason is None:
            node.build_required = True
            self._descend(graph, node, path)
            return node.name

        node.skip(reason)
        LOGGER.debug(f"{ref}: {reason} ({record.name} {record.version})")
        if reason == SKIP_REPO:
            self._check_conflicts(graph, record)
            graph.repo[record.name] = record
            return record.name
        return None

    def _descend(self, graph: _Graph, node: ResolutionNode, path: List[str]) -> None:
        node.status = NodeStatus.IN_PROGRESS
        path.append(node.name)
        record = node.record
        children: List[Tuple[PackageRef, str]] = [(r, DEPENDS) for r in record.depends]
        children += [(r, MAKEDEPENDS) for r in record.makedepends]
        self._prefetch(graph, [ref.name for ref, _ in children])

        requires: Set[str] = set()
        for ref, edge in children:
            dependency = self._require(graph, ref, edge, path)
            if dependency is not None and dependency != node.name:
                requires.add(dependency)
        path.pop()

        self._check_conflicts(graph, record)
        node.status = NodeStatus.RESOLVED
        graph.order.append(node.name)
        graph.requires[node.name] = requires
        LOGGER.debug(f"Resolved {node.name} {record.version} (after: {', '.join(sorted(requires)) or '-'})")

    def _close_cycle(
        self,
        graph: _Graph,
        node: ResolutionNode,
        ref: PackageRef,
        edge: str,
        path: List[str],
    ) -> Optional[str]:
        cycle = path[path.index(node.name):] + [node.name] if node.name in path else path + [node.name]
        if edge == MAKEDEPENDS:
            constraints = [ref.constraint] if ref.constraint else []
            installed = self._installed(ref.name, constraints)
            if installed is not None:
                LOGGER.info(
                    f"Build-time cycle {' -> '.join(cycle)} uses installed "
                    f"{installed.name} {installed.version}"
                )
                return None
            repo = self._from_repo(ref.name, constraints)
            if repo is not None:
                LOGGER.info(
                    f"Build-time cycle {' -> '.join(cycle)} uses {repo.repository}/{repo.name} "
                    f"{repo.version}"
                )
                self._check_conflicts(graph, repo)
                graph.repo[repo.name] = repo
                return repo.name
        raise CyclicDependency(cycle)

    # ------------------------------------------------------------------ #
    # Classification                                                     #
    # ------------------------------------------------------------------ #

    def _classify(
        self,
        graph: _Graph,
        name: str,
        constraints: List[VersionConstraint],
        forced: bool,
    ) -> Tuple[PackageRecord, Optional[str]]:
        if not forced:
            record = self._installed(name, constraints)
            if record is not None:
                return record, SKIP_SATISFIED
            record = self._from_repo(name, constraints)
            if record is not None:
                return record, SKIP_REPO
        return self._from_aur(graph, name, constraints), None

    def _installed(
        self, name: str, constraints: List[VersionConstraint]
    ) -> Optional[PackageRecord]:
        record = self.db.installed_record(name)
        if record is not None and self._meets(record, name, constraints):
            return record
        return next(
            (
                p
                for p in self.db.local_providers(name, constraints)
                if self._meets(p, name, constraints)
            ),
            None,
        )

    def _from_repo(
        self, name: str, constraints: List[VersionConstraint]
    ) -> Optional[PackageRecord]:
        record = self.db.sync_repo_candidate(name)
        if record is not None and self._meets(record, name, constraints):
            return record
        return next(
            (
                p
                for p in self.db.sync_providers(name, constraints)
                if self._meets(p, name, constraints)
            ),
            None,
        )

    def _from_aur(
        self, graph: _Graph, name: str, constraints: List[VersionConstraint]
    ) -> PackageRecord:
        wanted = ", ".join(f"{name}{c}" for c in constraints) or name
        outcome = self.aur.fetch([name])[name]
        if isinstance(outcome, FetchFailed):
            raise outcome
        if outcome is not None:
            if self._meets(outcome, name, constraints):
                return outcome
            raise UnresolvedDependency(
                name,
                f"no installed, repository or AUR candidate satisfies {wanted} "
                f"(AUR has {outcome.version})",
            )

        providers = [p for p in self.aur.search_providers(name) if self._meets(p, name, constraints)]
        if not providers:
            if constraints:
                raise UnresolvedDependency(
                    name, f"no installed, repository or AUR package satisfies {wanted}"
                )
            raise UnresolvedDependency(name)
        if len(providers) == 1:
            LOGGER.info(f"Using AUR package {providers[0].name} to provide {wanted}")
            return providers[0]
        planned = [p for p in providers if p.name in graph.nodes]
        if len(planned) == 1:
            return planned[0]
        raise UnresolvedDependency(
            name,
            f"several AUR packages provide {wanted}: "
            f"{', '.join(sorted(p.name for p in providers))}; request one explicitly",
        )

    def _prefetch(self, graph: _Graph, names: List[str]) -> None:
        """Batch the AUR lookups that sibling requirements are going to need."""
        pending = [
            n
            for n in dict.fromkeys(names)
            if graph.node_for(n) is None
            and (n in graph.force or self.db.resolve_provider(n) is None)
        ]
        if pending:
            self.aur.fetch(pending)

    # ------------------------------------------------------------------ #
    # Checks                                                             #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _meets(record: PackageRecord, name: str, constraints: List[VersionConstraint]) -> bool:
        try:
            if record.name == name:
                return satisfies_all(record.version, constraints)
            return any(
                p.name == name and all(provision_satisfies(p, c) for c in constraints)
                for p in record.provides
            )
        except MalformedVersion as e:
            LOGGER.warning(f"{record.name}: {e.message}; treating it as not satisfying {name}")
            return False

    @staticmethod
    def _conflicts_with(record: PackageRecord, other: PackageRecord) -> bool:
        for conflict in record.conflicts:
            try:
                if conflict.name == other.name and satisfies(other.version, conflict.constraint):
                    return True
                if any(
                    p.name == conflict.name and provision_satisfies(p, conflict.constraint)
                    for p in other.provides
                ):
                    return True
            except MalformedVersion as e:
                LOGGER.warning(f"Ignoring conflict {conflict} of {record.name}: {e.message}")
        return False

    def _check_conflicts(self, graph: _Graph, record: PackageRecord) -> None:
        for other in graph.slated():
            if other.name == record.name:
                continue
            if self._conflicts_with(record, other) or self._conflicts_with(other, record):
                raise ConflictingPackages(record.name, other.name)
