"""
aurbuild.models – package, plan and report value types
"""

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Mapping, Optional, Tuple

from .errors import AurBuildError, ErrorKind


class ConstraintOp(str, enum.Enum):
    EQ = "="
    GE = ">="
    LE = "<="
    GT = ">"
    LT = "<"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class VersionConstraint:
    op: ConstraintOp
    version: str

    def __str__(self) -> str:
        return f"{self.op.value}{self.version}"


@dataclass(frozen=True)
class PackageRef:
    """A requirement on a package name, optionally bounded by a version."""

    name: str
    constraint: Optional[VersionConstraint] = None

    def __str__(self) -> str:
        if self.constraint is None:
            return self.name
        return f"{self.name}{self.constraint}"


class Source(str, enum.Enum):
    INSTALLED = "installed"
    SYNC_REPO = "repo"
    AUR = "aur"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class PackageRecord:
    name: str
    version: str
    source: Source
    provides: FrozenSet[PackageRef] = frozenset()
    conflicts: FrozenSet[PackageRef] = frozenset()
    depends: Tuple[PackageRef, ...] = ()
    makedepends: Tuple[PackageRef, ...] = ()
    package_base: Optional[str] = None
    repository: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    url_path: Optional[str] = None
    maintainer: Optional[str] = None
    num_votes: int = 0
    popularity: float = 0.0
    first_submitted: Optional[int] = None
    last_modified: Optional[int] = None
    out_of_date: Optional[int] = None

    @property
    def base(self) -> str:
        return self.package_base or self.name


# --------------------------------------------------------------------------- #
# Resolution                                                                  #
# --------------------------------------------------------------------------- #


class NodeStatus(enum.Enum):
    UNVISITED = "unvisited"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"
    SKIPPED = "skipped"


SKIP_SATISFIED = "already satisfied"
SKIP_REPO = "satisfiable from repo"


@dataclass
class ResolutionNode:
    record: PackageRecord
    status: NodeStatus = NodeStatus.UNVISITED
    build_required: bool = False
    skip_reason: Optional[str] = None

    @property
    def name(self) -> str:
        return self.record.name

    def skip(self, reason: str) -> None:
        self.status = NodeStatus.SKIPPED
        self.skip_reason = reason
        self.build_required = False


@dataclass(frozen=True)
class BuildPlan:
    """AUR packages to build, in dependency order, plus repo prerequisites."""

    entries: Tuple[PackageRecord, ...] = ()
    repo_prerequisites: Tuple[str, ...] = ()
    requires: Mapping[str, FrozenSet[str]] = field(default_factory=dict)
    explicit: FrozenSet[str] = frozenset()

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(record.name for record in self.entries)

    def requirements_of(self, name: str) -> FrozenSet[str]:
        return self.requires.get(name, frozenset())


@dataclass(frozen=True)
class Resolution:
    plan: BuildPlan
    satisfied: Tuple[str, ...] = ()
    failures: Mapping[str, AurBuildError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


# --------------------------------------------------------------------------- #
# Build report                                                                #
# --------------------------------------------------------------------------- #


class Outcome(str, enum.Enum):
    SUCCESS = "Success"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class BuildResult:
    name: str
    outcome: Outcome
    artifact: Optional[Path] = None
    error: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def success(cls, name: str, artifact: Path) -> "BuildResult":
        return cls(name, Outcome.SUCCESS, artifact=artifact)

    @classmethod
    def failed(cls, error: AurBuildError, name: Optional[str] = None) -> "BuildResult":
        return cls(name or error.name, Outcome.FAILED, error=error.kind, message=error.message)

    @classmethod
    def skipped(cls, name: str, reason: str) -> "BuildResult":
        return cls(name, Outcome.SKIPPED, message=reason)

    def __str__(self) -> str:
        if self.outcome is Outcome.SUCCESS:
            return f"{self.name}: Success({self.artifact})"
        if self.outcome is Outcome.FAILED:
            return f"{self.name}: Failed({self.error})"
        return f"{self.name}: Skipped"


BuildReport = Tuple[BuildResult, ...]
