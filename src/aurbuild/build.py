"""
aurbuild.build – sequential build and install of a resolved plan

Each plan entry goes through Pending → Fetching → Building → Installing and
ends in Done or Failed.  Builds run one at a time, in plan order, inside a
scratch directory that is removed on every exit path.
"""

import enum
import logging
import os
import re
import shutil
import signal
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Set

from .db import PackageDB
from .errors import (
    AmbiguousArtifact,
    AurBuildError,
    BuildScriptError,
    BuildTimeout,
    ErrorKind,
    ExitCode,
    InstallError,
    RecipeFetchFailed,
)
from .models import BuildPlan, BuildReport, BuildResult, Outcome, PackageRecord
from .recipes import RecipeFetcher

LOGGER = logging.getLogger(__name__)

ARTIFACT_RE = re.compile(
    r"^(?P<name>.+)-(?P<pkgver>[^-]+)-(?P<pkgrel>[^-]+)-(?P<arch>[^-]+)\.pkg\.tar(?:\.\w+)?$"
)


# --------------------------------------------------------------------------- #
# Bounded-wait build runner                                                   #
# --------------------------------------------------------------------------- #


class ProcessState(enum.Enum):
    COMPLETED_OK = "completed"
    COMPLETED_ERR = "failed"
    TIMED_OUT = "timed out"


@dataclass(frozen=True)
class ProcessResult:
    state: ProcessState
    returncode: Optional[int] = None


def _terminate(proc: subprocess.Popen, grace: float) -> None:
    """SIGTERM the build's process group, then SIGKILL it after ``grace``."""
    for sig, wait in ((signal.SIGTERM, grace), (signal.SIGKILL, None)):
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        try:
            proc.wait(timeout=wait)
            return
        except subprocess.TimeoutExpired:
            LOGGER.warning(f"Build process {proc.pid} ignored SIGTERM, killing it")


def run_build(
    command: Sequence[str],
    cwd: Path,
    timeout: float,
    log_path: Path,
    kill_grace: float = 10.0,
    env: Optional[Mapping[str, str]] = None,
) -> ProcessResult:
    """Run ``command`` in ``cwd`` with its output sent to ``log_path``.

    The child gets its own session so that a timeout can take down everything
    it spawned.  Raises OSError if the command cannot be started.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    child_env = dict(os.environ if env is None else env)
    child_env["PKGDEST"] = str(cwd)
    with open(log_path, "wb") as log:
        proc = subprocess.Popen(
            list(command),
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            env=child_env,
            start_new_session=True,
        )
        try:
            returncode = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            _terminate(proc, kill_grace)
            return ProcessResult(ProcessState.TIMED_OUT)
        except BaseException:
            _terminate(proc, kill_grace)
            raise
    if returncode == 0:
        return ProcessResult(ProcessState.COMPLETED_OK, 0)
    return ProcessResult(ProcessState.COMPLETED_ERR, returncode)


# --------------------------------------------------------------------------- #
# Artifacts                                                                   #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class CachedPackage:
    name: str
    version: str
    arch: str
    path: Path


def artifact_pattern(name: str) -> "re.Pattern[str]":
    # name-pkgver-pkgrel-arch; split siblings and -debug packages have more dashes
    return re.compile(rf"^{re.escape(name)}-[^-]+-[^-]+-[^-]+\.pkg\.tar(?:\.\w+)?$")


def find_artifact(directory: Path, name: str) -> Path:
    pattern = artifact_pattern(name)
    matches = sorted(p for p in directory.iterdir() if p.is_file() and pattern.match(p.name))
    if not matches:
        raise AmbiguousArtifact(name, f"no package file for {name} in {directory}")
    if len(matches) > 1:
        raise AmbiguousArtifact(
            name, f"{len(matches)} package files match: {', '.join(p.name for p in matches)}"
        )
    return matches[0]


def cached_packages(package_dir: Path) -> List[CachedPackage]:
    if not package_dir.is_dir():
        return []
    packages = []
    for path in sorted(package_dir.iterdir()):
        if match := ARTIFACT_RE.match(path.name):
            packages.append(
                CachedPackage(
                    name=match.group("name"),
                    version=f"{match.group('pkgver')}-{match.group('pkgrel')}",
                    arch=match.group("arch"),
                    path=path,
                )
            )
    return packages


def remove_cached(package_dir: Path, name: str) -> List[Path]:
    removed = []
    for package in cached_packages(package_dir):
        if package.name == name:
            package.path.unlink()
            removed.append(package.path)
            LOGGER.debug(f"Deleted {package.path}")
    return removed


def exit_code_for(report: BuildReport) -> ExitCode:
    kinds = [r.error for r in report if r.outcome is Outcome.FAILED]
    if any(kind is not ErrorKind.INSTALL_ERROR for kind in kinds):
        return ExitCode.BUILD_FAILED
    if kinds:
        return ExitCode.INSTALL_FAILED
    if any(r.outcome is Outcome.SKIPPED for r in report):
        return ExitCode.BUILD_FAILED
    return ExitCode.SUCCESS


# --------------------------------------------------------------------------- #
# Orchestrator                                                                #
# --------------------------------------------------------------------------- #


class NodeState(enum.Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    BUILDING = "building"
    INSTALLING = "installing"
    DONE = "done"
    FAILED = "failed"


class BuildOrchestrator:
    """Builds and installs the entries of a BuildPlan in order."""

    def __init__(
        self,
        db: PackageDB,
        fetcher: RecipeFetcher,
        package_dir: Path,
        log_dir: Path,
        build_command: Sequence[str] = ("makepkg", "--cleanbuild", "--noconfirm"),
        build_timeout: float = 1800.0,
        kill_grace: float = 10.0,
        keep_recipes: bool = True,
        scratch_root: Optional[Path] = None,
    ) -> None:
        self.db = db
        self.fetcher = fetcher
        self.package_dir = Path(package_dir)
        self.log_dir = Path(log_dir)
        self.build_command = list(build_command)
        self.build_timeout = build_timeout
        self.kill_grace = kill_grace
        self.keep_recipes = keep_recipes
        self.scratch_root = scratch_root
        self.states: Dict[str, NodeState] = {}

    @classmethod
    def from_settings(cls, db: PackageDB, settings, **kwargs) -> "BuildOrchestrator":
        fetcher = RecipeFetcher(settings.recipe_dir, settings.aur_url, settings.recipe_retries)
        return cls(
            db,
            fetcher,
            package_dir=settings.package_dir,
            log_dir=settings.log_dir,
            build_command=settings.build_command,
            build_timeout=settings.build_timeout,
            kill_grace=settings.kill_grace,
            keep_recipes=settings.keep_recipes,
            **kwargs,
        )

    def _enter(self, name: str, state: NodeState) -> None:
        LOGGER.debug(f"{name}: {self.states.get(name, NodeState.PENDING).value} -> {state.value}")
        self.states[name] = state

    def run(self, plan: BuildPlan) -> BuildReport:
        """Install repo prerequisites, then build and install every plan entry.

        A failed entry takes down the remaining entries that require it;
        independent entries still build.
        """
        results: List[BuildResult] = []
        unavailable: Set[str] = set()
        self.states = {record.name: NodeState.PENDING for record in plan}

        if plan.repo_prerequisites:
            results.extend(self._install_repo(plan, unavailable))

        for record in plan:
            name = record.name
            blocked = sorted(plan.requirements_of(name) & unavailable)
            if blocked:
                reason = f"requires {', '.join(blocked)}, which did not build"
                LOGGER.warning(f"Skipping {name}: {reason}")
                self._enter(name, NodeState.FAILED)
                unavailable.add(name)
                results.append(BuildResult.skipped(name, reason))
                continue
            try:
                artifact = self._build_one(plan, record)
            except AurBuildError as e:
                LOGGER.error(f"{name}: {e.kind}: {e.message}")
                self._enter(name, NodeState.FAILED)
                unavailable.add(name)
                results.append(BuildResult.failed(e, name))
                continue
            self._enter(name, NodeState.DONE)
            LOGGER.info(f"{name} {record.version} installed")
            results.append(BuildResult.success(name, artifact))
        return tuple(results)

    def _install_repo(self, plan: BuildPlan, unavailable: Set[str]) -> List[BuildResult]:
        deps = [n for n in plan.repo_prerequisites if n not in plan.explicit]
        explicit = [n for n in plan.repo_prerequisites if n in plan.explicit]
        try:
            self.db.install_repo(deps)
            self.db.install_repo(explicit, as_deps=False)
        except InstallError as e:
            LOGGER.error(f"Installing repository packages failed: {e.message}")
            unavailable.update(plan.repo_prerequisites)
            return [
                BuildResult(n, Outcome.FAILED, error=e.kind, message=e.message)
                for n in plan.repo_prerequisites
            ]
        return []

    def _fetcher_for(self, scratch: Path) -> RecipeFetcher:
        if self.keep_recipes:
            return self.fetcher
        return RecipeFetcher(scratch / "recipes", self.fetcher.base_url, self.fetcher.retries)

    def _check_prerequisites(self, plan: BuildPlan, record: PackageRecord) -> None:
        missing = sorted(
            dep for dep in plan.requirements_of(record.name) if self.db.installed_version(dep) is None
        )
        if missing:
            raise InstallError(record.name, f"prerequisites not installed: {', '.join(missing)}")

    def _cached_artifact(self, record: PackageRecord) -> Optional[Path]:
        matches = [
            p.path
            for p in cached_packages(self.package_dir)
            if p.name == record.name and p.version == record.version
        ]
        if len(matches) > 1:
            LOGGER.warning(
                f"{len(matches)} cached packages for {record.name} {record.version}, rebuilding"
            )
            return None
        return matches[0] if matches else None

    def _install_cached(self, plan: BuildPlan, record: PackageRecord, artifact: Path) -> Path:
        LOGGER.info(f"Using cached {artifact.name}")
        self._check_prerequisites(plan, record)
        self._enter(record.name, NodeState.INSTALLING)
        self.db.install([artifact], as_deps=record.name not in plan.explicit)
        return artifact

    def _build_one(self, plan: BuildPlan, record: PackageRecord) -> Path:
        name = record.name
        if (cached := self._cached_artifact(record)) is not None:
            return self._install_cached(plan, record, cached)
        with tempfile.TemporaryDirectory(prefix=f"aurbuild-{name}-", dir=self.scratch_root) as tmp:
            scratch = Path(tmp)
            self._enter(name, NodeState.FETCHING)
            recipe = self._fetcher_for(scratch).fetch(record.base)
            workdir = scratch / "build"
            try:
                shutil.copytree(recipe, workdir, ignore=shutil.ignore_patterns(".git"))
            except OSError as e:
                raise RecipeFetchFailed(name, f"could not prepare build directory: {e}")

            self._check_prerequisites(plan, record)
            self._enter(name, NodeState.BUILDING)
            log_path = self.log_dir / f"{name}.log"
            LOGGER.info(f"Building {name} {record.version} (log: {log_path})")
            try:
                result = run_build(
                    self.build_command, workdir, self.build_timeout, log_path, self.kill_grace
                )
            except OSError as e:
                LOGGER.error(f"Could not start {' '.join(self.build_command)}: {e}")
                raise BuildScriptError(name, 127, str(log_path))
            if result.state is ProcessState.TIMED_OUT:
                raise BuildTimeout(name, self.build_timeout, str(log_path))
            if result.state is ProcessState.COMPLETED_ERR:
                raise BuildScriptError(name, result.returncode, str(log_path))

            artifact = self._cache_artifact(find_artifact(workdir, name))
            self._enter(name, NodeState.INSTALLING)
            self._check_prerequisites(plan, record)
            self.db.install([artifact], as_deps=name not in plan.explicit)
        return artifact

    def _cache_artifact(self, artifact: Path) -> Path:
        self.package_dir.mkdir(parents=True, exist_ok=True)
        cached = self.package_dir / artifact.name
        shutil.copy2(artifact, cached)
        LOGGER.debug(f"Cached {artifact.name} in {self.package_dir}")
        return cached
