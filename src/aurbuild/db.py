#!/usr/bin/env python3
"""
aurbuild.db – read view over the pacman databases, installs through pacman
"""

import contextlib
import logging
import re
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .errors import InstallError, MalformedVersion, PackageDatabaseError
from .models import PackageRecord, Source, VersionConstraint
from .version import parse_dependencies

try:
    import pyalpm

    _HAVE_PYALPM = True
except ModuleNotFoundError:
    _HAVE_PYALPM = False

LOGGER = logging.getLogger(__name__)
REPO_RE = re.compile(r"^\[(.+)\]$")
PROVIDE_NAME_RE = re.compile(r"[<>=]")


def read_sync_repos(pacman_conf: Path) -> List[str]:
    """Repository section names from pacman.conf, in declaration order."""
    repos = []
    try:
        with open(pacman_conf, "r") as f:
            for line in f:
                if match := REPO_RE.match(line.strip()):
                    repo_name = match.group(1)
                    if repo_name.lower() != "options":
                        repos.append(repo_name)
    except FileNotFoundError:
        LOGGER.error(f"{pacman_conf} not found. Cannot register sync repos.")
    return repos


def record_from_alpm(pkg: Any, source: Source, repository: Optional[str] = None) -> PackageRecord:
    return PackageRecord(
        name=pkg.name,
        version=str(pkg.version),
        source=source,
        provides=frozenset(parse_dependencies(getattr(pkg, "provides", None))),
        conflicts=frozenset(parse_dependencies(getattr(pkg, "conflicts", None))),
        depends=parse_dependencies(getattr(pkg, "depends", None)),
        makedepends=parse_dependencies(getattr(pkg, "makedepends", None)),
        package_base=getattr(pkg, "base", None),
        repository=repository,
        description=getattr(pkg, "desc", None),
        url=getattr(pkg, "url", None),
    )


class PackageDB:
    """Read-mostly adapter over the local and sync package databases.

    Every query opens its own libalpm handle so results always reflect the
    current system state, including packages installed earlier in the run.
    ``install``/``install_repo``/``remove`` are the only mutating calls and go
    through pacman's own transactions.  ``handle_factory`` and ``satisfier``
    replace ``pyalpm.Handle`` and ``pyalpm.find_satisfier`` when given.
    """

    def __init__(
        self,
        root: str = "/",
        dbpath: str = "/var/lib/pacman",
        pacman_conf: str = "/etc/pacman.conf",
        pacman_command: Sequence[str] = ("sudo", "pacman"),
        noconfirm: bool = False,
        handle_factory: Optional[Callable[[], Any]] = None,
        satisfier: Optional[Callable[[List[Any], str], Any]] = None,
    ) -> None:
        self.root = root
        self.dbpath = dbpath
        self.pacman_conf = Path(pacman_conf)
        self.pacman_command = list(pacman_command)
        self.noconfirm = noconfirm
        if (handle_factory is None or satisfier is None) and not _HAVE_PYALPM:
            raise PackageDatabaseError(
                "pyalpm", "pyalpm is not installed; cannot read the pacman database"
            )
        if handle_factory is None:
            self.repos = read_sync_repos(self.pacman_conf)
            handle_factory = self._open_handle
        else:
            self.repos = []
        self._handle_factory = handle_factory
        self._find_satisfier = satisfier or pyalpm.find_satisfier

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "PackageDB":
        return cls(
            root=settings.pacman_root,
            dbpath=settings.pacman_dbpath,
            pacman_conf=settings.pacman_conf,
            pacman_command=settings.pacman_command,
            **kwargs,
        )

    def _open_handle(self):
        try:
            handle = pyalpm.Handle(self.root, self.dbpath)  # type: ignore[attr-defined]
        except pyalpm.error as e:  # type: ignore[attr-defined]
            raise PackageDatabaseError(self.dbpath, f"could not open pacman database: {e}")
        for repo_name in self.repos:
            try:
                handle.register_syncdb(repo_name, pyalpm.SIG_DATABASE_OPTIONAL)  # type: ignore[attr-defined]
            except pyalpm.error as e:  # type: ignore[attr-defined]
                LOGGER.error(f"Error registering sync repo {repo_name}: {e}")
        return handle

    @contextlib.contextmanager
    def session(self) -> Iterator[Any]:
        yield self._handle_factory()

    # ------------------------------------------------------------------ #
    # Queries                                                            #
    # ------------------------------------------------------------------ #

    def installed_version(self, name: str) -> Optional[str]:
        with self.session() as handle:
            pkg = handle.get_localdb().get_pkg(name)
            return str(pkg.version) if pkg is not None else None

    def installed_record(self, name: str) -> Optional[PackageRecord]:
        with self.session() as handle:
            pkg = handle.get_localdb().get_pkg(name)
            if pkg is None:
                return None
            return self._to_record(pkg, Source.INSTALLED, "local")

    def installed_packages(self) -> Dict[str, str]:
        with self.session() as handle:
            return {pkg.name: str(pkg.version) for pkg in handle.get_localdb().pkgcache}

    def sync_repo_candidate(self, name: str) -> Optional[PackageRecord]:
        """First sync repository package named ``name``, in pacman.conf order."""
        with self.session() as handle:
            for db in handle.get_syncdbs():
                pkg = db.get_pkg(name)
                if pkg is not None:
                    return self._to_record(pkg, Source.SYNC_REPO, db.name)
        return None

    def resolve_provider(
        self, name: str, constraints: Sequence[VersionConstraint] = ()
    ) -> Optional[str]:
        """Concrete package satisfying ``name``, preferring installed ones."""
        with self.session() as handle:
            localdb = handle.get_localdb()
            if localdb.get_pkg(name) is not None:
                return name
            for pkg in self._satisfiers(localdb.pkgcache, name, constraints):
                return pkg.name
            for db in handle.get_syncdbs():
                if db.get_pkg(name) is not None:
                    return name
                for pkg in self._satisfiers(db.pkgcache, name, constraints):
                    return pkg.name
        return None

    def local_providers(
        self, name: str, constraints: Sequence[VersionConstraint] = ()
    ) -> List[PackageRecord]:
        """Installed packages other than ``name`` itself that provide it within ``constraints``."""
        with self.session() as handle:
            records = (
                self._to_record(pkg, Source.INSTALLED, "local")
                for pkg in self._satisfiers(handle.get_localdb().pkgcache, name, constraints)
            )
            return [r for r in records if r is not None]

    def sync_providers(
        self, name: str, constraints: Sequence[VersionConstraint] = ()
    ) -> List[PackageRecord]:
        """Sync repository providers of ``name`` within ``constraints``, in pacman.conf order."""
        records = []
        with self.session() as handle:
            for db in handle.get_syncdbs():
                for pkg in self._satisfiers(db.pkgcache, name, constraints):
                    if (record := self._to_record(pkg, Source.SYNC_REPO, db.name)) is not None:
                        records.append(record)
        return records

    def _satisfiers(
        self, pkgcache, name: str, constraints: Sequence[VersionConstraint]
    ) -> Iterator[Any]:
        # version matching is left to alpm_find_satisfier
        depstrings = [f"{name}{c}" for c in constraints] or [name]
        for pkg in pkgcache:
            if pkg.name == name:
                continue
            if name not in {PROVIDE_NAME_RE.split(p, 1)[0] for p in pkg.provides}:
                continue
            if all(self._find_satisfier([pkg], dep) is not None for dep in depstrings):
                yield pkg

    @staticmethod
    def _to_record(pkg: Any, source: Source, repository: str) -> Optional[PackageRecord]:
        try:
            return record_from_alpm(pkg, source, repository)
        except MalformedVersion as e:
            LOGGER.warning(f"Ignoring {repository}/{pkg.name}: {e.message}")
            return None

    # ------------------------------------------------------------------ #
    # Transactions                                                       #
    # ------------------------------------------------------------------ #

    def _pacman(self, args: List[str], label: str) -> None:
        cmd = self.pacman_command + args
        if self.noconfirm:
            cmd.append("--noconfirm")
        LOGGER.debug(f"Running {' '.join(cmd)}")
        try:
            status = subprocess.run(cmd, check=False)
        except OSError as e:
            raise InstallError(label, f"failed to execute pacman: {e}")
        if status.returncode != 0:
            raise InstallError(label, f"pacman {args[0]} failed with exit code {status.returncode}")

    def install(self, paths: Sequence[Path], as_deps: bool = False) -> None:
        """Install built package files in the given order with ``pacman -U``."""
        if not paths:
            return
        label = ", ".join(Path(p).name for p in paths)
        LOGGER.info(f"Installing {label}")
        args = ["-U"] + (["--asdeps"] if as_deps else []) + [str(p) for p in paths]
        self._pacman(args, label)

    def install_repo(self, names: Sequence[str], as_deps: bool = True) -> None:
        """Install sync repository packages, as dependencies unless told otherwise."""
        if not names:
            return
        LOGGER.info(f"Installing from repositories: {', '.join(names)}")
        args = ["-S", "--needed"] + (["--asdeps"] if as_deps else []) + list(names)
        self._pacman(args, ", ".join(names))

    def remove(self, names: Sequence[str]) -> None:
        if not names:
            return
        LOGGER.info(f"Removing {', '.join(names)}")
        self._pacman(["-Rs", *names], ", ".join(names))
