"""Fakes for the pacman databases and the AUR client."""

from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

from aurbuild.aur import record_from_rpc
from aurbuild.build import ARTIFACT_RE
from aurbuild.db import PackageDB
from aurbuild.errors import FetchFailed, InstallError, MalformedVersion
from aurbuild.models import PackageRecord
from aurbuild.resolver import DependencyResolver
from aurbuild.version import parse_dependency, provision_satisfies, satisfies


class FakePkg:
    """Stand-in for a pyalpm.Package."""

    def __init__(
        self,
        name: str,
        version: str,
        depends: Iterable[str] = (),
        makedepends: Iterable[str] = (),
        provides: Iterable[str] = (),
        conflicts: Iterable[str] = (),
        base: Optional[str] = None,
    ):
        self.name = name
        self.version = version
        self.depends = list(depends)
        self.makedepends = list(makedepends)
        self.provides = list(provides)
        self.conflicts = list(conflicts)
        self.base = base or name
        self.desc = f"{name} package"
        self.url = f"https://example.org/{name}"


class FakeRepo:
    """Stand-in for a pyalpm.DB."""

    def __init__(self, name: str):
        self.name = name
        self.packages: Dict[str, FakePkg] = {}

    def get_pkg(self, name: str) -> Optional[FakePkg]:
        return self.packages.get(name)

    @property
    def pkgcache(self) -> List[FakePkg]:
        return list(self.packages.values())


class FakeHandle:
    def __init__(self, local: FakeRepo, syncdbs: List[FakeRepo]):
        self.local = local
        self.syncdbs = syncdbs

    def get_localdb(self) -> FakeRepo:
        return self.local

    def get_syncdbs(self) -> List[FakeRepo]:
        return list(self.syncdbs)


class FakeSystem:
    """Local database plus the core and extra sync repositories."""

    def __init__(self):
        self.local = FakeRepo("local")
        self.syncdbs = [FakeRepo("core"), FakeRepo("extra")]
        self.handles_opened = 0

    def handle(self) -> FakeHandle:
        self.handles_opened += 1
        return FakeHandle(self.local, self.syncdbs)

    @staticmethod
    def find_satisfier(pkgs: List[FakePkg], depstring: str) -> Optional[FakePkg]:
        """Stand-in for pyalpm.find_satisfier: first package matching by name or provides."""
        ref = parse_dependency(depstring)
        for pkg in pkgs:
            if pkg.name == ref.name and satisfies(pkg.version, ref.constraint):
                return pkg
            for spec in pkg.provides:
                try:
                    provide = parse_dependency(spec)
                except MalformedVersion:
                    continue
                if provide.name == ref.name and provision_satisfies(provide, ref.constraint):
                    return pkg
        return None

    def install(self, name: str, version: str, **fields) -> FakePkg:
        pkg = FakePkg(name, version, **fields)
        self.local.packages[name] = pkg
        return pkg

    def sync(self, name: str, version: str, repo: str = "extra", **fields) -> FakePkg:
        pkg = FakePkg(name, version, **fields)
        next(db for db in self.syncdbs if db.name == repo).packages[name] = pkg
        return pkg


class RecordingDB(PackageDB):
    """PackageDB whose pacman transactions update the fake system instead."""

    def __init__(self, system: FakeSystem, fail_install: Iterable[str] = ()):
        super().__init__(handle_factory=system.handle, satisfier=system.find_satisfier)
        self.system = system
        self.fail_install = set(fail_install)
        self.transactions: List[tuple] = []

    def install(self, paths, as_deps=False):
        for path in paths:
            match = ARTIFACT_RE.match(Path(path).name)
            name = match.group("name")
            self.transactions.append(("-U", name, as_deps))
            if name in self.fail_install:
                raise InstallError(Path(path).name, "pacman -U failed with exit code 1")
            self.system.install(name, f"{match.group('pkgver')}-{match.group('pkgrel')}")

    def install_repo(self, names, as_deps=True):
        for name in names:
            self.transactions.append(("-S", name, as_deps))
            if name in self.fail_install:
                raise InstallError(name, "pacman -S failed with exit code 1")
            record = self.sync_repo_candidate(name)
            self.system.install(name, record.version if record else "1.0-1")

    def remove(self, names):
        for name in names:
            self.transactions.append(("-Rs", name, False))
            self.system.local.packages.pop(name, None)


def aur_record(name: str, version: str = "1.0-1", **fields) -> PackageRecord:
    """Build a record the way the AUR client does, from an RPC result dict."""
    rpc = {
        "Name": name,
        "Version": version,
        "PackageBase": fields.pop("base", name),
        "Description": f"{name} from the AUR",
        "NumVotes": 3,
        "Popularity": 0.5,
    }
    for key, rpc_key in (
        ("depends", "Depends"),
        ("makedepends", "MakeDepends"),
        ("checkdepends", "CheckDepends"),
        ("provides", "Provides"),
        ("conflicts", "Conflicts"),
    ):
        if key in fields:
            rpc[rpc_key] = list(fields.pop(key))
    rpc.update(fields)
    return record_from_rpc(rpc)


class FakeAur:
    """In-memory AurClient replacement recording every batch it is asked for."""

    def __init__(self):
        self.records: Dict[str, PackageRecord] = {}
        self.failing = set()
        self.fetch_calls: List[List[str]] = []

    def add(self, name: str, version: str = "1.0-1", **fields) -> PackageRecord:
        record = aur_record(name, version, **fields)
        self.records[name] = record
        return record

    def fetch(self, names):
        names = list(dict.fromkeys(names))
        self.fetch_calls.append(names)
        return {
            n: FetchFailed(n, "connection reset") if n in self.failing else self.records.get(n)
            for n in names
        }

    def get(self, name):
        outcome = self.fetch([name])[name]
        if isinstance(outcome, FetchFailed):
            raise outcome
        return outcome

    def search(self, query, by="name-desc"):
        return [r for r in self.records.values() if query in r.name]

    def search_providers(self, name):
        return [
            r for r in self.records.values() if any(p.name == name for p in r.provides)
        ]

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


@pytest.fixture
def system():
    return FakeSystem()


@pytest.fixture
def db(system):
    return RecordingDB(system)


@pytest.fixture
def aur():
    return FakeAur()


@pytest.fixture
def resolver(db, aur):
    return DependencyResolver(db, aur)
