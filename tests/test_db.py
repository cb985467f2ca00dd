"""Tests for the pacman database adapter."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from aurbuild.config import Settings
from aurbuild.db import PackageDB, read_sync_repos
from aurbuild.errors import InstallError, PackageDatabaseError
from aurbuild.models import PackageRef, Source
from aurbuild.version import parse_dependency


def test_read_sync_repos(tmp_path):
    conf = tmp_path / "pacman.conf"
    conf.write_text(
        "[options]\nHoldPkg = pacman glibc\n\n[core]\nInclude = /etc/pacman.d/mirrorlist\n"
        "\n#[testing]\n[extra]\nInclude = /etc/pacman.d/mirrorlist\n"
    )
    assert read_sync_repos(conf) == ["core", "extra"]


def test_read_sync_repos_missing_file(tmp_path):
    assert read_sync_repos(tmp_path / "nope.conf") == []


def test_requires_pyalpm_without_factory():
    with patch("aurbuild.db._HAVE_PYALPM", False):
        with pytest.raises(PackageDatabaseError):
            PackageDB()


class TestQueries:
    def test_installed_version(self, system):
        system.install("glibc", "2.39-1")
        db = PackageDB(handle_factory=system.handle, satisfier=system.find_satisfier)

        assert db.installed_version("glibc") == "2.39-1"
        assert db.installed_version("nope") is None

    def test_every_query_opens_a_fresh_handle(self, system):
        db = PackageDB(handle_factory=system.handle, satisfier=system.find_satisfier)

        db.installed_version("a")
        db.installed_version("a")

        assert system.handles_opened == 2

    def test_installed_record(self, system):
        system.install("foo", "1.0-1", depends=["bar>=2"], provides=["libfoo=1.0"])
        db = PackageDB(handle_factory=system.handle, satisfier=system.find_satisfier)

        record = db.installed_record("foo")

        assert record.source is Source.INSTALLED
        assert record.repository == "local"
        assert record.depends[0].name == "bar"
        assert [p.name for p in record.provides] == ["libfoo"]

    def test_installed_packages(self, system):
        system.install("a", "1-1")
        system.install("b", "2-1")
        db = PackageDB(handle_factory=system.handle, satisfier=system.find_satisfier)

        assert db.installed_packages() == {"a": "1-1", "b": "2-1"}

    def test_sync_candidate_respects_repo_order(self, system):
        system.sync("python", "3.12-1", repo="extra")
        system.sync("python", "3.11-1", repo="core")
        db = PackageDB(handle_factory=system.handle, satisfier=system.find_satisfier)

        record = db.sync_repo_candidate("python")

        assert record.version == "3.11-1"
        assert record.repository == "core"
        assert record.source is Source.SYNC_REPO

    def test_resolve_provider_prefers_installed(self, system):
        system.sync("jdk-openjdk", "21-1", provides=["java-runtime=21"])
        system.install("jre17", "17-1", provides=["java-runtime=17"])
        db = PackageDB(handle_factory=system.handle, satisfier=system.find_satisfier)

        assert db.resolve_provider("java-runtime") == "jre17"
        assert db.resolve_provider("jdk-openjdk") == "jdk-openjdk"
        assert db.resolve_provider("nothing") is None

    def test_resolve_provider_in_sync_repo(self, system):
        system.sync("bash", "5.2-1", repo="core", provides=["sh"])
        db = PackageDB(handle_factory=system.handle, satisfier=system.find_satisfier)

        assert db.resolve_provider("sh") == "bash"

    def test_providers_honour_constraints(self, system):
        system.install("jre8", "8.402-1", provides=["java-runtime=8"])
        system.sync("jre11", "11.0.22-1", repo="core", provides=["java-runtime=11"])
        system.sync("jre-openjdk", "21.0.2-1", repo="extra", provides=["java-runtime=21"])
        db = PackageDB(handle_factory=system.handle, satisfier=system.find_satisfier)
        at_least_11 = [parse_dependency("java-runtime>=11").constraint]
        below_21 = [parse_dependency("java-runtime<21").constraint]

        assert db.local_providers("java-runtime", at_least_11) == []
        assert [r.name for r in db.local_providers("java-runtime")] == ["jre8"]
        assert [(r.name, r.repository) for r in db.sync_providers("java-runtime", at_least_11)] == [
            ("jre11", "core"),
            ("jre-openjdk", "extra"),
        ]
        assert [r.name for r in db.sync_providers("java-runtime", at_least_11 + below_21)] == ["jre11"]
        assert db.resolve_provider("java-runtime") == "jre8"
        assert db.resolve_provider("java-runtime", at_least_11) == "jre11"

    def test_package_is_not_its_own_provider(self, system):
        system.sync("bash", "5.2-1", provides=["bash"])
        db = PackageDB(handle_factory=system.handle, satisfier=system.find_satisfier)

        assert db.sync_providers("bash") == []

    def test_malformed_provides_are_ignored(self, system):
        system.sync("weird", "1-1", provides=["sh>="])
        system.sync("bash", "5.2-1", provides=["sh"])
        db = PackageDB(handle_factory=system.handle, satisfier=system.find_satisfier)

        assert db.resolve_provider("sh") == "bash"

    def test_malformed_record_is_skipped(self, system):
        system.sync("broken", "1-1", depends=["x>="])
        db = PackageDB(handle_factory=system.handle, satisfier=system.find_satisfier)

        assert db.sync_repo_candidate("broken") is None


class TestTransactions:
    def make_db(self, system, **kwargs):
        return PackageDB(
            handle_factory=system.handle,
            satisfier=system.find_satisfier,
            pacman_command=["sudo", "pacman"],
            **kwargs,
        )

    @patch("aurbuild.db.subprocess.run")
    def test_install_as_dependency(self, mock_run, system):
        mock_run.return_value = MagicMock(returncode=0)
        db = self.make_db(system)

        db.install([Path("/cache/bar-2.1-1-x86_64.pkg.tar.zst")], as_deps=True)

        mock_run.assert_called_once_with(
            ["sudo", "pacman", "-U", "--asdeps", "/cache/bar-2.1-1-x86_64.pkg.tar.zst"],
            check=False,
        )

    @patch("aurbuild.db.subprocess.run")
    def test_install_explicit_with_noconfirm(self, mock_run, system):
        mock_run.return_value = MagicMock(returncode=0)
        db = self.make_db(system, noconfirm=True)

        db.install([Path("/cache/foo-1-1-any.pkg.tar.zst")])

        assert mock_run.call_args[0][0] == [
            "sudo",
            "pacman",
            "-U",
            "/cache/foo-1-1-any.pkg.tar.zst",
            "--noconfirm",
        ]

    @patch("aurbuild.db.subprocess.run")
    def test_install_nothing(self, mock_run, system):
        self.make_db(system).install([])
        mock_run.assert_not_called()

    @patch("aurbuild.db.subprocess.run")
    def test_install_failure(self, mock_run, system):
        mock_run.return_value = MagicMock(returncode=1)
        db = self.make_db(system)

        with pytest.raises(InstallError) as excinfo:
            db.install([Path("/cache/foo-1-1-any.pkg.tar.zst")])
        assert "exit code 1" in excinfo.value.message

    @patch("aurbuild.db.subprocess.run", side_effect=FileNotFoundError("sudo"))
    def test_pacman_missing(self, mock_run, system):
        with pytest.raises(InstallError):
            self.make_db(system).remove(["foo"])

    @patch("aurbuild.db.subprocess.run")
    def test_install_repo(self, mock_run, system):
        mock_run.return_value = MagicMock(returncode=0)
        db = self.make_db(system)

        db.install_repo(["cmake", "ninja"])
        db.install_repo(["vim"], as_deps=False)

        assert mock_run.call_args_list[0][0][0] == [
            "sudo", "pacman", "-S", "--needed", "--asdeps", "cmake", "ninja",
        ]
        assert mock_run.call_args_list[1][0][0] == ["sudo", "pacman", "-S", "--needed", "vim"]

    @patch("aurbuild.db.subprocess.run")
    def test_remove(self, mock_run, system):
        mock_run.return_value = MagicMock(returncode=0)

        self.make_db(system).remove(["foo", "bar"])

        assert mock_run.call_args[0][0] == ["sudo", "pacman", "-Rs", "foo", "bar"]


def test_from_settings(system):
    settings = Settings(pacman_command=["doas", "pacman"], pacman_root="/mnt")
    db = PackageDB.from_settings(
        settings, handle_factory=system.handle, satisfier=system.find_satisfier
    )

    assert db.pacman_command == ["doas", "pacman"]
    assert db.root == "/mnt"
    assert db.installed_version("x") is None


def test_conflicts_are_parsed(system):
    system.install("foo", "1.0-1", conflicts=["foo-git"])
    db = PackageDB(handle_factory=system.handle, satisfier=system.find_satisfier)

    assert db.installed_record("foo").conflicts == frozenset({PackageRef("foo-git")})
