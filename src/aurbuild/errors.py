"""
aurbuild.errors – error taxonomy and process exit codes
"""

import enum
from typing import Optional, Sequence


class ExitCode(enum.IntEnum):
    SUCCESS = 0
    ERROR = 1
    RESOLUTION_FAILED = 2
    BUILD_FAILED = 3
    INSTALL_FAILED = 4


class ErrorKind(str, enum.Enum):
    MALFORMED_VERSION = "MalformedVersion"
    FETCH_FAILED = "FetchFailed"
    UNRESOLVED_DEPENDENCY = "UnresolvedDependency"
    CYCLIC_DEPENDENCY = "CyclicDependency"
    CONFLICTING_PACKAGES = "ConflictingPackages"
    CONFLICTING_VERSION_CONSTRAINTS = "ConflictingVersionConstraints"
    RECIPE_FETCH_FAILED = "RecipeFetchFailed"
    TIMEOUT = "Timeout"
    BUILD_SCRIPT_ERROR = "BuildScriptError"
    AMBIGUOUS_ARTIFACT = "AmbiguousArtifact"
    INSTALL_ERROR = "InstallError"
    DATABASE_ERROR = "DatabaseError"
    CONFIG_ERROR = "ConfigError"

    def __str__(self) -> str:
        return self.value


class AurBuildError(Exception):
    """Base class for every error surfaced to the user."""

    kind: ErrorKind = ErrorKind.DATABASE_ERROR
    exit_code: ExitCode = ExitCode.ERROR

    def __init__(self, name: str, message: str = "") -> None:
        self.name = name
        self.message = message or self.kind.value
        super().__init__(f"{name}: {self.message}")


# --------------------------------------------------------------------------- #
# Resolution                                                                  #
# --------------------------------------------------------------------------- #


class ResolutionError(AurBuildError):
    exit_code = ExitCode.RESOLUTION_FAILED


class MalformedVersion(ResolutionError, ValueError):
    kind = ErrorKind.MALFORMED_VERSION

    def __init__(self, version: str, reason: str = "") -> None:
        self.version = version
        super().__init__(version, reason or f"malformed version string {version!r}")


class FetchFailed(ResolutionError):
    kind = ErrorKind.FETCH_FAILED


class UnresolvedDependency(ResolutionError):
    kind = ErrorKind.UNRESOLVED_DEPENDENCY

    def __init__(self, name: str, message: str = "") -> None:
        super().__init__(name, message or "not found in the local database, sync repositories or AUR")


class CyclicDependency(ResolutionError):
    kind = ErrorKind.CYCLIC_DEPENDENCY

    def __init__(self, path: Sequence[str]) -> None:
        self.path = list(path)
        super().__init__(self.path[0], "dependency cycle: " + " -> ".join(self.path))


class ConflictingPackages(ResolutionError):
    kind = ErrorKind.CONFLICTING_PACKAGES

    def __init__(self, first: str, second: str) -> None:
        self.first = first
        self.second = second
        super().__init__(first, f"{first} and {second} are in conflict")


class ConflictingVersionConstraints(ResolutionError):
    kind = ErrorKind.CONFLICTING_VERSION_CONSTRAINTS

    def __init__(self, name: str, constraints: Sequence[str] = (), message: str = "") -> None:
        self.constraints = list(constraints)
        super().__init__(
            name,
            message or "no version satisfies all of: " + ", ".join(self.constraints),
        )


# --------------------------------------------------------------------------- #
# Build / install                                                             #
# --------------------------------------------------------------------------- #


class BuildError(AurBuildError):
    exit_code = ExitCode.BUILD_FAILED


class RecipeFetchFailed(BuildError):
    kind = ErrorKind.RECIPE_FETCH_FAILED


class BuildTimeout(BuildError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, name: str, timeout: float, log_path: Optional[str] = None) -> None:
        self.timeout = timeout
        message = f"build exceeded {timeout:g}s and was terminated"
        if log_path:
            message += f" (log: {log_path})"
        super().__init__(name, message)


class BuildScriptError(BuildError):
    kind = ErrorKind.BUILD_SCRIPT_ERROR

    def __init__(self, name: str, returncode: int, log_path: Optional[str] = None) -> None:
        self.returncode = returncode
        message = f"build script exited with status {returncode}"
        if log_path:
            message += f" (log: {log_path})"
        super().__init__(name, message)


class AmbiguousArtifact(BuildError):
    kind = ErrorKind.AMBIGUOUS_ARTIFACT


class InstallError(AurBuildError):
    kind = ErrorKind.INSTALL_ERROR
    exit_code = ExitCode.INSTALL_FAILED


class PackageDatabaseError(AurBuildError):
    kind = ErrorKind.DATABASE_ERROR


class ConfigError(AurBuildError):
    kind = ErrorKind.CONFIG_ERROR
