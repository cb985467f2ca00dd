"""
aurbuild.version – pacman version ordering and dependency constraints

Versions follow the ``epoch:pkgver-pkgrel`` scheme.  ``pkgver`` is compared
segment by segment the way libalpm's ``rpmvercmp`` does it; a missing pkgrel
on either side means the release is not considered.
"""

import functools
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from .errors import ConflictingVersionConstraints, MalformedVersion
from .models import ConstraintOp, PackageRef, VersionConstraint

VERSION_RE = re.compile(
    r"^(?:(?P<epoch>\d+):)?(?P<pkgver>[A-Za-z0-9._+~]+)(?:-(?P<pkgrel>\d+(?:\.\d+)*))?$"
)
DEPENDENCY_RE = re.compile(
    r"^(?P<name>[^<>=\s]+)\s*(?:(?P<op><=|>=|=|<|>)\s*(?P<version>\S*))?$"
)


def _isalpha(c: str) -> bool:
    return c.isascii() and c.isalpha()


def _isalnum(c: str) -> bool:
    return c.isascii() and c.isalnum()


def _isdigit(c: str) -> bool:
    return c.isascii() and c.isdigit()


def rpmvercmp(a: str, b: str) -> int:
    """Compare two version segments; returns -1, 0 or 1."""
    if a == b:
        return 0
    i = j = 0
    la, lb = len(a), len(b)
    while i < la and j < lb:
        sep_i, sep_j = i, j
        while i < la and not _isalnum(a[i]):
            i += 1
        while j < lb and not _isalnum(b[j]):
            j += 1
        if i >= la or j >= lb:
            break
        if (i - sep_i) != (j - sep_j):
            return -1 if (i - sep_i) < (j - sep_j) else 1

        end_i, end_j = i, j
        isnum = _isdigit(a[i])
        if isnum:
            while end_i < la and _isdigit(a[end_i]):
                end_i += 1
            while end_j < lb and _isdigit(b[end_j]):
                end_j += 1
        else:
            while end_i < la and _isalpha(a[end_i]):
                end_i += 1
            while end_j < lb and _isalpha(b[end_j]):
                end_j += 1

        seg_a, seg_b = a[i:end_i], b[j:end_j]
        # numeric segments always beat alpha ones
        if not seg_a:
            return -1
        if not seg_b:
            return 1 if isnum else -1

        if isnum:
            seg_a = seg_a.lstrip("0")
            seg_b = seg_b.lstrip("0")
            if len(seg_a) != len(seg_b):
                return 1 if len(seg_a) > len(seg_b) else -1
        if seg_a != seg_b:
            return 1 if seg_a > seg_b else -1
        i, j = end_i, end_j

    if i >= la and j >= lb:
        return 0
    # a trailing alpha segment never beats an empty one
    if (i >= la and not _isalpha(b[j])) or (i < la and _isalpha(a[i])):
        return -1
    return 1


@functools.total_ordering
@dataclass(frozen=True)
class Version:
    epoch: int
    pkgver: str
    pkgrel: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "Version":
        if not isinstance(text, str):
            raise MalformedVersion(repr(text), "version must be a string")
        match = VERSION_RE.match(text.strip())
        if not match or not any(_isalnum(c) for c in match.group("pkgver")):
            raise MalformedVersion(text)
        epoch = match.group("epoch")
        return cls(
            epoch=int(epoch) if epoch else 0,
            pkgver=match.group("pkgver"),
            pkgrel=match.group("pkgrel"),
        )

    def compare(self, other: "Version") -> int:
        if self.epoch != other.epoch:
            return 1 if self.epoch > other.epoch else -1
        ret = rpmvercmp(self.pkgver, other.pkgver)
        if ret == 0 and self.pkgrel is not None and other.pkgrel is not None:
            ret = rpmvercmp(self.pkgrel, other.pkgrel)
        return ret

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other: "Version") -> bool:
        return self.compare(other) < 0

    def __hash__(self) -> int:
        return hash(self.epoch)

    def __str__(self) -> str:
        text = f"{self.epoch}:{self.pkgver}" if self.epoch else self.pkgver
        if self.pkgrel is not None:
            text += f"-{self.pkgrel}"
        return text


def vercmp(a: str, b: str) -> int:
    """Compare two full version strings, raising MalformedVersion on bad input."""
    return Version.parse(a).compare(Version.parse(b))


def satisfies(candidate: str, constraint: Optional[VersionConstraint]) -> bool:
    if constraint is None:
        return True
    ret = vercmp(candidate, constraint.version)
    op = constraint.op
    if op is ConstraintOp.EQ:
        return ret == 0
    if op is ConstraintOp.GE:
        return ret >= 0
    if op is ConstraintOp.LE:
        return ret <= 0
    if op is ConstraintOp.GT:
        return ret > 0
    return ret < 0


def satisfies_all(candidate: str, constraints: Iterable[VersionConstraint]) -> bool:
    return all(satisfies(candidate, c) for c in constraints)


def provision_satisfies(provide: PackageRef, constraint: Optional[VersionConstraint]) -> bool:
    """Whether a ``provides`` entry meets a versioned requirement.

    An unversioned provision only satisfies unversioned requirements.
    """
    if constraint is None:
        return True
    if provide.constraint is None or provide.constraint.op is not ConstraintOp.EQ:
        return False
    return satisfies(provide.constraint.version, constraint)


def parse_dependency(spec: str) -> PackageRef:
    """Parse ``name``, ``name>=1.2`` or ``name: description`` into a PackageRef."""
    text = spec.split(": ", 1)[0].strip()
    match = DEPENDENCY_RE.match(text)
    if not match:
        raise MalformedVersion(spec, f"malformed dependency {spec!r}")
    op = match.group("op")
    if op is None:
        return PackageRef(match.group("name"))
    version = match.group("version")
    if not version:
        raise MalformedVersion(spec, f"dependency {spec!r} has an operator but no version")
    return PackageRef(match.group("name"), VersionConstraint(ConstraintOp(op), version))


def parse_dependencies(specs: Optional[Iterable[str]]) -> Tuple[PackageRef, ...]:
    return tuple(parse_dependency(s) for s in (specs or ()) if s and s.strip())


# --------------------------------------------------------------------------- #
# Constraint intersection                                                     #
# --------------------------------------------------------------------------- #


def constraints_intersect(constraints: Iterable[VersionConstraint]) -> bool:
    """Whether at least one version can satisfy every constraint."""
    lower: Optional[Tuple[str, bool]] = None
    upper: Optional[Tuple[str, bool]] = None
    for c in constraints:
        inclusive = c.op in (ConstraintOp.EQ, ConstraintOp.GE, ConstraintOp.LE)
        if c.op in (ConstraintOp.EQ, ConstraintOp.GE, ConstraintOp.GT):
            if lower is None:
                lower = (c.version, inclusive)
            else:
                ret = vercmp(c.version, lower[0])
                if ret > 0:
                    lower = (c.version, inclusive)
                elif ret == 0:
                    lower = (lower[0], lower[1] and inclusive)
        if c.op in (ConstraintOp.EQ, ConstraintOp.LE, ConstraintOp.LT):
            if upper is None:
                upper = (c.version, inclusive)
            else:
                ret = vercmp(c.version, upper[0])
                if ret < 0:
                    upper = (c.version, inclusive)
                elif ret == 0:
                    upper = (upper[0], upper[1] and inclusive)
    if lower is None or upper is None:
        return True
    ret = vercmp(lower[0], upper[0])
    if ret > 0:
        return False
    if ret == 0:
        return lower[1] and upper[1]
    return True


def check_intersection(name: str, constraints: Iterable[VersionConstraint]) -> None:
    constraints = list(constraints)
    if not constraints_intersect(constraints):
        raise ConflictingVersionConstraints(name, [str(c) for c in constraints])
