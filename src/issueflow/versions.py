"""
Version labels for fix versions and releases.

Concrete labels follow ``<generation>.<major>.<maintenance>.<type>``,
e.g. ``3.2.0.RELEASE``, ``3.2.0.RC1``, ``3.2.0.M2`` or
``3.2.0.BUILD-SNAPSHOT``. Short forms such as ``3.2 RC1`` or ``3.1.2``
are accepted: a missing maintenance component is 0 and a missing type
means GA.

Anything that does not parse as a concrete version ("Backlog",
"4.x Backlog", ...) is a backlog label: it names no release and never
takes part in release closing.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ReleaseType(str, Enum):
    """Release types, in increasing order of maturity."""

    SNAPSHOT = "snapshot"
    MILESTONE = "milestone"
    RELEASE_CANDIDATE = "release-candidate"
    GA = "GA"


_TYPE_ORDER: dict[ReleaseType, int] = {
    ReleaseType.SNAPSHOT: 0,
    ReleaseType.MILESTONE: 1,
    ReleaseType.RELEASE_CANDIDATE: 2,
    ReleaseType.GA: 3,
}

_VERSION_RE = re.compile(
    r"^(?P<generation>\d+)\.(?P<major>\d+)(?:\.(?P<maintenance>\d+))?"
    r"(?:[.\s-]+(?P<qualifier>RELEASE|GA|FINAL|BUILD-SNAPSHOT|SNAPSHOT|M\d+|RC\d+))?$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Version:
    """A parsed concrete version label."""

    generation: int
    major: int
    maintenance: int
    release_type: ReleaseType
    iteration: int = 0

    @property
    def line(self) -> tuple[int, int]:
        """Generation and major: the branch a backport must stay on."""
        return (self.generation, self.major)

    @property
    def base(self) -> tuple[int, int, int]:
        """The GA this version leads up to."""
        return (self.generation, self.major, self.maintenance)

    @property
    def rank(self) -> tuple[int, int]:
        return (_TYPE_ORDER[self.release_type], self.iteration)

    def __str__(self) -> str:
        if self.release_type == ReleaseType.SNAPSHOT:
            suffix = "BUILD-SNAPSHOT"
        elif self.release_type == ReleaseType.MILESTONE:
            suffix = f"M{self.iteration}"
        elif self.release_type == ReleaseType.RELEASE_CANDIDATE:
            suffix = f"RC{self.iteration}"
        else:
            suffix = "RELEASE"
        return f"{self.generation}.{self.major}.{self.maintenance}.{suffix}"


def parse_version(label: Optional[str]) -> Optional[Version]:
    """
    Parse a version label.

    Returns None for backlog labels and anything else that is not a
    concrete version.
    """
    if not label:
        return None
    match = _VERSION_RE.match(label.strip())
    if match is None:
        return None

    qualifier = (match.group("qualifier") or "RELEASE").upper()
    iteration = 0
    if qualifier in ("RELEASE", "GA", "FINAL"):
        release_type = ReleaseType.GA
    elif qualifier.endswith("SNAPSHOT"):
        release_type = ReleaseType.SNAPSHOT
    elif qualifier.startswith("RC"):
        release_type = ReleaseType.RELEASE_CANDIDATE
        iteration = int(qualifier[2:])
    else:
        release_type = ReleaseType.MILESTONE
        iteration = int(qualifier[1:])

    return Version(
        generation=int(match.group("generation")),
        major=int(match.group("major")),
        maintenance=int(match.group("maintenance") or 0),
        release_type=release_type,
        iteration=iteration,
    )


def is_concrete(label: Optional[str]) -> bool:
    return parse_version(label) is not None


def is_backlog(label: Optional[str]) -> bool:
    """True for a non-empty label that names no concrete release."""
    return bool(label) and parse_version(label) is None


def subsumes(release_label: str, version_label: Optional[str]) -> bool:
    """
    Check whether finalizing ``release_label`` covers ``version_label``.

    A release covers every snapshot, milestone and RC leading up to it
    on the same generation/major/maintenance, and itself. Backlog labels
    are never covered.
    """
    release = parse_version(release_label)
    version = parse_version(version_label)
    if release is None or version is None:
        return False
    return version.base == release.base and version.rank <= release.rank


def same_line(a: Optional[str], b: Optional[str]) -> bool:
    """True when both labels are concrete and share generation and major."""
    va = parse_version(a)
    vb = parse_version(b)
    if va is None or vb is None:
        return False
    return va.line == vb.line


def release_key(label: Optional[str]) -> Optional[str]:
    """
    Canonical key for a concrete label, so "3.2 RC1" and "3.2.0.RC1"
    name the same release. None for backlog labels.
    """
    version = parse_version(label)
    return str(version) if version is not None else None
