"""
Errors raised by the lifecycle engine.

Every error is recoverable: it is reported to the caller of the command
and leaves the issue unchanged.
"""

from typing import Optional


class LifecycleError(Exception):
    """Base class for all command failures."""

    kind = "LifecycleError"

    def __init__(self, message: str, issue_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.issue_id = issue_id

    def to_dict(self) -> dict[str, Optional[str]]:
        return {"kind": self.kind, "issue_id": self.issue_id, "message": self.message}


class InvalidTransition(LifecycleError):
    """The command is not legal from the issue's current state."""

    kind = "InvalidTransition"


class AmbiguousTriageInput(LifecycleError):
    """Triage got both or neither of fix version and resolution."""

    kind = "AmbiguousTriageInput"


class ReleaseClosed(LifecycleError):
    """The release the issue is bound to has been closed."""

    kind = "ReleaseClosed"


class BacklogHasNoBackport(LifecycleError):
    """Backports need a parent with a concrete fix version."""

    kind = "BacklogHasNoBackport"


class BackportVersionMismatch(LifecycleError):
    """The backport version is not on the parent's generation/major line."""

    kind = "BackportVersionMismatch"


class InvalidResolution(LifecycleError):
    kind = "InvalidResolution"


class UnknownIssue(LifecycleError):
    kind = "UnknownIssue"

    def __init__(self, issue_id: str) -> None:
        super().__init__(f"Issue not found: {issue_id}", issue_id=issue_id)


class UnknownRelease(LifecycleError):
    kind = "UnknownRelease"

    def __init__(self, label: str) -> None:
        super().__init__(f"Release not found: {label}")
        self.label = label


class UnknownCommitter(LifecycleError):
    kind = "UnknownCommitter"


class ConfigurationError(ValueError):
    """An ISSUEFLOW_* setting could not be parsed."""

    def __init__(self, name: str, value: str, expected: str) -> None:
        super().__init__(f"{name}={value!r} is not a valid {expected}")
        self.name = name
        self.value = value
