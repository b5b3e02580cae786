"""issueflow — A typed state machine for issue triage, resolution and release-bound closing."""

from issueflow.errors import (
    AmbiguousTriageInput,
    BacklogHasNoBackport,
    BackportVersionMismatch,
    ConfigurationError,
    InvalidResolution,
    InvalidTransition,
    LifecycleError,
    ReleaseClosed,
    UnknownCommitter,
    UnknownIssue,
    UnknownRelease,
)
from issueflow.states import (
    Command,
    EventKind,
    Issue,
    IssueState,
    IssueTransition,
    LifecycleEvent,
    Release,
    Resolution,
    VALID_TRANSITIONS,
    apply_command,
    create_issue,
    create_release,
)
from issueflow.service import (
    CloseReport,
    CommandResult,
    LifecycleService,
)
from issueflow.repository import Repository
from issueflow.versions import Version, parse_version

__version__ = "0.1.0"

__all__ = [
    # State machine
    "IssueState",
    "Resolution",
    "Command",
    "EventKind",
    "Issue",
    "IssueTransition",
    "LifecycleEvent",
    "Release",
    "VALID_TRANSITIONS",
    "apply_command",
    "create_issue",
    "create_release",
    # Versions
    "Version",
    "parse_version",
    # Errors
    "LifecycleError",
    "InvalidTransition",
    "AmbiguousTriageInput",
    "ReleaseClosed",
    "BacklogHasNoBackport",
    "BackportVersionMismatch",
    "InvalidResolution",
    "UnknownIssue",
    "UnknownRelease",
    "UnknownCommitter",
    "ConfigurationError",
    # Service
    "LifecycleService",
    "CommandResult",
    "CloseReport",
    # Repository protocol
    "Repository",
]
