"""
Core state machine for the issue lifecycle.

Defines states, commands, records and the transition function that
moves an issue through Unassigned → WaitingForTriage → Triaged →
InProgress → Resolved → Closed, with triage disposal straight to
Resolved and reopening back out of Resolved while its release is open.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Protocol
from uuid import uuid4

from pydantic import BaseModel, Field

from issueflow.errors import (
    AmbiguousTriageInput,
    BacklogHasNoBackport,
    BackportVersionMismatch,
    InvalidResolution,
    InvalidTransition,
    ReleaseClosed,
    UnknownCommitter,
    UnknownRelease,
)
from issueflow.versions import is_backlog, is_concrete, release_key, same_line, subsumes


class IssueState(str, Enum):
    """States in the issue lifecycle."""

    UNASSIGNED = "unassigned"
    WAITING_FOR_TRIAGE = "waiting_for_triage"
    TRIAGED = "triaged"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class Resolution(str, Enum):
    """Resolution codes. UNRESOLVED means no resolution has been set."""

    UNRESOLVED = "unresolved"
    COMPLETE = "complete"
    DUPLICATE = "duplicate"
    CANNOT_REPRODUCE = "cannot_reproduce"
    WONT_FIX = "wont_fix"
    INVALID = "invalid"


class Command(str, Enum):
    ASSIGN = "assign"
    TRIAGE = "triage"
    START_WORK = "start_work"
    RESOLVE = "resolve"
    REOPEN = "reopen"
    CLOSE = "close"
    CREATE_BACKPORT = "create_backport"


class EventKind(str, Enum):
    CREATED = "Created"
    ASSIGNED = "Assigned"
    TRIAGED = "Triaged"
    WORK_STARTED = "WorkStarted"
    RESOLVED = "Resolved"
    REOPENED = "Reopened"
    CLOSED = "Closed"
    BACKPORT_CREATED = "BackportCreated"


VALID_TRANSITIONS: dict[IssueState, list[IssueState]] = {
    IssueState.UNASSIGNED: [IssueState.WAITING_FOR_TRIAGE],
    IssueState.WAITING_FOR_TRIAGE: [IssueState.TRIAGED, IssueState.RESOLVED],
    IssueState.TRIAGED: [IssueState.IN_PROGRESS],
    IssueState.IN_PROGRESS: [IssueState.RESOLVED],
    IssueState.RESOLVED: [
        IssueState.CLOSED,
        IssueState.WAITING_FOR_TRIAGE,
        IssueState.TRIAGED,
        IssueState.IN_PROGRESS,
    ],
    IssueState.CLOSED: [],
}

# States each command may be issued from.
COMMAND_SOURCES: dict[Command, list[IssueState]] = {
    Command.ASSIGN: [IssueState.UNASSIGNED],
    Command.TRIAGE: [IssueState.WAITING_FOR_TRIAGE],
    Command.START_WORK: [IssueState.TRIAGED],
    Command.RESOLVE: [IssueState.IN_PROGRESS],
    Command.REOPEN: [IssueState.RESOLVED],
    Command.CLOSE: [IssueState.RESOLVED],
    Command.CREATE_BACKPORT: [IssueState.TRIAGED],
}

REOPEN_TARGETS = (IssueState.WAITING_FOR_TRIAGE, IssueState.TRIAGED, IssueState.IN_PROGRESS)
RESOLVED_STATES = (IssueState.RESOLVED, IssueState.CLOSED)


def _now() -> str:
    """UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class IssueTransition(BaseModel):
    """Entry in an issue's append-only history."""

    from_state: Optional[str] = Field(default=None, description="Previous state (None for initial)")
    to_state: str = Field(..., description="New state")
    command: str = Field(..., description="Command that caused the entry")
    actor: Optional[str] = Field(default=None, description="Who issued the command")
    timestamp: str = Field(default_factory=_now, description="When the entry was recorded (ISO 8601)")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Additional context")


class LifecycleEvent(BaseModel):
    """Side effect of a command, handed to the caller and to event hooks."""

    event_id: str = Field(default_factory=lambda: f"evt-{uuid4().hex[:12]}")
    kind: EventKind
    issue_id: str
    from_state: Optional[IssueState] = None
    to_state: IssueState
    actor: Optional[str] = None
    timestamp: str = Field(default_factory=_now)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Issue(BaseModel):
    """
    Tracks a single issue through triage, resolution and closing.

    Holds the current state, the attributes the transition guards look
    at, and the issue's transition history.
    """

    issue_id: str = Field(default_factory=lambda: f"iss-{uuid4().hex[:8]}", description="Unique issue ID")
    title: Optional[str] = Field(default=None, description="Short summary from intake")
    state: IssueState = Field(default=IssueState.UNASSIGNED, description="Current state")
    assignee: Optional[str] = Field(default=None, description="Committer responsible for the issue")
    fix_version: Optional[str] = Field(default=None, description="Version label or backlog label")
    resolution: Resolution = Field(default=Resolution.UNRESOLVED, description="Resolution code")
    backport_tasks: list[str] = Field(default_factory=list, description="IDs of linked backport issues")
    parent_id: Optional[str] = Field(default=None, description="Issue this backport was created from")
    reopen_count: int = Field(default=0, description="Times the issue left Resolved for an open state")
    transitions: list[IssueTransition] = Field(default_factory=list, description="Transition history")
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)
    closed_at: Optional[str] = Field(default=None)

    @property
    def is_backport(self) -> bool:
        return self.parent_id is not None

    @property
    def is_resolved(self) -> bool:
        return self.resolution != Resolution.UNRESOLVED

    def can_transition_to(self, new_state: IssueState) -> bool:
        return new_state in VALID_TRANSITIONS.get(self.state, [])

    def record(
        self,
        command: str,
        actor: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append a history entry that does not change state."""
        self.transitions.append(
            IssueTransition(
                from_state=self.state.value,
                to_state=self.state.value,
                command=command,
                actor=actor,
                metadata=metadata or {},
            )
        )
        self.updated_at = _now()

    def transition_to(
        self,
        new_state: IssueState,
        command: str,
        actor: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Move to a new state if the edge exists.

        Returns True if the transition succeeded, False if invalid.
        Guards beyond the edge table live in apply_command.
        """
        if not self.can_transition_to(new_state):
            return False

        self.transitions.append(
            IssueTransition(
                from_state=self.state.value,
                to_state=new_state.value,
                command=command,
                actor=actor,
                metadata=metadata or {},
            )
        )

        self.state = new_state
        self.updated_at = _now()

        if new_state == IssueState.CLOSED:
            self.closed_at = _now()

        return True

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict (for storage adapters)."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Issue":
        return cls.model_validate(data)


class Release(BaseModel):
    """A release that issues can be bound to through their fix version."""

    key: str = Field(..., description="Canonical version string")
    label: str = Field(..., description="Label as first registered")
    closed: bool = Field(default=False, description="Closed releases are immutable")
    created_at: str = Field(default_factory=_now)
    closed_at: Optional[str] = Field(default=None)

    def close(self) -> bool:
        """Mark the release closed. Returns False if it already was."""
        if self.closed:
            return False
        self.closed = True
        self.closed_at = _now()
        return True

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Release":
        return cls.model_validate(data)


class CommitterDirectory(Protocol):
    """Resolves committer identifiers."""

    def is_committer(self, committer: str) -> bool:
        ...


ReleaseLookup = Callable[[str], Optional[Release]]


@dataclass
class TransitionOutcome:
    """What a successfully applied command produced."""

    issue: Issue
    previous_state: IssueState
    new_state: IssueState
    events: list[LifecycleEvent] = field(default_factory=list)
    created: Optional[Issue] = None
    releases: list[str] = field(default_factory=list)


@dataclass
class _Context:
    releases: ReleaseLookup
    actor: Optional[str]
    committers: Optional[CommitterDirectory]


def _event(
    kind: EventKind,
    issue: Issue,
    previous: Optional[IssueState],
    ctx: _Context,
    **metadata: Any,
) -> LifecycleEvent:
    return LifecycleEvent(
        kind=kind,
        issue_id=issue.issue_id,
        from_state=previous,
        to_state=issue.state,
        actor=ctx.actor,
        metadata=metadata,
    )


def coerce_resolution(value: Any, issue_id: Optional[str] = None) -> Resolution:
    """
    Accept a Resolution, its value ("wont_fix") or its display name
    ("WontFix", "Won't Fix", "Cannot Reproduce").
    """
    if isinstance(value, Resolution):
        return value
    if isinstance(value, str):
        wanted = "".join(ch for ch in value.lower() if ch.isalpha())
        for resolution in Resolution:
            if resolution.value.replace("_", "") == wanted:
                return resolution
    raise InvalidResolution(f"Unknown resolution: {value!r}", issue_id=issue_id)


def _resolving(value: Any, issue_id: str) -> Resolution:
    resolution = coerce_resolution(value, issue_id)
    if resolution == Resolution.UNRESOLVED:
        raise InvalidResolution("Resolution must not be 'unresolved'", issue_id=issue_id)
    return resolution


def _check_release_open(label: Optional[str], issue_id: str, ctx: _Context) -> Optional[Release]:
    if not is_concrete(label):
        return None
    release = ctx.releases(label)
    if release is not None and release.closed:
        raise ReleaseClosed(f"Release {release.label} is closed", issue_id=issue_id)
    return release


def _assign(issue: Issue, payload: dict[str, Any], ctx: _Context) -> TransitionOutcome:
    committer = str(payload.get("committer") or "").strip()
    if not committer:
        raise InvalidTransition("assign requires a committer", issue_id=issue.issue_id)
    if ctx.committers is not None and not ctx.committers.is_committer(committer):
        raise UnknownCommitter(f"Not a committer: {committer}", issue_id=issue.issue_id)

    previous = issue.state
    issue.assignee = committer
    issue.transition_to(IssueState.WAITING_FOR_TRIAGE, Command.ASSIGN.value, ctx.actor, {"assignee": committer})
    return TransitionOutcome(
        issue=issue,
        previous_state=previous,
        new_state=issue.state,
        events=[_event(EventKind.ASSIGNED, issue, previous, ctx, assignee=committer)],
    )


def _triage(issue: Issue, payload: dict[str, Any], ctx: _Context) -> TransitionOutcome:
    fix_version = str(payload.get("fix_version") or "").strip()
    resolution = payload.get("resolution")
    if resolution == "":
        resolution = None
    if bool(fix_version) == (resolution is not None):
        raise AmbiguousTriageInput(
            "triage needs exactly one of fix_version or resolution",
            issue_id=issue.issue_id,
        )

    previous = issue.state
    if resolution is not None:
        code = _resolving(resolution, issue.issue_id)
        issue.resolution = code
        issue.transition_to(IssueState.RESOLVED, Command.TRIAGE.value, ctx.actor, {"resolution": code.value})
        return TransitionOutcome(
            issue=issue,
            previous_state=previous,
            new_state=issue.state,
            events=[
                _event(EventKind.TRIAGED, issue, previous, ctx, resolution=code.value),
                _event(EventKind.RESOLVED, issue, previous, ctx, resolution=code.value),
            ],
        )

    _check_release_open(fix_version, issue.issue_id, ctx)
    issue.fix_version = fix_version
    issue.transition_to(IssueState.TRIAGED, Command.TRIAGE.value, ctx.actor, {"fix_version": fix_version})
    return TransitionOutcome(
        issue=issue,
        previous_state=previous,
        new_state=issue.state,
        events=[_event(EventKind.TRIAGED, issue, previous, ctx, fix_version=fix_version)],
        releases=[fix_version] if is_concrete(fix_version) else [],
    )


def _check_workable(issue: Issue, accept_backlog: bool, ctx: _Context) -> None:
    fix_version = issue.fix_version
    if is_concrete(fix_version):
        release = _check_release_open(fix_version, issue.issue_id, ctx)
        if release is None:
            raise UnknownRelease(str(fix_version))
    elif not is_backlog(fix_version):
        raise InvalidTransition("Work cannot start without a fix version", issue_id=issue.issue_id)
    elif not accept_backlog:
        raise InvalidTransition(
            f"Fix version {fix_version!r} is a backlog label; pass accept_backlog to start work",
            issue_id=issue.issue_id,
        )


def _start_work(issue: Issue, payload: dict[str, Any], ctx: _Context) -> TransitionOutcome:
    accept_backlog = bool(payload.get("accept_backlog", False))
    _check_workable(issue, accept_backlog, ctx)

    previous = issue.state
    issue.transition_to(IssueState.IN_PROGRESS, Command.START_WORK.value, ctx.actor, {"accept_backlog": accept_backlog})
    return TransitionOutcome(
        issue=issue,
        previous_state=previous,
        new_state=issue.state,
        events=[_event(EventKind.WORK_STARTED, issue, previous, ctx, fix_version=issue.fix_version)],
    )


def _resolve(issue: Issue, payload: dict[str, Any], ctx: _Context) -> TransitionOutcome:
    if payload.get("resolution") is None:
        raise InvalidResolution("resolve requires a resolution", issue_id=issue.issue_id)
    code = _resolving(payload["resolution"], issue.issue_id)

    previous = issue.state
    issue.resolution = code
    issue.transition_to(IssueState.RESOLVED, Command.RESOLVE.value, ctx.actor, {"resolution": code.value})
    return TransitionOutcome(
        issue=issue,
        previous_state=previous,
        new_state=issue.state,
        events=[_event(EventKind.RESOLVED, issue, previous, ctx, resolution=code.value)],
    )


def _reopen(issue: Issue, payload: dict[str, Any], ctx: _Context) -> TransitionOutcome:
    try:
        target = IssueState(payload.get("to") or IssueState.WAITING_FOR_TRIAGE)
    except ValueError:
        raise InvalidTransition(f"Unknown reopen target: {payload.get('to')!r}", issue_id=issue.issue_id)
    if target not in REOPEN_TARGETS:
        raise InvalidTransition(f"Cannot reopen into {target.value}", issue_id=issue.issue_id)

    _check_release_open(issue.fix_version, issue.issue_id, ctx)
    if target == IssueState.TRIAGED and not issue.fix_version:
        raise InvalidTransition("Reopening into triaged needs a fix version", issue_id=issue.issue_id)
    if target == IssueState.IN_PROGRESS:
        _check_workable(issue, bool(payload.get("accept_backlog", False)), ctx)

    previous = issue.state
    old_resolution = issue.resolution
    issue.resolution = Resolution.UNRESOLVED
    issue.reopen_count += 1
    issue.transition_to(target, Command.REOPEN.value, ctx.actor, {"previous_resolution": old_resolution.value})
    return TransitionOutcome(
        issue=issue,
        previous_state=previous,
        new_state=issue.state,
        events=[
            _event(
                EventKind.REOPENED,
                issue,
                previous,
                ctx,
                previous_resolution=old_resolution.value,
                reopen_count=issue.reopen_count,
            )
        ],
    )


def _close(issue: Issue, payload: dict[str, Any], ctx: _Context) -> TransitionOutcome:
    label = str(payload.get("release") or "")
    if not subsumes(label, issue.fix_version):
        raise InvalidTransition(
            f"Fix version {issue.fix_version!r} is not covered by release {label!r}",
            issue_id=issue.issue_id,
        )

    previous = issue.state
    issue.transition_to(IssueState.CLOSED, Command.CLOSE.value, ctx.actor, {"release": label})
    return TransitionOutcome(
        issue=issue,
        previous_state=previous,
        new_state=issue.state,
        events=[_event(EventKind.CLOSED, issue, previous, ctx, release=label)],
    )


def _create_backport(issue: Issue, payload: dict[str, Any], ctx: _Context) -> TransitionOutcome:
    if issue.is_backport:
        raise InvalidTransition("Backport tasks cannot have backports of their own", issue_id=issue.issue_id)
    if not is_concrete(issue.fix_version):
        raise BacklogHasNoBackport(
            f"Fix version {issue.fix_version!r} is not a concrete version",
            issue_id=issue.issue_id,
        )

    version = str(payload.get("maintenance_version") or "").strip()
    if not is_concrete(version):
        raise BackportVersionMismatch(f"Not a maintenance version: {version!r}", issue_id=issue.issue_id)
    if not same_line(issue.fix_version, version):
        raise BackportVersionMismatch(
            f"Backport version {version} is not on the {issue.fix_version} line",
            issue_id=issue.issue_id,
        )
    _check_release_open(version, issue.issue_id, ctx)

    child = Issue(
        title=f"Backport of {issue.title or issue.issue_id} to {version}",
        state=IssueState.TRIAGED,
        assignee=issue.assignee,
        fix_version=version,
        parent_id=issue.issue_id,
    )
    child.transitions.append(
        IssueTransition(
            from_state=None,
            to_state=IssueState.TRIAGED.value,
            command=Command.CREATE_BACKPORT.value,
            actor=ctx.actor,
            metadata={"parent_id": issue.issue_id, "fix_version": version},
        )
    )

    issue.backport_tasks.append(child.issue_id)
    issue.record(Command.CREATE_BACKPORT.value, ctx.actor, {"backport_id": child.issue_id, "fix_version": version})
    return TransitionOutcome(
        issue=issue,
        previous_state=issue.state,
        new_state=issue.state,
        events=[
            _event(
                EventKind.BACKPORT_CREATED,
                issue,
                issue.state,
                ctx,
                backport_id=child.issue_id,
                fix_version=version,
            )
        ],
        created=child,
        releases=[version],
    )


_HANDLERS: dict[Command, Callable[[Issue, dict[str, Any], _Context], TransitionOutcome]] = {
    Command.ASSIGN: _assign,
    Command.TRIAGE: _triage,
    Command.START_WORK: _start_work,
    Command.RESOLVE: _resolve,
    Command.REOPEN: _reopen,
    Command.CLOSE: _close,
    Command.CREATE_BACKPORT: _create_backport,
}


def apply_command(
    issue: Issue,
    command: Any,
    payload: Optional[dict[str, Any]] = None,
    *,
    releases: Optional[ReleaseLookup] = None,
    actor: Optional[str] = None,
    committers: Optional[CommitterDirectory] = None,
) -> TransitionOutcome:
    """
    Apply a command to an issue.

    Defined for every state/command pair: either the command's guards
    pass and the issue is updated in place, or a LifecycleError is
    raised before anything is mutated.

    Args:
        issue: The issue to update
        command: A Command or its string value
        payload: Command arguments (committer, fix_version, resolution,
            accept_backlog, to, release, maintenance_version)
        releases: Looks up a registered Release by version label
        actor: Who issued the command
        committers: Optional directory that vets assignees

    Returns:
        TransitionOutcome with the new state and events to dispatch.
    """
    try:
        command = Command(command)
    except ValueError:
        raise InvalidTransition(f"Unknown command: {command!r}", issue_id=issue.issue_id)

    if issue.state not in COMMAND_SOURCES[command]:
        if command == Command.REOPEN and issue.state == IssueState.CLOSED:
            raise ReleaseClosed(
                f"Issue is closed with release {issue.fix_version}",
                issue_id=issue.issue_id,
            )
        allowed = ", ".join(s.value for s in COMMAND_SOURCES[command])
        raise InvalidTransition(
            f"Cannot {command.value} from {issue.state.value}. Allowed from: {allowed}",
            issue_id=issue.issue_id,
        )

    ctx = _Context(releases=releases or (lambda label: None), actor=actor, committers=committers)
    return _HANDLERS[command](issue, payload or {}, ctx)


def count_reopens(issue: Issue) -> int:
    """Rebuild reopen_count from the issue's history."""
    return sum(1 for t in issue.transitions if t.command == Command.REOPEN.value)


def create_issue(title: Optional[str] = None, issue_id: Optional[str] = None) -> Issue:
    """
    Create a new Issue in the UNASSIGNED state.

    Returns:
        A new Issue with the initial history entry recorded.
    """
    issue = Issue(title=title) if issue_id is None else Issue(issue_id=issue_id, title=title)
    issue.transitions.append(
        IssueTransition(
            from_state=None,
            to_state=IssueState.UNASSIGNED.value,
            command="created",
            metadata={"title": title},
        )
    )
    return issue


def create_release(label: str) -> Release:
    """Create an open Release for a concrete version label."""
    key = release_key(label)
    if key is None:
        raise ValueError(f"Not a concrete version label: {label!r}")
    return Release(key=key, label=label.strip())
