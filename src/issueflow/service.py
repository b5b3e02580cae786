"""
LifecycleService — storage-agnostic command/query surface for issues.

Handles locking, validation, persistence, release closing and event
dispatch. Bring your own Repository implementation.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

import backoff

from issueflow.errors import ConfigurationError, InvalidTransition, LifecycleError, UnknownIssue, UnknownRelease
from issueflow.repository import Repository
from issueflow.states import (
    Command,
    CommitterDirectory,
    EventKind,
    Issue,
    IssueState,
    LifecycleEvent,
    Release,
    RESOLVED_STATES,
    apply_command,
    create_issue,
    create_release,
)
from issueflow.versions import is_backlog, release_key, subsumes

logger = logging.getLogger(__name__)

DEFAULT_HOOK_RETRIES = 3
DEFAULT_HOOK_BACKOFF_FACTOR = 0.5
MAX_HOOK_WAIT_SECONDS = 30


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(name, raw, "integer")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(name, raw, "number")


@dataclass
class CommandResult:
    """Result of a command submission."""

    success: bool
    issue: Optional[Issue]
    error: Optional[LifecycleError] = None
    previous_state: Optional[IssueState] = None
    new_state: Optional[IssueState] = None
    events: list[LifecycleEvent] = field(default_factory=list)
    created: Optional[Issue] = None

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error is not None else None


@dataclass
class CloseReport:
    """Result of closing a release."""

    release: str
    closed_ids: list[str] = field(default_factory=list)
    failures: list[LifecycleError] = field(default_factory=list)
    closed_releases: list[str] = field(default_factory=list)
    events: list[LifecycleEvent] = field(default_factory=list)

    @property
    def closed_count(self) -> int:
        return len(self.closed_ids)


# Type alias for event hooks
EventHook = Callable[[LifecycleEvent], None]


class KeyedLocks:
    """One lock per key, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())


class LifecycleService:
    """
    Service for moving Issues through the lifecycle.

    Commands against one issue are serialized by a per-issue lock;
    commands against different issues run independently. Events are
    returned to the caller and also passed to any registered hooks
    after the transition has been saved. A failing hook is retried and
    then logged; it never undoes the transition.

    Example:
        from issueflow import LifecycleService
        from issueflow.repository import MemoryRepository

        service = LifecycleService(repository=MemoryRepository())
        issue = service.create_issue(title="NPE in bean factory")

        service.submit_command(issue.issue_id, "assign", {"committer": "alice"})
        service.submit_command(issue.issue_id, "triage", {"fix_version": "3.2 RC1"})
    """

    def __init__(
        self,
        repository: Repository,
        hooks: Optional[list[EventHook]] = None,
        committers: Optional[CommitterDirectory] = None,
        hook_retries: Optional[int] = None,
        hook_backoff_factor: Optional[float] = None,
    ) -> None:
        self._repository = repository
        self._hooks: list[EventHook] = hooks or []
        self._committers = committers
        if hook_retries is None:
            hook_retries = _env_int("ISSUEFLOW_HOOK_RETRIES", DEFAULT_HOOK_RETRIES)
        if hook_backoff_factor is None:
            hook_backoff_factor = _env_float("ISSUEFLOW_HOOK_BACKOFF_FACTOR", DEFAULT_HOOK_BACKOFF_FACTOR)
        self._hook_retries = max(1, hook_retries)
        self._hook_backoff_factor = max(0.0, hook_backoff_factor)
        self._issue_locks = KeyedLocks()
        self._close_locks = KeyedLocks()
        self._catalog_lock = threading.Lock()

    @property
    def repository(self) -> Repository:
        return self._repository

    def add_hook(self, hook: EventHook) -> None:
        """Register a hook that receives every emitted event."""
        self._hooks.append(hook)

    # -- intake -------------------------------------------------------------

    def create_issue(self, title: Optional[str] = None, issue_id: Optional[str] = None) -> Issue:
        """Create and persist a new issue in the UNASSIGNED state."""
        issue = create_issue(title=title, issue_id=issue_id)
        with self._issue_locks.lock(issue.issue_id):
            if self._repository.get_issue(issue.issue_id) is not None:
                raise ValueError(f"Issue already exists: {issue.issue_id}")
            self._repository.save_issue(issue)

        logger.info(f"[issueflow] {issue.issue_id}: created")
        self._dispatch(
            [
                LifecycleEvent(
                    kind=EventKind.CREATED,
                    issue_id=issue.issue_id,
                    to_state=issue.state,
                    metadata={"title": title},
                )
            ]
        )
        return issue

    # -- commands -----------------------------------------------------------

    def submit_command(
        self,
        issue_id: str,
        command: Union[Command, str],
        payload: Optional[dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> CommandResult:
        """
        Apply a command to an issue.

        1. Locks the issue and loads it from the repository
        2. Validates and applies the command
        3. Registers any releases the new fix version names
        4. Persists the issue (and a new backport task, if any)
        5. Dispatches the events to registered hooks

        Args:
            issue_id: The issue identifier
            command: assign, triage, start_work, resolve, reopen or
                create_backport
            payload: Command arguments
            actor: Who issued the command

        Returns:
            CommandResult with the new state and events, or the error.
        """
        name = command.value if isinstance(command, Command) else command
        # Issues are never deleted, so an id that exists now still exists under the lock.
        existing = self._repository.get_issue(issue_id)
        if existing is None:
            logger.warning(f"[issueflow] {issue_id}: {name} rejected, issue not found")
            return CommandResult(success=False, issue=None, error=UnknownIssue(issue_id))

        if command in (Command.CLOSE, Command.CLOSE.value):
            error = InvalidTransition("Issues are closed through close_release", issue_id=issue_id)
            return CommandResult(success=False, issue=existing, error=error, previous_state=existing.state)

        with self._issue_locks.lock(issue_id):
            issue = self._repository.get_issue(issue_id) or existing

            try:
                outcome = apply_command(
                    issue,
                    command,
                    payload,
                    releases=self._release_for,
                    actor=actor,
                    committers=self._committers,
                )
            except LifecycleError as e:
                logger.warning(f"[issueflow] {issue_id}: {name} rejected ({e.kind}: {e})")
                return CommandResult(success=False, issue=issue, error=e, previous_state=issue.state)

            for label in outcome.releases:
                self.register_release(label)
            if outcome.created is not None:
                self._repository.save_issue(outcome.created)
            self._repository.save_issue(outcome.issue)

        logger.info(
            f"[issueflow] {issue_id}: {outcome.previous_state.value} → {outcome.new_state.value} "
            f"({name})"
        )
        self._dispatch(outcome.events)

        return CommandResult(
            success=True,
            issue=outcome.issue,
            previous_state=outcome.previous_state,
            new_state=outcome.new_state,
            events=outcome.events,
            created=outcome.created,
        )

    def assign(self, issue_id: str, committer: str, actor: Optional[str] = None) -> CommandResult:
        return self.submit_command(issue_id, Command.ASSIGN, {"committer": committer}, actor)

    def triage(
        self,
        issue_id: str,
        fix_version: Optional[str] = None,
        resolution: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> CommandResult:
        payload = {"fix_version": fix_version, "resolution": resolution}
        return self.submit_command(issue_id, Command.TRIAGE, payload, actor)

    def start_work(self, issue_id: str, accept_backlog: bool = False, actor: Optional[str] = None) -> CommandResult:
        return self.submit_command(issue_id, Command.START_WORK, {"accept_backlog": accept_backlog}, actor)

    def resolve(self, issue_id: str, resolution: str, actor: Optional[str] = None) -> CommandResult:
        return self.submit_command(issue_id, Command.RESOLVE, {"resolution": resolution}, actor)

    def reopen(
        self,
        issue_id: str,
        to: Union[IssueState, str] = IssueState.WAITING_FOR_TRIAGE,
        actor: Optional[str] = None,
    ) -> CommandResult:
        return self.submit_command(issue_id, Command.REOPEN, {"to": to}, actor)

    def create_backport(self, issue_id: str, maintenance_version: str, actor: Optional[str] = None) -> CommandResult:
        return self.submit_command(
            issue_id,
            Command.CREATE_BACKPORT,
            {"maintenance_version": maintenance_version},
            actor,
        )

    # -- releases -----------------------------------------------------------

    def register_release(self, label: str) -> Release:
        """Record a release for a concrete version label. Idempotent."""
        key = release_key(label)
        if key is None:
            raise UnknownRelease(label)
        with self._catalog_lock:
            release = self._repository.get_release(key)
            if release is None:
                release = create_release(label)
                covering = self._closed_release_covering(key)
                if covering is not None:
                    release.close()
                self._repository.save_release(release)
                if covering is not None:
                    logger.info(f"[issueflow] release {release.label} registered closed (covered by {covering.label})")
                else:
                    logger.info(f"[issueflow] release {release.label} registered")
        return release

    def _closed_release_covering(self, key: str) -> Optional[Release]:
        for release in self._repository.list_releases():
            if release.closed and subsumes(release.key, key):
                return release
        return None

    def close_release(self, label: str, actor: Optional[str] = None) -> CloseReport:
        """
        Close every resolved issue bound to a release, then the release.

        Issues whose fix version the release subsumes are visited one
        at a time under their own lock. Issues that cannot be closed are
        reported in ``failures`` without stopping the others. Closing an
        already closed release is a no-op.

        Raises:
            UnknownRelease: the label is not a concrete version
        """
        key = release_key(label)
        if key is None:
            raise UnknownRelease(label)

        with self._close_locks.lock(key):
            release = self._repository.get_release(key) or self.register_release(label)
            report = CloseReport(release=release.label)
            if release.closed:
                logger.info(f"[issueflow] release {release.label} already closed")
                return report

            for candidate in self._repository.list_issues():
                if not subsumes(key, candidate.fix_version):
                    continue
                self._close_issue(candidate.issue_id, key, actor, report)

            with self._catalog_lock:
                for other in self._repository.list_releases():
                    if subsumes(key, other.key) and other.close():
                        self._repository.save_release(other)
                        report.closed_releases.append(other.label)

        logger.info(
            f"[issueflow] release {release.label} closed: "
            f"{report.closed_count} issues closed, {len(report.failures)} failures"
        )
        self._dispatch(report.events)
        return report

    def _close_issue(self, issue_id: str, key: str, actor: Optional[str], report: CloseReport) -> None:
        with self._issue_locks.lock(issue_id):
            issue = self._repository.get_issue(issue_id)
            if issue is None or issue.state == IssueState.CLOSED or not subsumes(key, issue.fix_version):
                return
            try:
                outcome = apply_command(issue, Command.CLOSE, {"release": key}, actor=actor)
            except LifecycleError as e:
                logger.warning(f"[issueflow] {issue_id}: not closed with {key} ({e.kind}: {e})")
                report.failures.append(e)
                return
            self._repository.save_issue(outcome.issue)

        report.closed_ids.append(issue_id)
        report.events.extend(outcome.events)

    def query_release(self, label: str) -> Release:
        key = release_key(label)
        release = self._repository.get_release(key) if key is not None else None
        if release is None:
            raise UnknownRelease(label)
        return release

    def list_releases(self) -> list[Release]:
        return self._repository.list_releases()

    def _release_for(self, label: str) -> Optional[Release]:
        """
        The release a label is bound to. A version covered by a closed
        release resolves to that closed release, registered or not.
        """
        key = release_key(label)
        if key is None:
            return None
        release = self._repository.get_release(key)
        if release is not None and release.closed:
            return release
        return self._closed_release_covering(key) or release

    # -- queries ------------------------------------------------------------

    def query_issue(self, issue_id: str) -> Issue:
        """Read-only snapshot of an issue."""
        issue = self._repository.get_issue(issue_id)
        if issue is None:
            raise UnknownIssue(issue_id)
        return issue

    def query_by_state(self, state: Union[IssueState, str], limit: Optional[int] = None) -> list[str]:
        """IDs of issues in a state, e.g. the "Waiting for Triage" view. All of them unless limited."""
        state = IssueState(state)
        return [issue.issue_id for issue in self._repository.list_issues_by_state(state.value, limit)]

    def query_backlog(self) -> list[str]:
        """IDs of open issues scheduled against a backlog label."""
        return [
            issue.issue_id
            for issue in self._repository.list_issues()
            if issue.state not in RESOLVED_STATES and is_backlog(issue.fix_version)
        ]

    # -- dispatch -----------------------------------------------------------

    def _dispatch(self, events: list[LifecycleEvent]) -> None:
        for event in events:
            for hook in self._hooks:
                self._deliver(hook)(event)

    def _deliver(self, hook: EventHook) -> EventHook:
        return backoff.on_exception(
            backoff.expo,
            Exception,
            max_tries=self._hook_retries,
            max_time=MAX_HOOK_WAIT_SECONDS,
            on_backoff=_log_hook_backoff,
            on_giveup=_log_hook_giveup,
            raise_on_giveup=False,
            logger=None,
            factor=self._hook_backoff_factor,
            max_value=MAX_HOOK_WAIT_SECONDS,
        )(hook)


def _log_hook_backoff(details: dict[str, Any]) -> None:
    event = details["args"][0]
    logger.warning(
        f"[issueflow] Hook error on {event.kind.value} for {event.issue_id} "
        f"(attempt {details['tries']}), retrying in {details['wait']:.1f}s"
    )


def _log_hook_giveup(details: dict[str, Any]) -> None:
    event = details["args"][0]
    error = details.get("exception")
    logger.warning(
        f"[issueflow] Hook gave up on {event.kind.value} for {event.issue_id} "
        f"after {details['tries']} attempts: {error}"
    )
