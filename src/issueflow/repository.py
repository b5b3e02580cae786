"""
Abstract repository protocol for Issue and Release persistence.

Implement this protocol to plug in any storage backend
(DynamoDB, Postgres, SQLite, Redis, in-memory, etc.).
"""

import threading
from typing import Optional, Protocol, runtime_checkable

from issueflow.states import Issue, Release


@runtime_checkable
class Repository(Protocol):
    """
    Storage interface for Issues and Releases.

    Issues are never deleted. Releases are keyed by their canonical
    version string (see ``issueflow.versions.release_key``).
    """

    def save_issue(self, issue: Issue) -> Issue:
        """Persist an issue (create or update)."""
        ...

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        """Retrieve an issue by ID. Returns None if not found."""
        ...

    def list_issues(self) -> list[Issue]:
        ...

    def list_issues_by_state(self, state: str, limit: Optional[int] = None) -> list[Issue]:
        """List issues in a given state, all of them when limit is None."""
        ...

    def save_release(self, release: Release) -> Release:
        ...

    def get_release(self, key: str) -> Optional[Release]:
        ...

    def list_releases(self) -> list[Release]:
        ...


class MemoryRepository:
    """
    In-memory repository for testing and prototyping.

    Records are stored as dicts, so callers always get copies.
    """

    def __init__(self) -> None:
        self._issues: dict[str, dict] = {}
        self._releases: dict[str, dict] = {}
        self._lock = threading.Lock()

    def save_issue(self, issue: Issue) -> Issue:
        data = issue.to_dict()
        with self._lock:
            self._issues[issue.issue_id] = data
        return issue

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        with self._lock:
            data = self._issues.get(issue_id)
        if data is None:
            return None
        return Issue.from_dict(data)

    def list_issues(self) -> list[Issue]:
        with self._lock:
            rows = list(self._issues.values())
        return [Issue.from_dict(data) for data in rows]

    def list_issues_by_state(self, state: str, limit: Optional[int] = None) -> list[Issue]:
        with self._lock:
            rows = [data for data in self._issues.values() if data.get("state") == state]
        if limit is not None:
            rows = rows[:limit]
        return [Issue.from_dict(data) for data in rows]

    def save_release(self, release: Release) -> Release:
        data = release.to_dict()
        with self._lock:
            self._releases[release.key] = data
        return release

    def get_release(self, key: str) -> Optional[Release]:
        with self._lock:
            data = self._releases.get(key)
        if data is None:
            return None
        return Release.from_dict(data)

    def list_releases(self) -> list[Release]:
        with self._lock:
            rows = list(self._releases.values())
        return [Release.from_dict(data) for data in rows]
