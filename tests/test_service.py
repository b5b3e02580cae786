"""Tests for the LifecycleService."""

import threading

import pytest

from issueflow.errors import (
    AmbiguousTriageInput,
    BacklogHasNoBackport,
    ConfigurationError,
    InvalidTransition,
    ReleaseClosed,
    UnknownIssue,
    UnknownRelease,
)
from issueflow.repository import MemoryRepository, Repository
from issueflow.service import LifecycleService
from issueflow.states import EventKind, IssueState, Resolution


@pytest.fixture
def repo():
    return MemoryRepository()


@pytest.fixture
def service(repo):
    return LifecycleService(repository=repo, hook_backoff_factor=0)


def in_progress(service, fix_version="3.2 RC1", committer="alice"):
    issue = service.create_issue(title="test")
    service.assign(issue.issue_id, committer)
    service.triage(issue.issue_id, fix_version=fix_version)
    service.start_work(issue.issue_id)
    return issue.issue_id


def resolved(service, fix_version="3.2 RC1"):
    issue_id = in_progress(service, fix_version)
    service.resolve(issue_id, "complete")
    return issue_id


class TestScenarios:
    def test_assign(self, service):
        issue = service.create_issue()
        result = service.submit_command(issue.issue_id, "assign", {"committer": "alice"})
        assert result.success is True
        assert result.new_state == IssueState.WAITING_FOR_TRIAGE
        assert service.query_issue(issue.issue_id).assignee == "alice"

    def test_triage_disposal_skips_triaged(self, service):
        issue = service.create_issue()
        service.assign(issue.issue_id, "alice")
        result = service.triage(issue.issue_id, resolution="Duplicate")
        assert result.success is True
        stored = service.query_issue(issue.issue_id)
        assert stored.state == IssueState.RESOLVED
        assert stored.resolution == Resolution.DUPLICATE
        assert [t.to_state for t in stored.transitions] == ["unassigned", "waiting_for_triage", "resolved"]

    def test_triage_work_resolve(self, service):
        issue = service.create_issue()
        service.assign(issue.issue_id, "alice")
        assert service.triage(issue.issue_id, fix_version="3.2 RC1").new_state == IssueState.TRIAGED
        assert service.start_work(issue.issue_id).new_state == IssueState.IN_PROGRESS
        assert service.resolve(issue.issue_id, "complete").new_state == IssueState.RESOLVED

    def test_close_on_ga_covers_rc(self, service):
        issue_id = resolved(service, "3.2 RC1")
        report = service.close_release("3.2.0.RELEASE")
        assert report.closed_count == 1
        assert report.failures == []
        assert service.query_issue(issue_id).state == IssueState.CLOSED
        assert service.query_release("3.2 RC1").closed is True
        assert service.query_release("3.2.0.RELEASE").closed is True

    def test_reopen_closed_issue(self, service):
        issue_id = resolved(service, "3.2 RC1")
        service.close_release("3.2.0.RELEASE")
        result = service.reopen(issue_id)
        assert result.success is False
        assert isinstance(result.error, ReleaseClosed)
        assert result.error_kind == "ReleaseClosed"
        assert service.query_issue(issue_id).state == IssueState.CLOSED

    def test_create_backport(self, service):
        issue = service.create_issue(title="Fix proxy leak")
        service.assign(issue.issue_id, "alice")
        service.triage(issue.issue_id, fix_version="3.1.0.RELEASE")
        result = service.create_backport(issue.issue_id, "3.1.2")
        assert result.success is True
        child = service.query_issue(result.created.issue_id)
        assert child.state == IssueState.TRIAGED
        assert child.fix_version == "3.1.2"
        assert child.parent_id == issue.issue_id
        assert service.query_issue(issue.issue_id).backport_tasks == [child.issue_id]
        assert service.query_release("3.1.2").closed is False


class TestSubmitCommand:
    def test_unknown_issue(self, service):
        result = service.submit_command("nonexistent", "assign", {"committer": "alice"})
        assert result.success is False
        assert isinstance(result.error, UnknownIssue)
        assert "not found" in str(result.error).lower()

    def test_invalid_transition_leaves_issue_unchanged(self, service, repo):
        issue = service.create_issue()
        result = service.resolve(issue.issue_id, "complete")
        assert result.success is False
        assert isinstance(result.error, InvalidTransition)
        stored = repo.get_issue(issue.issue_id)
        assert stored.state == IssueState.UNASSIGNED
        assert len(stored.transitions) == 1

    def test_ambiguous_triage(self, service):
        issue = service.create_issue()
        service.assign(issue.issue_id, "alice")
        result = service.triage(issue.issue_id, fix_version="3.2 RC1", resolution="invalid")
        assert isinstance(result.error, AmbiguousTriageInput)
        assert service.query_issue(issue.issue_id).state == IssueState.WAITING_FOR_TRIAGE

    def test_unknown_issue_leaves_no_lock(self, service):
        for _ in range(3):
            service.submit_command("ghost", "assign", {"committer": "alice"})
        assert "ghost" not in service._issue_locks._locks

    def test_close_unknown_issue(self, service):
        result = service.submit_command("ghost", "close", {"release": "3.2.0.RELEASE"})
        assert result.success is False
        assert isinstance(result.error, UnknownIssue)

    def test_close_is_not_a_single_issue_command(self, service):
        issue_id = resolved(service)
        result = service.submit_command(issue_id, "close", {"release": "3.2.0.RELEASE"})
        assert result.success is False
        assert isinstance(result.error, InvalidTransition)
        assert service.query_issue(issue_id).state == IssueState.RESOLVED

    def test_backport_from_backlog(self, service):
        issue = service.create_issue()
        service.assign(issue.issue_id, "alice")
        service.triage(issue.issue_id, fix_version="General Backlog")
        result = service.create_backport(issue.issue_id, "3.1.2")
        assert isinstance(result.error, BacklogHasNoBackport)

    def test_triage_registers_release(self, service):
        issue = service.create_issue()
        service.assign(issue.issue_id, "alice")
        service.triage(issue.issue_id, fix_version="3.2 M1")
        assert [r.key for r in service.list_releases()] == ["3.2.0.M1"]

    def test_actor_recorded_in_history(self, service):
        issue = service.create_issue()
        result = service.assign(issue.issue_id, "alice", actor="triager")
        assert result.events[0].actor == "triager"
        assert service.query_issue(issue.issue_id).transitions[-1].actor == "triager"

    def test_full_lifecycle_with_reopen(self, service):
        issue_id = resolved(service)
        reopened = service.reopen(issue_id, to=IssueState.IN_PROGRESS)
        assert reopened.success is True
        service.resolve(issue_id, "complete")
        report = service.close_release("3.2.0.RC1")
        assert report.closed_ids == [issue_id]

        final = service.query_issue(issue_id)
        assert final.state == IssueState.CLOSED
        assert final.reopen_count == 1
        assert final.closed_at is not None


class TestReleaseClosing:
    def test_second_close_is_noop(self, service):
        resolved(service, "3.2 RC1")
        first = service.close_release("3.2.0.RELEASE")
        second = service.close_release("3.2.0.RELEASE")
        assert first.closed_count == 1
        assert second.closed_count == 0
        assert second.failures == []
        assert second.events == []

    def test_open_issues_reported_but_do_not_block(self, service):
        done = resolved(service, "3.2 RC1")
        still_open = in_progress(service, "3.2.0.M2")
        report = service.close_release("3.2.0.RELEASE")
        assert report.closed_ids == [done]
        assert len(report.failures) == 1
        assert report.failures[0].issue_id == still_open
        assert isinstance(report.failures[0], InvalidTransition)
        assert service.query_release("3.2.0.RELEASE").closed is True
        assert service.query_issue(still_open).state == IssueState.IN_PROGRESS

    def test_other_versions_untouched(self, service):
        other = resolved(service, "3.3.0.M1")
        backlog = service.create_issue()
        service.assign(backlog.issue_id, "alice")
        service.triage(backlog.issue_id, fix_version="Backlog")
        report = service.close_release("3.2.0.RELEASE")
        assert report.closed_count == 0
        assert service.query_issue(other).state == IssueState.RESOLVED
        assert service.query_release("3.3.0.M1").closed is False

    def test_reopen_after_release_closed_while_in_progress(self, service):
        issue_id = in_progress(service, "3.2 RC1")
        service.close_release("3.2.0.RC1")
        service.resolve(issue_id, "complete")
        result = service.reopen(issue_id)
        assert isinstance(result.error, ReleaseClosed)
        assert service.query_issue(issue_id).state == IssueState.RESOLVED

    def test_triage_into_closed_release(self, service):
        service.register_release("3.1.0.RELEASE")
        service.close_release("3.1.0.RELEASE")
        issue = service.create_issue()
        service.assign(issue.issue_id, "alice")
        result = service.triage(issue.issue_id, fix_version="3.1.0.RELEASE")
        assert isinstance(result.error, ReleaseClosed)

    def test_triage_into_unregistered_version_of_closed_release(self, service):
        service.close_release("3.2.0.RELEASE")
        issue = service.create_issue()
        service.assign(issue.issue_id, "alice")
        for label in ("3.2.0.M1", "3.2 RC2", "3.2.0.BUILD-SNAPSHOT"):
            result = service.triage(issue.issue_id, fix_version=label)
            assert isinstance(result.error, ReleaseClosed)
        assert service.query_issue(issue.issue_id).state == IssueState.WAITING_FOR_TRIAGE

    def test_release_registered_after_close_is_closed(self, service):
        service.close_release("3.2.0.RELEASE")
        assert service.register_release("3.2.0.M2").closed is True
        assert service.register_release("3.2.1.RELEASE").closed is False

    def test_backlog_label_is_unknown_release(self, service):
        with pytest.raises(UnknownRelease):
            service.close_release("4.x Backlog")

    def test_query_unregistered_release(self, service):
        with pytest.raises(UnknownRelease):
            service.query_release("9.9.9.RELEASE")

    def test_closed_events_dispatched(self, service):
        kinds = []
        service.add_hook(lambda event: kinds.append(event.kind))
        resolved(service)
        service.close_release("3.2.0.RELEASE")
        assert kinds[-1] == EventKind.CLOSED


class TestQueries:
    def test_query_by_state(self, service):
        service.create_issue()
        waiting = service.create_issue()
        service.assign(waiting.issue_id, "alice")
        assert len(service.query_by_state(IssueState.UNASSIGNED)) == 1
        assert service.query_by_state("waiting_for_triage") == [waiting.issue_id]

    def test_query_by_state_returns_every_issue(self, service):
        for _ in range(150):
            service.create_issue()
        assert len(service.query_by_state(IssueState.UNASSIGNED)) == 150
        assert len(service.query_by_state(IssueState.UNASSIGNED, limit=20)) == 20

    def test_query_backlog(self, service):
        backlog = service.create_issue()
        service.assign(backlog.issue_id, "alice")
        service.triage(backlog.issue_id, fix_version="4.x Backlog")
        in_progress(service, "3.2 RC1")
        assert service.query_backlog() == [backlog.issue_id]

    def test_query_issue_returns_snapshot(self, service):
        issue = service.create_issue()
        snapshot = service.query_issue(issue.issue_id)
        snapshot.state = IssueState.CLOSED
        assert service.query_issue(issue.issue_id).state == IssueState.UNASSIGNED

    def test_query_unknown_issue(self, service):
        with pytest.raises(UnknownIssue):
            service.query_issue("nope")

    def test_duplicate_issue_id(self, service):
        service.create_issue(issue_id="SPR-1")
        with pytest.raises(ValueError):
            service.create_issue(issue_id="SPR-1")


class TestHooks:
    def test_hook_fires_on_transition(self, service):
        calls = []
        service.add_hook(lambda event: calls.append((event.kind, event.from_state, event.to_state)))
        issue = service.create_issue()
        service.assign(issue.issue_id, "alice")

        assert calls == [
            (EventKind.CREATED, None, IssueState.UNASSIGNED),
            (EventKind.ASSIGNED, IssueState.UNASSIGNED, IssueState.WAITING_FOR_TRIAGE),
        ]

    def test_hook_not_fired_on_failure(self, service):
        issue = service.create_issue()
        calls = []
        service.add_hook(lambda event: calls.append(1))
        service.resolve(issue.issue_id, "complete")
        assert calls == []

    def test_hook_error_doesnt_break_transition(self, service):
        def bad_hook(event):
            raise RuntimeError("hook exploded")

        service.add_hook(bad_hook)
        issue = service.create_issue()
        result = service.assign(issue.issue_id, "alice")
        assert result.success is True
        assert service.query_issue(issue.issue_id).state == IssueState.WAITING_FOR_TRIAGE

    def test_hook_retried(self, repo):
        attempts = []

        def flaky(event):
            attempts.append(event.kind)
            if len(attempts) < 3:
                raise ConnectionError("mail relay down")

        service = LifecycleService(repository=repo, hooks=[flaky], hook_retries=3, hook_backoff_factor=0)
        service.create_issue()
        assert attempts == [EventKind.CREATED] * 3

    def test_hook_retries_from_env(self, repo, monkeypatch):
        monkeypatch.setenv("ISSUEFLOW_HOOK_RETRIES", "2")
        monkeypatch.setenv("ISSUEFLOW_HOOK_BACKOFF_FACTOR", "0")
        attempts = []

        def broken(event):
            attempts.append(1)
            raise ConnectionError("down")

        service = LifecycleService(repository=repo, hooks=[broken])
        service.create_issue()
        assert len(attempts) == 2

    def test_hook_gives_up_and_logs(self, repo, caplog):
        attempts = []

        def broken(event):
            attempts.append(event.kind)
            raise ConnectionError("down")

        service = LifecycleService(repository=repo, hooks=[broken], hook_retries=2, hook_backoff_factor=0)
        issue = service.create_issue()
        result = service.assign(issue.issue_id, "alice")

        assert result.success is True
        assert attempts == [EventKind.CREATED] * 2 + [EventKind.ASSIGNED] * 2
        gave_up = [r for r in caplog.records if "gave up" in r.getMessage()]
        assert len(gave_up) == 2
        assert all(r.levelname == "WARNING" for r in gave_up)

    def test_bad_retry_setting(self, repo, monkeypatch):
        monkeypatch.setenv("ISSUEFLOW_HOOK_RETRIES", "lots")
        with pytest.raises(ConfigurationError, match="ISSUEFLOW_HOOK_RETRIES"):
            LifecycleService(repository=repo)

    def test_bad_backoff_setting(self, repo, monkeypatch):
        monkeypatch.setenv("ISSUEFLOW_HOOK_BACKOFF_FACTOR", "fast")
        with pytest.raises(ConfigurationError, match="ISSUEFLOW_HOOK_BACKOFF_FACTOR"):
            LifecycleService(repository=repo)


class TestConcurrency:
    def test_distinct_issues_in_parallel(self, service):
        a = service.create_issue().issue_id
        b = in_progress(service, "3.2 RC1")
        barrier = threading.Barrier(2)
        results = {}

        def run(name, fn):
            barrier.wait()
            results[name] = fn()

        threads = [
            threading.Thread(target=run, args=("a", lambda: service.assign(a, "alice"))),
            threading.Thread(target=run, args=("b", lambda: service.resolve(b, "complete"))),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results["a"].success and results["b"].success
        assert service.query_issue(a).state == IssueState.WAITING_FOR_TRIAGE
        assert service.query_issue(b).state == IssueState.RESOLVED

    def test_same_issue_commands_serialize(self, service):
        issue = service.create_issue()
        results = []

        def assign(name):
            results.append(service.assign(issue.issue_id, name))

        threads = [threading.Thread(target=assign, args=(f"c{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r.success) == 1
        stored = service.query_issue(issue.issue_id)
        assert len(stored.transitions) == 2

    def test_concurrent_release_close_reports_once(self, service):
        for _ in range(5):
            resolved(service, "3.2 RC1")
        reports = []

        def close():
            reports.append(service.close_release("3.2.0.RELEASE"))

        threads = [threading.Thread(target=close) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(r.closed_count for r in reports) == [0, 0, 0, 5]


class TestMemoryRepository:
    def test_satisfies_protocol(self, repo):
        assert isinstance(repo, Repository)

    def test_list_by_state_limit(self, repo, service):
        for _ in range(3):
            service.create_issue()
        assert len(repo.list_issues_by_state("unassigned", limit=2)) == 2

    def test_release_roundtrip(self, repo, service):
        service.register_release("3.2 RC1")
        release = repo.get_release("3.2.0.RC1")
        assert release.label == "3.2 RC1"
        assert release.closed is False
