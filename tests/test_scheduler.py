"""Tests for the sliding-window scheduler.

Engines are in-process fakes handed to the FallbackController; git work
(worktrees, rebases, merges) runs against a real throwaway repository.
"""

import logging
import subprocess
import threading
import time
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from helpers import _commit_file, make_issue
from slotrunner import git_utils
from slotrunner.branch_ledger import read_ledger
from slotrunner.coordination import Coordinator
from slotrunner.domain import can_run_parallel, detect_domain
from slotrunner.engines.fallback import BackoffTracker, FallbackController
from slotrunner.engines.result_parser import EngineResult, ErrorKind, error_result
from slotrunner.errors import InvalidTransitionError, WorkspaceExhaustedError
from slotrunner.github import GitHubIssues
from slotrunner.repo_manager import PrInfo, RepoManager
from slotrunner.scheduler import (
    ALLOWED_TRANSITIONS,
    Scheduler,
    Slot,
    SlotObserver,
    SlotStatus,
)
from slotrunner.task_logger import IssueLogger

P, R, M, F, D, B = (
    SlotStatus.PENDING,
    SlotStatus.RUNNING,
    SlotStatus.MERGING,
    SlotStatus.FAILED,
    SlotStatus.DONE,
    SlotStatus.BLOCKED,
)


class FakeEngine:
    """Stands in for EngineRunner; behaviour(name, options) produces the result."""

    def __init__(self, name, behaviour):
        self.name = name
        self.behaviour = behaviour
        self.killed = threading.Event()

    def run(self, options):
        return self.behaviour(self, options)

    def kill(self):
        self.killed.set()


def write_file(engine, options, tools=("Write",)):
    (options.cwd / f"issue-{options.issue_number}.txt").write_text(f"work for #{options.issue_number}\n")
    return EngineResult(success=True, output="done", engine=engine.name, tools_used=tools)


def crash(engine, options):
    return error_result(engine.name, ErrorKind.CRASH, "exit 1: something broke", 0.1, exit_code=1)


class RecordingObserver(SlotObserver):
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def _record(self, *event):
        with self._lock:
            self.events.append(event)

    def on_slot_fill(self, slot):
        self._record("fill", slot.issue_number)

    def on_slot_done(self, slot):
        self._record("done", slot.issue_number, slot.status)

    def on_engine_switch(self, slot, from_engine, to_engine, reason):
        self._record("switch", slot.issue_number, from_engine, to_engine, reason)

    def on_merge(self, slot, result):
        self._record("merge", slot.issue_number, result.status)

    def on_pr_created(self, slot, pr):
        self._record("pr", slot.issue_number, pr.number)

    def of(self, kind):
        return [e[1:] for e in self.events if e[0] == kind]


@pytest.fixture
def gateway():
    gh = MagicMock(spec=GitHubIssues)
    gh.detect_repeat_cycle.return_value = False
    return gh


def _scheduler(config, gateway, engine_factory, observer=None, cancel_event=None):
    fallback = FallbackController(BackoffTracker(), engine_factory=engine_factory)
    return Scheduler(
        config,
        gateway,
        Coordinator(),
        fallback=fallback,
        observer=observer,
        cancel_event=cancel_event,
    )


def _engines(behaviour):
    """Factory giving every engine name the same behaviour."""
    return lambda name: FakeEngine(name, behaviour)


class TestSlotStateMachine:
    def test_happy_path(self):
        slot = Slot(id=0, issue=make_issue(1), domain="backend", engine="claude", max_retries=1)
        for status in (R, M, D):
            slot.transition(status)

        assert slot.history == [P, R, M, D]
        assert slot.is_terminal

    def test_retry_path(self):
        slot = Slot(id=0, issue=make_issue(1), domain="backend", engine="claude", max_retries=1)
        for status in (R, F, P, R, M, F, B):
            slot.transition(status)

        assert slot.status is B

    @pytest.mark.parametrize("start, target", [(P, D), (P, M), (R, D), (F, R), (D, P), (B, P)])
    def test_invalid_transitions_raise(self, start, target):
        slot = Slot(id=0, issue=make_issue(1), domain="x", engine="claude", max_retries=0, status=start)

        with pytest.raises(InvalidTransitionError, match=f"{start.value} -> {target.value}"):
            slot.transition(target)

    def test_terminal_states_have_no_exits(self):
        assert ALLOWED_TRANSITIONS[D] == frozenset()
        assert ALLOWED_TRANSITIONS[B] == frozenset()


class TestSchedulerEndToEnd:
    def test_window_and_domain_exclusivity(self, runner_config, gateway, git_repo):
        issues = [
            make_issue(1, "[Backend] Add orders endpoint"),
            make_issue(2, "[Backend] Add users endpoint"),
            make_issue(3, "[Frontend] Orders page"),
            make_issue(4, "[Backend] Add audit endpoint"),
            make_issue(5, "[Frontend] Users page"),
        ]
        domains = {i.number: detect_domain(i) for i in issues}
        lock = threading.Lock()
        active = {}
        peak = []
        violations = []

        def tracked(engine, options):
            n = options.issue_number
            with lock:
                for other, domain in active.items():
                    if not can_run_parallel(domain, domains[n]):
                        violations.append((other, n))
                active[n] = domains[n]
                peak.append(len(active))
            time.sleep(0.3)
            with lock:
                del active[n]
            return write_file(engine, options)

        observer = RecordingObserver()
        state = _scheduler(runner_config, gateway, _engines(tracked), observer=observer).run(issues)

        assert violations == []
        assert max(peak) == 2
        assert state.window_size == 2
        assert state.completed_count == 5
        assert state.blocked_count == 0
        assert state.active_count == 0
        assert state.total_issues == 5
        assert all(slot.status is D for slot in state.slots)
        for n in range(1, 6):
            assert (git_repo / f"issue-{n}.txt").exists()
        assert gateway.close.call_count == 5
        assert sorted(n for n, _ in observer.of("merge")) == [1, 2, 3, 4, 5]
        assert git_utils.list_worktrees(git_repo) == []
        assert git_utils.get_current_branch(git_repo) == "main"

    def test_issue_log_and_claims(self, runner_config, gateway):
        coordinator = Coordinator()
        scheduler = Scheduler(
            runner_config, gateway, coordinator,
            fallback=FallbackController(engine_factory=_engines(write_file)),
        )

        scheduler.run([make_issue(8, "[Docs] Update guide")])

        events = [e["event"] for e in IssueLogger(8).get_events()]
        assert events == ["CLAIMED", "STARTED", "ENGINE_RESULT", "MERGED", "DONE", "RELEASED"]
        assert coordinator.claim_holder(8) is None

    def test_empty_backlog(self, runner_config, gateway):
        state = _scheduler(runner_config, gateway, _engines(write_file)).run([])

        assert state.total_issues == 0
        assert state.slots == []


class TestRetries:
    def test_exhausted_retries_block(self, runner_config, gateway, git_repo):
        calls = []

        def failing(engine, options):
            calls.append(options.issue_number)
            return crash(engine, options)

        state = _scheduler(runner_config, gateway, _engines(failing)).run([make_issue(4, "[Backend] Flaky")])

        [slot] = state.slots
        assert slot.history == [P, R, F, P, R, F, B]
        assert slot.attempt == 2
        assert len(calls) == runner_config.engineers.max_retries + 1
        assert "something broke" in slot.error
        gateway.comment.assert_called_once()
        assert gateway.comment.call_args[0][1] == 4
        assert state.blocked_count == 1 and state.failed_count == 1
        assert git_utils.branch_exists(git_repo, slot.branch)
        create, abandon = read_ledger(slot.branch)
        assert (create.action, abandon.action) == ("create", "abandon")
        assert abandon.worktree == create.worktree == str(slot.worktree)

    def test_failure_then_success(self, runner_config, gateway):
        attempts = []

        def flaky(engine, options):
            attempts.append(1)
            if len(attempts) == 1:
                return crash(engine, options)
            return write_file(engine, options)

        state = _scheduler(runner_config, gateway, _engines(flaky)).run([make_issue(5, "[Backend] Flaky")])

        [slot] = state.slots
        assert slot.status is D
        assert slot.attempt == 2
        assert slot.history == [P, R, F, P, R, M, D]
        assert [e["attempt"] for e in IssueLogger(5).get_events("RETRY")] == ["2"]
        gateway.comment.assert_not_called()

    def test_git_error_during_attempt_is_retried(self, runner_config, gateway, git_repo):
        real_commit = git_utils.commit_changes
        commits = []

        def rejected_once(worktree, message):
            commits.append(worktree)
            if len(commits) == 1:
                raise subprocess.CalledProcessError(
                    1, ["git", "commit", "-m", message], stderr="pre-commit hook rejected"
                )
            return real_commit(worktree, message)

        with patch.object(git_utils, "commit_changes", side_effect=rejected_once):
            state = _scheduler(runner_config, gateway, _engines(write_file)).run(
                [make_issue(14, "[Backend] Hooked")]
            )

        [slot] = state.slots
        assert slot.status is D
        assert slot.attempt == 2
        assert slot.history == [P, R, F, P, R, M, D]
        [retry] = IssueLogger(14).get_events("RETRY")
        assert "pre-commit_hook_rejected" in retry["reason"]
        gateway.comment.assert_not_called()
        assert (git_repo / "issue-14.txt").exists()

    def test_git_error_on_last_attempt_blocks_with_comment(self, runner_config, gateway):
        config = replace(runner_config, engineers=replace(runner_config.engineers, max_retries=0))
        error = subprocess.CalledProcessError(128, ["git", "commit"], stderr="Please tell me who you are")

        with patch.object(git_utils, "commit_changes", side_effect=error):
            state = _scheduler(config, gateway, _engines(write_file)).run([make_issue(15, "[Backend] X")])

        [slot] = state.slots
        assert slot.history == [P, R, F, B]
        assert slot.error == "git commit exited 128: Please tell me who you are"
        gateway.comment.assert_called_once()
        assert "Please tell me who you are" in gateway.comment.call_args[0][2]

    def test_unverified_merge_is_a_failure(self, runner_config, gateway):
        config = replace(runner_config, engineers=replace(runner_config.engineers, max_retries=0))

        with patch.object(RepoManager, "verify_merge", return_value=False):
            state = _scheduler(config, gateway, _engines(write_file)).run([make_issue(16, "[Backend] X")])

        [slot] = state.slots
        assert slot.history == [P, R, M, F, B]
        assert slot.error.endswith("is not in main")
        gateway.close.assert_not_called()

    @pytest.mark.parametrize("tools, kind", [
        (("Read", "Grep"), ErrorKind.STUCK),
        (("Write",), ErrorKind.NO_CODE_CHANGES),
    ])
    def test_no_changes_is_a_failure(self, runner_config, gateway, tools, kind):
        config = replace(runner_config, engineers=replace(runner_config.engineers, max_retries=0))

        def idle(engine, options):
            return EngineResult(success=True, output="looked around", engine=engine.name, tools_used=tools)

        state = _scheduler(config, gateway, _engines(idle)).run([make_issue(6, "[Backend] Nothing")])

        [slot] = state.slots
        assert slot.status is B
        assert slot.result.error_kind is kind
        assert slot.error == "No code changes detected"

    def test_git_changes_override_missing_tool_signals(self, runner_config, gateway, git_repo):
        def silent_writer(engine, options):
            return write_file(engine, options, tools=())

        state = _scheduler(runner_config, gateway, _engines(silent_writer)).run([make_issue(7, "[Backend] X")])

        assert state.slots[0].status is D
        assert (git_repo / "issue-7.txt").exists()

    def test_all_engines_rate_limited(self, runner_config, gateway):
        runs = []

        def limited(engine, options):
            runs.append(engine.name)
            return error_result(engine.name, ErrorKind.RATE_LIMIT, "429", 0.1)

        state = _scheduler(runner_config, gateway, _engines(limited)).run([make_issue(9, "[Backend] X")])

        [slot] = state.slots
        assert slot.status is B
        assert slot.attempt == 2
        # Second attempt finds the only engine still backed off
        assert runs == ["claude"]
        assert slot.error == "All engines rate-limited"


class TestFallbackInSlots:
    def test_switches_engine_on_rate_limit(self, runner_config, gateway):
        config = replace(runner_config, engineers=replace(runner_config.engineers, fallback_engines=["codex"]))

        def by_engine(engine, options):
            if engine.name == "claude":
                return error_result("claude", ErrorKind.RATE_LIMIT, "429", 0.1)
            return write_file(engine, options)

        observer = RecordingObserver()
        state = _scheduler(config, gateway, _engines(by_engine), observer=observer).run(
            [make_issue(10, "[Backend] X")]
        )

        [slot] = state.slots
        assert slot.status is D
        assert slot.engine == "codex"
        assert observer.of("switch") == [(10, "claude", "codex", "rate limit hit")]
        assert IssueLogger(10).get_events("ENGINE_SWITCH")[0]["to"] == "codex"


class TestMergeOutcomes:
    def test_conflict_blocks_without_retry(self, runner_config, gateway, git_repo):
        runs = []

        def conflicting(engine, options):
            runs.append(1)
            (options.cwd / "README.md").write_text("slot version\n")
            # Another change lands on main while the slot works
            _commit_file(git_repo, "README.md", "main version\n")
            return EngineResult(success=True, output="", engine=engine.name, tools_used=("Edit",))

        state = _scheduler(runner_config, gateway, _engines(conflicting)).run([make_issue(11, "[Backend] X")])

        [slot] = state.slots
        assert slot.history == [P, R, M, B]
        assert len(runs) == 1
        gateway.block.assert_called_once()
        assert gateway.block.call_args[0][1] == 11
        assert "conflict" in gateway.block.call_args[0][2].lower()
        assert git_utils.branch_exists(git_repo, slot.branch)
        assert read_ledger(slot.branch)[-1].action == "abandon"
        assert (git_repo / "README.md").read_text() == "main version\n"
        assert git_utils.get_current_branch(git_repo) == "main"

    def test_pr_created_when_configured(self, runner_config, gateway, git_repo):
        config = replace(runner_config, engineers=replace(runner_config.engineers, create_pr=True))
        observer = RecordingObserver()
        pr = PrInfo(url="https://github.com/acme/widgets/pull/5", number=5, created=True)

        with patch.object(RepoManager, "create_pr", return_value=pr) as create_pr:
            state = _scheduler(config, gateway, _engines(write_file), observer=observer).run(
                [make_issue(12, "[Backend] X")]
            )

        [slot] = state.slots
        assert slot.status is D
        assert slot.pr_number == 5
        assert create_pr.call_args.kwargs["draft"] is True
        assert observer.of("pr") == [(12, 5)]
        assert git_utils.branch_exists(git_repo, slot.branch)
        assert "PR #5" in gateway.close.call_args[0][2]

    def test_pr_failure_still_completes(self, runner_config, gateway, git_repo):
        config = replace(runner_config, engineers=replace(runner_config.engineers, create_pr=True))
        error = subprocess.CalledProcessError(1, ["git", "push"], stderr="no origin")

        with patch.object(RepoManager, "create_pr", side_effect=error):
            state = _scheduler(config, gateway, _engines(write_file)).run([make_issue(13, "[Backend] X")])

        assert state.slots[0].status is D
        assert state.slots[0].pr_number is None


class TestSlotCreation:
    def test_skips(self, runner_config, gateway):
        Coordinator(pid=1).claim_issue(2)
        gateway.detect_repeat_cycle.side_effect = lambda repo, n: n == 3
        runs = []

        state = _scheduler(runner_config, gateway, _engines(lambda e, o: runs.append(1))).run([
            make_issue(1, "[Backend] Taken", assignees=["someone"]),
            make_issue(2, "[Backend] Claimed elsewhere"),
            make_issue(3, "[Backend] Looping"),
        ])

        assert state.slots == []
        assert state.skipped_count == 3
        assert runs == []
        gateway.block.assert_called_once()
        assert gateway.block.call_args[0][1] == 3

    def test_workspace_exhaustion_is_fatal(self, runner_config, gateway):
        config = replace(runner_config, project=replace(runner_config.project, base_branch="no-such-branch"))

        with pytest.raises(WorkspaceExhaustedError):
            _scheduler(config, gateway, _engines(write_file)).run([
                make_issue(1, "[Backend] A"),
                make_issue(2, "[Frontend] B"),
            ])


class TestCancellation:
    def test_kill_stops_running_engine_and_drains(self, runner_config, gateway):
        started = threading.Event()

        def blocking(engine, options):
            started.set()
            engine.killed.wait(10)
            return error_result(engine.name, ErrorKind.CRASH, "Engine run cancelled", 0.1)

        scheduler = _scheduler(runner_config, gateway, _engines(blocking))
        result = []
        # Unknown-domain issues run one at a time
        issues = [make_issue(n, f"Tidy up {n}") for n in (1, 2, 3)]
        thread = threading.Thread(target=lambda: result.append(scheduler.run(issues)))
        thread.start()

        assert started.wait(10)
        scheduler.kill()
        thread.join(20)

        assert not thread.is_alive()
        [state] = result
        [slot] = state.slots
        assert slot.status is B
        assert slot.error == "Cancelled"
        assert state.skipped_count == 2
        gateway.comment.assert_not_called()

    def test_pre_set_cancel_event_runs_nothing(self, runner_config, gateway):
        cancel = threading.Event()
        cancel.set()

        state = _scheduler(runner_config, gateway, _engines(write_file), cancel_event=cancel).run(
            [make_issue(1, "[Backend] A")]
        )

        assert state.slots == []
        assert state.skipped_count == 1


class TestStuckWarning:
    def test_long_running_slot_is_reported_once(self, runner_config, gateway, caplog):
        config = replace(runner_config, engineers=replace(runner_config.engineers, stuck_warning_seconds=0.05))

        def slow(engine, options):
            time.sleep(0.6)
            return write_file(engine, options)

        with patch("slotrunner.scheduler.POLL_INTERVAL_SECONDS", 0.05), \
                caplog.at_level(logging.WARNING, logger="slotrunner.scheduler"):
            state = _scheduler(config, gateway, _engines(slow)).run([make_issue(14, "[Backend] Slow")])

        assert state.slots[0].status is D
        stuck = [r for r in caplog.records if "may be stuck" in r.getMessage()]
        assert len(stuck) == 1
