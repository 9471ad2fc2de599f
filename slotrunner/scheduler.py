"""Sliding-window slot scheduler.

Issues are taken from a backlog and run in at most `max_parallel` slots
at once. Each slot owns one issue for its whole life:

    pending -> running -> merging -> done
        \\         \\          \\
         `-> failed <-'---------'-> pending (attempt + 1)   retry
                  `-> blocked                                retries exhausted

Merge and rebase conflicts go from merging straight to blocked, since
retrying cannot resolve them. A slot is only filled with an issue whose
domain may run alongside every domain already occupying a slot; when
nothing in the backlog qualifies the scheduler waits for a slot to free.

Engine runs happen on worker threads of a ThreadPoolExecutor. Merges
go through RepoManager, which serializes them.
"""

import logging
import subprocess
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable

from . import branch_ledger, git_utils
from .config import RunnerConfig
from .coordination import Coordinator
from .domain import can_run_parallel, detect_domain, slugify
from .engines.base import EngineRunner, EngineRunOptions
from .engines.fallback import BackoffTracker, FallbackController
from .engines.result_parser import EngineResult, ErrorKind, is_stuck_result
from .errors import InvalidTransitionError, WorkspaceExhaustedError, WorktreeError
from .github import GitHubIssues, Issue, is_issue_in_progress
from .lessons import merge_lessons_back, propagate_lessons, read_lessons
from .prompt_builder import build_engineer_prompt
from .repo_manager import MergeResult, MergeStatus, PrInfo, RepoManager
from .task_logger import IssueLogger

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 1.0


class SlotStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"
    BLOCKED = "blocked"


ALLOWED_TRANSITIONS: dict[SlotStatus, frozenset[SlotStatus]] = {
    SlotStatus.PENDING: frozenset({SlotStatus.RUNNING, SlotStatus.FAILED, SlotStatus.BLOCKED}),
    SlotStatus.RUNNING: frozenset({
        SlotStatus.MERGING, SlotStatus.PENDING, SlotStatus.FAILED, SlotStatus.BLOCKED,
    }),
    SlotStatus.MERGING: frozenset({
        SlotStatus.DONE, SlotStatus.PENDING, SlotStatus.FAILED, SlotStatus.BLOCKED,
    }),
    SlotStatus.FAILED: frozenset({SlotStatus.PENDING, SlotStatus.BLOCKED}),
    SlotStatus.DONE: frozenset(),
    SlotStatus.BLOCKED: frozenset(),
}

TERMINAL_STATUSES = frozenset({SlotStatus.DONE, SlotStatus.BLOCKED})


@dataclass
class Slot:
    """One issue in flight. Mutated only through the scheduler."""
    id: int
    issue: Issue
    domain: str
    engine: str
    max_retries: int
    status: SlotStatus = SlotStatus.PENDING
    attempt: int = 1
    branch: str = ""
    worktree: Path | None = None
    result: EngineResult | None = None
    started_at: float | None = None
    finished_at: float | None = None
    error: str | None = None
    pr_number: int | None = None
    history: list[SlotStatus] = field(default_factory=lambda: [SlotStatus.PENDING])
    stuck_warned: bool = False

    @property
    def issue_number(self) -> int:
        return self.issue.number

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, new_status: SlotStatus) -> None:
        """Move to new_status.

        Raises:
            InvalidTransitionError: if the state machine has no such edge
        """
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status, new_status)
        self.status = new_status
        self.history.append(new_status)


@dataclass
class SchedulerState:
    slots: list[Slot]
    window_size: int
    active_count: int
    completed_count: int
    blocked_count: int
    skipped_count: int
    total_issues: int

    @property
    def failed_count(self) -> int:
        """Slots that ended without their work being merged."""
        return self.blocked_count


class SlotObserver:
    """Receives slot lifecycle callbacks. Methods are called from worker threads."""

    def on_slot_fill(self, slot: Slot) -> None:
        pass

    def on_slot_done(self, slot: Slot) -> None:
        pass

    def on_engine_switch(self, slot: Slot, from_engine: str, to_engine: str, reason: str) -> None:
        pass

    def on_merge(self, slot: Slot, result: MergeResult) -> None:
        pass

    def on_pr_created(self, slot: Slot, pr: PrInfo) -> None:
        pass


PromptBuilder = Callable[[Issue, str, str, str | None], str]


class Scheduler:
    """Runs a backlog of issues through a fixed window of slots.

    Args:
        config: Runner configuration
        issues: Issue tracker gateway
        coordinator: Claims issues so other processes skip them
        fallback: Engine chain runner (shares its backoff map across slots)
        repo_manager: Merges into the shared checkout
        observer: Optional lifecycle callbacks
        cancel_event: Set to stop the run; kill() sets it too
        logs_dir: Where per-issue logs go (defaults under the home dir)
        prompt_builder: Builds the engine prompt for an issue
    """

    def __init__(
        self,
        config: RunnerConfig,
        issues: GitHubIssues,
        coordinator: Coordinator,
        fallback: FallbackController | None = None,
        repo_manager: RepoManager | None = None,
        observer: SlotObserver | None = None,
        cancel_event: threading.Event | None = None,
        logs_dir: Path | None = None,
        prompt_builder: PromptBuilder = build_engineer_prompt,
    ):
        self.config = config
        self.engineers = config.engineers
        self.project = config.project
        self.issues = issues
        self.coordinator = coordinator
        self.fallback = fallback or FallbackController(
            BackoffTracker(
                base=self.engineers.backoff_base_seconds,
                maximum=self.engineers.backoff_max_seconds,
            )
        )
        self.repo_manager = repo_manager or RepoManager(self.project.path, self.project.base_branch)
        self.observer = observer or SlotObserver()
        self.cancel_event = cancel_event or threading.Event()
        self.logs_dir = logs_dir
        self.prompt_builder = prompt_builder

        self.window_size = self.engineers.max_parallel
        self._lock = threading.Lock()
        self._slots: list[Slot] = []
        self._backlog: list[tuple[Issue, str]] = []
        self._skipped: list[int] = []
        self._total = 0
        self._engines: dict[int, EngineRunner] = {}
        self._worktrees_created = 0
        self._worktree_failures = 0

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def state(self) -> SchedulerState:
        with self._lock:
            slots = list(self._slots)
            return SchedulerState(
                slots=slots,
                window_size=self.window_size,
                active_count=sum(
                    1 for s in slots if s.status in (SlotStatus.RUNNING, SlotStatus.MERGING)
                ),
                completed_count=sum(1 for s in slots if s.status is SlotStatus.DONE),
                blocked_count=sum(1 for s in slots if s.status is SlotStatus.BLOCKED),
                skipped_count=len(self._skipped),
                total_issues=self._total,
            )

    def kill(self) -> None:
        """Cancel the run and stop every engine process."""
        self.cancel_event.set()
        with self._lock:
            engines = list(self._engines.items())
        for slot_id, engine in engines:
            engine.kill()
            logger.info("Killed engine for slot %d", slot_id)

    def run(self, issues: list[Issue]) -> SchedulerState:
        """Drain the backlog. Returns once every slot is terminal.

        Raises:
            WorkspaceExhaustedError: if no slot could get a worktree at all
        """
        with self._lock:
            self._backlog = [(issue, detect_domain(issue)) for issue in issues]
            self._total = len(issues)
        logger.info("Scheduler starting: %d issues, %d parallel slots", len(issues), self.window_size)

        futures: dict[Future, Slot] = {}
        with ThreadPoolExecutor(max_workers=self.window_size, thread_name_prefix="slot") as pool:
            while not self.cancelled:
                self._fill_slots(pool, futures)
                if not futures:
                    with self._lock:
                        if not self._backlog:
                            break
                    continue

                done, _ = wait(futures, timeout=POLL_INTERVAL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    self._reap(future, futures.pop(future))
                self._warn_stuck()

            if futures:
                done, _ = wait(futures)
                for future in done:
                    self._reap(future, futures.pop(future))

        with self._lock:
            if self._backlog:
                logger.info("Run cancelled with %d issue(s) not started", len(self._backlog))
                self._skipped.extend(issue.number for issue, _ in self._backlog)
                self._backlog.clear()
            exhausted = self._worktree_failures > 0 and self._worktrees_created == 0

        state = self.state
        logger.info(
            "Scheduler finished: %d done, %d blocked, %d skipped of %d",
            state.completed_count, state.blocked_count, state.skipped_count, state.total_issues,
        )
        if exhausted:
            raise WorkspaceExhaustedError(
                f"Worktree creation failed for all {self._worktree_failures} attempt(s)"
            )
        return state

    # ------------------------------------------------------------------
    # Window management
    # ------------------------------------------------------------------

    def _occupied(self) -> list[Slot]:
        return [s for s in self._slots if not s.is_terminal]

    def _pick_next(self) -> tuple[Issue, str] | None:
        """Remove and return the first backlog issue that may run now."""
        with self._lock:
            occupied = self._occupied()
            if len(occupied) >= self.window_size:
                return None
            domains = [s.domain for s in occupied]
            for i, (issue, domain) in enumerate(self._backlog):
                if all(can_run_parallel(d, domain) for d in domains):
                    return self._backlog.pop(i)
        return None

    def _fill_slots(self, pool: ThreadPoolExecutor, futures: dict[Future, Slot]) -> None:
        while not self.cancelled:
            picked = self._pick_next()
            if picked is None:
                return
            slot = self._create_slot(*picked)
            if slot is None:
                continue
            self.observer.on_slot_fill(slot)
            futures[pool.submit(self._run_slot, slot)] = slot

    def _skip(self, issue: Issue, reason: str) -> None:
        logger.info("Skipping issue #%d: %s", issue.number, reason)
        with self._lock:
            self._skipped.append(issue.number)

    def _create_slot(self, issue: Issue, domain: str) -> Slot | None:
        repo = self.project.repo

        if is_issue_in_progress(issue):
            self._skip(issue, "already in progress (assigned or WIP)")
            return None

        if repo and self.issues.detect_repeat_cycle(repo, issue.number):
            try:
                self.issues.block(
                    repo, issue.number,
                    "Issue was closed and reopened repeatedly; skipping to avoid a loop",
                )
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
                logger.warning("Failed to block issue #%d: %s", issue.number, e)
            self._skip(issue, "repeat open/close cycle")
            return None

        if not self.coordinator.claim_issue(issue.number):
            self._skip(issue, "claimed by another instance")
            return None

        self.coordinator.record_issue(issue.number)
        with self._lock:
            slot = Slot(
                id=len(self._slots),
                issue=issue,
                domain=domain,
                engine=self.engineers.engine,
                max_retries=self.engineers.max_retries,
            )
            self._slots.append(slot)
        IssueLogger(issue.number, self.logs_dir).log_claimed(pid=self.coordinator.pid, domain=domain)
        logger.info("Slot %d filled with issue #%d (%s)", slot.id, issue.number, domain)
        return slot

    def _reap(self, future: Future, slot: Slot) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Unhandled error in slot for issue #%d: %s", slot.issue_number, exc)

    def _warn_stuck(self) -> None:
        threshold = self.engineers.stuck_warning_seconds
        now = time.monotonic()
        with self._lock:
            running = [s for s in self._slots if s.status is SlotStatus.RUNNING]
        for slot in running:
            if slot.started_at is None or slot.stuck_warned:
                continue
            elapsed = now - slot.started_at
            if elapsed > threshold:
                slot.stuck_warned = True
                logger.warning(
                    "Slot for issue #%d running for %.0fs; may be stuck", slot.issue_number, elapsed
                )

    # ------------------------------------------------------------------
    # Slot execution (worker threads)
    # ------------------------------------------------------------------

    def _transition(self, slot: Slot, status: SlotStatus) -> None:
        with self._lock:
            slot.transition(status)
        logger.debug("Slot for issue #%d -> %s", slot.issue_number, status.value)

    def _register_engine(self, slot: Slot, engine: EngineRunner) -> None:
        with self._lock:
            self._engines[slot.id] = engine
        if self.cancelled:
            engine.kill()

    def _unregister_engine(self, slot: Slot) -> None:
        with self._lock:
            self._engines.pop(slot.id, None)

    def _run_slot(self, slot: Slot) -> None:
        log = IssueLogger(slot.issue_number, self.logs_dir)
        try:
            while slot.status is SlotStatus.PENDING:
                if self.cancelled:
                    slot.error = "Cancelled"
                    self._transition(slot, SlotStatus.BLOCKED)
                    log.log_blocked("cancelled")
                    break
                self._run_attempt(slot, log)
        except Exception as e:
            logger.exception("Slot for issue #%d crashed", slot.issue_number)
            slot.error = str(e)
            with self._lock:
                if not slot.is_terminal:
                    if slot.status is not SlotStatus.FAILED:
                        slot.transition(SlotStatus.FAILED)
                    slot.transition(SlotStatus.BLOCKED)
            log.log_blocked(f"internal error: {e}")
        finally:
            slot.finished_at = time.monotonic()
            self._unregister_engine(slot)
            if slot.status is SlotStatus.BLOCKED and slot.branch:
                branch_ledger.append_entry(
                    "abandon", slot.branch, slot.worktree or "", slot.issue_number,
                    detail=slot.error or "",
                )
            self.coordinator.release_issue(slot.issue_number)
            log.log_released()
            self.observer.on_slot_done(slot)

    def _run_attempt(self, slot: Slot, log: IssueLogger) -> None:
        """One pass through pending -> ... for the current attempt."""
        issue = slot.issue
        repo_path = self.project.path
        base = self.project.base_branch

        try:
            wt = git_utils.create_worktree(
                repo_path, base, issue.number,
                f"{slugify(issue.title)}-{slot.attempt}",
                pid=self.coordinator.pid,
            )
        except WorktreeError as e:
            with self._lock:
                self._worktree_failures += 1
            logger.error("%s", e)
            self._fail_attempt(slot, log, str(e))
            return

        with self._lock:
            self._worktrees_created += 1
            slot.branch = wt.branch
            slot.worktree = wt.path
            slot.started_at = time.monotonic()
            slot.stuck_warned = False
            slot.transition(SlotStatus.RUNNING)
        log.log_started(slot.attempt, slot.engine, wt.branch)

        keep_branch = False
        merged = False
        try:
            result = self._run_engine(slot, log)
            slot.result = result

            if self.cancelled:
                self._fail_attempt(slot, log, "Cancelled", retryable=False, notify=False)
                return

            if not result.success:
                if result.error_kind is ErrorKind.RATE_LIMIT and self._can_retry(slot):
                    wait_for = self.engineers.rate_limit_retry_seconds
                    logger.warning(
                        "All engines rate-limited for #%d, waiting %.0fs before retry",
                        issue.number, wait_for,
                    )
                    self.cancel_event.wait(wait_for)
                self._fail_attempt(slot, log, self._describe_failure(result))
                return

            git_utils.commit_changes(wt.path, f"feat: {issue.title} (#{issue.number})")
            self._transition(slot, SlotStatus.MERGING)

            merge = self.repo_manager.merge_branch(slot.branch, issue.number, worktree=wt.path)
            self.observer.on_merge(slot, merge)

            if merge.is_conflict:
                keep_branch = True
                reason = merge.message
                if merge.conflict_files:
                    reason += f" ({', '.join(merge.conflict_files)})"
                slot.error = reason
                self._transition(slot, SlotStatus.BLOCKED)
                log.log_blocked(reason)
                self._block_issue(issue, f"Merge conflict needs manual resolution: {reason}")
                return
            if not merge.success:
                self._fail_attempt(slot, log, f"Merge failed: {merge.message}")
                return
            if merge.status is MergeStatus.MERGED and not self.repo_manager.verify_merge(slot.branch):
                self._fail_attempt(slot, log, f"Merge reported success but {slot.branch} is not in {base}")
                return
            merged = True

            log.log_merged(slot.branch, status=merge.status.value)
            keep_branch = self._open_pr(slot, log)
            self._close_issue(slot)
            merge_lessons_back(wt.path, repo_path)

            self._transition(slot, SlotStatus.DONE)
            log.log_done(slot.attempt, engine=slot.engine)
            logger.info("Issue #%d done (attempt %d)", issue.number, slot.attempt)
        except InvalidTransitionError:
            raise
        except Exception as e:
            # Past the merge the work is already in base
            if merged or slot.status not in (SlotStatus.RUNNING, SlotStatus.MERGING):
                raise
            logger.exception("Attempt %d for issue #%d raised", slot.attempt, issue.number)
            self._fail_attempt(slot, log, self._describe_exception(e))
        finally:
            self._unregister_engine(slot)
            self._cleanup_worktree(slot, keep_branch=keep_branch or slot.status is SlotStatus.BLOCKED)

    def _run_engine(self, slot: Slot, log: IssueLogger) -> EngineResult:
        lessons = read_lessons(self.project.path)
        propagate_lessons(self.project.path, slot.worktree)
        prompt = self.prompt_builder(slot.issue, slot.domain, self.project.repo, lessons)

        def on_switch(from_engine: str, to_engine: str, reason: str) -> None:
            slot.engine = to_engine
            log.log_engine_switch(from_engine, to_engine, reason)
            self.observer.on_engine_switch(slot, from_engine, to_engine, reason)

        result = self.fallback.run(
            EngineRunOptions(
                prompt=prompt,
                cwd=slot.worktree,
                timeout=self.engineers.hard_timeout_seconds,
                issue_number=slot.issue_number,
                lessons_context=lessons,
            ),
            self.engineers.engine,
            self.engineers.fallback_engines,
            on_switch=on_switch,
            on_engine_created=lambda engine: self._register_engine(slot, engine),
        )
        self._unregister_engine(slot)
        slot.engine = result.engine

        if result.success:
            # Tool signals can miss shell-driven edits and can claim edits
            # that were reverted; the worktree diff decides.
            changed = git_utils.has_changes(slot.worktree, self.project.base_branch)
            if not changed:
                kind = ErrorKind.STUCK if is_stuck_result(result) else ErrorKind.NO_CODE_CHANGES
                result = replace(result, success=False, error_kind=kind)
            elif is_stuck_result(result):
                logger.info(
                    "Git detected changes for #%d that tool detection missed", slot.issue_number
                )

        log.log_engine_result(result.engine, result.success, result.error_kind.value, result.duration)
        return result

    @staticmethod
    def _describe_failure(result: EngineResult) -> str:
        if result.error_kind in (ErrorKind.STUCK, ErrorKind.NO_CODE_CHANGES):
            return "No code changes detected"
        if result.error_kind is ErrorKind.RATE_LIMIT:
            return "All engines rate-limited"
        detail = (result.output or "").strip()[:500]
        return f"{result.error_kind.value}: {detail}" if detail else result.error_kind.value

    @staticmethod
    def _describe_exception(e: Exception) -> str:
        if isinstance(e, subprocess.CalledProcessError):
            cmd = " ".join(e.cmd[:2]) if isinstance(e.cmd, (list, tuple)) else str(e.cmd)
            detail = (e.stderr or e.stdout or "").strip()
            return f"{cmd} exited {e.returncode}: {detail}" if detail else f"{cmd} exited {e.returncode}"
        return f"{type(e).__name__}: {e}"

    def _can_retry(self, slot: Slot) -> bool:
        return slot.attempt <= slot.max_retries and not self.cancelled

    def _fail_attempt(
        self,
        slot: Slot,
        log: IssueLogger,
        reason: str,
        retryable: bool = True,
        notify: bool = True,
    ) -> None:
        """running/merging -> failed, then back to pending or on to blocked."""
        slot.error = reason
        self._transition(slot, SlotStatus.FAILED)

        if retryable and self._can_retry(slot):
            with self._lock:
                slot.attempt += 1
                slot.transition(SlotStatus.PENDING)
            log.log_retry(slot.attempt, reason)
            logger.warning(
                "Issue #%d failed (%s), retrying (attempt %d of %d)",
                slot.issue_number, reason[:200], slot.attempt, slot.max_retries + 1,
            )
            return

        self._transition(slot, SlotStatus.BLOCKED)
        log.log_blocked(reason, attempts=slot.attempt)
        logger.warning("Issue #%d blocked after %d attempt(s): %s", slot.issue_number, slot.attempt, reason[:200])
        if notify and self.project.repo:
            try:
                self.issues.comment(
                    self.project.repo, slot.issue_number,
                    f"slotrunner failed after {slot.attempt} attempt(s). Error: {reason[:200]}",
                )
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
                logger.warning("Failed to comment on issue #%d: %s", slot.issue_number, e)

    def _block_issue(self, issue: Issue, reason: str) -> None:
        if not self.project.repo:
            return
        try:
            self.issues.block(self.project.repo, issue.number, reason)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            logger.warning("Failed to block issue #%d: %s", issue.number, e)

    def _open_pr(self, slot: Slot, log: IssueLogger) -> bool:
        """Open a PR if configured. Returns True if the branch must be kept."""
        if not self.engineers.create_pr:
            return False
        try:
            pr = self.repo_manager.create_pr(
                slot.branch,
                slot.issue.title,
                f"Closes #{slot.issue_number}\n\nAutomatic PR by slotrunner.",
                draft=self.engineers.pr_draft,
                repo=self.project.repo or None,
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            logger.warning("PR creation failed for #%d: %s", slot.issue_number, e)
            return False
        slot.pr_number = pr.number
        log.log_pr_created(pr.url, pr.number)
        self.observer.on_pr_created(slot, pr)
        return True

    def _close_issue(self, slot: Slot) -> None:
        if not self.project.repo:
            return
        outcome = f"PR #{slot.pr_number}" if slot.pr_number else "Merged directly."
        try:
            self.issues.close(
                self.project.repo, slot.issue_number,
                f"Completed by slotrunner ({slot.engine}). {outcome}",
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            logger.warning("Failed to close issue #%d: %s", slot.issue_number, e)

    def _cleanup_worktree(self, slot: Slot, keep_branch: bool) -> None:
        if slot.worktree is None:
            return
        git_utils.remove_worktree(
            self.project.path, slot.worktree, slot.branch, slot.issue_number,
            delete_branch=not keep_branch,
        )
        if not keep_branch and slot.status is not SlotStatus.DONE:
            # Both are gone; a later attempt cuts new ones
            slot.branch = ""
            slot.worktree = None
