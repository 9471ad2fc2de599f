"""Top-level run: one process working one issue label.

Usage:
    slotrunner --label sprint-1 [--parallel 3] [--config PATH] [--debug]
"""

import argparse
import logging
import signal
import threading
import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from . import __version__, git_utils
from .cleanup import reap_orphaned_processes
from .config import RunnerConfig, get_logs_dir, load_config
from .coordination import Coordinator
from .errors import InstanceConflictError, PreflightError, SlotRunnerError
from .github import GitHubIssues
from .scheduler import Scheduler, SchedulerState, SlotObserver

logger = logging.getLogger(__name__)

# Give a concurrently starting instance time to write its own lock
# before we look for conflicts.
LOCK_SETTLE_SECONDS = 0.1

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class SlotRunner:
    """Owns the instance lock and signal handling around one scheduler run."""

    def __init__(
        self,
        config: RunnerConfig,
        coordinator: Coordinator | None = None,
        issues: GitHubIssues | None = None,
        observer: SlotObserver | None = None,
    ):
        self.config = config
        self.coordinator = coordinator or Coordinator()
        self.issues = issues or GitHubIssues()
        self.observer = observer
        self.cancel_event = threading.Event()
        self.scheduler: Scheduler | None = None
        self._lock_held = False

    def run(self, label: str, max_parallel: int | None = None) -> SchedulerState:
        """Process every open issue carrying label.

        Raises:
            InstanceConflictError: another live instance with a lower PID owns the label
            PreflightError: the repository is unusable
            WorkspaceExhaustedError: no worktree could be created
        """
        config = self.config
        if max_parallel is not None:
            config = replace(config, engineers=replace(config.engineers, max_parallel=max_parallel))
            config.engineers.validate()
        project = config.project

        self.coordinator.acquire_lock(label)
        self._lock_held = True
        previous_handlers = {}
        try:
            time.sleep(LOCK_SETTLE_SECONDS)
            other = self.coordinator.conflicting_instance(label)
            if other is not None:
                if other.pid < self.coordinator.pid:
                    raise InstanceConflictError(label, other.pid)
                logger.warning(
                    "Instance PID %d also claims label '%s'; continuing (lower PID wins)",
                    other.pid, label,
                )

            previous_handlers = self._install_signal_handlers()
            start_branch = git_utils.get_current_branch(project.path)

            preflight = git_utils.preflight_checks(project.path, project.base_branch)
            if not preflight.ok:
                raise PreflightError(preflight.errors)

            cleaned = git_utils.clean_orphaned_worktrees(project.path)
            if cleaned:
                logger.info("Cleaned %d orphaned worktree(s)", cleaned)

            issues = self.issues.fetch_open_by_label(project.repo, label)
            logger.info("Found %d open issue(s) labelled '%s'", len(issues), label)

            self.scheduler = Scheduler(
                config,
                self.issues,
                self.coordinator,
                observer=self.observer,
                cancel_event=self.cancel_event,
            )
            try:
                return self.scheduler.run(issues)
            finally:
                git_utils.post_run_audit(project.path, project.base_branch, start_branch)
                reap_orphaned_processes()
        finally:
            self._restore_signal_handlers(previous_handlers)
            self._release()

    def kill(self) -> None:
        """Stop all engines and give up the instance lock."""
        self.cancel_event.set()
        if self.scheduler is not None:
            self.scheduler.kill()
        self._release()

    def _release(self) -> None:
        if self._lock_held:
            self._lock_held = False
            self.coordinator.release_lock()

    def _install_signal_handlers(self) -> dict[int, object]:
        # signal.signal only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return {}

        def handle(signum, frame):
            logger.warning("Received %s, shutting down", signal.Signals(signum).name)
            self.kill()

        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.getsignal(signum)
            signal.signal(signum, handle)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict[int, object]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def setup_logging(debug: bool = False) -> Path | None:
    """Console logging, plus a dated file under the logs dir with debug on."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    console.setLevel(logging.DEBUG if debug else logging.INFO)
    root.addHandler(console)

    if not debug:
        return None
    logs_dir = get_logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = logs_dir / f"slotrunner-{datetime.now().strftime('%Y-%m-%d')}.log"
    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)
    return log_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="slotrunner",
        description="Run labelled issues through parallel coding-agent slots",
    )
    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument("--label", "-l", required=True, help="Issue label to process")
    parser.add_argument("--parallel", "-p", type=int, help="Override engineers.max_parallel")
    parser.add_argument("--config", "-c", help="Path to config.yaml (default: search upwards)")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging to the slotrunner logs directory",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point. Returns 1 if any issue ended blocked, 2 on a fatal error."""
    args = build_parser().parse_args(argv)
    log_file = setup_logging(args.debug)
    if log_file:
        print(f"Debug mode enabled - logs in {log_file}")

    try:
        config = load_config(args.config)
        state = SlotRunner(config).run(args.label, max_parallel=args.parallel)
    except SlotRunnerError as e:
        logger.error("%s", e)
        return 2

    print(
        f"Done: {state.completed_count} completed, {state.blocked_count} blocked, "
        f"{state.skipped_count} skipped of {state.total_issues}"
    )
    return 1 if state.blocked_count else 0


if __name__ == "__main__":
    raise SystemExit(main())
