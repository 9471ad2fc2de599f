"""Per-issue logging for slot lifecycle events.

Each issue gets a persistent log that survives across runs, so retries
and blocks can be traced after the fact.

Log format:
    [ISO-timestamp] EVENT field=value field=value ...

Example:
    [2026-02-14T10:30:45] CLAIMED pid=4242 label=sprint-1
    [2026-02-14T10:30:46] STARTED attempt=1 engine=claude branch=slotrunner-4242-17-add-login
    [2026-02-14T10:41:02] ENGINE_SWITCH from=claude to=codex reason=rate_limit_hit
    [2026-02-14T10:47:33] MERGED branch=slotrunner-4242-17-add-login
    [2026-02-14T10:47:35] DONE attempts=1
"""

import re
from datetime import datetime
from pathlib import Path
from typing import Any

_WHITESPACE = re.compile(r"\s+")
MAX_FIELD_CHARS = 200


def _format_value(value: Any) -> str:
    text = _WHITESPACE.sub("_", str(value).strip())
    return text[:MAX_FIELD_CHARS]


class IssueLogger:
    """Persistent logger for one issue's slot lifecycle.

    Each issue gets its own log file at:
        <slotrunner home>/logs/issues/ISSUE-{number}.log
    """

    def __init__(self, issue_number: int, logs_dir: Path | None = None):
        """Initialize IssueLogger for a specific issue.

        Args:
            issue_number: Issue number
            logs_dir: Override default logs directory (useful for testing)
        """
        self.issue_number = issue_number

        if logs_dir is None:
            from .config import get_issue_logs_dir
            logs_dir = get_issue_logs_dir()

        self.logs_dir = logs_dir
        self.log_path = self.logs_dir / f"ISSUE-{issue_number}.log"
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def _write_event(self, event: str, **fields: Any) -> None:
        timestamp = datetime.now().isoformat(timespec="seconds")
        parts = [f"{k}={_format_value(v)}" for k, v in fields.items() if v is not None]

        log_line = f"[{timestamp}] {event}"
        if parts:
            log_line += " " + " ".join(parts)

        with open(self.log_path, "a") as f:
            f.write(log_line + "\n")

    def log_claimed(self, pid: int, **extra: Any) -> None:
        self._write_event("CLAIMED", pid=pid, **extra)

    def log_started(self, attempt: int, engine: str, branch: str, **extra: Any) -> None:
        self._write_event("STARTED", attempt=attempt, engine=engine, branch=branch, **extra)

    def log_engine_switch(self, from_engine: str, to_engine: str, reason: str) -> None:
        self._write_event("ENGINE_SWITCH", **{"from": from_engine, "to": to_engine, "reason": reason})

    def log_engine_result(
        self,
        engine: str,
        success: bool,
        error_kind: str,
        duration: float,
        **extra: Any,
    ) -> None:
        """Log the outcome of one engine invocation.

        Args:
            engine: Engine that produced the result
            success: Whether the engine exited cleanly
            error_kind: Classification (none, timeout, rate_limit, ...)
            duration: Wall-clock seconds
        """
        self._write_event(
            "ENGINE_RESULT",
            engine=engine,
            success=success,
            error=error_kind,
            duration=f"{duration:.1f}s",
            **extra,
        )

    def log_merged(self, branch: str, **extra: Any) -> None:
        self._write_event("MERGED", branch=branch, **extra)

    def log_pr_created(self, url: str, number: int | None = None) -> None:
        self._write_event("PR_CREATED", url=url, number=number)

    def log_retry(self, attempt: int, reason: str) -> None:
        self._write_event("RETRY", attempt=attempt, reason=reason)

    def log_done(self, attempts: int, **extra: Any) -> None:
        self._write_event("DONE", attempts=attempts, **extra)

    def log_blocked(self, reason: str, **extra: Any) -> None:
        self._write_event("BLOCKED", reason=reason, **extra)

    def log_released(self) -> None:
        self._write_event("RELEASED")

    def get_events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        """Parse and return log events.

        Args:
            event_type: Filter by event type (e.g., "RETRY"), or None for all

        Returns:
            List of event dicts with 'timestamp', 'event', and parsed fields
        """
        if not self.log_path.exists():
            return []

        events = []
        with open(self.log_path) as f:
            for line in f:
                line = line.strip()
                if not line.startswith("[") or "]" not in line:
                    continue

                end_bracket = line.index("]")
                parts = line[end_bracket + 2:].split()
                if not parts:
                    continue
                if event_type and parts[0] != event_type:
                    continue

                fields: dict[str, Any] = {"timestamp": line[1:end_bracket], "event": parts[0]}
                for pair in parts[1:]:
                    if "=" in pair:
                        key, value = pair.split("=", 1)
                        fields[key] = value
                events.append(fields)
        return events
