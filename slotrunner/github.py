"""Issue tracker gateway backed by the gh CLI."""

import json
import logging
import subprocess
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

IN_PROGRESS_LABELS = ("in-progress", "wip")
BLOCKED_LABEL = "blocked"
ISSUE_FIELDS = "number,title,body,labels,state,assignees,url"


@dataclass
class Issue:
    number: int
    title: str
    body: str = ""
    labels: list[str] = field(default_factory=list)
    state: str = "open"
    assignees: list[str] = field(default_factory=list)
    url: str = ""

    @classmethod
    def from_gh(cls, data: dict[str, Any]) -> "Issue":
        """Build from one element of `gh issue list --json` output."""
        return cls(
            number=int(data["number"]),
            title=data.get("title") or "",
            body=data.get("body") or "",
            labels=[label["name"] for label in data.get("labels") or []],
            state=(data.get("state") or "open").lower(),
            assignees=[a["login"] for a in data.get("assignees") or []],
            url=data.get("url") or "",
        )


def is_issue_in_progress(issue: Issue) -> bool:
    """Someone is already on it: assigned, or labelled in-progress/wip."""
    return bool(issue.assignees) or any(label in issue.labels for label in IN_PROGRESS_LABELS)


def _looks_rate_limited(message: str) -> bool:
    lower = message.lower()
    return "rate limit" in lower or "403" in lower or "429" in lower


class GitHubIssues:
    """Thin wrapper over `gh issue` and `gh api`.

    Args:
        max_attempts: Tries per call before the error propagates
        sleep: Delay function (injectable for tests)
    """

    def __init__(self, max_attempts: int = 3, sleep: Callable[[float], None] = time.sleep):
        self.max_attempts = max_attempts
        self._sleep = sleep

    def _run_gh(self, args: list[str], timeout: int = 60) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["gh"] + args,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )

    def _with_retry(self, operation: Callable[[], T], name: str) -> T:
        """Retry with exponential backoff on rate limits, a short pause otherwise."""
        attempt = 1
        while True:
            try:
                return operation()
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
                message = (getattr(e, "stderr", None) or "") + str(e)
                if attempt >= self.max_attempts:
                    raise
                if _looks_rate_limited(message):
                    delay = min(1.0 * 2 ** (attempt - 1), 16.0)
                    logger.warning("%s: rate limit hit, retrying in %.0fs (attempt %d)", name, delay, attempt)
                else:
                    delay = 0.5
                    logger.warning("%s: failed, retrying (attempt %d): %s", name, attempt, message.strip())
                self._sleep(delay)
                attempt += 1

    def fetch_open_by_label(self, repo: str, label: str, limit: int = 50) -> list[Issue]:
        """Open issues carrying a label. Returns [] if gh keeps failing."""
        def fetch() -> list[Issue]:
            result = self._run_gh([
                "issue", "list",
                "--repo", repo,
                "--label", label,
                "--state", "open",
                "--limit", str(limit),
                "--json", ISSUE_FIELDS,
            ])
            return [Issue.from_gh(item) for item in json.loads(result.stdout or "[]")]

        try:
            return self._with_retry(fetch, f"fetch issues ({label})")
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, ValueError) as e:
            logger.warning("Failed to fetch issues for label %r in %s: %s", label, repo, e)
            return []

    def comment(self, repo: str, number: int, body: str) -> None:
        self._with_retry(
            lambda: self._run_gh(["issue", "comment", str(number), "--repo", repo, "--body", body]),
            f"comment on #{number}",
        )

    def close(self, repo: str, number: int, comment: str | None = None) -> None:
        """Close an issue, commenting first when a comment is given."""
        if comment:
            try:
                self.comment(repo, number, comment)
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
                logger.warning("Failed to comment on issue #%d: %s", number, e)
        self._with_retry(
            lambda: self._run_gh(["issue", "close", str(number), "--repo", repo]),
            f"close #{number}",
        )
        logger.info("Closed issue #%d", number)

    def add_label(self, repo: str, number: int, label: str) -> None:
        self._with_retry(
            lambda: self._run_gh(["issue", "edit", str(number), "--repo", repo, "--add-label", label]),
            f"label #{number}",
        )

    def block(self, repo: str, number: int, reason: str) -> None:
        """Label an issue blocked and explain why."""
        self.add_label(repo, number, BLOCKED_LABEL)
        self.comment(
            repo, number,
            f"Blocked by slotrunner: {reason}\n\nThis issue needs manual intervention.",
        )
        logger.warning("Blocked issue #%d: %s", number, reason)

    def detect_repeat_cycle(self, repo: str, number: int, max_cycles: int = 2) -> bool:
        """True when the issue has been closed and reopened max_cycles times."""
        try:
            result = self._run_gh([
                "api", f"repos/{repo}/issues/{number}/events",
                "--jq", '[.[] | select(.event == "closed" or .event == "reopened")] | length',
            ], timeout=30)
            return int(result.stdout.strip() or 0) >= max_cycles * 2
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, ValueError):
            return False
