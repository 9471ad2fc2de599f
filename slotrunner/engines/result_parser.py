"""Engine output parsing and result classification.

Engines print JSON events, one per line in the common case. Some emit a
single object split across lines, and some interleave plain text. The
stream parser buffers lines until they form a valid object, drops a
malformed fragment as soon as a later line parses on its own, and resets
the buffer outright if it grows past MAX_PARSE_BUFFER characters.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


MAX_PARSE_BUFFER = 1_000_000

# Tools whose use means the agent edited files directly
CODE_TOOLS = frozenset({
    "Write", "Edit", "NotebookEdit",
    "write_file", "edit_file", "create_file",
    "write", "str_replace_editor",
})

# Shell tools may have written files indirectly; a git diff settles it later
SHELL_TOOLS = frozenset({"Bash", "bash"})

RATE_LIMIT_EXIT_CODES = frozenset({429, 173})  # 173 == 429 % 256
RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "too many requests", "quota exceeded", "429")

_RESULT_TOOL_RE = re.compile(r"(?:Used|Called|Invoked)\s+(\w+)\s+tool", re.IGNORECASE)


class ErrorKind(Enum):
    NONE = "none"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    CRASH = "crash"
    STUCK = "stuck"
    NO_CODE_CHANGES = "no_code_changes"


class ParserKind(Enum):
    STREAM_JSON = "stream-json"
    JSON = "json"


@dataclass(frozen=True)
class EngineResult:
    """Outcome of one engine invocation. Never mutated after creation."""
    success: bool
    output: str
    engine: str
    error_kind: ErrorKind = ErrorKind.NONE
    tools_used: tuple[str, ...] = ()
    files_changed: tuple[str, ...] = ()
    duration: float = 0.0
    exit_code: int | None = None


@dataclass
class ParsedOutput:
    tools_used: list[str] = field(default_factory=list)
    files_changed: list[str] = field(default_factory=list)

    def add_tool(self, name: str) -> None:
        if name and name not in self.tools_used:
            self.tools_used.append(name)

    def add_file(self, path: str) -> None:
        if path and path not in self.files_changed:
            self.files_changed.append(path)


def _input_path(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    value = data.get("file_path") or data.get("path") or ""
    return value if isinstance(value, str) else ""


def _collect(obj: Any, parsed: ParsedOutput) -> None:
    """Pull tool names and changed files out of one decoded event."""
    if not isinstance(obj, dict):
        return

    # Claude style: tool_use blocks nested in the assistant message
    message = obj.get("message")
    if obj.get("type") == "assistant" and isinstance(message, dict):
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "tool_use" and block.get("name"):
                name = str(block["name"])
                parsed.add_tool(name)
                if name in CODE_TOOLS:
                    parsed.add_file(_input_path(block.get("input")))

    # Top-level tool events from the other engines
    if obj.get("type") == "tool_use" or obj.get("tool"):
        name = str(obj.get("tool") or obj.get("name") or "")
        parsed.add_tool(name)
        if name in CODE_TOOLS:
            path = _input_path(obj.get("input")) or obj.get("file_path") or ""
            parsed.add_file(path if isinstance(path, str) else "")

    result = obj.get("result")
    if obj.get("type") == "result" and isinstance(result, str):
        for match in _RESULT_TOOL_RE.finditer(result):
            parsed.add_tool(match.group(1))


def _try_load(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except ValueError:
        return False, None


def parse_stream_json(output: str) -> ParsedOutput:
    """Parse line-oriented JSON events, tolerating broken fragments."""
    parsed = ParsedOutput()
    buffer = ""

    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue

        candidate = buffer + line if buffer else line
        ok, obj = _try_load(candidate)
        if not ok and buffer:
            # Resync: the fragment was junk if this line stands on its own
            ok, obj = _try_load(line)
            if ok:
                buffer = ""
        if ok:
            buffer = ""
            _collect(obj, parsed)
            continue

        buffer = candidate
        if len(buffer) > MAX_PARSE_BUFFER:
            buffer = ""

    return parsed


def parse_json_output(output: str) -> ParsedOutput:
    """Parse a single JSON summary document, falling back to the stream parser."""
    ok, obj = _try_load(output)
    if ok and isinstance(obj, dict):
        parsed = ParsedOutput()
        for tool in obj.get("tools_used") or []:
            parsed.add_tool(str(tool))
        for path in obj.get("files_changed") or obj.get("files_modified") or []:
            parsed.add_file(str(path))
        return parsed
    return parse_stream_json(output)


def parse_output(kind: ParserKind, output: str) -> ParsedOutput:
    if kind is ParserKind.STREAM_JSON:
        return parse_stream_json(output)
    return parse_json_output(output)


def is_rate_limit_error(stderr: str, exit_code: int | None) -> bool:
    """Detect a rate limit from the exit code or stderr.

    stdout is deliberately not consulted: agents routinely print text
    that mentions rate limits.
    """
    if exit_code in RATE_LIMIT_EXIT_CODES:
        return True
    lower = (stderr or "").lower()
    return any(marker in lower for marker in RATE_LIMIT_MARKERS)


def is_stuck_result(result: EngineResult) -> bool:
    """A successful run that neither edited files nor ran a shell."""
    if not result.success:
        return False
    has_code_tool = any(t in CODE_TOOLS for t in result.tools_used)
    used_shell = any(t in SHELL_TOOLS for t in result.tools_used)
    return not has_code_tool and not result.files_changed and not used_shell


def error_result(
    engine: str,
    error_kind: ErrorKind,
    output: str,
    duration: float,
    exit_code: int | None = None,
) -> EngineResult:
    return EngineResult(
        success=False,
        output=output,
        engine=engine,
        error_kind=error_kind,
        duration=duration,
        exit_code=exit_code,
    )
