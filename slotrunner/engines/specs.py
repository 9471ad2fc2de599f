"""Registered engines and the factory that builds runners for them."""

from enum import Enum

from ..errors import EngineCreationError
from .base import EngineRunner, EngineRunOptions, EngineSpec
from .result_parser import ParserKind


class EngineName(str, Enum):
    CLAUDE = "claude"
    OPENCODE = "opencode"
    CODEX = "codex"
    CURSOR = "cursor"
    QWEN = "qwen"


def _claude_env(options: EngineRunOptions) -> dict[str, str | None]:
    # A nested claude refuses to start when it sees the parent's marker
    return {"CLAUDECODE": None}


def _opencode_env(options: EngineRunOptions) -> dict[str, str | None]:
    return {"OPENCODE_PERMISSION": "auto-edit,auto-run"}


ENGINE_SPECS: dict[EngineName, EngineSpec] = {
    EngineName.CLAUDE: EngineSpec(
        name=EngineName.CLAUDE.value,
        binary="claude",
        build_args=lambda options, prompt_file: [
            "--dangerously-skip-permissions",
            "--output-format", "stream-json",
            "--verbose",
            "-p", "-",
        ],
        parser=ParserKind.STREAM_JSON,
        use_stdin=True,
        env=_claude_env,
    ),
    EngineName.OPENCODE: EngineSpec(
        name=EngineName.OPENCODE.value,
        binary="opencode",
        build_args=lambda options, prompt_file: [
            "run", "--format", "json", "--file", prompt_file,
        ],
        parser=ParserKind.JSON,
        use_stdin=False,
        env=_opencode_env,
    ),
    EngineName.CODEX: EngineSpec(
        name=EngineName.CODEX.value,
        binary="codex",
        build_args=lambda options, prompt_file: ["exec", "--full-auto", "--json", "-"],
        parser=ParserKind.JSON,
        use_stdin=True,
    ),
    EngineName.CURSOR: EngineSpec(
        name=EngineName.CURSOR.value,
        binary="cursor",
        build_args=lambda options, prompt_file: [
            "agent", "--print", "--force", "--output-format", "stream-json", "-",
        ],
        parser=ParserKind.STREAM_JSON,
        use_stdin=True,
    ),
    EngineName.QWEN: EngineSpec(
        name=EngineName.QWEN.value,
        binary="qwen",
        build_args=lambda options, prompt_file: [
            "--output-format", "stream-json", "--approval-mode", "yolo", "-p", "-",
        ],
        parser=ParserKind.STREAM_JSON,
        use_stdin=True,
    ),
}


def create_engine(name: str | EngineName) -> EngineRunner:
    """Build a fresh runner for the named engine.

    Raises:
        EngineCreationError: if the name is not registered
    """
    try:
        engine_name = EngineName(name)
    except ValueError:
        valid = ", ".join(e.value for e in EngineName)
        raise EngineCreationError(f"Unknown engine: {name} (valid: {valid})") from None
    return EngineRunner(ENGINE_SPECS[engine_name])
