"""Tests for EngineRunner using short-lived Python child processes."""

import json
import os
import sys
import textwrap
import threading
import time

import pytest

from slotrunner.engines.base import EngineRunner, EngineRunOptions, EngineSpec
from slotrunner.engines.result_parser import ErrorKind, ParserKind
from slotrunner.engines.specs import ENGINE_SPECS, EngineName, create_engine
from slotrunner.errors import EngineCreationError


def _python_engine(script: str, use_stdin: bool = True, env=None, seen_files=None) -> EngineSpec:
    """An engine whose CLI is `python -c <script> [prompt_file]`."""
    code = textwrap.dedent(script)

    def build_args(options, prompt_file):
        if seen_files is not None:
            seen_files.append(prompt_file)
        return ["-c", code] + ([prompt_file] if prompt_file else [])

    return EngineSpec(
        name="fake",
        binary=sys.executable,
        build_args=build_args,
        parser=ParserKind.STREAM_JSON,
        use_stdin=use_stdin,
        env=env,
    )


def _options(tmp_path, prompt="do the thing", timeout=30):
    return EngineRunOptions(prompt=prompt, cwd=tmp_path, timeout=timeout, issue_number=1)


class TestEngineRunnerSuccess:
    def test_parses_tool_events(self, tmp_path):
        spec = _python_engine("""
            import json
            event = {"type": "assistant", "message": {"content": [
                {"type": "tool_use", "name": "Write", "input": {"file_path": "src/x.py"}}]}}
            print(json.dumps(event))
            print(json.dumps({"type": "result", "result": "ok"}))
        """)

        result = EngineRunner(spec).run(_options(tmp_path))

        assert result.success is True
        assert result.error_kind is ErrorKind.NONE
        assert result.engine == "fake"
        assert result.tools_used == ("Write",)
        assert result.files_changed == ("src/x.py",)
        assert result.exit_code == 0

    def test_prompt_is_fed_over_stdin(self, tmp_path):
        spec = _python_engine("""
            import sys
            print("got:" + sys.stdin.read())
        """)

        result = EngineRunner(spec).run(_options(tmp_path, prompt="build the widget"))

        assert "got:build the widget" in result.output

    def test_prompt_file_mode_cleans_up(self, tmp_path):
        seen = []
        spec = _python_engine("""
            import sys
            print("file:" + open(sys.argv[1]).read())
        """, use_stdin=False, seen_files=seen)

        result = EngineRunner(spec).run(_options(tmp_path, prompt="from a file"))

        assert "file:from a file" in result.output
        assert len(seen) == 1
        assert os.path.basename(seen[0]).startswith("slotrunner-prompt-")
        assert not os.path.exists(seen[0])

    def test_runs_in_requested_directory(self, tmp_path):
        spec = _python_engine("""
            import os
            print(os.getcwd())
        """)

        result = EngineRunner(spec).run(_options(tmp_path))

        assert os.path.realpath(result.output.strip()) == os.path.realpath(tmp_path)

    def test_env_overrides_and_removals(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SLOTRUNNER_TEST_REMOVE", "1")
        spec = _python_engine("""
            import json, os
            print(json.dumps({
                "removed": os.environ.get("SLOTRUNNER_TEST_REMOVE"),
                "added": os.environ.get("SLOTRUNNER_TEST_ADD"),
            }))
        """, env=lambda options: {"SLOTRUNNER_TEST_REMOVE": None, "SLOTRUNNER_TEST_ADD": "yes"})

        result = EngineRunner(spec).run(_options(tmp_path))

        assert json.loads(result.output) == {"removed": None, "added": "yes"}

    def test_output_is_capped(self, tmp_path):
        spec = _python_engine("""
            import sys
            sys.stdout.write("x" * 10000)
        """)

        result = EngineRunner(spec, max_output_bytes=100).run(_options(tmp_path))

        assert result.success is True
        assert result.output == "x" * 100


class TestEngineRunnerFailures:
    def test_nonzero_exit_is_crash(self, tmp_path):
        spec = _python_engine("""
            import sys
            sys.stderr.write("something broke")
            sys.exit(3)
        """)

        result = EngineRunner(spec).run(_options(tmp_path))

        assert result.success is False
        assert result.error_kind is ErrorKind.CRASH
        assert result.exit_code == 3
        assert "something broke" in result.output

    @pytest.mark.parametrize("script", [
        "import sys; sys.exit(173)",
        "import sys; sys.stderr.write('Error: rate limit reached'); sys.exit(1)",
    ])
    def test_rate_limit(self, tmp_path, script):
        result = EngineRunner(_python_engine(script)).run(_options(tmp_path))

        assert result.success is False
        assert result.error_kind is ErrorKind.RATE_LIMIT

    def test_rate_limit_text_on_stdout_is_ignored(self, tmp_path):
        spec = _python_engine("print('I read about the rate limit docs')")

        result = EngineRunner(spec).run(_options(tmp_path))

        assert result.success is True

    def test_missing_binary_is_crash(self, tmp_path):
        spec = EngineSpec(
            name="ghost",
            binary=str(tmp_path / "no-such-engine"),
            build_args=lambda options, prompt_file: [],
            parser=ParserKind.STREAM_JSON,
        )

        result = EngineRunner(spec).run(_options(tmp_path))

        assert result.error_kind is ErrorKind.CRASH
        assert "Failed to start" in result.output

    def test_timeout_terminates_process(self, tmp_path):
        spec = _python_engine("import time; time.sleep(30)")

        start = time.monotonic()
        result = EngineRunner(spec, kill_grace=1.0).run(_options(tmp_path, timeout=0.5))

        assert result.error_kind is ErrorKind.TIMEOUT
        assert time.monotonic() - start < 10

    def test_timeout_escalates_to_sigkill(self, tmp_path):
        spec = _python_engine("""
            import signal, sys, time
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            print("ready", flush=True)
            time.sleep(30)
        """)

        start = time.monotonic()
        result = EngineRunner(spec, kill_grace=0.5).run(_options(tmp_path, timeout=1.0))

        assert result.error_kind is ErrorKind.TIMEOUT
        assert time.monotonic() - start < 10

    def test_kill_from_another_thread(self, tmp_path):
        spec = _python_engine("import time; time.sleep(30)")
        engine = EngineRunner(spec, kill_grace=0.5)
        killer = threading.Timer(0.5, engine.kill)
        killer.start()

        start = time.monotonic()
        result = engine.run(_options(tmp_path))
        killer.join()

        assert result.success is False
        assert result.error_kind is ErrorKind.CRASH
        assert "cancelled" in result.output
        assert time.monotonic() - start < 10

    def test_kill_with_no_process_is_safe(self):
        EngineRunner(_python_engine("pass")).kill()


class TestEngineRegistry:
    def test_every_engine_name_has_a_spec(self):
        assert set(ENGINE_SPECS) == set(EngineName)

    def test_create_engine(self):
        engine = create_engine("codex")
        assert isinstance(engine, EngineRunner)
        assert engine.name == "codex"

    def test_unknown_engine_raises(self):
        with pytest.raises(EngineCreationError, match="Unknown engine"):
            create_engine("gpt-magic")

    def test_opencode_reads_prompt_file(self):
        spec = ENGINE_SPECS[EngineName.OPENCODE]
        args = spec.build_args(EngineRunOptions(prompt="p", cwd="."), "/tmp/prompt.md")

        assert spec.use_stdin is False
        assert "/tmp/prompt.md" in args

    def test_claude_drops_nested_session_marker(self):
        spec = ENGINE_SPECS[EngineName.CLAUDE]
        assert spec.env(EngineRunOptions(prompt="p", cwd=".")) == {"CLAUDECODE": None}
