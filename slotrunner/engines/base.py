"""Process wrapper shared by every engine.

An engine is an external CLI described by an EngineSpec. EngineRunner
launches it in its own process group, feeds it the prompt, drains both
pipes with capped reader threads and turns whatever happens into an
EngineResult. run() does not raise.
"""

import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, IO

from .result_parser import (
    EngineResult,
    ErrorKind,
    ParserKind,
    error_result,
    is_rate_limit_error,
    parse_output,
)

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 50 * 1024 * 1024
KILL_GRACE_SECONDS = 5.0
_READ_CHUNK = 64 * 1024


@dataclass
class EngineRunOptions:
    prompt: str
    cwd: Path | str
    timeout: float = 600
    issue_number: int | None = None
    lessons_context: str | None = None


@dataclass(frozen=True)
class EngineSpec:
    """Static description of how to drive one engine CLI.

    build_args receives the run options and the prompt file path (empty
    when the prompt goes over stdin). env returns overrides for the child
    environment; a None value removes the variable.
    """
    name: str
    binary: str
    build_args: Callable[[EngineRunOptions, str], list[str]]
    parser: ParserKind
    use_stdin: bool = True
    env: Callable[[EngineRunOptions], dict[str, str | None]] | None = None


class _CappedReader(threading.Thread):
    """Drain a pipe, keeping at most `limit` bytes."""

    def __init__(self, stream: IO[bytes], limit: int):
        super().__init__(daemon=True)
        self.stream = stream
        self.limit = limit
        self.chunks: list[bytes] = []
        self.kept = 0
        self.discarded = 0

    def run(self) -> None:
        try:
            while True:
                chunk = self.stream.read1(_READ_CHUNK)
                if not chunk:
                    break
                keep = min(self.limit - self.kept, len(chunk))
                if keep > 0:
                    self.chunks.append(chunk[:keep])
                    self.kept += keep
                self.discarded += len(chunk) - max(keep, 0)
        except (OSError, ValueError):
            pass
        finally:
            try:
                self.stream.close()
            except OSError:
                pass

    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8", errors="replace")


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


class EngineRunner:
    """Runs one engine process at a time.

    Args:
        spec: How to launch and parse the engine
        max_output_bytes: Per-stream capture ceiling
        kill_grace: Seconds between SIGTERM and SIGKILL
    """

    def __init__(
        self,
        spec: EngineSpec,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
        kill_grace: float = KILL_GRACE_SECONDS,
    ):
        self.spec = spec
        self.name = spec.name
        self.max_output_bytes = max_output_bytes
        self.kill_grace = kill_grace
        self._proc: subprocess.Popen | None = None
        self._lock = threading.Lock()
        self._cancelled = False

    def run(self, options: EngineRunOptions) -> EngineResult:
        start = time.monotonic()
        prompt_file = ""
        try:
            if not self.spec.use_stdin:
                fd, prompt_file = tempfile.mkstemp(prefix="slotrunner-prompt-", suffix=".md")
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(options.prompt)
            return self._run_process(options, prompt_file, start)
        except Exception as e:
            logger.exception("Engine %s failed unexpectedly", self.name)
            return error_result(self.name, ErrorKind.CRASH, str(e), time.monotonic() - start)
        finally:
            with self._lock:
                self._proc = None
            if prompt_file:
                try:
                    os.unlink(prompt_file)
                except OSError:
                    pass

    def _build_env(self, options: EngineRunOptions) -> dict[str, str]:
        env = dict(os.environ)
        if self.spec.env:
            for key, value in self.spec.env(options).items():
                if value is None:
                    env.pop(key, None)
                else:
                    env[key] = value
        return env

    def _run_process(self, options: EngineRunOptions, prompt_file: str, start: float) -> EngineResult:
        cmd = [self.spec.binary] + self.spec.build_args(options, prompt_file)
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=options.cwd,
                env=self._build_env(options),
                stdin=subprocess.PIPE if self.spec.use_stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            return error_result(
                self.name, ErrorKind.CRASH,
                f"Failed to start {self.spec.binary}: {e}",
                time.monotonic() - start,
            )

        with self._lock:
            self._proc = proc
            cancelled = self._cancelled
        if cancelled:
            _signal_group(proc, signal.SIGTERM)

        logger.debug("Started %s (pid=%d) in %s", self.name, proc.pid, options.cwd)

        out_reader = _CappedReader(proc.stdout, self.max_output_bytes)
        err_reader = _CappedReader(proc.stderr, self.max_output_bytes)
        out_reader.start()
        err_reader.start()

        if self.spec.use_stdin:
            threading.Thread(
                target=self._feed_stdin, args=(proc, options.prompt), daemon=True
            ).start()

        timed_out = False
        try:
            proc.wait(timeout=options.timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning("Engine %s timed out after %ss, terminating", self.name, options.timeout)
            self._terminate(proc)

        # Grandchildren can hold the pipes open after the group leader exits
        out_reader.join(timeout=self.kill_grace)
        err_reader.join(timeout=self.kill_grace)
        duration = time.monotonic() - start
        stdout = out_reader.text()
        stderr = err_reader.text()

        if out_reader.discarded or err_reader.discarded:
            logger.warning(
                "Engine %s output exceeded %d bytes (discarded stdout=%d stderr=%d)",
                self.name, self.max_output_bytes, out_reader.discarded, err_reader.discarded,
            )

        if timed_out:
            return error_result(
                self.name, ErrorKind.TIMEOUT, f"Timed out after {options.timeout}s", duration
            )
        with self._lock:
            cancelled = self._cancelled
        if cancelled:
            return error_result(
                self.name, ErrorKind.CRASH, "Engine run cancelled", duration, proc.returncode
            )

        code = proc.returncode
        if is_rate_limit_error(stderr, code):
            return error_result(self.name, ErrorKind.RATE_LIMIT, stderr or stdout, duration, code)
        if code != 0:
            return error_result(self.name, ErrorKind.CRASH, stderr or stdout, duration, code)

        parsed = parse_output(self.spec.parser, stdout)
        return EngineResult(
            success=True,
            output=stdout,
            engine=self.name,
            tools_used=tuple(parsed.tools_used),
            files_changed=tuple(parsed.files_changed),
            duration=duration,
            exit_code=code,
        )

    @staticmethod
    def _feed_stdin(proc: subprocess.Popen, prompt: str) -> None:
        try:
            proc.stdin.write(prompt.encode("utf-8"))
        except (BrokenPipeError, OSError):
            pass
        finally:
            try:
                proc.stdin.close()
            except OSError:
                pass

    def _terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM the process group, SIGKILL it after the grace window."""
        _signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            logger.warning("Engine %s ignored SIGTERM, sending SIGKILL", self.name)
            _signal_group(proc, signal.SIGKILL)
            proc.wait()

    def kill(self) -> None:
        """Stop the running process, if any. Safe to call from any thread."""
        with self._lock:
            self._cancelled = True
            proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        logger.info("Killing engine %s (pid=%d)", self.name, proc.pid)
        _signal_group(proc, signal.SIGTERM)

        def _escalate() -> None:
            if proc.poll() is None:
                _signal_group(proc, signal.SIGKILL)

        escalate = threading.Timer(self.kill_grace, _escalate)
        escalate.daemon = True
        escalate.start()
