"""Engine fallback chain with per-engine rate-limit backoff.

The backoff map is shared by every slot in the process, so it lives in a
BackoffTracker guarded by a lock. Delay after the n-th consecutive rate
limit is min(base * 2 ** (n - 1), maximum); a success clears it.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from .base import EngineRunner, EngineRunOptions
from .result_parser import EngineResult, ErrorKind, error_result
from .specs import create_engine

logger = logging.getLogger(__name__)

BASE_BACKOFF_SECONDS = 30.0
MAX_BACKOFF_SECONDS = 300.0

SwitchCallback = Callable[[str, str, str], None]
EngineCallback = Callable[[EngineRunner], None]


@dataclass
class Backoff:
    until: float
    attempts: int


class BackoffTracker:
    """Thread-safe map of engine name to rate-limit backoff.

    Args:
        base: Delay after the first rate limit, in seconds
        maximum: Upper bound on the delay
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        base: float = BASE_BACKOFF_SECONDS,
        maximum: float = MAX_BACKOFF_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base = base
        self.maximum = maximum
        self._clock = clock
        self._backoffs: dict[str, Backoff] = {}
        self._lock = threading.Lock()

    def is_rate_limited(self, engine: str) -> bool:
        with self._lock:
            backoff = self._backoffs.get(engine)
            if backoff is None:
                return False
            # The window may have passed; attempts persist until clear()
            return self._clock() < backoff.until

    def remaining(self, engine: str) -> float:
        with self._lock:
            backoff = self._backoffs.get(engine)
            if backoff is None:
                return 0.0
            return max(0.0, backoff.until - self._clock())

    def attempts(self, engine: str) -> int:
        with self._lock:
            backoff = self._backoffs.get(engine)
            return backoff.attempts if backoff else 0

    def record_rate_limit(self, engine: str) -> float:
        """Record a rate limit and return the delay that now applies."""
        with self._lock:
            existing = self._backoffs.get(engine)
            attempts = (existing.attempts if existing else 0) + 1
            delay = min(self.base * 2 ** (attempts - 1), self.maximum)
            self._backoffs[engine] = Backoff(until=self._clock() + delay, attempts=attempts)
        logger.warning("Rate limit recorded for %s (backoff=%.0fs attempts=%d)", engine, delay, attempts)
        return delay

    def clear(self, engine: str) -> None:
        with self._lock:
            self._backoffs.pop(engine, None)

    def reset(self) -> None:
        with self._lock:
            self._backoffs.clear()


class FallbackController:
    """Runs an engine chain, moving past engines that are rate limited."""

    def __init__(
        self,
        tracker: BackoffTracker | None = None,
        engine_factory: Callable[[str], EngineRunner] = create_engine,
    ):
        self.tracker = tracker or BackoffTracker()
        self.engine_factory = engine_factory

    def run(
        self,
        options: EngineRunOptions,
        primary: str,
        fallbacks: list[str] | None = None,
        on_switch: SwitchCallback | None = None,
        on_engine_created: EngineCallback | None = None,
    ) -> EngineResult:
        chain = [primary, *(fallbacks or [])]

        for i, engine_name in enumerate(chain):
            next_engine = chain[i + 1] if i + 1 < len(chain) else None

            if self.tracker.is_rate_limited(engine_name):
                remaining = self.tracker.remaining(engine_name)
                logger.info("Skipping %s (rate-limited for %.0fs)", engine_name, remaining)
                if next_engine and on_switch:
                    on_switch(engine_name, next_engine, f"rate-limited ({remaining:.0f}s remaining)")
                continue

            try:
                engine = self.engine_factory(engine_name)
            except Exception as e:
                logger.error("Failed to create %s engine: %s", engine_name, e)
                if next_engine:
                    if on_switch:
                        on_switch(engine_name, next_engine, f"engine creation failed: {e}")
                    continue
                return error_result(engine_name, ErrorKind.CRASH, f"Failed to create {engine_name}: {e}", 0.0)

            if on_engine_created:
                on_engine_created(engine)

            try:
                result = engine.run(options)
            except Exception as e:
                logger.error("%s engine raised (treating as crash): %s", engine_name, e)
                result = error_result(engine_name, ErrorKind.CRASH, f"Engine raised: {e}", 0.0)

            if result.error_kind is ErrorKind.RATE_LIMIT:
                self.tracker.record_rate_limit(engine_name)
                if next_engine:
                    if on_switch:
                        on_switch(engine_name, next_engine, "rate limit hit")
                    continue
                return result

            if result.success:
                self.tracker.clear(engine_name)
            return result

        return error_result(primary, ErrorKind.RATE_LIMIT, "All engines rate-limited or unavailable", 0.0)
