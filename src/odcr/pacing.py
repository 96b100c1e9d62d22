"""Call pacing and run deadlines for provider mutations.

TokenBucket paces mutation calls so a bulk run does not trip provider
throttling. RunDeadline bounds the whole run; call_with_deadline() turns a
hung provider call into a StepTimeout for that step instead of hanging.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from odcr.errors import StepTimeout

logger = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket: tokens replenish at a fixed rate, each call takes one."""

    def __init__(
        self,
        rate_per_second: float,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.rate = float(rate_per_second)
        self.max_tokens = float(burst)
        self._tokens = float(burst)  # start full
        self._clock = clock
        self._sleep = sleep
        self._last_refill = clock()
        self._lock = threading.Lock()
        self.total_waited = 0.0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self._tokens = min(self.max_tokens, self._tokens + elapsed * self.rate)
        self._last_refill = now

    def acquire(self) -> float:
        """Block until a token is available. Returns seconds waited."""
        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    self.total_waited += waited
                    return waited
                wait_time = (1.0 - self._tokens) / self.rate
            self._sleep(wait_time)
            waited += wait_time


class RunDeadline:
    """Wall-clock budget for one run. total_seconds=None means unbounded."""

    def __init__(
        self,
        total_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total_seconds = total_seconds
        self._clock = clock
        self._started = clock()

    def remaining(self) -> Optional[float]:
        if self.total_seconds is None:
            return None
        return self.total_seconds - (self._clock() - self._started)

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


class _Call:
    def __init__(self, fn: Callable[..., Any], args: tuple, kwargs: dict):
        self.fn = fn
        self.args = args
        self.kwargs = kwargs
        self.done = threading.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None

    def run(self) -> None:
        try:
            self.result = self.fn(*self.args, **self.kwargs)
        except BaseException as e:  # re-raised in the calling thread
            self.error = e
        finally:
            self.done.set()


def call_with_deadline(
    deadline: Optional[RunDeadline],
    step: str,
    fn: Callable[..., Any],
    *args: Any,
    **kwargs: Any,
) -> Any:
    """Run fn(*args, **kwargs), raising StepTimeout once the run budget is spent.

    The call runs on a daemon thread so a provider call that never returns
    cannot keep the process alive after the run gives up on it.
    """
    remaining = deadline.remaining() if deadline is not None else None
    if remaining is None:
        return fn(*args, **kwargs)
    if remaining <= 0:
        raise StepTimeout(step, 0)

    call = _Call(fn, args, kwargs)
    worker = threading.Thread(target=call.run, name=f"odcr-{step}", daemon=True)
    worker.start()
    if not call.done.wait(timeout=remaining):
        logger.error(f"{step} timed out after {remaining:.1f}s")
        raise StepTimeout(step, remaining)
    if call.error is not None:
        raise call.error
    return call.result
