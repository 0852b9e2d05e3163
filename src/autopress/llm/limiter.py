from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator

from ..errors import ExhaustionError
from ..utils import log_event


class ConcurrencyLimiter:
    """Process-wide cap on in-flight generation calls.

    ``acquire`` never blocks indefinitely: it polls for a free slot with
    capped exponential backoff and gives up with ``rate_limit_exceeded``.
    """

    def __init__(
        self,
        max_concurrent: int = 10,
        *,
        retries: int = 5,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.retries = max(0, retries)
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._sleep = sleep
        self._semaphore = threading.BoundedSemaphore(max_concurrent)
        self._lock = threading.Lock()
        self._in_use = 0
        self.logger = logger or logging.getLogger("autopress.limiter")

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    def acquire(self) -> None:
        for attempt in range(self.retries + 1):
            if self._semaphore.acquire(blocking=False):
                with self._lock:
                    self._in_use += 1
                return
            if attempt == self.retries:
                break
            delay = min(self.max_backoff_seconds, self.backoff_seconds * (2**attempt))
            log_event(
                self.logger,
                logging.DEBUG,
                "limiter_wait",
                attempt=attempt + 1,
                delay=delay,
                in_use=self.in_use,
            )
            self._sleep(delay)
        log_event(self.logger, logging.WARNING, "limiter_exhausted", max_concurrent=self.max_concurrent)
        raise ExhaustionError(
            "rate_limit_exceeded",
            f"no generation slot free after {self.retries + 1} attempts",
        )

    def release(self) -> None:
        with self._lock:
            self._in_use = max(0, self._in_use - 1)
        self._semaphore.release()

    @contextmanager
    def slot(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()
