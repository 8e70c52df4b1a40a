"""Trailing-edge debouncer for session validation runs."""

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class Debouncer:
    """
    Runs the most recently scheduled callable once calls stop arriving for
    delay_ms. A later schedule() supersedes any pending one.

    delay_ms of 0 runs synchronously, which keeps single-threaded callers
    and tests deterministic.
    """

    def __init__(self, delay_ms: int):
        self.delay_ms = delay_ms
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._pending: Callable[[], None] | None = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def schedule(self, fn: Callable[[], None]) -> None:
        if self.delay_ms <= 0:
            self.cancel()
            fn()
            return

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            self._pending = fn
            generation = self._generation
            self._timer = threading.Timer(self.delay_ms / 1000, self._fire, args=(generation,))
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> bool:
        """Run the pending callable now. Returns False if nothing was pending."""
        with self._lock:
            fn = self._take()
        if fn is None:
            return False
        fn()
        return True

    def cancel(self) -> None:
        with self._lock:
            self._take()

    def _take(self) -> Callable[[], None] | None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        fn, self._pending = self._pending, None
        self._generation += 1
        return fn

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            fn, self._pending, self._timer = self._pending, None, None
        if fn is None:
            return
        try:
            fn()
        except Exception:
            logger.exception("Debounced call failed")
