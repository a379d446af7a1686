"""Periodic housekeeping on dedicated daemon threads.

Each task owns one thread that runs its callable every ``interval`` seconds
until stopped. Repeated failures back off exponentially, capped at five
minutes, so a dead store does not flood the logs.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from guardian.logging import get_logger

logger = get_logger(__name__)

MAX_BACKOFF_SECONDS = 300


class PeriodicTask:
    def __init__(self, name: str, func: Callable[[], Any], interval: float) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.func = func
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            logger.warning("periodic_task_already_running", task=self.name)
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name=f"guardian-{self.name}", daemon=True
        )
        self._thread.start()
        logger.info("periodic_task_started", task=self.name, interval=self.interval)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("periodic_task_stopped", task=self.name)

    def run_once(self) -> Any:
        result = self.func()
        self.runs += 1
        return result

    def _run_loop(self) -> None:
        consecutive_errors = 0
        delay = self.interval
        while not self._stop.wait(delay):
            try:
                self.run_once()
                consecutive_errors = 0
                delay = self.interval
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "periodic_task_error",
                    task=self.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    delay = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "periodic_task_backoff",
                        task=self.name,
                        backoff_seconds=delay,
                    )


__all__ = ["PeriodicTask"]
