"""
Periodic task runner for background sweeps.

Replaces a free-running timer plus an "is running" flag with an explicit
object that owns its thread. Every run is derived from persisted state, so a
task interrupted by ``stop()`` can simply run again later.

Usage:
    >>> task = PeriodicTask("escalation-sweep", 900, monitor.run_sweep)
    >>> task.start()      # runs immediately, then every 15 minutes
    >>> task.run_now()    # manual trigger, same thread-safety guarantees
    >>> task.stop()
"""

import threading
from typing import Any, Callable, Optional

from fieldnotify.src.utils.logging_config import get_logger


logger = get_logger("services")


class PeriodicTask:
    """
    Runs a callable on a fixed interval in a daemon thread.

    Runs never overlap: the scheduled loop and ``run_now`` share a lock.
    Exceptions raised by the callable are logged and swallowed so that one
    bad run never stops the schedule.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Any],
        run_on_start: bool = True,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self.run_on_start = run_on_start
        self.run_count = 0
        self.last_result: Any = None

        self._stop_event = threading.Event()
        self._run_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """
        Start the schedule.

        Returns:
            False if the task was already running, True otherwise
        """
        if self.is_running:
            logger.info("Periodic task already running", extra={"task": self.name})
            return False

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"periodic-{self.name}", daemon=True
        )
        self._thread.start()
        logger.info(
            "Periodic task started",
            extra={"task": self.name, "interval_seconds": self.interval_seconds},
        )
        return True

    def stop(self, timeout: Optional[float] = 10.0) -> bool:
        """
        Stop the schedule and wait for the current run to finish.

        Returns:
            False if the task was not running, True otherwise
        """
        if not self.is_running:
            return False

        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Periodic task stopped", extra={"task": self.name})
        return True

    def run_now(self) -> Any:
        """Run the callable once in the caller's thread and return its result."""
        with self._run_lock:
            self.last_result = self.func()
            self.run_count += 1
            return self.last_result

    def _loop(self) -> None:
        if self.run_on_start:
            self._safe_run()
        while not self._stop_event.wait(self.interval_seconds):
            self._safe_run()

    def _safe_run(self) -> None:
        try:
            self.run_now()
        except Exception:
            logger.exception("Periodic task run failed", extra={"task": self.name})
