"""
Periodic background tasks for callshield.

A :class:`PeriodicTask` owns a daemon thread that invokes a callback on
a fixed interval until stopped.  The cache expiry sweep and the rate
limiter window sweep both run on one of these.
"""

import logging
import threading
from typing import Callable, Optional

from callshield.exceptions import SchedulerError

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``callback`` every ``interval_seconds`` in a daemon thread.

    The wait between ticks is an ``Event.wait`` so :meth:`stop` returns
    promptly instead of sleeping out the remaining interval.  Exceptions
    from the callback are logged and the loop keeps running.

    Args:
        callback: Zero-argument callable executed on every tick.
        interval_seconds: Delay between ticks (must be positive).
        name: Thread name, used in logs.
    """

    def __init__(
        self,
        callback: Callable[[], object],
        interval_seconds: float,
        name: str = "callshield-periodic",
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._callback = callback
        self._interval = interval_seconds
        self._name = name

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background thread.

        Raises:
            SchedulerError: If the task is already running.
        """
        with self._lock:
            if self._thread is not None:
                raise SchedulerError(f"{self._name} is already running")

            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                name=self._name,
                daemon=True,
            )
            self._thread.start()
            logger.debug(
                "Periodic task started",
                extra={"task": self._name, "interval_seconds": self._interval},
            )

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the loop to exit and join the thread.  Idempotent."""
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()
            self._thread = None

        if thread is not threading.current_thread():
            thread.join(timeout=timeout)
        logger.debug("Periodic task stopped", extra={"task": self._name})

    @property
    def is_running(self) -> bool:
        """Whether the background thread is active."""
        return self._thread is not None and not self._stop_event.is_set()

    # ------------------------------------------------------------------
    # Internal loop
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self._callback()
            except Exception as exc:
                logger.error(
                    "Periodic task tick failed",
                    extra={"task": self._name, "error": str(exc)},
                    exc_info=True,
                )
