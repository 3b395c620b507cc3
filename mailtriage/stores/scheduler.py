"""
Follow-up invocation scheduling.

The continuation manager only needs ``schedule_once``; hosts with a real
trigger service implement ``Scheduler`` on top of it.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict

logger = logging.getLogger(__name__)


class Scheduler(ABC):

    @abstractmethod
    def schedule_once(self, after_seconds: float, handler: Callable[[], None]) -> str:
        """
        Run ``handler`` once after a delay.

        Returns:
            An id usable with ``cancel``.
        """

    @abstractmethod
    def cancel(self, schedule_id: str) -> bool:
        pass


class ThreadingScheduler(Scheduler):
    """In-process scheduler built on ``threading.Timer``."""

    def __init__(self):
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._running = 0

    def schedule_once(self, after_seconds: float, handler: Callable[[], None]) -> str:
        schedule_id = uuid.uuid4().hex[:8]

        def _fire() -> None:
            with self._lock:
                self._timers.pop(schedule_id, None)
                self._running += 1
            try:
                handler()
            except Exception:
                logger.exception(f"Scheduled handler {schedule_id} failed")
            finally:
                with self._lock:
                    self._running -= 1
                    self._idle.notify_all()

        timer = threading.Timer(after_seconds, _fire)
        timer.daemon = True
        with self._lock:
            self._timers[schedule_id] = timer
        timer.start()
        logger.info(f"Scheduled follow-up {schedule_id} in {after_seconds:.1f}s")
        return schedule_id

    def cancel(self, schedule_id: str) -> bool:
        with self._lock:
            timer = self._timers.pop(schedule_id, None)
            self._idle.notify_all()
        if timer is None:
            return False
        timer.cancel()
        return True

    def pending(self) -> int:
        with self._lock:
            return len(self._timers) + self._running

    def wait_idle(self, timeout: float = None) -> bool:
        """Block until no timer is pending or running."""
        with self._lock:
            return self._idle.wait_for(
                lambda: not self._timers and self._running == 0, timeout=timeout
            )
