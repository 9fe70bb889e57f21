"""Timer scheduling for escalations and delayed remediation.

The engine only needs "run this callback after N seconds, unless
cancelled". Cancellation is best effort at this level: a callback that is
already running cannot be stopped, so the engine re-checks alert state
under its own lock when the callback fires.
"""
import logging
import threading
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class TimerScheduler(Protocol):
    """Schedules one-shot callbacks."""

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class ThreadingTimerScheduler:
    """One daemon threading.Timer per scheduled callback."""

    def __init__(self, name_prefix: str = "scribeguard-timer"):
        self.name_prefix = name_prefix

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(max(0.0, delay_seconds), self._guarded(callback))
        timer.daemon = True
        timer.name = f"{self.name_prefix}-{id(timer):x}"
        timer.start()
        return timer

    @staticmethod
    def _guarded(callback: Callable[[], None]) -> Callable[[], None]:
        def run():
            try:
                callback()
            except Exception as e:
                # Timer threads have no caller to propagate to
                logger.error(
                    "TIMER_CALLBACK_FAILED",
                    extra={"error": str(e), "error_type": type(e).__name__}
                )
        return run
