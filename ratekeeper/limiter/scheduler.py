"""Time source and background ticker used by the rate limiter sweep."""

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from ratekeeper.logging.audit import get_audit_logger

Clock = Callable[[], int]


def monotonic_ms() -> int:
    return time.monotonic_ns() // 1_000_000


class Scheduler(ABC):
    """Runs a callback on a fixed interval until stopped."""

    @abstractmethod
    def start(self, interval_ms: int, callback: Callable[[], None]) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        """Stop ticking. Safe to call more than once."""
        ...

    @property
    @abstractmethod
    def running(self) -> bool:
        ...


class IntervalScheduler(Scheduler):
    """Daemon-thread ticker.

    stop() joins the thread, so once it returns no tick is executing and
    none will start. Calling stop() from inside a tick only signals the
    thread to exit after the tick.
    """

    def __init__(self, name: str = "ratekeeper-sweep"):
        self._name = name
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self, interval_ms: int, callback: Callable[[], None]) -> None:
        if self._thread is not None:
            raise RuntimeError("Scheduler already started")
        interval_s = interval_ms / 1000

        def _run() -> None:
            # wait() returns True once stop() is called
            while not self._stop_event.wait(interval_s):
                try:
                    callback()
                except Exception:
                    get_audit_logger().exception(
                        "Scheduled tick failed",
                        extra={"audit_data": {"scheduler": self._name}},
                    )

        self._thread = threading.Thread(target=_run, name=self._name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
