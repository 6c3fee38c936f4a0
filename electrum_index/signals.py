"""Process signals turned into an exit flag and a notification queue."""

from __future__ import annotations

import logging
import queue
import signal
import threading

logger = logging.getLogger(__name__)

# Signal that only asks for a sync, e.g. sent by the node on a new block.
_NOTIFY = getattr(signal, "SIGUSR1", None)

HANDLED_SIGNALS: tuple[int, ...] = tuple(
    signum
    for signum in (signal.SIGINT, getattr(signal, "SIGTERM", None), _NOTIFY)
    if signum is not None
)


class ExitError(Exception):
    """Raised when the process was asked to exit."""

    def __init__(self) -> None:
        super().__init__("exiting due to signal")


class ExitFlag:
    """A flag shared between threads, set once an exit was requested."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def poll(self) -> None:
        """Raise :class:`ExitError` if an exit was requested."""
        if self._event.is_set():
            raise ExitError()

    def set(self) -> None:
        """Request an exit."""
        self._event.set()


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


class Signal:
    """Collects signal notifications and sets the exit flag on termination."""

    def __init__(self, install: bool = True) -> None:
        self._queue: queue.SimpleQueue[int] = queue.SimpleQueue()
        self.exit_flag = ExitFlag()
        if install:
            for signum in HANDLED_SIGNALS:
                signal.signal(signum, self._handle)

    def _handle(self, signum: int, _frame: object) -> None:
        self.trigger(signum)

    def trigger(self, signum: int) -> None:
        """Record a notification; any signal but the notify one requests exit."""
        logger.info("notified via %s", _signal_name(signum))
        if signum != _NOTIFY:
            self.exit_flag.set()
        self._queue.put(signum)

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for one notification; return False if none came in time."""
        try:
            self._queue.get(timeout=timeout)
        except queue.Empty:
            return False
        return True