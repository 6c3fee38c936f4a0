"""Named background threads whose failures are logged rather than lost."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator

logger = logging.getLogger(__name__)


def _causes(error: BaseException) -> Iterator[BaseException]:
    """Yield the exceptions that led to ``error``, nearest first."""
    current: BaseException | None = error
    while current is not None:
        if current.__cause__ is not None:
            current = current.__cause__
        elif current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
        else:
            current = None
        if current is not None:
            yield current


def spawn(name: str, func: Callable[[], object]) -> threading.Thread:
    """Run ``func`` in a daemon thread called ``name`` and return the thread.

    An exception raised by ``func`` is logged as a warning, together with
    every exception in its cause chain.
    """

    def run() -> None:
        try:
            func()
        except Exception as error:  # noqa: BLE001 - the thread reports and ends
            logger.warning("%s thread failed: %s", name, error)
            for cause in _causes(error):
                logger.warning("because: %s", cause)

    thread = threading.Thread(target=run, name=name, daemon=True)
    thread.start()
    return thread