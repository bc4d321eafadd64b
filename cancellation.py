"""Cancellation plumbing shared by every build processor.

A :class:`BuildContext` carries the cancellation flag, the overall deadline of
one build and the cleanup callbacks registered by the processor that owns the
transient resources (containers, pods, working directories).
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import threading
import time
from typing import Callable, Iterator

from errors import BuildInterrupted

LOG = logging.getLogger("driverkit.cancellation")

INTERRUPTED = "interrupted"
DEADLINE_EXCEEDED = "interrupted: deadline exceeded"


class BuildContext:
    """Cancellation flag plus optional deadline for a single build."""

    def __init__(self, timeout: float | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._event = threading.Event()
        self._reason = INTERRUPTED
        self.deadline = clock() + timeout if timeout else None
        self._cleanups: list[tuple[str, Callable[[], None]]] = []
        self._lock = threading.Lock()

    def cancel(self, reason: str = INTERRUPTED) -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and self._clock() >= self.deadline:
            self.cancel(DEADLINE_EXCEEDED)
            return True
        return False

    @property
    def reason(self) -> str:
        return self._reason

    def remaining(self) -> float | None:
        """Return the seconds left before the deadline, or ``None`` if unbounded."""

        if self.deadline is None:
            return None
        return max(self.deadline - self._clock(), 0.0)

    def check(self) -> None:
        """Raise :class:`BuildInterrupted` once the build has been cancelled."""

        if self.cancelled:
            raise BuildInterrupted(self._reason)

    def sleep(self, seconds: float) -> bool:
        """Wait up to *seconds*; return ``True`` if cancelled meanwhile."""

        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._event.wait(seconds)
        return self.cancelled

    def add_cleanup(self, description: str, callback: Callable[[], None]) -> None:
        with self._lock:
            self._cleanups.append((description, callback))

    def run_cleanups(self) -> None:
        """Run registered cleanups once, newest first; failures are only logged."""

        with self._lock:
            cleanups, self._cleanups = self._cleanups, []
        for description, callback in reversed(cleanups):
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                LOG.warning("Cleanup '%s' failed: %s", description, exc)


@contextlib.contextmanager
def signal_context(
    timeout: float | None = None,
    *,
    signals: tuple[int, ...] = (signal.SIGINT, signal.SIGTERM),
) -> Iterator[BuildContext]:
    """Yield a :class:`BuildContext` cancelled by the first SIGINT/SIGTERM.

    A second signal terminates the process immediately.
    """

    context = BuildContext(timeout)
    received: list[int] = []

    def _handler(signum: int, _frame: object) -> None:
        received.append(signum)
        if len(received) > 1:
            LOG.error("Received %s again; exiting immediately", signal.Signals(signum).name)
            os._exit(130)
        LOG.warning("Received %s; cancelling build (repeat to exit immediately)", signal.Signals(signum).name)
        context.cancel(INTERRUPTED)

    previous = {}
    in_main_thread = threading.current_thread() is threading.main_thread()
    if in_main_thread:
        for signum in signals:
            previous[signum] = signal.signal(signum, _handler)
    try:
        yield context
    finally:
        context.run_cleanups()
        for signum, handler in previous.items():
            signal.signal(signum, handler)
