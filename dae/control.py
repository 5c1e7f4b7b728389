"""
Cooperative run control shared by the analyzer and the solvers.

- :class:`CancellationToken`: a thread-safe flag checked at step boundaries,
  after Newton iterations and inside Jacobian column loops.
- :class:`PauseGate`: blocks the stepping loop at a checkpoint until resumed,
  without busy-waiting. Cancelling the associated token wakes it.
- :class:`ProgressEvent` / :class:`AnalysisProgress`: plain records handed
  to progress callbacks.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from .errors import OperationCancelled


class CancellationToken:
    """Thread-safe, one-way cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation was cancelled")

    def register(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` on cancellation (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def unregister(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)


class PauseGate:
    """
    Single pause/resume handle.

    ``wait()`` returns immediately while running. After ``pause()`` it blocks
    on a condition variable until ``resume()`` is called or ``token`` is
    cancelled, in which case :class:`OperationCancelled` is raised.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._paused = False

    @property
    def paused(self) -> bool:
        with self._cond:
            return self._paused

    def pause(self) -> None:
        with self._cond:
            self._paused = True

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._cond.notify_all()

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def wait(self, token: Optional[CancellationToken] = None) -> None:
        registered = False
        try:
            with self._cond:
                while self._paused:
                    if token is not None:
                        if token.cancelled:
                            break
                        if not registered:
                            # the condition's lock is re-entrant
                            token.register(self.wake)
                            registered = True
                            continue
                    self._cond.wait()
        finally:
            if registered:
                token.unregister(self.wake)
        if token is not None:
            token.raise_if_cancelled()


@dataclass(frozen=True)
class ProgressEvent:
    """Emitted by solvers at least once per accepted step."""

    current_time: float
    end_time: float
    status: str
    start_time: float = 0.0

    @property
    def percentage(self) -> float:
        span = self.end_time - self.start_time
        if span <= 0.0:
            return 100.0
        return max(0.0, min(100.0, 100.0 * (self.current_time - self.start_time) / span))


@dataclass(frozen=True)
class AnalysisProgress:
    """Emitted by the analyzer while it works through its stages."""

    stage: str
    percentage: float
    message: str = ""


ProgressCallback = Callable[[ProgressEvent], None]
AnalysisProgressCallback = Callable[[AnalysisProgress], None]
