"""Thread-safe progress tracking for analysis runs."""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

ProgressListener = Callable[[Dict[str, Any]], None]
ProgressReporter = Callable[[float, str], None]


class ProgressTracker:
    """Holds the percentage, message and outcome of the current run.

    Listeners receive a copy of the state whenever the percentage moves by at
    least one point, the message changes, or the run ends.
    """

    def __init__(self, name: str = "task") -> None:
        self.name = name
        self._lock = Lock()
        self._listeners: List[ProgressListener] = []
        self._status = "idle"
        self._progress = 0.0
        self._message = "Idle"
        self._started_at: Optional[float] = None
        self._finished_at: Optional[float] = None
        self._last_sent: Optional[tuple] = None

    def subscribe(self, listener: ProgressListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def start(self, message: str) -> None:
        with self._lock:
            self._status = "running"
            self._progress = 0.0
            self._message = message
            self._started_at = time.time()
            self._finished_at = None
            self._last_sent = None
            self._publish()

    def update(self, progress: float, message: Optional[str] = None) -> None:
        with self._lock:
            if self._status == "idle":
                self._status = "running"
                self._started_at = time.time()
            self._progress = max(0.0, min(100.0, float(progress)))
            if message is not None:
                self._message = message
            self._publish()

    def complete(self, message: str = "Completed") -> None:
        self._finish("completed", message, progress=100.0)

    def cancel(self, message: str = "Cancelled") -> None:
        self._finish("cancelled", message)

    def fail(self, message: str) -> None:
        self._finish("failed", message)

    def _finish(self, status: str, message: str, progress: Optional[float] = None) -> None:
        with self._lock:
            self._status = status
            self._message = message
            if progress is not None:
                self._progress = progress
            self._finished_at = time.time()
            self._publish(force=True)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return self._snapshot()

    def _snapshot(self) -> Dict[str, Any]:
        elapsed = None
        if self._started_at is not None:
            elapsed = round((self._finished_at or time.time()) - self._started_at, 3)
        return {
            "name": self.name,
            "status": self._status,
            "progress": self._progress,
            "message": self._message,
            "elapsed_seconds": elapsed,
        }

    def _publish(self, force: bool = False) -> None:
        if not force and self._last_sent is not None:
            last_progress, last_message = self._last_sent
            if abs(self._progress - last_progress) < 1.0 and self._message == last_message:
                return
        self._last_sent = (self._progress, self._message)
        snapshot = self._snapshot()
        for listener in list(self._listeners):
            try:
                listener(dict(snapshot))
            except Exception:
                logger.debug("Progress listener %r failed", listener, exc_info=True)


class WeightedProgress:
    """Converts per-stage work units into a 0-100 percentage.

    Each stage is given a weight proportional to its expected cost. Calling
    :meth:`worked` marks a whole stage as done; skipped stages are marked done
    as well so the total always reaches 100.
    """

    def __init__(self, weights: Mapping[str, int], reporter: Optional[ProgressReporter] = None) -> None:
        self._weights = dict(weights)
        self._total = max(sum(self._weights.values()), 1)
        self._done = 0
        self._reporter = reporter

    @property
    def percent(self) -> float:
        return 100.0 * self._done / self._total

    def report(self, message: str) -> None:
        if self._reporter:
            self._reporter(self.percent, message)

    def worked(self, stage: str, message: Optional[str] = None) -> None:
        self._done = min(self._done + self._weights.get(stage, 0), self._total)
        if message is not None:
            self.report(message)
