"""Time-indexed result store receiving per-vector anomaly scores."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import pandas as pd

ATTRIBUTE_RESULTS = "Results"
ATTRIBUTE_INFO = "Info"
ATTRIBUTE_MIN = "min"
ATTRIBUTE_MAX = "max"
ATTRIBUTE_THRESHOLD = "threshold"


class ResultSink(Protocol):
    def add_result(self, timestamp: int, duration: int, depth: int, score: float) -> None: ...

    def add_summary(self, min_score: float, max_score: float, threshold: float) -> None: ...


@dataclass(frozen=True)
class ScoreInterval:
    start: int
    end: int
    depth: int
    score: float


@dataclass(frozen=True)
class ResultSummary:
    min: float
    max: float
    threshold: float


class ResultStore:
    """In-memory attribute space with a ``Results`` series and an ``Info`` record.

    Each result is active over ``[timestamp, timestamp + duration)`` and
    cleared afterwards.
    """

    def __init__(self) -> None:
        self._results: List[ScoreInterval] = []
        self._summary: Optional[ResultSummary] = None

    def add_result(self, timestamp: int, duration: int, depth: int, score: float) -> None:
        self._results.append(
            ScoreInterval(
                start=int(timestamp),
                end=int(timestamp) + int(duration),
                depth=int(depth),
                score=float(score),
            ),
        )

    def add_summary(self, min_score: float, max_score: float, threshold: float) -> None:
        self._summary = ResultSummary(float(min_score), float(max_score), float(threshold))

    @property
    def results(self) -> List[ScoreInterval]:
        return list(self._results)

    @property
    def summary(self) -> Optional[ResultSummary]:
        return self._summary

    def __len__(self) -> int:
        return len(self._results)

    def clear(self) -> None:
        self._results.clear()
        self._summary = None

    def score_at(self, timestamp: int) -> Optional[float]:
        """Return the score active at ``timestamp``, the latest written winning."""
        for interval in reversed(self._results):
            if interval.start <= timestamp < interval.end:
                return interval.score
        return None

    def anomalies(self) -> List[ScoreInterval]:
        if self._summary is None:
            return []
        threshold = self._summary.threshold
        return [interval for interval in self._results if interval.score > threshold]

    def to_frame(self) -> pd.DataFrame:
        columns = ["start", "end", "duration", "depth", "score", "anomalous"]
        if not self._results:
            return pd.DataFrame(columns=columns)
        df = pd.DataFrame([asdict(interval) for interval in self._results])
        df["duration"] = df["end"] - df["start"]
        threshold = self._summary.threshold if self._summary else float("inf")
        df["anomalous"] = df["score"] > threshold
        return df[columns]

    def to_dict(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {}
        if self._summary is not None:
            info = {
                ATTRIBUTE_MIN: self._summary.min,
                ATTRIBUTE_MAX: self._summary.max,
                ATTRIBUTE_THRESHOLD: self._summary.threshold,
            }
        return {
            ATTRIBUTE_RESULTS: [asdict(interval) for interval in self._results],
            ATTRIBUTE_INFO: info,
        }

    def write_csv(self, path: Path) -> None:
        self.to_frame().to_csv(path, index=False)
