"""Score helpers shared by the detectors: robust distances and min/max scaling."""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Tuple

import numpy as np

from callstack_anomaly.db.arrays_store import EncodedVector
from callstack_anomaly.db.results import ResultSink, ResultSummary

logger = logging.getLogger(__name__)

# scales the median absolute deviation to a standard deviation for normal data
MAD_TO_SIGMA = 0.6745


def _ensure_float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(numeric):
        return None
    return numeric


def min_max_normalize(value: float, lower: float, upper: float) -> float:
    if upper <= lower:
        return 0.0
    return min(max((value - lower) / (upper - lower), 0.0), 1.0)


def robust_distances(matrix: np.ndarray) -> np.ndarray:
    """Root-mean-square robust z-score of every row against the column centers.

    Columns are centered on their median and scaled by their MAD; columns with
    a zero MAD fall back to the standard deviation, and constant columns
    contribute nothing.
    """
    rows, columns = matrix.shape
    if rows == 0:
        return np.zeros(0)
    if columns == 0:
        return np.zeros(rows)

    center = np.median(matrix, axis=0)
    mad = np.median(np.abs(matrix - center), axis=0)
    spread = np.where(mad > 0, mad / MAD_TO_SIGMA, matrix.std(axis=0))
    spread = np.where(spread > 0, spread, 1.0)
    zscores = (matrix - center) / spread
    return np.sqrt(np.mean(zscores ** 2, axis=1))


def sensitivity_transform(distances: np.ndarray, n_value: int) -> np.ndarray:
    """Map distances to ``[0, 1)``; a larger ``n_value`` gives lower scores."""
    return 1.0 - np.exp(-np.asarray(distances, dtype=np.float64) / (n_value + 1.0))


class ScoreCollector:
    """Buffers raw scores until the run's range is known, then reports them.

    Scores go to the sink scaled by the min/max of the raw scores seen in the
    same run, so every detector reports values in ``[0, 1]``.
    """

    def __init__(self) -> None:
        self._entries: List[Tuple[int, int, int, float]] = []
        self.skipped = 0
        self.anomalies = 0

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, vector: EncodedVector, raw_score) -> None:
        score = _ensure_float(raw_score)
        if score is None:
            self.skipped += 1
            logger.warning(
                "Dropping non-finite score %r for call at %s (duration %s)",
                raw_score,
                vector.timestamp,
                vector.duration,
            )
            return
        self._entries.append((vector.timestamp, vector.duration, vector.depth, score))

    @property
    def raw_range(self) -> Tuple[float, float]:
        if not self._entries:
            return 0.0, 0.0
        raw = [entry[3] for entry in self._entries]
        return min(raw), max(raw)

    def flush(self, sink: ResultSink, threshold: float) -> ResultSummary:
        lower, upper = self.raw_range
        normalized: List[float] = []
        for timestamp, duration, depth, raw in self._entries:
            score = min_max_normalize(raw, lower, upper)
            normalized.append(score)
            if score > threshold:
                self.anomalies += 1
            sink.add_result(timestamp, duration, depth, score)

        summary = ResultSummary(
            min=min(normalized) if normalized else 0.0,
            max=max(normalized) if normalized else 0.0,
            threshold=float(threshold),
        )
        sink.add_summary(summary.min, summary.max, summary.threshold)
        return summary
