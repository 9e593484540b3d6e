"""Anomaly detectors consuming an :class:`ArrayStore` one vector at a time."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Union

import numpy as np

from callstack_anomaly.analysis.scoring import (
    ScoreCollector,
    min_max_normalize,
    robust_distances,
    sensitivity_transform,
)
from callstack_anomaly.analysis.training import load_scorer
from callstack_anomaly.common.errors import DecodeFailureError, StorageIOError
from callstack_anomaly.db.arrays_store import ArrayStore, EncodedVector, iter_vectors, read_session
from callstack_anomaly.db.results import ResultSink, ResultSummary

logger = logging.getLogger(__name__)


class VectorScorer(Protocol):
    def score(self, vector: np.ndarray) -> float: ...


@dataclass
class DetectionOutcome:
    detector: str
    vectors: int
    summary: ResultSummary
    anomalies: int = 0
    completed: bool = True
    error: Optional[str] = None


class AnomalyDetector(Protocol):
    name: str

    def apply(self, store: ArrayStore, sink: ResultSink) -> DetectionOutcome: ...


class StatisticalAnomalyDetector:
    """Scores each vector by its robust distance from the dataset center.

    The distance is the root-mean-square robust z-score over all slots. It is
    mapped through ``1 - exp(-d / (N + 1))``: raising ``N`` lowers every score,
    making the detector looser, without changing the ranking of vectors. The
    reported threshold is the normalized score of a vector ``N`` robust
    standard deviations away from the center.
    """

    name = "statistical"

    def __init__(self, n_value: int) -> None:
        if n_value < 0:
            raise ValueError("n_value must be >= 0")
        self.n_value = n_value

    def apply(self, store: ArrayStore, sink: ResultSink) -> DetectionOutcome:
        vectors: List[EncodedVector] = []
        error: Optional[str] = None
        try:
            for vector in iter_vectors(store):
                vectors.append(vector)
        except (DecodeFailureError, StorageIOError) as exc:
            logger.warning("%s failed: %s", type(self).__name__, exc)
            error = str(exc)

        if vectors:
            matrix = np.vstack([vector.values for vector in vectors])
        else:
            matrix = np.zeros((0, store.vector_size))
        raw_scores = sensitivity_transform(robust_distances(matrix), self.n_value)

        collector = ScoreCollector()
        for vector, raw in zip(vectors, raw_scores):
            collector.add(vector, raw)

        lower, upper = collector.raw_range
        raw_threshold = float(sensitivity_transform(np.array([float(self.n_value)]), self.n_value)[0])
        threshold = min_max_normalize(raw_threshold, lower, upper) if upper > lower else 1.0
        summary = collector.flush(sink, threshold)
        return DetectionOutcome(
            detector=self.name,
            vectors=len(collector),
            summary=summary,
            anomalies=collector.anomalies,
            completed=error is None,
            error=error,
        )


class ModelBasedAnomalyDetector:
    """Scores vectors with a previously trained model loaded from a file.

    The model's raw scores are unbounded; they are rescaled with the run's own
    min/max before being reported.

    A vector whose score is NaN or infinite gets no result. It is logged as a
    warning with its timestamp and duration and left out of the min/max range.
    """

    name = "model"

    def __init__(
        self,
        model_path: Union[str, Path],
        anomaly_threshold: float,
        *,
        loader: Callable[[Union[str, Path]], VectorScorer] = load_scorer,
    ) -> None:
        self.model_path = model_path
        self.anomaly_threshold = anomaly_threshold
        self._loader = loader

    def apply(self, store: ArrayStore, sink: ResultSink) -> DetectionOutcome:
        checkpoint = time.perf_counter()
        scorer = self._loader(self.model_path)

        collector = ScoreCollector()
        error: Optional[str] = None
        try:
            for vector in iter_vectors(store):
                collector.add(vector, scorer.score(vector.values))
        except (DecodeFailureError, StorageIOError) as exc:
            logger.warning("%s failed: %s", type(self).__name__, exc)
            error = str(exc)

        summary = collector.flush(sink, self.anomaly_threshold)
        logger.info("Model evaluation of %s vectors took %.2fs", len(collector), time.perf_counter() - checkpoint)
        return DetectionOutcome(
            detector=self.name,
            vectors=len(collector),
            summary=summary,
            anomalies=collector.anomalies,
            completed=error is None,
            error=error,
        )


def run_detector(detector: AnomalyDetector, store: ArrayStore, sink: ResultSink) -> DetectionOutcome:
    """Apply ``detector`` inside a read session that is always closed afterwards."""
    with read_session(store):
        return detector.apply(store, sink)
