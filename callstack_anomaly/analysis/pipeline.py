"""High-level orchestration of one call-stack anomaly analysis run."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from threading import Event
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from callstack_anomaly.analysis.detectors import (
    DetectionOutcome,
    ModelBasedAnomalyDetector,
    StatisticalAnomalyDetector,
    run_detector,
)
from callstack_anomaly.analysis.encoder import VectorEncoder
from callstack_anomaly.analysis.shape import ShapeLayout, collect_shape
from callstack_anomaly.analysis.training import TrainingOutcome, load_scorer, train_autoencoder
from callstack_anomaly.analysis.variants import (
    AnalysisVariant,
    ModelApplyVariant,
    ModelTrainVariant,
    StatisticalVariant,
)
from callstack_anomaly.common.errors import (
    AnalysisCancelled,
    DecodeFailureError,
    ShapeMismatchError,
    StorageIOError,
)
from callstack_anomaly.common.progress import ProgressReporter, WeightedProgress
from callstack_anomaly.db.arrays_store import ArrayStore, EncodingMode, read_session
from callstack_anomaly.db.call_tree import CallNode
from callstack_anomaly.db.results import ResultSink, ResultSummary

logger = logging.getLogger(__name__)

RootCallSource = Union[Sequence[CallNode], Callable[[], Sequence[CallNode]]]


class PipelineState(str, Enum):
    IDLE = "idle"
    SHAPE_COLLECTING = "shape_collecting"
    ENCODING = "encoding"
    DETECTOR_RUNNING = "detector_running"
    SUMMARIZING = "summarizing"
    DONE = "done"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({PipelineState.DONE, PipelineState.ABORTED})

_TRANSITIONS = {
    PipelineState.IDLE: {PipelineState.SHAPE_COLLECTING, PipelineState.DETECTOR_RUNNING},
    PipelineState.SHAPE_COLLECTING: {PipelineState.ENCODING},
    PipelineState.ENCODING: {PipelineState.DETECTOR_RUNNING},
    PipelineState.DETECTOR_RUNNING: {PipelineState.SUMMARIZING},
    PipelineState.SUMMARIZING: {PipelineState.DONE},
}

# relative cost of each stage, used to turn finished stages into a percentage
WORK_WEIGHTS = {"shape": 1, "arrays": 2, "analysis": 3, "summary": 1}


@dataclass
class AnalysisReport:
    state: PipelineState
    variant: str
    reused_arrays: bool = False
    vectors: int = 0
    results: int = 0
    anomalies: int = 0
    summary: Optional[ResultSummary] = None
    cancelled: bool = False
    error: Optional[str] = None
    model_path: Optional[str] = None
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.DONE

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["timings"] = {stage: round(seconds, 4) for stage, seconds in self.timings.items()}
        return data


class AnalysisPipeline:
    """Runs shape collection, encoding, detection and summary for one container.

    A pipeline instance owns its :class:`ArrayStore` for a single run. When the
    container already exists it is reused and the run starts at detection.
    Cancellation is checked between stages and between encoded root calls; a
    container written partially by this run is deleted when the run aborts.
    """

    def __init__(
        self,
        store: ArrayStore,
        sink: ResultSink,
        variant: AnalysisVariant,
        *,
        encoding_mode: EncodingMode = EncodingMode.BOXED,
        progress_callback: Optional[ProgressReporter] = None,
        cancel_event: Optional[Event] = None,
        model_loader: Callable = load_scorer,
    ) -> None:
        self.store = store
        self.sink = sink
        self.variant = variant
        self.encoding_mode = EncodingMode(encoding_mode)
        self.cancel_event = cancel_event or Event()
        self._progress = WeightedProgress(WORK_WEIGHTS, progress_callback)
        self._model_loader = model_loader
        self._state = PipelineState.IDLE
        self.history: List[PipelineState] = [PipelineState.IDLE]
        self._writing = False

    @property
    def state(self) -> PipelineState:
        return self._state

    def cancel(self) -> None:
        self.cancel_event.set()

    def _transition(self, target: PipelineState) -> None:
        if target is PipelineState.ABORTED:
            allowed = self._state not in TERMINAL_STATES
        else:
            allowed = target in _TRANSITIONS.get(self._state, set())
        if not allowed:
            raise RuntimeError(f"Invalid pipeline transition {self._state.value} -> {target.value}")
        logger.info("Pipeline state %s -> %s", self._state.value, target.value)
        self._state = target
        self.history.append(target)

    def _checkpoint(self) -> None:
        if self.cancel_event.is_set():
            raise AnalysisCancelled(f"Analysis cancelled during {self._state.value}")

    def run(self, root_calls: RootCallSource) -> AnalysisReport:
        """Run the pipeline to completion or abort.

        ``root_calls`` may be a callable; it is only invoked when the arrays
        have to be generated.
        """
        if self._state is not PipelineState.IDLE:
            raise RuntimeError("A pipeline instance runs only once")

        report = AnalysisReport(state=self._state, variant=self.variant.name)
        self._progress.report("Starting analysis")
        try:
            self._checkpoint()
            if self.store.exists():
                report.reused_arrays = True
                logger.info("Reusing existing arrays at %s", self.store.arrays_path)
                self._progress.worked("shape")
                self._progress.worked("arrays", "Reusing existing arrays")
            else:
                roots = list(root_calls() if callable(root_calls) else root_calls)
                layout = self._timed(report, "shape", self._collect_shape, roots)
                self._progress.worked("shape", "Computing arrays")
                self._checkpoint()
                self._timed(report, "arrays", self._encode_and_write, roots, layout)
                self._progress.worked("arrays", "Arrays computed")

            self._checkpoint()
            self._transition(PipelineState.DETECTOR_RUNNING)
            outcome = self._timed(report, "analysis", self._run_variant)
            self._progress.worked("analysis", "Summarizing results")

            self._checkpoint()
            self._transition(PipelineState.SUMMARIZING)
            self._timed(report, "summary", self._summarize, report, outcome)
            self._transition(PipelineState.DONE)
            self._progress.worked("summary", "Analysis complete")
        except AnalysisCancelled as exc:
            logger.info("%s", exc)
            self._abort()
            report.cancelled = True
        except ShapeMismatchError as exc:
            logger.error("Arrays do not fit the computed layout: %s", exc)
            self._abort(dispose=True)
            report.state = self._state
            report.error = str(exc)
            raise
        except StorageIOError as exc:
            logger.error("Analysis stage %s failed: %s", self._state.value, exc)
            self._abort()
            report.error = str(exc)
        except DecodeFailureError as exc:
            # an unreadable metadata record means the cached container is unusable
            logger.error("Arrays container %s is unreadable: %s", self.store.arrays_path, exc)
            self._abort(dispose=True)
            report.error = str(exc)
        except Exception:
            self._abort()
            raise

        report.state = self._state
        return report

    def _timed(self, report: AnalysisReport, stage: str, func: Callable, *args):
        checkpoint = time.perf_counter()
        try:
            return func(*args)
        finally:
            elapsed = time.perf_counter() - checkpoint
            report.timings[stage] = elapsed
            logger.info("Stage %s took %.3fs", stage, elapsed)

    def _abort(self, *, dispose: bool = False) -> None:
        if dispose or self._writing:
            logger.info("Deleting incomplete arrays at %s", self.store.arrays_path)
            self.store.dispose()
        else:
            self.store.close_read()
        self._writing = False
        if self._state not in TERMINAL_STATES:
            self._transition(PipelineState.ABORTED)

    def _collect_shape(self, roots: Sequence[CallNode]) -> ShapeLayout:
        self._transition(PipelineState.SHAPE_COLLECTING)
        layout = collect_shape(roots)
        logger.info(
            "Collected layout over %s root calls: depth %s, %s addresses, vector size %s",
            len(roots),
            layout.max_depth,
            len(layout.max_occurrences),
            layout.vector_size,
        )
        return layout

    def _encode_and_write(self, roots: Sequence[CallNode], layout: ShapeLayout) -> None:
        self._transition(PipelineState.ENCODING)
        encoder = VectorEncoder(layout)
        self._writing = True
        self.store.init_write(layout.vector_size, self.encoding_mode)
        for root in roots:
            self._checkpoint()
            if not self.store.write(encoder.encode(root)):
                raise StorageIOError(f"Writing arrays to {self.store.arrays_path} failed")
        self.store.close_write()
        self._writing = False

    def _run_variant(self) -> Union[DetectionOutcome, TrainingOutcome]:
        variant = self.variant
        if isinstance(variant, ModelTrainVariant):
            with read_session(self.store):
                return train_autoencoder(
                    self.store,
                    variant.model_path,
                    learning_rate=variant.learning_rate,
                    epochs=variant.epochs,
                    batch_size=variant.batch_size,
                )
        if isinstance(variant, StatisticalVariant):
            detector = StatisticalAnomalyDetector(variant.n_value)
        elif isinstance(variant, ModelApplyVariant):
            detector = ModelBasedAnomalyDetector(
                variant.model_path,
                variant.anomaly_threshold,
                loader=self._model_loader,
            )
        else:
            raise TypeError(f"Unsupported analysis variant {variant!r}")
        return run_detector(detector, self.store, self.sink)

    def _summarize(self, report: AnalysisReport, outcome: Union[DetectionOutcome, TrainingOutcome]) -> None:
        report.vectors = outcome.vectors
        report.error = outcome.error
        if isinstance(outcome, TrainingOutcome):
            report.model_path = str(outcome.model_path) if outcome.model_path else None
            logger.info("Training finished after %s epochs over %s vectors", outcome.epochs, outcome.vectors)
            return
        report.results = outcome.vectors
        report.anomalies = outcome.anomalies
        report.summary = outcome.summary
        logger.info(
            "Detector %s scored %s vectors (%s anomalies, threshold %.3f)",
            outcome.detector,
            outcome.vectors,
            outcome.anomalies,
            outcome.summary.threshold,
        )


def run_analysis(
    store: ArrayStore,
    sink: ResultSink,
    variant: AnalysisVariant,
    root_calls: RootCallSource,
    **options: Any,
) -> AnalysisReport:
    return AnalysisPipeline(store, sink, variant, **options).run(root_calls)
