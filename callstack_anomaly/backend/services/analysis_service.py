"""Domain service orchestrating trace loading and anomaly analysis runs."""

from __future__ import annotations

import logging
import sys
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, Optional

from callstack_anomaly.analysis.pipeline import AnalysisPipeline, AnalysisReport, PipelineState
from callstack_anomaly.analysis.training import load_scorer
from callstack_anomaly.analysis.variants import build_variant
from callstack_anomaly.backend import metrics
from callstack_anomaly.backend.services.random_traces import generate_random_trace
from callstack_anomaly.backend.services.sample_data import SAMPLE_TRACE
from callstack_anomaly.common.errors import CallStackAnomalyError
from callstack_anomaly.common.progress import ProgressTracker
from callstack_anomaly.common.settings import TRACE_SOURCES, get_settings
from callstack_anomaly.db.arrays_store import ArrayStore
from callstack_anomaly.db.repository import TraceData, TraceRepository
from callstack_anomaly.db.results import ResultStore

logger = logging.getLogger(__name__)

# the random source is seeded so its cached container matches the trace on every run
RANDOM_TRACE_SEED = 2024


class AnalysisService:
    def __init__(
        self,
        repository: Optional[TraceRepository] = None,
        *,
        model_loader: Callable = load_scorer,
    ) -> None:
        self.settings = get_settings()
        self.repository = repository or TraceRepository(self.settings)
        self._model_loader = model_loader
        self._lock = Lock()
        self._tracker = ProgressTracker("call-stack analysis")
        self._tracker.subscribe(self._log_progress_update)
        self._cancel_event = Event()
        self._background_thread: Optional[Thread] = None
        self._foreground_running = False
        self._last_report: Optional[AnalysisReport] = None
        self._last_results: Optional[ResultStore] = None
        self._last_trace: Optional[str] = None

    @staticmethod
    def _normalize_source(source: Optional[str]) -> Optional[str]:
        if not source:
            return None
        normalized = source.strip().lower()
        return normalized if normalized in TRACE_SOURCES else None

    def _log_progress_update(self, state: Dict[str, Any]) -> None:
        progress = int(state.get("progress", 0))
        message = str(state.get("message", ""))
        status = str(state.get("status", "running"))
        bar_length = 20
        filled = max(0, min(bar_length, progress * bar_length // 100))
        bar = "#" * filled + "-" * (bar_length - filled)
        line = f"[analysis] {progress:3d}% [{bar}] {message} ({status})"
        if logger.isEnabledFor(logging.INFO):
            logger.info("%s", line)
        else:
            print(line, file=sys.stderr)

    def load_trace(
        self,
        payload: Optional[Dict[str, Any]] = None,
        *,
        source: Optional[str] = None,
    ) -> TraceData:
        if payload is not None:
            return self.repository.load_trace(payload)
        mode = self._normalize_source(source) or self.settings.trace_source
        if mode == "random":
            return self.repository.load_trace(generate_random_trace(seed=RANDOM_TRACE_SEED))
        return self.repository.load_trace(SAMPLE_TRACE)

    def array_store(
        self,
        payload: Optional[Dict[str, Any]] = None,
        *,
        source: Optional[str] = None,
    ) -> ArrayStore:
        if payload is not None:
            name = self.repository.validate_payload(payload).name
        else:
            name = self.load_trace(source=source).name
        return self.repository.array_store(name)

    def is_running(self) -> bool:
        thread = self._background_thread
        return self._foreground_running or bool(thread and thread.is_alive())

    def run_analysis(
        self,
        payload: Optional[Dict[str, Any]] = None,
        *,
        source: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
        progress_callback: Optional[Callable[[float, str], None]] = None,
    ) -> AnalysisReport:
        """Run one analysis synchronously and remember its report and results.

        Raises ``RuntimeError`` while another run owns the service.
        """
        with self._lock:
            if self.is_running():
                raise RuntimeError("An analysis is already running")
            self._foreground_running = True
            self._cancel_event.clear()
        try:
            return self._execute(payload, source=source, overrides=overrides, progress_callback=progress_callback)
        finally:
            with self._lock:
                self._foreground_running = False

    def _execute(
        self,
        payload: Optional[Dict[str, Any]] = None,
        *,
        source: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
        progress_callback: Optional[Callable[[float, str], None]] = None,
    ) -> AnalysisReport:
        variant = build_variant(self.settings, **(overrides or {}))
        trace = self.load_trace(payload, source=source)
        store = self.repository.array_store(trace.name)
        sink = ResultStore()

        def tracker_progress(progress: float, message: str) -> None:
            self._tracker.update(progress, message)
            if progress_callback:
                progress_callback(progress, message)

        pipeline = AnalysisPipeline(
            store,
            sink,
            variant,
            encoding_mode=self.settings.encoding_mode,
            progress_callback=tracker_progress,
            cancel_event=self._cancel_event,
            model_loader=self._model_loader,
        )
        self._tracker.start(f"Analyzing {trace.name} ({variant.name})")
        try:
            report = pipeline.run(lambda: self.repository.root_calls(trace))
        except Exception as exc:
            self._tracker.fail(f"Analysis failed: {exc}")
            metrics.pipeline_runs.labels(variant=variant.name, outcome="failed").inc()
            raise

        self._record(report, store)
        with self._lock:
            self._last_report = report
            self._last_results = sink
            self._last_trace = trace.name

        if report.cancelled:
            self._tracker.cancel("Analysis cancelled")
        elif report.state is PipelineState.ABORTED:
            self._tracker.fail(f"Analysis aborted: {report.error}")
        else:
            self._tracker.complete(f"{report.results} results, {report.anomalies} anomalies")
        return report

    def _record(self, report: AnalysisReport, store: ArrayStore) -> None:
        for stage, seconds in report.timings.items():
            metrics.stage_duration.labels(stage=stage).observe(seconds)
        if not report.reused_arrays and report.state is not PipelineState.ABORTED:
            metrics.vectors_encoded.inc(store.written)
        if report.cancelled:
            outcome = "cancelled"
        elif report.state is PipelineState.DONE:
            outcome = "done"
        else:
            outcome = "aborted"
        metrics.pipeline_runs.labels(variant=report.variant, outcome=outcome).inc()
        if report.anomalies:
            metrics.anomalies_detected.labels(variant=report.variant).inc(report.anomalies)

    def start_background_analysis(
        self,
        payload: Optional[Dict[str, Any]] = None,
        *,
        source: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Start a run in a background thread; ``False`` if one is already running.

        The variant is validated before the thread starts so configuration
        errors reach the caller.
        """
        with self._lock:
            if self.is_running():
                return False
            build_variant(self.settings, **(overrides or {}))
            if payload is not None:
                self.repository.validate_payload(payload)
            self._cancel_event.clear()
            self._background_thread = Thread(
                target=self._run_background,
                kwargs={"payload": payload, "source": source, "overrides": overrides},
                name="callstack-analysis",
                daemon=True,
            )
            self._background_thread.start()
        return True

    def _run_background(self, **kwargs: Any) -> None:
        try:
            self._execute(**kwargs)
        except (CallStackAnomalyError, ValueError) as exc:
            self._tracker.fail(f"Analysis failed: {exc}")
            logger.error("Background analysis failed: %s", exc)
        except Exception as exc:  # pragma: no cover - unexpected failures
            self._tracker.fail(f"Analysis failed: {exc}")
            logger.exception("Unexpected error during background analysis: %s", exc)

    def wait(self, timeout: Optional[float] = None) -> bool:
        thread = self._background_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def cancel(self) -> bool:
        if not self.is_running():
            return False
        logger.info("Cancellation requested for the running analysis")
        self._cancel_event.set()
        return True

    def get_status(self) -> Dict[str, Any]:
        status = self._tracker.status()
        with self._lock:
            report = self._last_report
        status["running"] = self.is_running()
        status["report"] = report.as_dict() if report else None
        return status

    def get_results(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            report, results, trace = self._last_report, self._last_results, self._last_trace
        if report is None or results is None:
            return None
        data = results.to_dict()
        data["trace"] = trace
        data["report"] = report.as_dict()
        data["anomalies"] = [
            {"start": interval.start, "end": interval.end, "depth": interval.depth, "score": interval.score}
            for interval in results.anomalies()
        ]
        return data

    def last_results(self) -> Optional[ResultStore]:
        with self._lock:
            return self._last_results

    def describe_arrays(
        self,
        payload: Optional[Dict[str, Any]] = None,
        *,
        source: Optional[str] = None,
    ) -> Dict[str, Any]:
        store = self.array_store(payload, source=source)
        info: Dict[str, Any] = {
            "arrays_path": str(store.arrays_path),
            "metadata_path": str(store.metadata_path),
            "exists": store.exists(),
        }
        if info["exists"]:
            metadata = store.read_metadata()
            info.update(
                {
                    "count": metadata.count,
                    "vector_size": metadata.vector_size,
                    "encoding_mode": metadata.encoding_mode.value,
                },
            )
        return info

    def clear_arrays(
        self,
        payload: Optional[Dict[str, Any]] = None,
        *,
        source: Optional[str] = None,
    ) -> bool:
        """Delete the cached container so the next run regenerates it."""
        if self.is_running():
            raise RuntimeError("Cannot delete arrays while an analysis is running")
        store = self.array_store(payload, source=source)
        existed = store.exists()
        store.dispose()
        logger.info("Deleted arrays at %s", store.arrays_path)
        return existed
