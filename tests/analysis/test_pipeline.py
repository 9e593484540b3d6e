import pytest

from callstack_anomaly.analysis import pipeline as pipeline_module
from callstack_anomaly.analysis.pipeline import AnalysisPipeline, PipelineState, run_analysis
from callstack_anomaly.analysis.shape import ShapeLayout
from callstack_anomaly.analysis.variants import ModelApplyVariant, ModelTrainVariant, StatisticalVariant
from callstack_anomaly.common.errors import MissingExternalModelError, ShapeMismatchError
from callstack_anomaly.db.arrays_store import ArrayStore, EncodingMode
from callstack_anomaly.db.results import ResultStore


def _fail_if_called():
    raise AssertionError("root calls should not be needed when arrays are reused")


def test_full_statistical_run(store, request_roots):
    sink = ResultStore()
    progress = []
    pipeline = AnalysisPipeline(
        store,
        sink,
        StatisticalVariant(n_value=1),
        progress_callback=lambda percent, message: progress.append(percent),
    )
    report = pipeline.run(request_roots)

    assert report.state is PipelineState.DONE
    assert pipeline.history == [
        PipelineState.IDLE,
        PipelineState.SHAPE_COLLECTING,
        PipelineState.ENCODING,
        PipelineState.DETECTOR_RUNNING,
        PipelineState.SUMMARIZING,
        PipelineState.DONE,
    ]
    assert not report.reused_arrays
    assert report.vectors == report.results == len(sink) == len(request_roots)
    assert report.anomalies >= 1
    assert report.summary == sink.summary
    assert set(report.timings) == {"shape", "arrays", "analysis", "summary"}
    assert store.exists()
    assert progress == sorted(progress)
    assert progress[-1] == 100.0


def test_existing_arrays_are_reused(store, request_roots):
    run_analysis(store, ResultStore(), StatisticalVariant(), request_roots)

    fresh = ArrayStore(store.directory)
    pipeline = AnalysisPipeline(fresh, ResultStore(), StatisticalVariant())
    report = pipeline.run(_fail_if_called)

    assert report.state is PipelineState.DONE
    assert report.reused_arrays
    assert report.vectors == len(request_roots)
    assert PipelineState.SHAPE_COLLECTING not in pipeline.history


def test_primitive_encoding_gives_the_same_scores(tmp_path, request_roots):
    boxed, primitive = ResultStore(), ResultStore()
    run_analysis(ArrayStore(tmp_path / "boxed"), boxed, StatisticalVariant(), request_roots)
    run_analysis(
        ArrayStore(tmp_path / "primitive"),
        primitive,
        StatisticalVariant(),
        request_roots,
        encoding_mode=EncodingMode.PRIMITIVE,
    )
    assert boxed.results == primitive.results
    assert boxed.summary == primitive.summary


def test_cancel_before_start_aborts_cleanly(store, request_roots):
    pipeline = AnalysisPipeline(store, ResultStore(), StatisticalVariant())
    pipeline.cancel()
    report = pipeline.run(request_roots)

    assert report.state is PipelineState.ABORTED
    assert report.cancelled
    assert pipeline.history == [PipelineState.IDLE, PipelineState.ABORTED]
    assert not store.arrays_path.exists()


def test_cancel_while_writing_deletes_partial_arrays(tmp_path, request_roots):
    class CancellingStore(ArrayStore):
        pipeline = None

        def write(self, vector):
            written = super().write(vector)
            self.pipeline.cancel()
            return written

    store = CancellingStore(tmp_path / "arrays")
    sink = ResultStore()
    pipeline = AnalysisPipeline(store, sink, StatisticalVariant())
    store.pipeline = pipeline
    report = pipeline.run(request_roots)

    assert report.cancelled
    assert report.state is PipelineState.ABORTED
    assert not store.arrays_path.exists()
    assert not store.metadata_path.exists()
    assert store.session is None
    assert len(sink) == 0


def test_write_failure_mid_stream_aborts_and_deletes_partial_arrays(tmp_path, request_roots):
    class FailingStore(ArrayStore):
        attempts = 0

        def write(self, vector):
            self.attempts += 1
            if self.attempts >= 3:
                return False
            return super().write(vector)

    store = FailingStore(tmp_path / "arrays")
    sink = ResultStore()
    pipeline = AnalysisPipeline(store, sink, StatisticalVariant())
    report = pipeline.run(request_roots)

    assert report.state is PipelineState.ABORTED
    assert not report.cancelled
    assert report.error
    assert pipeline.history[-2:] == [PipelineState.ENCODING, PipelineState.ABORTED]
    assert store.attempts == 3
    assert not store.arrays_path.exists()
    assert not store.metadata_path.exists()
    assert store.session is None
    assert len(sink) == 0


def test_cancel_after_writing_keeps_complete_arrays(store, request_roots):
    pipeline = None

    def cancel_when_written(percent, message):
        if message == "Arrays computed":
            pipeline.cancel()

    pipeline = AnalysisPipeline(store, ResultStore(), StatisticalVariant(), progress_callback=cancel_when_written)
    report = pipeline.run(request_roots)

    assert report.cancelled
    assert store.exists()


def test_shape_mismatch_aborts_and_cleans_up(monkeypatch, store, request_roots):
    monkeypatch.setattr(
        pipeline_module,
        "collect_shape",
        lambda roots: ShapeLayout(max_depth=1, max_occurrences={0x30: 1}),
    )
    pipeline = AnalysisPipeline(store, ResultStore(), StatisticalVariant())
    with pytest.raises(ShapeMismatchError):
        pipeline.run(request_roots)

    assert pipeline.state is PipelineState.ABORTED
    assert not store.arrays_path.exists()
    assert not store.metadata_path.exists()


def test_unopenable_container_aborts_the_stage(tmp_path, request_roots):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = ArrayStore(blocker / "nested")

    report = AnalysisPipeline(store, ResultStore(), StatisticalVariant()).run(request_roots)

    assert report.state is PipelineState.ABORTED
    assert not report.cancelled
    assert report.error


def test_missing_model_aborts_the_run(store, request_roots, tmp_path):
    def loader(path):
        raise MissingExternalModelError(f"Model file {path} does not exist")

    variant = ModelApplyVariant(model_path=tmp_path / "absent.pkl", anomaly_threshold=0.1)
    pipeline = AnalysisPipeline(store, ResultStore(), variant, model_loader=loader)
    with pytest.raises(MissingExternalModelError):
        pipeline.run(request_roots)

    assert pipeline.state is PipelineState.ABORTED
    assert store.session is None


def test_train_then_apply_model(store, request_roots, tmp_path):
    model_path = tmp_path / "autoencoder.pkl"
    train_sink = ResultStore()
    trained = run_analysis(
        store,
        train_sink,
        ModelTrainVariant(model_path=model_path, learning_rate=0.01, epochs=2, batch_size=4),
        request_roots,
    )
    assert trained.state is PipelineState.DONE
    assert trained.model_path == str(model_path)
    assert len(train_sink) == 0
    assert model_path.is_file()

    sink = ResultStore()
    applied = run_analysis(
        ArrayStore(store.directory),
        sink,
        ModelApplyVariant(model_path=model_path, anomaly_threshold=0.5),
        request_roots,
    )
    assert applied.state is PipelineState.DONE
    assert applied.reused_arrays
    assert len(sink) == len(request_roots)
    assert sink.summary.max == pytest.approx(1.0)


def test_report_serializes_to_plain_data(store, request_roots):
    report = run_analysis(store, ResultStore(), StatisticalVariant(), request_roots)
    data = report.as_dict()
    assert data["state"] == "done"
    assert data["variant"] == "statistical"
    assert set(data["summary"]) == {"min", "max", "threshold"}


def test_pipeline_runs_once(store, request_roots):
    pipeline = AnalysisPipeline(store, ResultStore(), StatisticalVariant())
    pipeline.run(request_roots)
    with pytest.raises(RuntimeError):
        pipeline.run(request_roots)
