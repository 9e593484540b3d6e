"""Prometheus metrics for the backend."""

from prometheus_client import Counter, Summary

stage_duration = Summary(
    "analysis_stage_duration_seconds",
    "Time spent in each analysis pipeline stage",
    ["stage"],
)

vectors_encoded = Counter(
    "callstack_vectors_encoded_total",
    "Root calls encoded and written to an arrays container",
)

pipeline_runs = Counter(
    "analysis_pipeline_runs_total",
    "Analysis runs by variant and outcome",
    ["variant", "outcome"],
)

anomalies_detected = Counter(
    "anomalies_detected_total",
    "Call-stack anomalies reported above the threshold",
    ["variant"],
)
