import numpy as np
import pytest

from callstack_anomaly.common.settings import get_settings
from callstack_anomaly.db.arrays_store import ArrayStore, EncodedVector
from callstack_anomaly.db.call_tree import build_call_tree
from callstack_anomaly.db.schemas import CallNodePayload


@pytest.fixture
def isolated_settings(monkeypatch, tmp_path):
    monkeypatch.setenv("CSA_SUPPLEMENTARY_DIR", str(tmp_path / "supplementary"))
    monkeypatch.setenv("CSA_TRACE_SOURCE", "sample")
    monkeypatch.setenv("LOG_JSON", "false")
    for name in ("CSA_ANALYSIS_VARIANT", "CSA_MODEL_FILE", "CSA_TARGET_DEPTH", "CSA_N_VALUE", "ADMIN_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def make_tree():
    def factory(data, depth=1):
        return build_call_tree(CallNodePayload.model_validate(data), depth=depth)

    return factory


@pytest.fixture
def scenario_roots(make_tree):
    """Two root calls, each with one child at address 7."""
    first = make_tree(
        {"address": 1, "start": 100, "duration": 50, "children": [{"address": 7, "start": 110, "duration": 5}]},
    )
    second = make_tree(
        {"address": 1, "start": 200, "duration": 50, "children": [{"address": 7, "start": 230, "duration": 8}]},
    )
    return [first, second]


@pytest.fixture
def request_roots(make_tree):
    """Root calls shaped like request handlers; the fourth one is slow."""

    def handler(start, query_durations):
        children = [{"address": 0x30, "start": start + 10, "duration": 50}]
        cursor = start + 70
        for duration in query_durations:
            children.append(
                {
                    "address": 0x31,
                    "start": cursor,
                    "duration": duration,
                    "children": [{"address": 0x40, "start": cursor + 10, "duration": duration - 40}],
                },
            )
            cursor += duration + 10
        children.append({"address": 0x32, "start": cursor, "duration": 100})
        return make_tree({"address": 0x20, "start": start, "end": cursor + 110, "children": children}, depth=3)

    durations = [[200], [210], [190], [600, 100], [205], [195], [200], [185]]
    return [handler(1000 * (index + 1), values) for index, values in enumerate(durations)]


@pytest.fixture
def store(tmp_path):
    return ArrayStore(tmp_path / "arrays")


@pytest.fixture
def make_vectors():
    def factory(count, size=3):
        return [
            EncodedVector(
                values=np.arange(size, dtype=np.float64) + index,
                timestamp=100 * index,
                duration=10 + index,
                depth=3,
            )
            for index in range(count)
        ]

    return factory
