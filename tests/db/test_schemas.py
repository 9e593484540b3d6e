import pytest
from pydantic import ValidationError

from callstack_anomaly.db.schemas import CallNodePayload, TracePayload


def test_address_accepts_hex_and_decimal_strings():
    assert CallNodePayload.model_validate({"address": "0x1f", "start": 0, "duration": 1}).address == 31
    assert CallNodePayload.model_validate({"address": "42", "start": 0, "duration": 1}).address == 42


def test_address_rejects_booleans_and_garbage():
    with pytest.raises(ValidationError):
        CallNodePayload.model_validate({"address": True, "start": 0, "duration": 1})
    with pytest.raises(ValidationError):
        CallNodePayload.model_validate({"address": "main", "start": 0, "duration": 1})


def test_duration_is_derived_from_end():
    payload = CallNodePayload.model_validate({"address": 1, "start": 10, "end": 25})
    assert payload.duration == 15


def test_interval_requires_end_or_duration():
    with pytest.raises(ValidationError):
        CallNodePayload.model_validate({"address": 1, "start": 10})


def test_interval_rejects_inconsistent_end_and_duration():
    with pytest.raises(ValidationError):
        CallNodePayload.model_validate({"address": 1, "start": 10, "end": 20, "duration": 3})


def test_trace_payload_keeps_nested_children_and_extras():
    trace = TracePayload.model_validate(
        {
            "name": "demo",
            "host": "node-1",
            "calls": [{"address": 1, "start": 0, "duration": 9, "children": [{"address": 2, "start": 1, "duration": 2}]}],
        },
    )
    assert trace.name == "demo"
    assert trace.calls[0].children[0].address == 2
