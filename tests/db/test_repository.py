import json

from callstack_anomaly.db.repository import TraceRepository, load_payload_from_file, trace_key


def test_load_trace_from_file(tmp_path, isolated_settings):
    path = tmp_path / "checkout-service.json"
    path.write_text(
        json.dumps(
            {
                "calls": [
                    {
                        "address": "0x10",
                        "start": 0,
                        "duration": 100,
                        "children": [
                            {
                                "address": "0x20",
                                "start": 5,
                                "duration": 40,
                                "children": [{"address": "0x30", "start": 6, "duration": 10}],
                            },
                        ],
                    },
                ],
            },
        ),
        encoding="utf-8",
    )
    repository = TraceRepository(isolated_settings)
    trace = repository.load_trace(load_payload_from_file(path))

    assert trace.name == "checkout-service"
    assert trace.node_count == 3
    assert [node.address for node in repository.root_calls(trace, 2)] == [0x20]
    assert [node.address for node in repository.root_calls(trace)] == [0x30]


def test_array_store_lives_in_trace_directory(isolated_settings):
    repository = TraceRepository(isolated_settings)
    store = repository.array_store("My Trace / 2024")
    assert store.directory == isolated_settings.supplementary_dir / "my-trace-2024"
    assert store.arrays_path.name == "callstack-anomaly.zip.dat"
    assert store.metadata_path.name == "callstack-anomaly.metadata.dat"


def test_trace_key_never_empty():
    assert trace_key("   ") == "trace"
