from callstack_anomaly.common.progress import ProgressTracker, WeightedProgress


def test_weighted_progress_reaches_one_hundred():
    reports = []
    progress = WeightedProgress(
        {"shape": 1, "arrays": 2, "analysis": 3, "summary": 1},
        lambda pct, msg: reports.append((round(pct, 2), msg)),
    )
    progress.report("start")
    progress.worked("shape")
    progress.worked("arrays", "arrays done")
    progress.worked("analysis", "analysis done")
    progress.worked("summary", "finished")
    progress.worked("unknown", "ignored stage")

    assert reports == [
        (0.0, "start"),
        (42.86, "arrays done"),
        (85.71, "analysis done"),
        (100.0, "finished"),
        (100.0, "ignored stage"),
    ]


def test_tracker_notifies_listeners_and_survives_failures():
    tracker = ProgressTracker("demo")
    seen = []

    def broken(state):
        raise RuntimeError("listener bug")

    tracker.subscribe(broken)
    tracker.subscribe(seen.append)
    tracker.start("go")
    tracker.update(50.0, "halfway")
    tracker.cancel()

    assert [state["status"] for state in seen] == ["running", "running", "cancelled"]
    assert tracker.status()["progress"] == 50.0
