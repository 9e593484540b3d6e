import json
from pathlib import Path

from callstack_anomaly.backend import cli
from callstack_anomaly.backend.services.sample_data import SAMPLE_TRACE


def test_cli_run_prints_report(isolated_settings, capsys):
    exit_code = cli.main(["run"])
    captured = capsys.readouterr()

    assert exit_code == 0
    data = json.loads(captured.out)
    assert data["state"] == "done"
    assert data["variant"] == "statistical"
    assert data["results"] == 7


def test_cli_run_writes_results_csv(isolated_settings, tmp_path: Path, capsys):
    csv_path = tmp_path / "scores.csv"
    exit_code = cli.main(["run", "--n-value", "2", "--results-csv", str(csv_path)])
    captured = capsys.readouterr()

    assert exit_code == 0
    assert json.loads(captured.out.splitlines()[0])["state"] == "done"
    lines = csv_path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "start,end,duration,depth,score,anomalous"
    assert len(lines) == 8


def test_cli_arrays_and_clear(isolated_settings, capsys):
    cli.main(["run"])
    capsys.readouterr()

    assert cli.main(["--pretty", "arrays"]) == 0
    info = json.loads(capsys.readouterr().out)
    assert info["exists"] is True
    assert info["count"] == 7

    assert cli.main(["clear"]) == 0
    assert "Arrays deleted" in capsys.readouterr().out
    assert cli.main(["clear"]) == 0
    assert "No arrays to delete" in capsys.readouterr().out


def test_cli_run_with_trace_file(isolated_settings, tmp_path: Path, capsys):
    trace_path = tmp_path / "sample-copy.json"
    trace_path.write_text(json.dumps(dict(SAMPLE_TRACE, name="copy")), encoding="utf-8")

    exit_code = cli.main(["--trace", str(trace_path), "run"])
    data = json.loads(capsys.readouterr().out)

    assert exit_code == 0
    assert data["results"] == 7
    assert (isolated_settings.supplementary_dir / "copy").is_dir()


def test_cli_missing_model_exits_non_zero(isolated_settings, tmp_path: Path, capsys):
    exit_code = cli.main(["run", "--variant", "model_apply", "--model-file", str(tmp_path / "absent.pkl")])
    captured = capsys.readouterr()

    assert exit_code == 1
    assert "error:" in captured.out


def test_cli_train_then_apply(isolated_settings, tmp_path: Path, capsys):
    model_path = tmp_path / "model.pkl"
    assert cli.main(["run", "--variant", "model_train", "--model-file", str(model_path), "--epochs", "2"]) == 0
    trained = json.loads(capsys.readouterr().out)
    assert trained["model_path"] == str(model_path)

    assert cli.main(["run", "--variant", "model_apply", "--model-file", str(model_path), "--threshold", "0.5"]) == 0
    applied = json.loads(capsys.readouterr().out)
    assert applied["reused_arrays"] is True
    assert applied["results"] == 7
