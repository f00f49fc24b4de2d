import json
from pathlib import Path

from click.testing import CliRunner
from fastapi import FastAPI

from capturectl.cli import main


def _config_file(tmp_path: Path) -> Path:
    root = tmp_path / "public"
    root.mkdir()
    config_file = tmp_path / "capturectl.yaml"
    config_file.write_text(
        f"worker:\n  executable: {tmp_path / 'missing-worker'}\nsupervisor:\n  capture_root: {root}\n",
        encoding="utf-8",
    )
    return config_file


def _seed_registry(tmp_path: Path, records) -> None:
    (tmp_path / "public" / ".captures.json").write_text(json.dumps(records), encoding="utf-8")


def test_list_shows_persisted_captures(tmp_path: Path) -> None:
    config_file = _config_file(tmp_path)
    _seed_registry(tmp_path, [{"key": "a.csv", "pid": 4242, "stopFile": None}])

    result = CliRunner().invoke(main, ["--config", str(config_file), "list"])

    assert result.exit_code == 0
    assert "a.csv\tpid=4242\tstop_file=-" in result.output


def test_list_with_empty_registry(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["--config", str(_config_file(tmp_path)), "list"])
    assert result.exit_code == 0
    assert "No captures recorded." in result.output


def test_stop_unknown_key_exits_nonzero(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["--config", str(_config_file(tmp_path)), "stop", "ghost.csv"])
    assert result.exit_code == 1
    assert "No active capture found for ghost.csv" in result.output


def test_stop_requires_key_or_all(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["--config", str(_config_file(tmp_path)), "stop"])
    assert result.exit_code == 2


def test_stop_all_clears_registry(tmp_path: Path) -> None:
    config_file = _config_file(tmp_path)
    _seed_registry(tmp_path, [{"key": "a.csv", "pid": 999999}])

    result = CliRunner().invoke(main, ["--config", str(config_file), "stop", "--all"])

    assert result.exit_code == 0
    assert "registry cleared" in result.output
    assert json.loads((tmp_path / "public" / ".captures.json").read_text(encoding="utf-8")) == []


def test_capture_without_worker_fails(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["--config", str(_config_file(tmp_path)), "capture", "--output", "x.csv"])
    assert result.exit_code == 1


def test_interfaces_without_worker_fails(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["--config", str(_config_file(tmp_path)), "interfaces"])
    assert result.exit_code == 1
    assert "Sniffer executable not found" in result.output


def test_invalid_config_is_reported(tmp_path: Path) -> None:
    config_file = tmp_path / "bad.yaml"
    config_file.write_text("supervisor:\n  timeout_grace_seconds: -3\n", encoding="utf-8")

    result = CliRunner().invoke(main, ["--config", str(config_file), "list"])

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_web_serves_app_built_from_config(tmp_path: Path, monkeypatch) -> None:
    config_file = _config_file(tmp_path)
    served = {}

    def fake_run(app, **kwargs):
        served["app"] = app
        served.update(kwargs)

    monkeypatch.delenv("CAPTURECTL_CAPTURE_ROOT", raising=False)
    monkeypatch.setattr("capturectl.cli.uvicorn.run", fake_run)

    result = CliRunner().invoke(main, ["--config", str(config_file), "web", "--port", "9001"])

    assert result.exit_code == 0
    assert isinstance(served["app"], FastAPI)
    assert served["app"].state.supervisor.capture_root == tmp_path / "public"
    assert served["port"] == 9001
