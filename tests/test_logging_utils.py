import json
from pathlib import Path

from ryvie_storage.logging_utils import _DEFAULT_LOG_FILE, _log_file_path, log_event
from ryvie_storage.stages import Stage


def test_log_event_emits_json_to_stderr(capsys, monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("RYVIE_STORAGE_LOG_EVENTS", "1")
    monkeypatch.setenv("RYVIE_STORAGE_LOG_FILE", str(tmp_path / "actions.log"))

    log_event("ryvie_storage.test", path=Path("/tmp/demo"), value=5, stage=Stage.LVM)

    captured = capsys.readouterr()
    assert captured.out == ""
    lines = [line for line in captured.err.splitlines() if line.strip()]
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["event"] == "ryvie_storage.test"
    assert record["path"] == "/tmp/demo"
    assert record["value"] == 5
    assert record["stage"] == "lvm"
    assert "timestamp" in record


def test_log_event_disabled_by_default(capsys, monkeypatch) -> None:
    monkeypatch.delenv("RYVIE_STORAGE_LOG_EVENTS", raising=False)

    log_event("ryvie_storage.test")

    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err == ""


def test_log_event_falsey_values_disable(capsys, monkeypatch) -> None:
    monkeypatch.setenv("RYVIE_STORAGE_LOG_EVENTS", "no")

    log_event("ryvie_storage.test")

    assert capsys.readouterr().err == ""


def test_default_log_file_path(monkeypatch) -> None:
    monkeypatch.setenv("RYVIE_STORAGE_LOG_FILE", "  ")
    assert _log_file_path() == _DEFAULT_LOG_FILE


def test_log_event_appends_to_file(tmp_path, capsys, monkeypatch) -> None:
    monkeypatch.setenv("RYVIE_STORAGE_LOG_EVENTS", "1")
    log_path = tmp_path / "logs" / "actions.log"
    monkeypatch.setenv("RYVIE_STORAGE_LOG_FILE", str(log_path))

    log_event("ryvie_storage.test.file", payload={"key": "value"})

    captured = capsys.readouterr()
    stderr_lines = [line for line in captured.err.splitlines() if line.strip()]
    assert len(stderr_lines) == 1
    stderr_record = json.loads(stderr_lines[0])

    file_lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(file_lines) == 1
    file_record = json.loads(file_lines[0])

    assert file_record == stderr_record
    assert file_record["payload"] == {"key": "value"}
