import io
import json

from storesync.common.json_logger import JsonLogger, get_logger, reset_loggers, timed_event
from storesync.config import reset_config


def test_get_logger_reuses_one_file_handle(monkeypatch, tmp_path) -> None:
    log_file = tmp_path / "logs" / "storesync.jsonl"
    monkeypatch.setenv("JSON_LOG_FILE", str(log_file))
    reset_config()

    first = get_logger()
    second = get_logger(site_id="s1")

    assert first.file_handle is not None
    assert second.file_handle is first.file_handle
    assert get_logger() is first

    second.info(phase="sync", message="page written")
    reset_loggers()

    assert first.closed
    assert first.file_handle is None
    events = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    assert events[0]["site_id"] == "s1"
    assert events[0]["run_id"] == first.run_id


def test_new_run_id_replaces_and_closes_the_root(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("JSON_LOG_FILE", str(tmp_path / "run.jsonl"))
    reset_config()

    first = get_logger(run_id="run-1")
    assert get_logger(run_id="run-1") is first

    second = get_logger(run_id="run-2")

    assert second is not first
    assert first.closed
    assert not second.closed
    second.close()
    assert get_logger().run_id != "run-2"


def test_timed_event_reports_duration_and_fields() -> None:
    stream = io.StringIO()
    logger = JsonLogger(run_id="test-run", stream=stream, log_file_path=None)

    with timed_event(logger=logger, phase="aggregate", message="sales aggregation") as extra:
        extra["rows"] = 3

    event = json.loads(stream.getvalue())
    assert event["status"] == "ok"
    assert event["rows"] == 3
    assert event["duration_ms"] >= 0
