import io
import json

import pytest

from conftest import insert_store
from storesync import __main__ as cli
from storesync.common.json_logger import JsonLogger
from storesync.config import reset_config


@pytest.fixture
def cli_database(database_url: str, monkeypatch) -> str:
    monkeypatch.setenv("DATABASE_URL", database_url)
    reset_config()
    monkeypatch.setattr(
        cli,
        "get_logger",
        lambda run_id=None, **_context: JsonLogger(run_id=run_id, stream=io.StringIO(), log_file_path=None),
    )
    return database_url


def _output(capsys):
    return json.loads(capsys.readouterr().out)


def test_start_sync_detached_then_conflict(cli_database: str, capsys) -> None:
    insert_store(cli_database, "s1")

    assert cli.main(["start-sync", "s1", "--detach", "--entities", "orders"]) == cli.EXIT_OK
    created = _output(capsys)
    assert created["status"] == "pending"

    assert cli.main(["start-sync", "s1", "--detach"]) == cli.EXIT_CONFLICT
    conflict = _output(capsys)
    assert conflict["conflict"] is True
    assert conflict["existing_id"] == created["task_id"]

    assert cli.main(["task-status", created["task_id"]]) == cli.EXIT_OK
    assert _output(capsys)["entities"] == ["orders"]


def test_unknown_store_and_task_fail(cli_database: str, capsys) -> None:
    assert cli.main(["start-sync", "ghost", "--detach"]) == cli.EXIT_FAILED
    assert "not found" in _output(capsys)["error"]

    assert cli.main(["task-status", "missing"]) == cli.EXIT_FAILED
    assert cli.main(["batch-status"]) == cli.EXIT_FAILED


def test_invalid_slot_is_reported(cli_database: str, capsys) -> None:
    assert cli.main(["trigger-slot", "abc"]) == cli.EXIT_FAILED
    assert "invalid slot" in _output(capsys)["error"]


def test_empty_slot_exits_cleanly(cli_database: str, capsys) -> None:
    assert cli.main(["trigger-slot", "0"]) == cli.EXIT_OK
    assert _output(capsys)["skipped"] is True


def test_receive_webhook_from_file(cli_database: str, capsys, tmp_path) -> None:
    body = tmp_path / "order.json"
    body.write_text(json.dumps({"id": 5}), encoding="utf-8")

    code = cli.main(
        ["receive-webhook", "--event", "order.updated", "--source", "https://nowhere.example.com", "--body-file", str(body)]
    )

    assert code == cli.EXIT_FAILED
    assert _output(capsys)["status_code"] == 404


def test_aggregate_and_reclaim_on_empty_database(cli_database: str, capsys) -> None:
    assert cli.main(["aggregate", "--start", "2024-05-01", "--end", "2024-06-01", "--bucket", "week"]) == cli.EXIT_OK
    report = _output(capsys)
    assert report["rows"] == []
    assert report["bucket"] == "week"

    assert cli.main(["reclaim"]) == cli.EXIT_OK
    assert _output(capsys)["reclaimed_batch_ids"] == []


def test_trend_reports_zero_filled_days_per_spu(cli_database: str, capsys) -> None:
    assert cli.main(["trend", "bundle", "Triple", "--days", "3"]) == cli.EXIT_OK
    series = _output(capsys)

    assert sorted(series) == ["BUNDLE", "TRIPLE"]
    assert [point["units"] for point in series["BUNDLE"]] == [0, 0, 0]
    assert len({point["day"] for point in series["TRIPLE"]}) == 3

    assert cli.main(["trend", "bundle", "--days", "0"]) == cli.EXIT_FAILED
    assert "days" in _output(capsys)["error"]


def test_missing_database_url_is_a_config_error(monkeypatch, capsys) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    reset_config()
    monkeypatch.setattr(
        cli,
        "get_logger",
        lambda run_id=None, **_context: JsonLogger(run_id=run_id, stream=io.StringIO(), log_file_path=None),
    )

    assert cli.main(["reclaim"]) == cli.EXIT_FAILED
    assert "DATABASE_URL" in capsys.readouterr().err


def test_unknown_command_exits() -> None:
    with pytest.raises(SystemExit):
        cli.main(["sync-everything"])
