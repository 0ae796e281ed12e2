import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa

from conftest import FakeWooStore, insert_store, make_order, no_sleep
from storesync.common.db import session_scope, utcnow
from storesync.config import get_config
from storesync.errors import NotFoundError, SyncConflictError
from storesync.sync import batches as batches_module
from storesync.sync.batches import (
    StepStats,
    cancel_batch,
    create_batch,
    get_batch_status,
    reclaim_stuck,
    run_batch,
    run_next_step,
)
from storesync.sync.tables import sync_site_results, sync_tasks


def _seed(database_url: str) -> None:
    insert_store(database_url, "a", name="Alpha", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc), scheduled=True)
    insert_store(database_url, "b", name="Beta", created_at=datetime(2024, 2, 1, tzinfo=timezone.utc), scheduled=True)


def _runner(changed_by_site: dict):
    async def run(store) -> StepStats:
        changed = changed_by_site.get(store.id, 0)
        if isinstance(changed, Exception):
            raise changed
        return StepStats(total_checked=changed + 1, changed=changed, skipped=1)

    return run


@pytest.mark.asyncio
async def test_create_batch_registers_one_pending_step_per_store(database_url: str, logger) -> None:
    _seed(database_url)

    batch = await create_batch(database_url, logger=logger)

    assert batch.status == "pending"
    assert batch.total_sites == 2
    assert batch.site_ids == ["a", "b"]
    assert [(step.step_index, step.site_id, step.status) for step in batch.steps] == [
        (1, "a", "pending"),
        (2, "b", "pending"),
    ]
    assert batch.expires_at - batch.created_at == timedelta(minutes=120)


@pytest.mark.asyncio
async def test_create_batch_validation(database_url: str, logger) -> None:
    with pytest.raises(ValueError, match="no stores"):
        await create_batch(database_url, logger=logger)

    _seed(database_url)
    with pytest.raises(NotFoundError, match="ghost"):
        await create_batch(database_url, ["a", "ghost"], logger=logger)

    live = await create_batch(database_url, ["b"], logger=logger)
    with pytest.raises(SyncConflictError) as excinfo:
        await create_batch(database_url, logger=logger)
    assert excinfo.value.existing_id == live.id


@pytest.mark.asyncio
async def test_run_batch_steps_in_order_and_totals_stats(database_url: str, logger) -> None:
    _seed(database_url)
    batch = await create_batch(database_url, logger=logger)
    seen = []

    async def run(store) -> StepStats:
        seen.append(store.id)
        return await _runner({"a": 3, "b": 0})(store)

    first = await run_next_step(database_url, batch.id, runner=run, logger=logger)
    assert first.step_index == 1
    assert first.status == "completed"
    midway = await get_batch_status(database_url, batch.id)
    assert midway.status == "syncing"
    assert midway.current_step == 1

    finished = await run_batch(database_url, batch.id, runner=run, logger=logger)

    assert seen == ["a", "b"]
    assert finished.status == "completed"
    assert finished.stats["total_sites"] == 2
    assert finished.stats["completed_sites"] == 2
    assert finished.stats["total_changed"] == 3
    assert finished.stats["total_checked"] == 5
    assert finished.stats["outcome"] == "success"
    assert finished.completed_at is not None
    assert await run_next_step(database_url, batch.id, runner=run, logger=logger) is None


@pytest.mark.asyncio
async def test_failed_step_fails_the_batch_with_partial_outcome(database_url: str, logger) -> None:
    _seed(database_url)
    batch = await create_batch(database_url, logger=logger)

    finished = await run_batch(
        database_url, batch.id, runner=_runner({"a": RuntimeError("store unreachable"), "b": 2}), logger=logger
    )

    assert finished.status == "failed"
    assert finished.stats["outcome"] == "partial"
    assert finished.stats["failed_sites"] == 1
    assert "step 1 (Alpha): RuntimeError: store unreachable" in finished.error_message
    assert [step.status for step in finished.steps] == ["failed", "completed"]


@pytest.mark.asyncio
async def test_default_runner_uses_sync_tasks(database_url: str, logger) -> None:
    _seed(database_url)
    fake = FakeWooStore(orders=[make_order(1), make_order(2)])
    config = replace(get_config(), sync_page_size=10, sync_min_page_size=1)
    batch = await create_batch(database_url, ["a"], config=config, logger=logger)

    finished = await run_batch(
        database_url, batch.id, config=config, client_factory=fake.client_factory(), logger=logger, sleep=no_sleep
    )

    assert finished.status == "completed"
    step = finished.steps[0]
    assert step.stats["changed"] == 2
    assert step.stats["details"]["task_status"] == "completed"
    async with session_scope(database_url) as session:
        task_type = await session.scalar(
            sa.select(sync_tasks.c.task_type).where(sync_tasks.c.id == step.stats["details"]["task_id"])
        )
    assert task_type == "incremental"


@pytest.mark.asyncio
async def test_cancel_batch_fails_pending_steps(database_url: str, logger) -> None:
    _seed(database_url)
    batch = await create_batch(database_url, logger=logger)

    cancelled = await cancel_batch(database_url, batch.id, reason="operator stop")

    assert cancelled.status == "failed"
    assert cancelled.error_message == "operator stop"
    assert {step.status for step in cancelled.steps} == {"failed"}
    assert await run_next_step(database_url, batch.id, runner=_runner({}), logger=logger) is None


@pytest.mark.asyncio
async def test_reclaim_expired_batch_is_idempotent(database_url: str, logger) -> None:
    _seed(database_url)
    now = utcnow()
    batch = await create_batch(database_url, logger=logger, now=now - timedelta(hours=3))

    first = await reclaim_stuck(database_url, now=now, logger=logger)
    second = await reclaim_stuck(database_url, now=now, logger=logger)

    assert first.expired_batches == 1
    assert first.reclaimed_batch_ids == [batch.id]
    assert second.expired_batches == 0
    assert second.reclaimed_batch_ids == []
    status = await get_batch_status(database_url, batch.id)
    assert status.status == "failed"
    assert status.error_message == "auto-reclaimed: batch expired"
    assert {step.error_message for step in status.steps} == {"batch expired"}


@pytest.mark.asyncio
async def test_reclaim_idle_batch(database_url: str, logger) -> None:
    _seed(database_url)
    now = utcnow()
    batch = await create_batch(database_url, logger=logger, now=now - timedelta(minutes=15))

    result = await reclaim_stuck(database_url, now=now, logger=logger)
    after_first = (await get_batch_status(database_url, batch.id)).to_dict()
    again = await reclaim_stuck(database_url, now=now, logger=logger)

    assert result.idle_batches == 1
    assert again.idle_batches == 0
    assert again.reclaimed_batch_ids == []
    status = await get_batch_status(database_url, batch.id)
    assert status.error_message == "auto-reclaimed: no step started within 10 minutes"
    assert status.to_dict() == after_first


@pytest.mark.asyncio
async def test_reclaim_leaves_fresh_batches_alone(database_url: str, logger) -> None:
    _seed(database_url)
    batch = await create_batch(database_url, logger=logger)

    result = await reclaim_stuck(database_url, logger=logger)

    assert result.reclaimed_batch_ids == []
    assert (await get_batch_status(database_url, batch.id)).status == "pending"


@pytest.mark.asyncio
async def test_reclaim_stuck_step(database_url: str, logger) -> None:
    _seed(database_url)
    now = utcnow()
    batch = await create_batch(database_url, logger=logger, now=now - timedelta(minutes=20))
    async with session_scope(database_url) as session:
        await session.execute(
            sa.update(sync_site_results)
            .where(sync_site_results.c.batch_id == batch.id, sync_site_results.c.step_index == 1)
            .values(status="running", started_at=now - timedelta(minutes=8))
        )
        await session.commit()

    result = await reclaim_stuck(database_url, now=now, logger=logger)
    after_first = (await get_batch_status(database_url, batch.id)).to_dict()
    again = await reclaim_stuck(database_url, now=now, logger=logger)

    assert result.stuck_steps == 1
    assert result.stuck_batches == 1
    assert (again.stuck_steps, again.stuck_batches, again.reclaimed_batch_ids) == (0, 0, [])
    status = await get_batch_status(database_url, batch.id)
    assert status.to_dict() == after_first
    assert status.status == "failed"
    assert status.steps[0].error_message == "step timed out after 5 minutes"
    assert status.steps[1].status == "failed"
    assert "step 1 (Alpha)" in status.error_message


@pytest.mark.asyncio
async def test_late_result_of_reclaimed_step_is_discarded(database_url: str, logger, log_stream) -> None:
    _seed(database_url)
    batch = await create_batch(database_url, logger=logger)

    async def slow_runner(store) -> StepStats:
        await reclaim_stuck(database_url, now=utcnow() + timedelta(minutes=10), logger=logger)
        return StepStats(total_checked=4, changed=4)

    step = await run_next_step(database_url, batch.id, runner=slow_runner, logger=logger)

    assert step.status == "failed"
    status = await get_batch_status(database_url, batch.id)
    assert status.status == "failed"
    assert status.steps[0].status == "failed"
    assert status.steps[0].stats == {}
    assert status.steps[0].error_message == "step timed out after 5 minutes"
    assert "outcome discarded" in log_stream.getvalue()


@pytest.mark.asyncio
async def test_reclaim_fails_stale_sync_tasks(database_url: str, logger) -> None:
    _seed(database_url)
    now = utcnow()
    async with session_scope(database_url) as session:
        await session.execute(
            sa.insert(sync_tasks).values(
                id="stale-task",
                site_id="a",
                task_type="incremental",
                entities=["orders"],
                status="running",
                created_at=now - timedelta(hours=1),
            )
        )
        await session.commit()

    result = await reclaim_stuck(database_url, now=now, logger=logger)

    assert result.stale_tasks == 1


@pytest.mark.asyncio
async def test_reclaim_sweep_is_time_bounded(database_url: str, logger, log_stream, monkeypatch) -> None:
    _seed(database_url)
    now = utcnow()
    batch = await create_batch(database_url, logger=logger, now=now - timedelta(hours=3))
    original = batches_module.fail_stale_tasks

    async def hang(*_args, **_kwargs):
        await asyncio.sleep(10)
        return []

    monkeypatch.setattr("storesync.sync.batches.fail_stale_tasks", hang)
    config = replace(get_config(), reclaim_timeout_seconds=0.05)

    result = await reclaim_stuck(database_url, now=now, config=config, logger=logger)

    assert result.timed_out
    assert result.reclaimed_batch_ids == []
    assert "reclamation sweep timed out" in log_stream.getvalue()
    assert (await get_batch_status(database_url, batch.id)).status == "pending"

    monkeypatch.setattr("storesync.sync.batches.fail_stale_tasks", original)
    retried = await reclaim_stuck(database_url, now=now, logger=logger)

    assert not retried.timed_out
    assert retried.expired_batches == 1
