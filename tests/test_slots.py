from dataclasses import replace
from datetime import datetime, timezone

import pytest

from conftest import FakeWooStore, insert_store, make_order, make_product, no_sleep
from storesync.common.db import session_scope
from storesync.config import get_config
from storesync.errors import InvalidSlotError
from storesync.sync.slots import parse_slot, resolve_slot, trigger_slot
from storesync.sync.tasks import list_tasks, start_sync


def _seed_stores(database_url: str) -> None:
    insert_store(database_url, "late", created_at=datetime(2024, 3, 1, tzinfo=timezone.utc), scheduled=True)
    insert_store(database_url, "early", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc), scheduled=True)
    insert_store(database_url, "off", created_at=datetime(2024, 2, 1, tzinfo=timezone.utc), enabled=False, scheduled=True)
    insert_store(database_url, "manual", created_at=datetime(2023, 12, 1, tzinfo=timezone.utc))


@pytest.mark.parametrize("raw", [-1, "abc", None, True, "1.5"])
def test_parse_slot_rejects_invalid_values(raw) -> None:
    with pytest.raises(InvalidSlotError):
        parse_slot(raw)


def test_parse_slot_accepts_numeric_strings() -> None:
    assert parse_slot(" 3 ") == 3
    assert parse_slot(0) == 0


@pytest.mark.asyncio
async def test_slots_follow_creation_order_of_enabled_allowlisted_stores(database_url: str) -> None:
    _seed_stores(database_url)

    async with session_scope(database_url) as session:
        first = await resolve_slot(session, 0)
        second = await resolve_slot(session, "1")
        empty = await resolve_slot(session, 2)

    assert first.id == "early"
    assert second.id == "late"
    assert empty is None


@pytest.mark.asyncio
async def test_equal_creation_times_fall_back_to_store_id(database_url: str) -> None:
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for site_id in ("charlie", "alpha", "bravo"):
        insert_store(database_url, site_id, created_at=created, scheduled=True)

    async with session_scope(database_url) as session:
        first_pass = [(await resolve_slot(session, slot)).id for slot in range(3)]
    async with session_scope(database_url) as session:
        second_pass = [(await resolve_slot(session, slot)).id for slot in range(3)]

    assert first_pass == ["alpha", "bravo", "charlie"]
    assert second_pass == first_pass


@pytest.mark.asyncio
async def test_empty_slot_is_skipped(database_url: str, logger) -> None:
    _seed_stores(database_url)

    result = await trigger_slot(database_url, 5, logger=logger)

    assert result.skipped
    assert result.site_id is None
    assert "no store for slot 5" in result.message


@pytest.mark.asyncio
async def test_trigger_slot_runs_incremental_sync(database_url: str, logger) -> None:
    _seed_stores(database_url)
    fake = FakeWooStore(orders=[make_order(1)], products=[make_product(2)])
    config = replace(get_config(), sync_page_size=10, sync_min_page_size=1)

    result = await trigger_slot(
        database_url, 1, config=config, client_factory=fake.client_factory(), logger=logger, sleep=no_sleep
    )

    assert not result.skipped
    assert result.site_id == "late"
    assert result.task_status == "completed"
    tasks = await list_tasks(database_url, site_id="late")
    assert [task.task_type for task in tasks] == ["incremental"]
    assert tasks[0].entities == ["orders", "products"]


@pytest.mark.asyncio
async def test_slot_with_live_task_is_skipped(database_url: str, logger) -> None:
    _seed_stores(database_url)
    running = await start_sync(database_url, "early", logger=logger)

    result = await trigger_slot(database_url, 0, logger=logger)

    assert result.skipped
    assert result.task_id == running.task_id
    assert len(await list_tasks(database_url, site_id="early")) == 1
