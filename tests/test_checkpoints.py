from datetime import datetime, timedelta, timezone

import pytest

from storesync.common.db import session_scope
from storesync.sync import checkpoints
from storesync.sync.checkpoints import EPOCH, Checkpoint, ResumePoint, resume_point

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_first_run_starts_at_epoch() -> None:
    assert resume_point(None, page_size=100) == ResumePoint(modified_after=EPOCH)


def test_closed_window_uses_earlier_of_cursor_and_run_start() -> None:
    checkpoint = Checkpoint(
        site_id="s1",
        entity="orders",
        last_modified=T0,
        last_started_at=T0 + timedelta(minutes=30),
    )

    point = resume_point(checkpoint, page_size=100)

    assert point.modified_after == T0 + timedelta(seconds=1)
    assert point.offset == 0
    assert not point.resumed


def test_clock_skew_margin_wins_when_cursor_is_recent() -> None:
    checkpoint = Checkpoint(
        site_id="s1",
        entity="orders",
        last_modified=T0,
        last_started_at=T0 + timedelta(seconds=30),
    )

    assert resume_point(checkpoint, page_size=100).modified_after == T0 - timedelta(seconds=30)


def test_open_window_resumes_one_page_back() -> None:
    checkpoint = Checkpoint(
        site_id="s1",
        entity="products",
        window_start=T0,
        window_offset=250,
        last_modified=T0 + timedelta(hours=1),
    )

    point = resume_point(checkpoint, page_size=100)

    assert point == ResumePoint(modified_after=T0, offset=150, resumed=True)
    assert resume_point(
        Checkpoint(site_id="s1", entity="products", window_start=T0, window_offset=40), page_size=100
    ).offset == 0


@pytest.mark.asyncio
async def test_advance_never_moves_the_cursor_backwards(database_url: str) -> None:
    async with session_scope(database_url) as session:
        await checkpoints.begin_run(
            session, "s1", "orders", resume=ResumePoint(modified_after=EPOCH), use_sqlite=True, started_at=T0
        )
        await checkpoints.advance_checkpoint(
            session,
            "s1",
            "orders",
            last_remote_id=120,
            last_modified=T0,
            synced_delta=20,
            window_offset=20,
            use_sqlite=True,
        )
        moved = await checkpoints.advance_checkpoint(
            session,
            "s1",
            "orders",
            last_remote_id=90,
            last_modified=T0 - timedelta(days=2),
            synced_delta=5,
            window_offset=25,
            use_sqlite=True,
        )
        await session.commit()

    assert moved.last_remote_id == 120
    assert moved.last_modified == T0
    assert moved.synced_count == 25

    async with session_scope(database_url) as session:
        stored = await checkpoints.get_checkpoint(session, "s1", "orders")
    assert stored.last_remote_id == 120
    assert stored.last_modified == T0
    assert stored.window_offset == 25
    assert stored.window_open


@pytest.mark.asyncio
async def test_finish_run_closes_window_only_on_complete_success(database_url: str) -> None:
    async with session_scope(database_url) as session:
        await checkpoints.begin_run(
            session, "s1", "products", resume=ResumePoint(modified_after=T0), use_sqlite=True, started_at=T0
        )
        await checkpoints.finish_run(
            session, "s1", "products", status="success", duration_ms=10, window_complete=False, use_sqlite=True
        )
        await session.commit()
        still_open = await checkpoints.get_checkpoint(session, "s1", "products")

        await checkpoints.finish_run(
            session, "s1", "products", status="failed", duration_ms=10, error="boom", use_sqlite=True
        )
        await session.commit()
        after_failure = await checkpoints.get_checkpoint(session, "s1", "products")

        await checkpoints.finish_run(session, "s1", "products", status="success", duration_ms=10, use_sqlite=True)
        await session.commit()
        closed = await checkpoints.get_checkpoint(session, "s1", "products")

    assert still_open.window_open
    assert after_failure.window_open
    assert after_failure.last_error == "boom"
    assert not closed.window_open
    assert closed.last_status == "success"
    assert closed.last_started_at == T0


@pytest.mark.asyncio
async def test_unknown_entity_is_rejected(database_url: str) -> None:
    async with session_scope(database_url) as session:
        with pytest.raises(ValueError, match="unknown entity"):
            await checkpoints.get_checkpoint(session, "s1", "customers")
