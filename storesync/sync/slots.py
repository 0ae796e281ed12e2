"""Slot scheduling: an external timetable fires ``trigger_slot(n)`` at fixed offsets.

Slot ``n`` addresses the n-th store (0-based) among the enabled stores on the
allow-list, in creation order. New stores take the next free slot and removed
stores shift later slots down, so the timetable itself never changes.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from storesync.common.db import session_scope
from storesync.common.json_logger import JsonLogger, get_logger
from storesync.common.retry import RetryPolicy, Sleep
from storesync.config import Config, get_config
from storesync.errors import InvalidSlotError, SyncConflictError
from storesync.sync.stores import Store, fetch_enabled_stores
from storesync.sync.tables import slot_allowlist
from storesync.sync.tasks import INCREMENTAL, ClientFactory, run_task, start_sync


@dataclass
class SlotResult:
    slot: int
    skipped: bool
    message: str
    site_id: Optional[str] = None
    site_name: Optional[str] = None
    task_id: Optional[str] = None
    task_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_slot(raw: Any) -> int:
    if isinstance(raw, bool):
        raise InvalidSlotError(f"invalid slot: {raw!r}")
    try:
        slot = int(str(raw).strip())
    except (TypeError, ValueError):
        raise InvalidSlotError(f"invalid slot: {raw!r}") from None
    if slot < 0:
        raise InvalidSlotError(f"invalid slot: {raw!r}")
    return slot


async def scheduled_stores(session: AsyncSession) -> List[Store]:
    """Enabled, allow-listed stores in slot order."""

    allowed = (await session.execute(sa.select(slot_allowlist.c.site_id))).scalars().all()
    if not allowed:
        return []
    return await fetch_enabled_stores(session, site_ids=allowed)


async def resolve_slot(session: AsyncSession, slot: Any) -> Store | None:
    index = parse_slot(slot)
    candidates = await scheduled_stores(session)
    if index >= len(candidates):
        return None
    return candidates[index]


async def trigger_slot(
    database_url: str,
    slot: Any,
    *,
    entities: tuple[str, ...] = ("products", "orders"),
    config: Config | None = None,
    client_factory: ClientFactory | None = None,
    retry_policy: RetryPolicy | None = None,
    logger: JsonLogger | None = None,
    sleep: Sleep = asyncio.sleep,
) -> SlotResult:
    """Run an incremental sync for the store behind ``slot``.

    An empty slot and a store that already has a live task are both reported
    as skipped, not raised.
    """

    config = config or get_config()
    index = parse_slot(slot)
    logger = (logger or get_logger()).bind(slot=index)

    async with session_scope(database_url) as session:
        candidates = await scheduled_stores(session)

    if index >= len(candidates):
        message = f"no store for slot {index} ({len(candidates)} scheduled)"
        logger.info(phase="slot", message=message, scheduled=len(candidates))
        return SlotResult(slot=index, skipped=True, message=message)

    store = candidates[index]
    logger = logger.bind(site_id=store.id)
    logger.info(phase="slot", message=f"slot {index} -> {store.name}")

    try:
        started = await start_sync(
            database_url,
            store.id,
            entities=entities,
            mode=INCREMENTAL,
            force=True,
            config=config,
            logger=logger,
        )
    except SyncConflictError as exc:
        logger.warn(phase="slot", message="store already syncing; slot skipped", task_id=exc.existing_id)
        return SlotResult(
            slot=index,
            skipped=True,
            message=str(exc),
            site_id=store.id,
            site_name=store.name,
            task_id=exc.existing_id,
        )

    finished = await run_task(
        database_url,
        started.task_id,
        config=config,
        client_factory=client_factory,
        retry_policy=retry_policy,
        logger=logger,
        sleep=sleep,
    )
    return SlotResult(
        slot=index,
        skipped=False,
        message=f"{store.name}: {finished.status}",
        site_id=store.id,
        site_name=store.name,
        task_id=finished.id,
        task_status=finished.status,
    )
