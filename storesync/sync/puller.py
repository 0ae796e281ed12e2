"""Checkpoint-based incremental puller.

``pull`` walks one store's entities page by page in ascending remote id order,
writes each page with idempotent upserts and advances the checkpoint in the
same transaction. Transient page failures go through the shared
:class:`~storesync.common.retry.RetryPolicy`; permanent ones abort the run.
A failed run keeps whatever the earlier pages already committed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from storesync.common.db import is_sqlite, session_scope, utcnow
from storesync.common.json_logger import JsonLogger, get_logger
from storesync.common.retry import RetryPolicy, Sleep, policy_from_config
from storesync.config import Config, get_config
from storesync.errors import RateLimitedError, RemoteError, RetryExhaustedError
from storesync.sync import checkpoints
from storesync.sync.checkpoints import EPOCH, ResumePoint
from storesync.sync.remote import RemotePage, WooCommerceClient
from storesync.sync.stores import Store, mark_store_synced
from storesync.sync.tables import make_upsert, order_items, orders, products
from storesync.sync.transforms import (
    MalformedEntityError,
    order_item_rows,
    order_row,
    product_row,
    remote_id,
)

MODES = ("full", "incremental")

PageCallback = Callable[["PullResult"], Awaitable[None]]


@dataclass
class PullResult:
    site_id: str
    entity: str
    mode: str
    status: str = "running"
    pages: int = 0
    fetched: int = 0
    written: int = 0
    children_written: int = 0
    total: Optional[int] = None
    errors: List[str] = field(default_factory=list)
    error: Optional[str] = None
    last_remote_id: int = 0
    last_modified: Optional[datetime] = None
    window_complete: bool = False
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def skipped(self) -> int:
        return max(self.fetched - self.written - len(self.errors), 0)


class AdaptiveThrottle:
    """Shrinks pages and adds delay on rate limits; recovers after steady success."""

    def __init__(
        self,
        *,
        page_size: int,
        min_page_size: int,
        delay_step: float = 1.0,
        max_delay: float = 30.0,
        recover_after: int = 3,
    ) -> None:
        self.max_page_size = page_size
        self.min_page_size = min(min_page_size, page_size)
        self.page_size = page_size
        self.delay = 0.0
        self.delay_step = delay_step
        self.max_delay = max_delay
        self.recover_after = recover_after
        self._streak = 0

    def on_rate_limited(self) -> None:
        self._streak = 0
        self.delay = min(self.delay + self.delay_step, self.max_delay)
        self.page_size = max(self.page_size // 2, self.min_page_size)

    def on_success(self) -> None:
        self._streak += 1
        if self._streak < self.recover_after:
            return
        self._streak = 0
        self.page_size = min(self.page_size * 2, self.max_page_size)
        self.delay = max(self.delay - self.delay_step, 0.0)


def _newest(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if candidate is None:
        return current
    if current is None or candidate > current:
        return candidate
    return current


async def _write_orders(
    session: AsyncSession,
    store: Store,
    items: List[Dict[str, Any]],
    result: PullResult,
    *,
    use_sqlite: bool,
) -> Tuple[int, int]:
    synced_at = utcnow()
    order_rows: Dict[int, Dict[str, Any]] = {}
    item_rows: Dict[int, List[Dict[str, Any]]] = {}
    for payload in items:
        try:
            row = order_row(store.id, payload, synced_at=synced_at)
            children = order_item_rows(store.id, payload)
        except MalformedEntityError as exc:
            result.errors.append(str(exc))
            continue
        order_rows[row["order_id"]] = row
        item_rows[row["order_id"]] = children

    if not order_rows:
        return 0, 0

    await session.execute(make_upsert(orders, list(order_rows.values()), use_sqlite=use_sqlite))
    await session.execute(
        sa.delete(order_items).where(
            order_items.c.site_id == store.id,
            order_items.c.order_id.in_(list(order_rows)),
        )
    )
    flat_items = [item for children in item_rows.values() for item in children]
    if flat_items:
        await session.execute(sa.insert(order_items), flat_items)
    for row in order_rows.values():
        result.last_modified = _newest(result.last_modified, row["date_modified"])
    return len(order_rows), len(flat_items)


async def _collect_variations(
    client: WooCommerceClient,
    items: List[Dict[str, Any]],
    result: PullResult,
    *,
    policy: RetryPolicy,
    sleep: Sleep,
    logger: JsonLogger,
) -> Dict[int, List[Dict[str, Any]]]:
    variations: Dict[int, List[Dict[str, Any]]] = {}
    for payload in items:
        if payload.get("type") != "variable" or not payload.get("variations"):
            continue
        try:
            product_id = remote_id(payload)
        except MalformedEntityError:
            continue
        try:
            variations[product_id] = await policy.call(
                lambda: client.fetch_variations(product_id),
                logger=logger,
                phase="pull",
                sleep=sleep,
                product_id=product_id,
            )
        except (RemoteError, RetryExhaustedError) as exc:
            result.errors.append(f"variations of product {product_id}: {exc}")
    return variations


async def _write_products(
    session: AsyncSession,
    store: Store,
    items: List[Dict[str, Any]],
    variations: Dict[int, List[Dict[str, Any]]],
    result: PullResult,
    *,
    use_sqlite: bool,
) -> Tuple[int, int]:
    synced_at = utcnow()
    rows: Dict[int, Dict[str, Any]] = {}
    child_rows: Dict[int, Dict[str, Any]] = {}
    for payload in items:
        try:
            row = product_row(store.id, payload, synced_at=synced_at)
        except MalformedEntityError as exc:
            result.errors.append(str(exc))
            continue
        rows[row["product_id"]] = row
        for variation in variations.get(row["product_id"], []):
            try:
                child = product_row(
                    store.id, variation, synced_at=synced_at, parent_id=row["product_id"]
                )
            except MalformedEntityError as exc:
                result.errors.append(f"variation of product {row['product_id']}: {exc}")
                continue
            child_rows[child["product_id"]] = child

    if rows:
        await session.execute(make_upsert(products, list(rows.values()), use_sqlite=use_sqlite))
    if child_rows:
        await session.execute(make_upsert(products, list(child_rows.values()), use_sqlite=use_sqlite))
    for row in rows.values():
        result.last_modified = _newest(result.last_modified, row["date_modified"])
    return len(rows), len(child_rows)


async def _open_window(
    database_url: str,
    store: Store,
    entity: str,
    mode: str,
    *,
    page_size: int,
    started_at: datetime,
) -> ResumePoint:
    use_sqlite = is_sqlite(database_url)
    async with session_scope(database_url) as session:
        if mode == "full":
            await checkpoints.reset_checkpoint(
                session, store.id, entity, use_sqlite=use_sqlite, started_at=started_at
            )
            resume = ResumePoint(modified_after=EPOCH)
        else:
            checkpoint = await checkpoints.get_checkpoint(session, store.id, entity)
            resume = checkpoints.resume_point(checkpoint, page_size=page_size)
            await checkpoints.begin_run(
                session, store.id, entity, resume=resume, use_sqlite=use_sqlite, started_at=started_at
            )
        await session.commit()
    return resume


async def pull(
    store: Store,
    entity: str,
    mode: str = "incremental",
    *,
    database_url: str,
    config: Config | None = None,
    client: WooCommerceClient | None = None,
    retry_policy: RetryPolicy | None = None,
    logger: JsonLogger | None = None,
    on_page: PageCallback | None = None,
    sleep: Sleep = asyncio.sleep,
) -> PullResult:
    if entity not in checkpoints.ENTITY_KINDS:
        raise ValueError(f"unknown entity kind: {entity!r}")
    if mode not in MODES:
        raise ValueError(f"unknown sync mode: {mode!r}")

    config = config or get_config()
    policy = retry_policy or policy_from_config(config)
    logger = (logger or get_logger()).bind(site_id=store.id, entity=entity, mode=mode)
    use_sqlite = is_sqlite(database_url)
    throttle = AdaptiveThrottle(page_size=config.sync_page_size, min_page_size=config.sync_min_page_size)
    max_pages = config.sync_max_incremental_pages if mode == "incremental" else None

    result = PullResult(site_id=store.id, entity=entity, mode=mode)
    start = time.perf_counter()
    started_at = utcnow()
    owns_client = client is None
    if client is None:
        client = WooCommerceClient(store, timeout=config.remote_timeout_seconds)

    resume = await _open_window(
        database_url, store, entity, mode, page_size=config.sync_page_size, started_at=started_at
    )
    modified_after = None if resume.modified_after == EPOCH else resume.modified_after
    offset = resume.offset
    logger.info(
        phase="pull",
        message="pull started",
        modified_after=modified_after,
        offset=offset,
        resumed=resume.resumed,
    )

    try:
        while True:
            if max_pages is not None and result.pages >= max_pages:
                logger.warn(phase="pull", message="page cap reached; window left open", pages=result.pages)
                break
            if throttle.delay:
                await sleep(throttle.delay)

            async def fetch() -> Tuple[RemotePage, int]:
                per_page = throttle.page_size
                try:
                    page = await client.fetch_page(
                        entity, offset=offset, per_page=per_page, modified_after=modified_after
                    )
                except RateLimitedError:
                    throttle.on_rate_limited()
                    raise
                return page, per_page

            page, per_page = await policy.call(
                fetch, logger=logger, phase="pull", sleep=sleep, offset=offset
            )
            throttle.on_success()
            if page.total is not None and result.total is None:
                result.total = page.total + offset
            if not page.items:
                result.window_complete = True
                break

            variations: Dict[int, List[Dict[str, Any]]] = {}
            if entity == "products" and config.sync_product_variations:
                variations = await _collect_variations(
                    client, page.items, result, policy=policy, sleep=sleep, logger=logger
                )

            page_max_id = max((remote_id(item) for item in page.items if _has_id(item)), default=0)
            async with session_scope(database_url) as session:
                if entity == "orders":
                    written, children = await _write_orders(
                        session, store, page.items, result, use_sqlite=use_sqlite
                    )
                else:
                    written, children = await _write_products(
                        session, store, page.items, variations, result, use_sqlite=use_sqlite
                    )
                checkpoint = await checkpoints.advance_checkpoint(
                    session,
                    store.id,
                    entity,
                    last_remote_id=page_max_id,
                    last_modified=result.last_modified,
                    synced_delta=written,
                    window_offset=offset + len(page.items),
                    use_sqlite=use_sqlite,
                )
                await session.commit()

            offset += len(page.items)
            result.pages += 1
            result.fetched += len(page.items)
            result.written += written
            result.children_written += children
            result.last_remote_id = checkpoint.last_remote_id
            logger.info(
                phase="pull",
                message="page written",
                page=result.pages,
                offset=offset,
                fetched=len(page.items),
                written=written,
                per_page=per_page,
                cursor=checkpoint.last_remote_id,
            )
            if on_page is not None:
                await on_page(result)
            if len(page.items) < per_page:
                result.window_complete = True
                break
    except (RemoteError, RetryExhaustedError) as exc:
        result.status = "failed"
        result.error = str(exc)
    except Exception as exc:
        result.status = "failed"
        result.error = f"{exc.__class__.__name__}: {exc}"
        await _record_outcome(database_url, result, start, use_sqlite=use_sqlite)
        logger.error(phase="pull", message="pull crashed", error=result.error)
        raise
    finally:
        if owns_client:
            await client.aclose()

    if not result.failed:
        result.status = "completed_with_errors" if result.errors else "completed"
    await _record_outcome(database_url, result, start, use_sqlite=use_sqlite)

    log = logger.error if result.failed else logger.info
    log(
        phase="pull",
        message="pull finished",
        result_status=result.status,
        pages=result.pages,
        fetched=result.fetched,
        written=result.written,
        entity_errors=len(result.errors),
        error=result.error,
        duration_ms=result.duration_ms,
    )
    return result


def _has_id(payload: Dict[str, Any]) -> bool:
    try:
        remote_id(payload)
    except MalformedEntityError:
        return False
    return True


async def _record_outcome(database_url: str, result: PullResult, start: float, *, use_sqlite: bool) -> None:
    result.duration_ms = int((time.perf_counter() - start) * 1000)
    status = checkpoints.STATUS_FAILED if result.failed else checkpoints.STATUS_SUCCESS
    async with session_scope(database_url) as session:
        await checkpoints.finish_run(
            session,
            result.site_id,
            result.entity,
            status=status,
            duration_ms=result.duration_ms,
            error=result.error,
            window_complete=result.window_complete,
            use_sqlite=use_sqlite,
        )
        if not result.failed:
            await mark_store_synced(session, result.site_id, utcnow())
        await session.commit()
