"""Inbound WooCommerce webhooks.

Every request ends in exactly one ``webhook_events`` row, accepted or not.
A request is verified before anything is written; the primary change
(upsert or delete of the order/product) must succeed for the event to be
applied, while derived updates run in savepoints and only degrade the
outcome to ``partial`` when they fail.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storesync.common.db import is_sqlite, session_scope, utcnow
from storesync.common.json_logger import JsonLogger, get_logger
from storesync.config import Config, get_config
from storesync.errors import WebhookRejected
from storesync.sync.stores import Store, find_store_by_url
from storesync.sync.tables import customer_history, make_upsert, order_items, orders, products, webhook_events
from storesync.sync.transforms import MalformedEntityError, order_item_rows, order_row, product_row, remote_id
from storesync.webhooks import delivery, signatures

SUCCESS = "success"
ERROR = "error"
PARTIAL = "partial"

UPSERT_ACTIONS = {"created", "updated", "restored"}
DELETE_ACTIONS = {"deleted", "trashed"}
OBJECT_TYPES = ("order", "product")
EXCLUDED_ORDER_STATUSES = ("cancelled", "failed", "trash", "refunded")


@dataclass
class WebhookOutcome:
    accepted: bool
    status_code: int
    status: str
    message: str
    event_type: str
    site_id: Optional[str] = None
    object_id: Optional[str] = None
    event_id: Optional[int] = None
    failures: List[str] = field(default_factory=list)
    processing_time_ms: int = 0
    forwarded_item_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


SideEffect = Callable[[AsyncSession, Store, Mapping[str, Any], bool], Awaitable[None]]


def _split_event(event_type: str | None) -> Tuple[str, str]:
    if not event_type or "." not in event_type:
        raise WebhookRejected(f"invalid event type: {event_type!r}", status_code=400)
    object_type, action = event_type.strip().lower().split(".", 1)
    if object_type not in OBJECT_TYPES or action not in UPSERT_ACTIONS | DELETE_ACTIONS:
        raise WebhookRejected(f"unsupported event type: {event_type}", status_code=400)
    return object_type, action


def _parse_body(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise WebhookRejected("body is not valid JSON", status_code=400) from None
    if not isinstance(payload, dict):
        raise WebhookRejected("body must be a JSON object", status_code=400)
    return payload


def _entity(payload: Mapping[str, Any], object_type: str) -> Dict[str, Any]:
    """The sync plugin wraps the object (``{"order": {...}}``); WooCommerce sends it bare."""

    wrapped = payload.get(object_type)
    entity = wrapped if isinstance(wrapped, dict) else payload
    try:
        remote_id(entity)
    except MalformedEntityError:
        raise WebhookRejected(f"payload has no {object_type} id", status_code=400) from None
    return dict(entity)


async def _replace_order_items(
    session: AsyncSession, store: Store, order: Mapping[str, Any], use_sqlite: bool
) -> None:
    order_id = remote_id(order)
    rows = order_item_rows(store.id, order)
    await session.execute(
        sa.delete(order_items).where(order_items.c.site_id == store.id, order_items.c.order_id == order_id)
    )
    if rows:
        await session.execute(sa.insert(order_items), rows)


async def _refresh_customer_history(
    session: AsyncSession, store: Store, order: Mapping[str, Any], use_sqlite: bool
) -> None:
    email = str((order.get("billing") or {}).get("email") or "").strip().lower()
    if not email:
        return
    summary = (
        await session.execute(
            sa.select(
                sa.func.count().label("order_count"),
                sa.func.coalesce(sa.func.sum(orders.c.total), 0).label("total_spent"),
                sa.func.min(orders.c.date_created).label("first_order_at"),
                sa.func.max(orders.c.date_created).label("last_order_at"),
            ).where(
                orders.c.site_id == store.id,
                orders.c.customer_email == email,
                orders.c.status.not_in(EXCLUDED_ORDER_STATUSES),
            )
        )
    ).one()
    await session.execute(
        make_upsert(
            customer_history,
            {
                "site_id": store.id,
                "email": email,
                "order_count": summary.order_count,
                "total_spent": summary.total_spent,
                "first_order_at": summary.first_order_at,
                "last_order_at": summary.last_order_at,
                "updated_at": utcnow(),
            },
            use_sqlite=use_sqlite,
        )
    )


ORDER_SIDE_EFFECTS: List[Tuple[str, SideEffect]] = [
    ("order_items", _replace_order_items),
    ("customer_history", _refresh_customer_history),
]


async def _apply(
    session: AsyncSession,
    store: Store,
    object_type: str,
    action: str,
    entity: Dict[str, Any],
    *,
    use_sqlite: bool,
) -> List[str]:
    """Apply the event; returns the names of derived updates that failed."""

    failures: List[str] = []
    object_id = remote_id(entity)
    now = utcnow()

    if object_type == "order":
        if action in DELETE_ACTIONS:
            await session.execute(
                sa.delete(order_items).where(order_items.c.site_id == store.id, order_items.c.order_id == object_id)
            )
            await session.execute(
                sa.delete(orders).where(orders.c.site_id == store.id, orders.c.order_id == object_id)
            )
            return failures
        await session.execute(make_upsert(orders, order_row(store.id, entity, synced_at=now), use_sqlite=use_sqlite))
        for name, effect in ORDER_SIDE_EFFECTS:
            try:
                async with session.begin_nested():
                    await effect(session, store, entity, use_sqlite)
            except (SQLAlchemyError, MalformedEntityError, ValueError) as exc:
                failures.append(f"{name}: {exc}")
        return failures

    if action in DELETE_ACTIONS:
        await session.execute(
            sa.delete(products).where(
                products.c.site_id == store.id,
                sa.or_(products.c.product_id == object_id, products.c.parent_id == object_id),
            )
        )
        return failures
    await session.execute(make_upsert(products, product_row(store.id, entity, synced_at=now), use_sqlite=use_sqlite))
    return failures


async def _record_event(
    database_url: str,
    outcome: WebhookOutcome,
    *,
    source: str | None,
    object_type: str | None,
    received_at: datetime,
    extra: Dict[str, Any],
    forward: Optional[Tuple[Config, Dict[str, Any]]] = None,
) -> None:
    async with session_scope(database_url) as session:
        inserted = await session.execute(
            sa.insert(webhook_events).values(
                site_id=outcome.site_id,
                source=source,
                event_type=outcome.event_type or "unknown",
                object_id=outcome.object_id,
                object_type=object_type,
                received_at=received_at,
                processing_time_ms=outcome.processing_time_ms,
                status=outcome.status,
                error_message=None if outcome.status == SUCCESS else outcome.message,
                metadata={"failures": outcome.failures, "status_code": outcome.status_code, **extra},
            )
        )
        outcome.event_id = inserted.inserted_primary_key[0]
        if forward is not None:
            config, payload = forward
            queued = await delivery.enqueue(
                session,
                target_url=config.webhook_forward_url,
                event_type=outcome.event_type,
                payload=payload,
                secret=config.webhook_forward_secret,
                site_id=outcome.site_id,
                object_id=outcome.object_id,
                max_attempts=config.webhook_max_attempts,
                dedupe_window=timedelta(minutes=config.webhook_dedupe_minutes),
            )
            outcome.forwarded_item_id = queued.item_id
        await session.commit()


async def receive_webhook(
    database_url: str,
    *,
    event_type: str | None,
    source: str | None,
    signature: str | None,
    body: bytes,
    config: Config | None = None,
    logger: JsonLogger | None = None,
) -> WebhookOutcome:
    """Verify, apply and record one inbound push; never raises for a bad request."""

    config = config or get_config()
    logger = (logger or get_logger()).bind(event_type=event_type, source=source)
    received_at = utcnow()
    start = time.perf_counter()
    use_sqlite = is_sqlite(database_url)

    outcome = WebhookOutcome(
        accepted=False, status_code=500, status=ERROR, message="", event_type=event_type or ""
    )
    object_type: str | None = None
    extra: Dict[str, Any] = {}
    forward: Optional[Tuple[Config, Dict[str, Any]]] = None

    async def process() -> None:
        nonlocal object_type, forward
        object_type, action = _split_event(event_type)
        if not source:
            raise WebhookRejected("missing source header", status_code=400)
        async with session_scope(database_url) as session:
            store = await find_store_by_url(session, source)
        if store is None or not store.enabled:
            raise WebhookRejected(f"store not found or disabled: {source}", status_code=404)
        outcome.site_id = store.id
        if store.webhook_secret and not signatures.verify(store.webhook_secret, body, signature):
            raise WebhookRejected("invalid signature", status_code=401)

        payload = _parse_body(body)
        entity = _entity(payload, object_type)
        outcome.object_id = str(remote_id(entity))
        extra["action"] = action

        try:
            async with session_scope(database_url) as session:
                outcome.failures = await _apply(
                    session, store, object_type, action, entity, use_sqlite=use_sqlite
                )
                await session.commit()
        except (SQLAlchemyError, MalformedEntityError) as exc:
            outcome.status_code = 500
            outcome.message = f"failed to apply {outcome.event_type}: {exc}"
            logger.error(phase="webhook", message=outcome.message, site_id=store.id)
        else:
            outcome.accepted = True
            outcome.status_code = 200
            outcome.status = PARTIAL if outcome.failures else SUCCESS
            outcome.message = (
                f"applied with {len(outcome.failures)} failed updates" if outcome.failures else "applied"
            )
            if config.webhook_forward_url:
                forward = (config, {"event": outcome.event_type, "site_id": store.id, object_type: entity})

    try:
        await asyncio.wait_for(process(), timeout=config.webhook_timeout_seconds)
    except WebhookRejected as exc:
        outcome.status_code = exc.status_code
        outcome.message = str(exc)
        logger.warn(phase="webhook", message=f"rejected: {exc}", status_code=exc.status_code)
    except asyncio.TimeoutError:
        outcome.accepted = False
        outcome.status_code = 500
        outcome.status = ERROR
        outcome.message = f"webhook processing timed out after {config.webhook_timeout_seconds:g} seconds"
        forward = None
        logger.error(phase="webhook", message=outcome.message, site_id=outcome.site_id)

    outcome.processing_time_ms = int((time.perf_counter() - start) * 1000)
    await _record_event(
        database_url,
        outcome,
        source=source,
        object_type=object_type,
        received_at=received_at,
        extra=extra,
        forward=forward,
    )
    if outcome.accepted:
        logger.info(
            phase="webhook",
            status="ok" if outcome.status == SUCCESS else "warn",
            message=outcome.message,
            site_id=outcome.site_id,
            object_id=outcome.object_id,
            failures=outcome.failures,
            processing_time_ms=outcome.processing_time_ms,
        )
    return outcome


async def prune_webhook_events(
    database_url: str, *, retention_days: int, now: datetime | None = None
) -> int:
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    async with session_scope(database_url) as session:
        outcome = await session.execute(sa.delete(webhook_events).where(webhook_events.c.received_at < cutoff))
        await session.commit()
        return outcome.rowcount or 0
