"""Outbound webhook delivery queue.

Items move ``pending -> sending -> sent``. A failed attempt goes to
``failed`` with ``scheduled_at`` pushed out by the shared retry policy, and
is picked up again once due; an item that used up ``max_attempts`` (or got
a non-retryable response) is parked as ``dead`` for manual inspection.
Workers claim an item with a conditional update before sending it, so two
workers never send the same item.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

import httpx
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from storesync.common.db import as_utc, session_scope, utcnow
from storesync.common.json_logger import JsonLogger, get_logger
from storesync.common.retry import RetryPolicy, policy_from_config
from storesync.config import Config, get_config
from storesync.errors import NotFoundError
from storesync.sync.tables import webhook_queue
from storesync.webhooks.signatures import sign

PENDING = "pending"
SENDING = "sending"
SENT = "sent"
FAILED = "failed"
DEAD = "dead"

DUE_STATUSES = (PENDING, FAILED)
OPEN_STATUSES = (PENDING, SENDING, FAILED)

CLAIM_LEASE = timedelta(minutes=5)


@dataclass
class QueueItem:
    id: int
    site_id: Optional[str]
    target_url: str
    event_type: str
    object_id: Optional[str]
    payload: Dict[str, Any]
    signature: str
    attempts: int
    max_attempts: int
    status: str
    scheduled_at: Optional[datetime]
    last_attempt_at: Optional[datetime]
    error_message: Optional[str]

    @classmethod
    def from_row(cls, row: sa.Row) -> "QueueItem":
        return cls(
            id=row.id,
            site_id=row.site_id,
            target_url=row.target_url,
            event_type=row.event_type,
            object_id=row.object_id,
            payload=dict(row.payload or {}),
            signature=row.signature,
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            status=row.status,
            scheduled_at=as_utc(row.scheduled_at),
            last_attempt_at=as_utc(row.last_attempt_at),
            error_message=row.error_message,
        )


@dataclass
class EnqueueResult:
    item_id: int
    deduplicated: bool = False


@dataclass
class DeliveryReport:
    attempted: int = 0
    sent: int = 0
    retried: int = 0
    dead: int = 0
    items: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def encode_payload(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


async def enqueue(
    session: AsyncSession,
    *,
    target_url: str,
    event_type: str,
    payload: Mapping[str, Any],
    secret: str,
    site_id: str | None = None,
    object_id: str | None = None,
    max_attempts: int = 3,
    dedupe_window: timedelta = timedelta(minutes=5),
    now: datetime | None = None,
) -> EnqueueResult:
    """Queue a delivery unless the same event for the same object is already waiting."""

    now = now or utcnow()
    if object_id is not None and dedupe_window.total_seconds() > 0:
        existing = (
            await session.execute(
                sa.select(webhook_queue.c.id)
                .where(
                    webhook_queue.c.target_url == target_url,
                    webhook_queue.c.event_type == event_type,
                    webhook_queue.c.object_id == object_id,
                    webhook_queue.c.site_id == site_id if site_id is not None else webhook_queue.c.site_id.is_(None),
                    webhook_queue.c.status.in_(OPEN_STATUSES),
                    webhook_queue.c.created_at >= now - dedupe_window,
                )
                .order_by(webhook_queue.c.id.desc())
                .limit(1)
            )
        ).scalar()
        if existing is not None:
            return EnqueueResult(item_id=existing, deduplicated=True)

    body = encode_payload(payload)
    inserted = await session.execute(
        sa.insert(webhook_queue)
        .values(
            site_id=site_id,
            target_url=target_url,
            event_type=event_type,
            object_id=object_id,
            payload=dict(payload),
            signature=sign(secret, body),
            attempts=0,
            max_attempts=max_attempts,
            status=PENDING,
            scheduled_at=now,
            created_at=now,
        )
    )
    return EnqueueResult(item_id=inserted.inserted_primary_key[0])


async def claim_next(session: AsyncSession, *, now: datetime | None = None) -> QueueItem | None:
    """Move the oldest due item to ``sending``; ``None`` when nothing is due."""

    now = now or utcnow()
    for _ in range(5):
        candidate = (
            await session.execute(
                sa.select(webhook_queue.c.id)
                .where(webhook_queue.c.status.in_(DUE_STATUSES), webhook_queue.c.scheduled_at <= now)
                .order_by(webhook_queue.c.scheduled_at, webhook_queue.c.id)
                .limit(1)
            )
        ).scalar()
        if candidate is None:
            return None
        claimed = await session.execute(
            sa.update(webhook_queue)
            .where(webhook_queue.c.id == candidate, webhook_queue.c.status.in_(DUE_STATUSES))
            .values(status=SENDING, last_attempt_at=now)
        )
        if claimed.rowcount:
            row = (await session.execute(sa.select(webhook_queue).where(webhook_queue.c.id == candidate))).one()
            return QueueItem.from_row(row)
    return None


def _classify(response: httpx.Response | None, error: Exception | None, policy: RetryPolicy) -> tuple[bool, bool, str]:
    """(delivered, retryable, message)"""

    if isinstance(error, httpx.InvalidURL):
        return False, False, f"invalid target url: {error}"
    if error is not None:
        return False, True, f"{error.__class__.__name__}: {error}"
    if response is None:
        return False, True, "no response received"
    if 200 <= response.status_code < 300:
        return True, False, ""
    message = f"HTTP {response.status_code}: {response.text[:200]}"
    return False, policy.is_retryable_status(response.status_code), message


async def _send(client: httpx.AsyncClient, item: QueueItem) -> httpx.Response:
    headers = {
        "Content-Type": "application/json",
        "X-WC-Signature": item.signature,
        "X-WC-Event": item.event_type,
        "X-WC-Delivery-Id": str(item.id),
        "X-WC-Timestamp": str(int(utcnow().timestamp())),
    }
    if item.site_id:
        headers["X-WC-Source"] = item.site_id
    return await client.post(item.target_url, content=encode_payload(item.payload), headers=headers)


async def _record_attempt(
    session: AsyncSession,
    item: QueueItem,
    *,
    delivered: bool,
    retryable: bool,
    message: str,
    policy: RetryPolicy,
    now: datetime,
) -> str:
    attempts = item.attempts + 1
    if delivered:
        values: Dict[str, Any] = {"status": SENT, "attempts": attempts, "sent_at": now, "error_message": None}
    elif not retryable or attempts >= item.max_attempts:
        values = {"status": DEAD, "attempts": attempts, "error_message": message}
    else:
        values = {
            "status": FAILED,
            "attempts": attempts,
            "error_message": message,
            "scheduled_at": now + timedelta(seconds=policy.delay_for(attempts)),
        }
    await session.execute(
        sa.update(webhook_queue)
        .where(webhook_queue.c.id == item.id, webhook_queue.c.status == SENDING)
        .values(**values)
    )
    return values["status"]


async def deliver_due(
    database_url: str,
    *,
    limit: int = 50,
    client: httpx.AsyncClient | None = None,
    retry_policy: RetryPolicy | None = None,
    config: Config | None = None,
    logger: JsonLogger | None = None,
) -> DeliveryReport:
    """Claim and send due items one at a time, up to ``limit``."""

    config = config or get_config()
    policy = retry_policy or policy_from_config(config)
    logger = logger or get_logger()
    report = DeliveryReport()
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=config.remote_timeout_seconds)

    try:
        while report.attempted < limit:
            async with session_scope(database_url) as session:
                item = await claim_next(session)
                await session.commit()
            if item is None:
                break

            response: httpx.Response | None = None
            error: Exception | None = None
            try:
                response = await _send(client, item)
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                error = exc
            delivered, retryable, message = _classify(response, error, policy)

            async with session_scope(database_url) as session:
                status = await _record_attempt(
                    session,
                    item,
                    delivered=delivered,
                    retryable=retryable,
                    message=message,
                    policy=policy,
                    now=utcnow(),
                )
                await session.commit()

            report.attempted += 1
            if status == SENT:
                report.sent += 1
            elif status == DEAD:
                report.dead += 1
            else:
                report.retried += 1
            report.items.append({"id": item.id, "status": status, "attempt": item.attempts + 1, "error": message or None})
            log = logger.info if status == SENT else logger.warn if status == FAILED else logger.error
            log(
                phase="delivery",
                message=f"delivery {status}",
                item_id=item.id,
                event_type=item.event_type,
                attempt=item.attempts + 1,
                max_attempts=item.max_attempts,
                error=message or None,
            )
    finally:
        if owns_client:
            await client.aclose()

    return report


async def release_stale_claims(
    database_url: str,
    *,
    now: datetime | None = None,
    config: Config | None = None,
    lease: timedelta = CLAIM_LEASE,
) -> int:
    """Items stuck in ``sending`` count as a failed attempt and go back to the retry path."""

    config = config or get_config()
    policy = policy_from_config(config)
    now = now or utcnow()
    released = 0
    async with session_scope(database_url) as session:
        rows = (
            await session.execute(
                sa.select(webhook_queue).where(
                    webhook_queue.c.status == SENDING,
                    webhook_queue.c.last_attempt_at <= now - lease,
                )
            )
        ).all()
        for row in rows:
            item = QueueItem.from_row(row)
            await _record_attempt(
                session,
                item,
                delivered=False,
                retryable=True,
                message="delivery claim expired without a result",
                policy=policy,
                now=now,
            )
            released += 1
        await session.commit()
    return released


async def list_dead(database_url: str, *, limit: int = 100) -> List[QueueItem]:
    async with session_scope(database_url) as session:
        rows = (
            await session.execute(
                sa.select(webhook_queue)
                .where(webhook_queue.c.status == DEAD)
                .order_by(webhook_queue.c.id.desc())
                .limit(limit)
            )
        ).all()
    return [QueueItem.from_row(row) for row in rows]


async def requeue_dead(database_url: str, item_id: int) -> QueueItem:
    """Manual retry of a dead item with a fresh attempt budget."""

    async with session_scope(database_url) as session:
        outcome = await session.execute(
            sa.update(webhook_queue)
            .where(webhook_queue.c.id == item_id, webhook_queue.c.status == DEAD)
            .values(status=PENDING, attempts=0, scheduled_at=utcnow(), error_message=None)
        )
        if not outcome.rowcount:
            raise NotFoundError(f"no dead queue item {item_id}")
        row = (await session.execute(sa.select(webhook_queue).where(webhook_queue.c.id == item_id))).one()
        await session.commit()
    return QueueItem.from_row(row)


async def cleanup_queue(
    database_url: str, *, retention_days: int, now: datetime | None = None
) -> int:
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    async with session_scope(database_url) as session:
        outcome = await session.execute(
            sa.delete(webhook_queue).where(
                webhook_queue.c.status.in_((SENT, DEAD)),
                sa.func.coalesce(webhook_queue.c.last_attempt_at, webhook_queue.c.created_at) < cutoff,
            )
        )
        await session.commit()
        return outcome.rowcount or 0


async def queue_stats(database_url: str) -> Dict[str, int]:
    async with session_scope(database_url) as session:
        rows = (
            await session.execute(
                sa.select(webhook_queue.c.status, sa.func.count()).group_by(webhook_queue.c.status)
            )
        ).all()
    stats = {status: 0 for status in (PENDING, SENDING, SENT, FAILED, DEAD)}
    stats.update({status: count for status, count in rows})
    return stats
