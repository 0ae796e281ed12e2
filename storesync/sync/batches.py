"""Batch coordinator: one batch id for a sequence of per-store sync steps.

Every targeted store gets a ``sync_site_results`` row when the batch is
created. Each invocation of :func:`run_next_step` claims the next pending
step, runs it and records its stats; the batch is finalized once every step
is terminal. :func:`reclaim_stuck` is the independent sweep that fails
batches and steps whose owner died without reporting back.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from storesync.common.db import as_utc, session_scope, utcnow
from storesync.common.json_logger import JsonLogger, get_logger
from storesync.common.retry import RetryPolicy, Sleep
from storesync.config import Config, get_config
from storesync.errors import NotFoundError, SyncConflictError
from storesync.sync.slots import scheduled_stores
from storesync.sync.stores import Store, fetch_enabled_stores, fetch_store
from storesync.sync.tables import BATCH_LIVE_STATUSES, STEP_LIVE_STATUSES, sync_batches, sync_site_results
from storesync.sync.tasks import INCREMENTAL, ClientFactory, fail_stale_tasks, run_task, start_sync

STEP_PENDING = "pending"
STEP_RUNNING = "running"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"

BATCH_PENDING = "pending"
BATCH_SYNCING = "syncing"
BATCH_COMPLETED = "completed"
BATCH_FAILED = "failed"


@dataclass
class StepStats:
    total_checked: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StepResult:
    step_index: int
    site_id: str
    site_name: Optional[str]
    status: str
    stats: Dict[str, Any]
    error_message: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: sa.Row) -> "StepResult":
        return cls(
            step_index=row.step_index,
            site_id=row.site_id,
            site_name=row.site_name,
            status=row.status,
            stats=dict(row.stats or {}),
            error_message=row.error_message,
            started_at=as_utc(row.started_at),
            completed_at=as_utc(row.completed_at),
        )


@dataclass
class BatchStatus:
    id: str
    status: str
    current_step: int
    total_sites: int
    site_ids: List[str]
    stats: Dict[str, Any]
    error_message: Optional[str]
    created_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    expires_at: Optional[datetime]
    steps: List[StepResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in ("created_at", "started_at", "completed_at", "expires_at"):
            value = getattr(self, key)
            payload[key] = value.isoformat() if value else None
        for step, raw in zip(self.steps, payload["steps"]):
            raw["started_at"] = step.started_at.isoformat() if step.started_at else None
            raw["completed_at"] = step.completed_at.isoformat() if step.completed_at else None
        return payload


@dataclass
class ReclaimResult:
    expired_batches: int = 0
    idle_batches: int = 0
    stuck_batches: int = 0
    stuck_steps: int = 0
    finalized_batches: int = 0
    stale_tasks: int = 0
    released_claims: int = 0
    timed_out: bool = False
    reclaimed_batch_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


StepRunner = Callable[[Store], Awaitable[StepStats]]


async def create_batch(
    database_url: str,
    site_ids: Sequence[str] | None = None,
    *,
    config: Config | None = None,
    logger: JsonLogger | None = None,
    now: datetime | None = None,
) -> BatchStatus:
    """Create a batch with one pending step per store, in slot order by default."""

    config = config or get_config()
    logger = logger or get_logger()
    now = now or utcnow()

    async with session_scope(database_url) as session:
        live = (
            await session.execute(
                sa.select(sync_batches.c.id).where(
                    sync_batches.c.status.in_(BATCH_LIVE_STATUSES),
                    sync_batches.c.expires_at > now,
                )
            )
        ).scalars().first()
        if live is not None:
            raise SyncConflictError(f"batch {live} is still running", existing_id=live)

        if site_ids is None:
            targets = await scheduled_stores(session)
        else:
            found = {store.id: store for store in await fetch_enabled_stores(session, site_ids=site_ids)}
            missing = [site_id for site_id in site_ids if site_id not in found]
            if missing:
                raise NotFoundError(f"unknown or disabled stores: {', '.join(missing)}")
            targets = [found[site_id] for site_id in dict.fromkeys(site_ids)]
        if not targets:
            raise ValueError("no stores to sync")

        batch_id = str(uuid.uuid4())
        await session.execute(
            sa.insert(sync_batches).values(
                id=batch_id,
                status=BATCH_PENDING,
                current_step=0,
                total_sites=len(targets),
                site_ids=[store.id for store in targets],
                stats={},
                created_at=now,
                expires_at=now + timedelta(minutes=config.batch_expiry_minutes),
            )
        )
        await session.execute(
            sa.insert(sync_site_results),
            [
                {
                    "batch_id": batch_id,
                    "step_index": index,
                    "site_id": store.id,
                    "site_name": store.name,
                    "status": STEP_PENDING,
                    "stats": {},
                }
                for index, store in enumerate(targets, start=1)
            ],
        )
        await session.commit()

    logger.info(phase="batch", message="batch created", batch_id=batch_id, total_sites=len(targets))
    return await get_batch_status(database_url, batch_id)


async def get_batch_status(database_url: str, batch_id: str | None = None) -> BatchStatus:
    """One batch with its steps; the most recent batch when no id is given."""

    async with session_scope(database_url) as session:
        stmt = sa.select(sync_batches)
        if batch_id is None:
            stmt = stmt.order_by(sync_batches.c.created_at.desc()).limit(1)
        else:
            stmt = stmt.where(sync_batches.c.id == batch_id)
        row = (await session.execute(stmt)).first()
        if row is None:
            raise NotFoundError(f"batch {batch_id or '(latest)'} not found")
        steps = (
            await session.execute(
                sa.select(sync_site_results)
                .where(sync_site_results.c.batch_id == row.id)
                .order_by(sync_site_results.c.step_index)
            )
        ).all()
    return BatchStatus(
        id=row.id,
        status=row.status,
        current_step=row.current_step,
        total_sites=row.total_sites,
        site_ids=list(row.site_ids or []),
        stats=dict(row.stats or {}),
        error_message=row.error_message,
        created_at=as_utc(row.created_at),
        started_at=as_utc(row.started_at),
        completed_at=as_utc(row.completed_at),
        expires_at=as_utc(row.expires_at),
        steps=[StepResult.from_row(step) for step in steps],
    )


def _task_stats(results: Dict[str, Any]) -> StepStats:
    stats = StepStats()
    for entity, outcome in results.items():
        if not isinstance(outcome, dict) or "fetched" not in outcome:
            continue
        fetched = int(outcome.get("fetched") or 0)
        written = int(outcome.get("written") or 0)
        errors = int(outcome.get("entity_errors") or 0) + (1 if outcome.get("error") else 0)
        stats.total_checked += fetched
        stats.changed += written
        stats.failed += errors
        stats.skipped += max(fetched - written - int(outcome.get("entity_errors") or 0), 0)
        stats.details[entity] = outcome
    return stats


def task_step_runner(
    database_url: str,
    *,
    config: Config,
    client_factory: ClientFactory | None = None,
    retry_policy: RetryPolicy | None = None,
    logger: JsonLogger | None = None,
    sleep: Sleep = asyncio.sleep,
) -> StepRunner:
    """Steps run as ordinary incremental sync tasks so the one-live-task rule holds."""

    async def _run(store: Store) -> StepStats:
        started = await start_sync(
            database_url,
            store.id,
            mode=INCREMENTAL,
            force=True,
            config=config,
            logger=logger,
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
        stats = _task_stats(finished.results)
        stats.details["task_id"] = finished.id
        stats.details["task_status"] = finished.status
        if finished.status == "failed":
            raise StepFailed(finished.error_message or "sync task failed", stats=stats)
        return stats

    return _run


class StepFailed(RuntimeError):
    def __init__(self, message: str, *, stats: StepStats | None = None) -> None:
        super().__init__(message)
        self.stats = stats or StepStats()


async def _finalize_batch(session: AsyncSession, batch_id: str, *, now: datetime) -> Optional[str]:
    batch = (await session.execute(sa.select(sync_batches).where(sync_batches.c.id == batch_id))).first()
    if batch is None or batch.status not in BATCH_LIVE_STATUSES:
        return None
    steps = (
        await session.execute(sa.select(sync_site_results).where(sync_site_results.c.batch_id == batch_id))
    ).all()
    if any(step.status in STEP_LIVE_STATUSES for step in steps):
        return None

    stats_list = [dict(step.stats or {}) for step in steps]
    failed_steps = [step for step in steps if step.status != STEP_COMPLETED]
    totals = {
        "total_sites": len(steps),
        "completed_sites": len(steps) - len(failed_steps),
        "failed_sites": len(failed_steps),
        "total_checked": sum(int(s.get("total_checked") or 0) for s in stats_list),
        "total_changed": sum(int(s.get("changed") or 0) for s in stats_list),
        "total_failed": sum(int(s.get("failed") or 0) for s in stats_list),
        "total_skipped": sum(int(s.get("skipped") or 0) for s in stats_list),
        "duration_ms": int((now - as_utc(batch.created_at)).total_seconds() * 1000),
    }
    if failed_steps or totals["total_failed"]:
        totals["outcome"] = "partial"
    elif totals["total_changed"]:
        totals["outcome"] = "success"
    else:
        totals["outcome"] = "no_changes"

    status = BATCH_FAILED if failed_steps else BATCH_COMPLETED
    error_message = None
    if failed_steps:
        error_message = "; ".join(
            f"step {step.step_index} ({step.site_name or step.site_id}): {step.error_message or step.status}"
            for step in failed_steps
        )
    await session.execute(
        sa.update(sync_batches)
        .where(sync_batches.c.id == batch_id, sync_batches.c.status.in_(BATCH_LIVE_STATUSES))
        .values(
            status=status,
            stats=totals,
            error_message=error_message,
            current_step=len(steps),
            completed_at=now,
        )
    )
    return status


async def run_next_step(
    database_url: str,
    batch_id: str,
    *,
    runner: StepRunner | None = None,
    config: Config | None = None,
    client_factory: ClientFactory | None = None,
    retry_policy: RetryPolicy | None = None,
    logger: JsonLogger | None = None,
    sleep: Sleep = asyncio.sleep,
) -> StepResult | None:
    """Claim and run the next pending step; ``None`` once the batch has nothing left to run."""

    config = config or get_config()
    logger = (logger or get_logger()).bind(batch_id=batch_id)
    runner = runner or task_step_runner(
        database_url,
        config=config,
        client_factory=client_factory,
        retry_policy=retry_policy,
        logger=logger,
        sleep=sleep,
    )

    async with session_scope(database_url) as session:
        batch = (await session.execute(sa.select(sync_batches).where(sync_batches.c.id == batch_id))).first()
        if batch is None:
            raise NotFoundError(f"batch {batch_id} not found")
        if batch.status not in BATCH_LIVE_STATUSES:
            return None

        step = (
            await session.execute(
                sa.select(sync_site_results)
                .where(
                    sync_site_results.c.batch_id == batch_id,
                    sync_site_results.c.status == STEP_PENDING,
                )
                .order_by(sync_site_results.c.step_index)
                .limit(1)
            )
        ).first()
        if step is None:
            status = await _finalize_batch(session, batch_id, now=utcnow())
            await session.commit()
            if status:
                logger.info(phase="batch", message="batch finalized", batch_status=status)
            return None

        now = utcnow()
        advanced = await session.execute(
            sa.update(sync_batches)
            .where(sync_batches.c.id == batch_id, sync_batches.c.status.in_(BATCH_LIVE_STATUSES))
            .values(
                status=BATCH_SYNCING,
                current_step=step.step_index,
                started_at=sa.func.coalesce(sync_batches.c.started_at, now),
            )
        )
        claimed = await session.execute(
            sa.update(sync_site_results)
            .where(sync_site_results.c.id == step.id, sync_site_results.c.status == STEP_PENDING)
            .values(status=STEP_RUNNING, started_at=now)
        )
        if not advanced.rowcount or not claimed.rowcount:
            await session.rollback()
            raise SyncConflictError(f"step {step.step_index} of batch {batch_id} was claimed elsewhere")
        await session.commit()
        store = await fetch_store(session, step.site_id)

    logger = logger.bind(step_index=step.step_index, site_id=step.site_id)
    logger.info(phase="batch", message="step started", site_name=step.site_name)

    status = STEP_COMPLETED
    error_message: Optional[str] = None
    try:
        if store is None or not store.enabled:
            raise StepFailed(f"store {step.site_id} is missing or disabled")
        stats = await runner(store)
    except StepFailed as exc:
        status, error_message, stats = STEP_FAILED, str(exc), exc.stats
    except SyncConflictError as exc:
        status, error_message, stats = STEP_FAILED, str(exc), StepStats(skipped=1)
    except Exception as exc:
        status, error_message, stats = STEP_FAILED, f"{exc.__class__.__name__}: {exc}", StepStats(failed=1)

    async with session_scope(database_url) as session:
        finished_at = utcnow()
        recorded = await session.execute(
            sa.update(sync_site_results)
            .where(sync_site_results.c.id == step.id, sync_site_results.c.status == STEP_RUNNING)
            .values(
                status=status,
                stats=stats.to_dict(),
                error_message=error_message,
                completed_at=finished_at,
            )
        )
        recorded_step = bool(recorded.rowcount)
        batch_status = await _finalize_batch(session, batch_id, now=finished_at)
        await session.commit()

    if not recorded_step:
        logger.warn(phase="batch", message="step was reclaimed before it finished; outcome discarded")
    else:
        log = logger.info if status == STEP_COMPLETED else logger.error
        log(phase="batch", message="step finished", step_status=status, error=error_message, **stats.to_dict())
    if batch_status:
        logger.info(phase="batch", message="batch finalized", batch_status=batch_status)

    return StepResult(
        step_index=step.step_index,
        site_id=step.site_id,
        site_name=step.site_name,
        status=status if recorded_step else STEP_FAILED,
        stats=stats.to_dict(),
        error_message=error_message,
        started_at=now,
        completed_at=finished_at,
    )


async def run_batch(
    database_url: str,
    batch_id: str,
    *,
    runner: StepRunner | None = None,
    config: Config | None = None,
    client_factory: ClientFactory | None = None,
    retry_policy: RetryPolicy | None = None,
    logger: JsonLogger | None = None,
    sleep: Sleep = asyncio.sleep,
) -> BatchStatus:
    while True:
        step = await run_next_step(
            database_url,
            batch_id,
            runner=runner,
            config=config,
            client_factory=client_factory,
            retry_policy=retry_policy,
            logger=logger,
            sleep=sleep,
        )
        if step is None:
            break
    return await get_batch_status(database_url, batch_id)


async def cancel_batch(
    database_url: str, batch_id: str, *, reason: str = "cancelled by operator"
) -> BatchStatus:
    async with session_scope(database_url) as session:
        now = utcnow()
        await _fail_batch(session, batch_id, reason=reason, step_reason=reason, now=now)
        await session.commit()
    return await get_batch_status(database_url, batch_id)


async def _fail_batch(
    session: AsyncSession,
    batch_id: str,
    *,
    reason: str,
    step_reason: str,
    now: datetime,
) -> bool:
    """Fail a live batch and every step that is not yet terminal."""

    outcome = await session.execute(
        sa.update(sync_batches)
        .where(sync_batches.c.id == batch_id, sync_batches.c.status.in_(BATCH_LIVE_STATUSES))
        .values(status=BATCH_FAILED, error_message=reason, completed_at=now)
    )
    if not outcome.rowcount:
        return False
    await session.execute(
        sa.update(sync_site_results)
        .where(
            sync_site_results.c.batch_id == batch_id,
            sync_site_results.c.status.in_(STEP_LIVE_STATUSES),
        )
        .values(status=STEP_FAILED, error_message=step_reason, completed_at=now)
    )
    return True


async def reclaim_stuck(
    database_url: str,
    *,
    now: datetime | None = None,
    config: Config | None = None,
    logger: JsonLogger | None = None,
) -> ReclaimResult:
    """Fail batches, steps and tasks whose owners stopped reporting.

    Only live rows are touched, so running the sweep again is a no-op. A
    reclaimed step's in-flight work is not cancelled; when it finishes, its
    conditional update finds the step already failed and is discarded.
    """

    config = config or get_config()
    logger = logger or get_logger()
    now = now or utcnow()
    try:
        result = await asyncio.wait_for(
            _sweep(database_url, now=now, config=config, logger=logger),
            timeout=config.reclaim_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(
            phase="reclaim",
            message=f"reclamation sweep timed out after {config.reclaim_timeout_seconds:g} seconds",
        )
        return ReclaimResult(timed_out=True)
    logger.info(phase="reclaim", message="reclamation sweep finished", **result.to_dict())
    return result


async def _sweep(database_url: str, *, now: datetime, config: Config, logger: JsonLogger) -> ReclaimResult:
    from storesync.webhooks.delivery import release_stale_claims

    idle = timedelta(minutes=config.batch_idle_minutes)
    step_timeout = timedelta(minutes=config.step_timeout_minutes)
    result = ReclaimResult()

    async with session_scope(database_url) as session:
        batches = (
            await session.execute(
                sa.select(sync_batches).where(sync_batches.c.status.in_(BATCH_LIVE_STATUSES))
            )
        ).all()
        for batch in batches:
            steps = (
                await session.execute(
                    sa.select(sync_site_results)
                    .where(sync_site_results.c.batch_id == batch.id)
                    .order_by(sync_site_results.c.step_index)
                )
            ).all()

            if as_utc(batch.expires_at) <= now:
                reason = "batch expired"
                if await _fail_batch(
                    session, batch.id, reason=f"auto-reclaimed: {reason}", step_reason=reason, now=now
                ):
                    result.expired_batches += 1
                    result.reclaimed_batch_ids.append(batch.id)
                    logger.warn(phase="reclaim", message=reason, batch_id=batch.id)
                continue

            if steps and all(step.status == STEP_PENDING for step in steps):
                if as_utc(batch.created_at) <= now - idle:
                    reason = f"no step started within {config.batch_idle_minutes} minutes"
                    if await _fail_batch(
                        session, batch.id, reason=f"auto-reclaimed: {reason}", step_reason=reason, now=now
                    ):
                        result.idle_batches += 1
                        result.reclaimed_batch_ids.append(batch.id)
                        logger.warn(phase="reclaim", message=reason, batch_id=batch.id)
                continue

            stuck = [
                step
                for step in steps
                if step.status == STEP_RUNNING
                and step.started_at is not None
                and as_utc(step.started_at) <= now - step_timeout
            ]
            if stuck:
                for step in stuck:
                    marked = await session.execute(
                        sa.update(sync_site_results)
                        .where(sync_site_results.c.id == step.id, sync_site_results.c.status == STEP_RUNNING)
                        .values(
                            status=STEP_FAILED,
                            error_message=f"step timed out after {config.step_timeout_minutes} minutes",
                            completed_at=now,
                        )
                    )
                    result.stuck_steps += marked.rowcount or 0
                names = ", ".join(f"step {step.step_index} ({step.site_name or step.site_id})" for step in stuck)
                if await _fail_batch(
                    session,
                    batch.id,
                    reason=f"auto-reclaimed: {names} timed out",
                    step_reason="batch reclaimed after a stuck step",
                    now=now,
                ):
                    result.stuck_batches += 1
                    result.reclaimed_batch_ids.append(batch.id)
                    logger.warn(phase="reclaim", message="stuck step", batch_id=batch.id, steps=names)
                continue

            if steps and not any(step.status in STEP_LIVE_STATUSES for step in steps):
                if await _finalize_batch(session, batch.id, now=now):
                    result.finalized_batches += 1

        stale = await fail_stale_tasks(
            session, now=now, liveness=timedelta(minutes=config.task_liveness_minutes)
        )
        result.stale_tasks = len(stale)
        await session.commit()

    result.released_claims = await release_stale_claims(database_url, now=now, config=config)
    return result
