"""Sync task lifecycle: ``pending -> running -> completed | completed_with_errors | failed``.

At most one task per store is live (pending or running). ``start_sync``
checks that with a read before the insert, and the partial unique index on
``sync_tasks.site_id`` turns a lost race into a conflict instead of a second
live task.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storesync.common.db import as_utc, session_scope, utcnow
from storesync.common.json_logger import JsonLogger, get_logger
from storesync.common.retry import RetryPolicy, Sleep
from storesync.config import Config, get_config
from storesync.errors import NotFoundError, SyncConflictError
from storesync.sync import puller
from storesync.sync.checkpoints import ENTITY_KINDS
from storesync.sync.progress import EntityProgress, dump_progress, initial_progress, parse_progress
from storesync.sync.remote import WooCommerceClient
from storesync.sync.stores import Store, fetch_store
from storesync.sync.tables import TASK_LIVE_STATUSES, sync_tasks

FULL = "full"
INCREMENTAL = "incremental"

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_COMPLETED_WITH_ERRORS = "completed_with_errors"
STATUS_FAILED = "failed"
FINISHED_STATUSES = (STATUS_COMPLETED, STATUS_COMPLETED_WITH_ERRORS)

ClientFactory = Callable[[Store], WooCommerceClient]


@dataclass
class StartSyncResult:
    task_id: Optional[str]
    status: str
    requires_confirmation: bool = False
    message: str = ""
    last_task_id: Optional[str] = None
    timed_out_task_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TaskStatus:
    id: str
    site_id: str
    task_type: str
    entities: List[str]
    status: str
    progress: Dict[str, EntityProgress]
    results: Dict[str, Any]
    error_message: Optional[str]
    created_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    @property
    def terminal(self) -> bool:
        return self.status not in TASK_LIVE_STATUSES

    @classmethod
    def from_row(cls, row: sa.Row) -> "TaskStatus":
        return cls(
            id=row.id,
            site_id=row.site_id,
            task_type=row.task_type,
            entities=list(row.entities or []),
            status=row.status,
            progress=parse_progress(row.progress),
            results=dict(row.results or {}),
            error_message=row.error_message,
            created_at=as_utc(row.created_at),
            started_at=as_utc(row.started_at),
            completed_at=as_utc(row.completed_at),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "site_id": self.site_id,
            "task_type": self.task_type,
            "entities": self.entities,
            "status": self.status,
            "progress": dump_progress(self.progress),
            "results": self.results,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def _validate_request(entities: Sequence[str], mode: str) -> List[str]:
    if mode not in (FULL, INCREMENTAL):
        raise ValueError(f"unknown sync mode: {mode!r}")
    requested = [entity for entity in ENTITY_KINDS if entity in set(entities)]
    unknown = sorted(set(entities) - set(ENTITY_KINDS))
    if unknown:
        raise ValueError(f"unknown entity kinds: {', '.join(unknown)}")
    if not requested:
        raise ValueError("at least one entity kind is required")
    return requested


async def fail_stale_tasks(
    session: AsyncSession,
    *,
    now: datetime,
    liveness: timedelta,
    site_id: str | None = None,
) -> List[str]:
    """Force live tasks older than ``liveness`` to failed; returns their ids."""

    minutes = int(liveness.total_seconds() // 60)
    stmt = sa.select(sync_tasks.c.id).where(
        sync_tasks.c.status.in_(TASK_LIVE_STATUSES),
        sync_tasks.c.created_at < now - liveness,
    )
    if site_id is not None:
        stmt = stmt.where(sync_tasks.c.site_id == site_id)
    stale_ids = list((await session.execute(stmt)).scalars())
    failed: List[str] = []
    for task_id in stale_ids:
        outcome = await session.execute(
            sa.update(sync_tasks)
            .where(sync_tasks.c.id == task_id, sync_tasks.c.status.in_(TASK_LIVE_STATUSES))
            .values(
                status=STATUS_FAILED,
                error_message=f"Task timeout - marked as failed after {minutes} minutes",
                completed_at=now,
            )
        )
        if outcome.rowcount:
            failed.append(task_id)
    return failed


async def start_sync(
    database_url: str,
    site_id: str,
    *,
    entities: Sequence[str] = ENTITY_KINDS,
    mode: str = FULL,
    force: bool = False,
    config: Config | None = None,
    logger: JsonLogger | None = None,
    now: datetime | None = None,
) -> StartSyncResult:
    """Create a pending task, or report why one cannot be created.

    Raises :class:`SyncConflictError` while another task for the store is live
    and younger than the liveness window.
    """

    config = config or get_config()
    logger = (logger or get_logger()).bind(site_id=site_id)
    requested = _validate_request(entities, mode)
    now = now or utcnow()
    liveness = timedelta(minutes=config.task_liveness_minutes)

    async with session_scope(database_url) as session:
        store = await fetch_store(session, site_id)
        if store is None:
            raise NotFoundError(f"store {site_id} not found")
        if not store.enabled:
            raise NotFoundError(f"store {site_id} is disabled")

        live = (
            await session.execute(
                sa.select(sync_tasks.c.id, sync_tasks.c.created_at)
                .where(sync_tasks.c.site_id == site_id, sync_tasks.c.status.in_(TASK_LIVE_STATUSES))
                .order_by(sync_tasks.c.created_at.desc())
            )
        ).all()
        for row in live:
            if as_utc(row.created_at) > now - liveness:
                raise SyncConflictError(
                    f"sync task {row.id} is already in progress for store {site_id}",
                    existing_id=row.id,
                )
        timed_out = await fail_stale_tasks(session, now=now, liveness=liveness, site_id=site_id)
        if timed_out:
            await session.commit()
            logger.warn(phase="task", message="stale live tasks marked failed", task_ids=timed_out)

        if mode == FULL and not force and config.full_sync_cooldown_minutes > 0:
            cooldown_start = now - timedelta(minutes=config.full_sync_cooldown_minutes)
            recent = (
                await session.execute(
                    sa.select(sync_tasks.c.id, sync_tasks.c.completed_at)
                    .where(
                        sync_tasks.c.site_id == site_id,
                        sync_tasks.c.task_type == FULL,
                        sync_tasks.c.status.in_(FINISHED_STATUSES),
                        sync_tasks.c.completed_at >= cooldown_start,
                    )
                    .order_by(sync_tasks.c.completed_at.desc())
                    .limit(1)
                )
            ).first()
            if recent is not None:
                minutes_ago = int((now - as_utc(recent.completed_at)).total_seconds() // 60)
                message = (
                    f"a full sync finished {minutes_ago} minutes ago; pass force to run it again"
                )
                logger.info(phase="task", status="warn", message=message, last_task_id=recent.id)
                return StartSyncResult(
                    task_id=None,
                    status="confirmation_required",
                    requires_confirmation=True,
                    message=message,
                    last_task_id=recent.id,
                    timed_out_task_ids=timed_out,
                )

        task_id = str(uuid.uuid4())
        try:
            await session.execute(
                sa.insert(sync_tasks).values(
                    id=task_id,
                    site_id=site_id,
                    task_type=mode,
                    entities=requested,
                    status=STATUS_PENDING,
                    force=force,
                    progress=dump_progress(initial_progress(requested)),
                    results={},
                    created_at=now,
                )
            )
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise SyncConflictError(
                f"another sync task was created concurrently for store {site_id}"
            ) from exc

    logger.info(phase="task", message="sync task created", task_id=task_id, mode=mode, entities=requested)
    return StartSyncResult(
        task_id=task_id,
        status=STATUS_PENDING,
        message=f"{mode} sync queued for {store.name}",
        timed_out_task_ids=timed_out,
    )


async def get_task_status(database_url: str, task_id: str) -> TaskStatus:
    async with session_scope(database_url) as session:
        row = (await session.execute(sa.select(sync_tasks).where(sync_tasks.c.id == task_id))).first()
    if row is None:
        raise NotFoundError(f"sync task {task_id} not found")
    return TaskStatus.from_row(row)


async def list_tasks(database_url: str, *, site_id: str | None = None, limit: int = 20) -> List[TaskStatus]:
    stmt = sa.select(sync_tasks).order_by(sync_tasks.c.created_at.desc()).limit(limit)
    if site_id is not None:
        stmt = stmt.where(sync_tasks.c.site_id == site_id)
    async with session_scope(database_url) as session:
        rows = (await session.execute(stmt)).all()
    return [TaskStatus.from_row(row) for row in rows]


async def _save_progress(database_url: str, task_id: str, progress: Dict[str, EntityProgress]) -> None:
    async with session_scope(database_url) as session:
        await session.execute(
            sa.update(sync_tasks)
            .where(sync_tasks.c.id == task_id, sync_tasks.c.status == STATUS_RUNNING)
            .values(progress=dump_progress(progress))
        )
        await session.commit()


def _outcome(progress: Dict[str, EntityProgress]) -> str:
    finished = [entry for entry in progress.values() if entry.finished]
    if not finished:
        return STATUS_FAILED
    if any(entry.status != STATUS_COMPLETED for entry in progress.values()):
        return STATUS_COMPLETED_WITH_ERRORS
    return STATUS_COMPLETED


def _fail_unfinished(progress: Dict[str, EntityProgress]) -> None:
    for entry in progress.values():
        if entry.status in (STATUS_PENDING, STATUS_RUNNING):
            entry.status = STATUS_FAILED


def _first_error(progress: Dict[str, EntityProgress]) -> Optional[str]:
    for entity, entry in progress.items():
        if entry.errors:
            return f"{entity}: {entry.errors[-1]}"
    return None


async def _execute(
    database_url: str,
    task: TaskStatus,
    store: Store,
    *,
    config: Config,
    client: WooCommerceClient | None,
    retry_policy: RetryPolicy | None,
    logger: JsonLogger,
    sleep: Sleep,
    progress: Dict[str, EntityProgress],
    results: Dict[str, Any],
) -> None:
    for entity in task.entities:
        entry = progress[entity]
        entry.status = STATUS_RUNNING
        await _save_progress(database_url, task.id, progress)

        async def on_page(partial: puller.PullResult, entry: EntityProgress = entry) -> None:
            entry.synced = partial.written
            entry.fetched = partial.fetched
            entry.pages = partial.pages
            entry.total = partial.total
            await _save_progress(database_url, task.id, progress)

        try:
            outcome = await puller.pull(
                store,
                entity,
                task.task_type,
                database_url=database_url,
                config=config,
                client=client,
                retry_policy=retry_policy,
                logger=logger,
                on_page=on_page,
                sleep=sleep,
            )
        except Exception as exc:
            error = f"{exc.__class__.__name__}: {exc}"
            logger.error(phase="task", message="entity pull crashed", entity=entity, error=error)
            entry.status = STATUS_FAILED
            entry.errors = entry.errors + [error]
            results[entity] = {"status": STATUS_FAILED, "error": error}
            await _save_progress(database_url, task.id, progress)
            continue
        entry.status = outcome.status
        entry.synced = outcome.written
        entry.fetched = outcome.fetched
        entry.pages = outcome.pages
        entry.total = outcome.total if outcome.total is not None else outcome.fetched
        entry.errors = list(outcome.errors) + ([outcome.error] if outcome.error else [])
        if entity == "orders":
            entry.items_synced = outcome.children_written
        else:
            entry.variations_synced = outcome.children_written
        results[entity] = {
            "status": outcome.status,
            "fetched": outcome.fetched,
            "written": outcome.written,
            "pages": outcome.pages,
            "entity_errors": len(outcome.errors),
            "error": outcome.error,
            "window_complete": outcome.window_complete,
            "duration_ms": outcome.duration_ms,
        }
        await _save_progress(database_url, task.id, progress)


async def _finalize(
    database_url: str,
    task_id: str,
    *,
    status: str,
    progress: Dict[str, EntityProgress],
    results: Dict[str, Any],
    error_message: Optional[str],
) -> bool:
    async with session_scope(database_url) as session:
        outcome = await session.execute(
            sa.update(sync_tasks)
            .where(sync_tasks.c.id == task_id, sync_tasks.c.status == STATUS_RUNNING)
            .values(
                status=status,
                progress=dump_progress(progress),
                results=results,
                error_message=error_message,
                completed_at=utcnow(),
            )
        )
        await session.commit()
        return bool(outcome.rowcount)


async def run_task(
    database_url: str,
    task_id: str,
    *,
    config: Config | None = None,
    client_factory: ClientFactory | None = None,
    retry_policy: RetryPolicy | None = None,
    logger: JsonLogger | None = None,
    sleep: Sleep = asyncio.sleep,
    follow_up: bool = True,
) -> TaskStatus:
    """Run a pending task to a terminal state and return it."""

    config = config or get_config()
    logger = (logger or get_logger()).bind(task_id=task_id)

    async with session_scope(database_url) as session:
        claimed = await session.execute(
            sa.update(sync_tasks)
            .where(sync_tasks.c.id == task_id, sync_tasks.c.status == STATUS_PENDING)
            .values(status=STATUS_RUNNING, started_at=utcnow())
        )
        await session.commit()
        if not claimed.rowcount:
            exists = await session.scalar(sa.select(sync_tasks.c.id).where(sync_tasks.c.id == task_id))
            if exists is None:
                raise NotFoundError(f"sync task {task_id} not found")
            raise SyncConflictError(f"sync task {task_id} is not pending", existing_id=task_id)
        row = (await session.execute(sa.select(sync_tasks).where(sync_tasks.c.id == task_id))).one()
        task = TaskStatus.from_row(row)
        store = await fetch_store(session, task.site_id)

    logger = logger.bind(site_id=task.site_id, mode=task.task_type)
    progress = task.progress or initial_progress(task.entities)
    results: Dict[str, Any] = {}
    client = client_factory(store) if (client_factory and store) else None

    status = STATUS_FAILED
    error_message: Optional[str] = None
    try:
        if store is None:
            error_message = f"store {task.site_id} no longer exists"
        else:
            logger.info(phase="task", message="sync task running", entities=task.entities)
            await asyncio.wait_for(
                _execute(
                    database_url,
                    task,
                    store,
                    config=config,
                    client=client,
                    retry_policy=retry_policy,
                    logger=logger,
                    sleep=sleep,
                    progress=progress,
                    results=results,
                ),
                timeout=config.task_timeout_seconds,
            )
            status = _outcome(progress)
            error_message = _first_error(progress) if status != STATUS_COMPLETED else None
    except asyncio.TimeoutError:
        error_message = f"Task timeout - exceeded {int(config.task_timeout_seconds)} seconds"
        _fail_unfinished(progress)
    except Exception as exc:
        error_message = f"{exc.__class__.__name__}: {exc}"
        logger.error(phase="task", message="sync task crashed", error=error_message)
        _fail_unfinished(progress)
    finally:
        if client is not None:
            await client.aclose()

    written = await _finalize(
        database_url,
        task_id,
        status=status,
        progress=progress,
        results=results,
        error_message=error_message,
    )
    if not written:
        logger.warn(phase="task", message="task was reclaimed before it finished; outcome discarded")
    else:
        log = logger.error if status == STATUS_FAILED else logger.info
        log(phase="task", message="sync task finished", task_status=status, error=error_message)

    if written and follow_up and task.task_type == FULL and status in FINISHED_STATUSES:
        await _run_follow_up(
            database_url,
            task,
            config=config,
            client_factory=client_factory,
            retry_policy=retry_policy,
            logger=logger,
            sleep=sleep,
            results=results,
        )

    return await get_task_status(database_url, task_id)


async def _run_follow_up(
    database_url: str,
    task: TaskStatus,
    *,
    config: Config,
    client_factory: ClientFactory | None,
    retry_policy: RetryPolicy | None,
    logger: JsonLogger,
    sleep: Sleep,
    results: Dict[str, Any],
) -> None:
    """Incremental pass that picks up changes made while the full run was going."""

    follow_up: Dict[str, Any] = {"auto_incremental_sync": True, "auto_incremental_at": utcnow().isoformat()}
    try:
        started = await start_sync(
            database_url,
            task.site_id,
            entities=task.entities,
            mode=INCREMENTAL,
            force=True,
            config=config,
            logger=logger,
        )
        follow_up["auto_incremental_task_id"] = started.task_id
        finished = await run_task(
            database_url,
            started.task_id,
            config=config,
            client_factory=client_factory,
            retry_policy=retry_policy,
            logger=logger,
            sleep=sleep,
            follow_up=False,
        )
        follow_up["auto_incremental_status"] = finished.status
    except Exception as exc:
        follow_up["auto_incremental_error"] = f"{exc.__class__.__name__}: {exc}"
        logger.warn(phase="task", message="follow-up incremental sync failed", error=str(exc))

    async with session_scope(database_url) as session:
        await session.execute(
            sa.update(sync_tasks)
            .where(sync_tasks.c.id == task.id)
            .values(results={**results, **follow_up})
        )
        await session.commit()


async def sync_store(
    database_url: str,
    site_id: str,
    *,
    entities: Sequence[str] = ENTITY_KINDS,
    mode: str = FULL,
    force: bool = False,
    config: Config | None = None,
    client_factory: ClientFactory | None = None,
    retry_policy: RetryPolicy | None = None,
    logger: JsonLogger | None = None,
    sleep: Sleep = asyncio.sleep,
) -> StartSyncResult | TaskStatus:
    """Start and run a task in one call; a soft-blocked request is returned unchanged."""

    started = await start_sync(
        database_url,
        site_id,
        entities=entities,
        mode=mode,
        force=force,
        config=config,
        logger=logger,
    )
    if started.task_id is None:
        return started
    return await run_task(
        database_url,
        started.task_id,
        config=config,
        client_factory=client_factory,
        retry_policy=retry_policy,
        logger=logger,
        sleep=sleep,
    )
