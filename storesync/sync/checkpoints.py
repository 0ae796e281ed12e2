"""Per-store, per-entity sync cursors.

A checkpoint row is keyed by ``(site_id, entity)``. The cursor fields
(``last_remote_id`` and ``last_modified``) only ever move forward; the puller
advances them after each page has been written, in the same transaction as
the page rows.

A run works through one *window*: every entity modified after
``window_start``, listed by remote id. ``window_offset`` counts the entities
of the window already written. A window that was interrupted (crash, failed
page, page cap) stays open and the next run resumes it one page before the
recorded offset; a window that finished is closed by ``finish_run``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from storesync.common.db import as_utc, utcnow
from storesync.sync.tables import make_upsert, sync_checkpoints

ENTITY_KINDS = ("orders", "products")
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

# remote clocks drift; re-read anything modified shortly before the last run began
CLOCK_SKEW = timedelta(seconds=60)


@dataclass(frozen=True)
class Checkpoint:
    site_id: str
    entity: str
    last_remote_id: int = 0
    last_modified: Optional[datetime] = None
    window_start: Optional[datetime] = None
    window_offset: int = 0
    synced_count: int = 0
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    last_duration_ms: Optional[int] = None
    last_started_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None

    @classmethod
    def empty(cls, site_id: str, entity: str) -> "Checkpoint":
        return cls(site_id=site_id, entity=entity)

    @property
    def window_open(self) -> bool:
        return self.window_start is not None


@dataclass(frozen=True)
class ResumePoint:
    modified_after: datetime
    offset: int = 0
    resumed: bool = False


def _check_entity(entity: str) -> None:
    if entity not in ENTITY_KINDS:
        raise ValueError(f"unknown entity kind: {entity!r}")


def _later(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if candidate is None:
        return current
    if current is None:
        return candidate
    return max(current, candidate)


async def get_checkpoint(session: AsyncSession, site_id: str, entity: str) -> Checkpoint | None:
    _check_entity(entity)
    row = (
        await session.execute(
            sa.select(sync_checkpoints).where(
                sync_checkpoints.c.site_id == site_id,
                sync_checkpoints.c.entity == entity,
            )
        )
    ).first()
    if row is None:
        return None
    return Checkpoint(
        site_id=row.site_id,
        entity=row.entity,
        last_remote_id=int(row.last_remote_id or 0),
        last_modified=as_utc(row.last_modified),
        window_start=as_utc(row.window_start),
        window_offset=int(row.window_offset or 0),
        synced_count=int(row.synced_count or 0),
        last_status=row.last_status,
        last_error=row.last_error,
        last_duration_ms=row.last_duration_ms,
        last_started_at=as_utc(row.last_started_at),
        last_completed_at=as_utc(row.last_completed_at),
    )


def resume_point(checkpoint: Checkpoint | None, *, page_size: int) -> ResumePoint:
    """Where the next incremental run starts."""

    if checkpoint is None:
        return ResumePoint(modified_after=EPOCH)
    if checkpoint.window_open:
        offset = max(0, checkpoint.window_offset - page_size)
        return ResumePoint(modified_after=checkpoint.window_start, offset=offset, resumed=True)

    candidates = []
    if checkpoint.last_modified is not None:
        candidates.append(checkpoint.last_modified + timedelta(seconds=1))
    if checkpoint.last_started_at is not None:
        candidates.append(checkpoint.last_started_at - CLOCK_SKEW)
    if not candidates:
        return ResumePoint(modified_after=EPOCH)
    return ResumePoint(modified_after=max(min(candidates), EPOCH))


async def _write(session: AsyncSession, values: dict, *, use_sqlite: bool) -> None:
    await session.execute(make_upsert(sync_checkpoints, values, use_sqlite=use_sqlite))


async def begin_run(
    session: AsyncSession,
    site_id: str,
    entity: str,
    *,
    resume: ResumePoint,
    use_sqlite: bool,
    started_at: datetime | None = None,
) -> None:
    """Open (or keep open) the window this run works through."""

    _check_entity(entity)
    values = {
        "site_id": site_id,
        "entity": entity,
        "window_start": resume.modified_after,
        "window_offset": resume.offset,
        "last_status": STATUS_RUNNING,
    }
    if not resume.resumed:
        # a resumed window keeps the start time of the run that opened it
        values["last_started_at"] = started_at or utcnow()
    await _write(session, values, use_sqlite=use_sqlite)


async def reset_checkpoint(
    session: AsyncSession,
    site_id: str,
    entity: str,
    *,
    use_sqlite: bool,
    started_at: datetime | None = None,
) -> None:
    """Full mode rebuilds the cursor from scratch."""

    _check_entity(entity)
    await _write(
        session,
        {
            "site_id": site_id,
            "entity": entity,
            "last_remote_id": 0,
            "last_modified": None,
            "window_start": EPOCH,
            "window_offset": 0,
            "synced_count": 0,
            "last_status": STATUS_RUNNING,
            "last_error": None,
            "last_started_at": started_at or utcnow(),
        },
        use_sqlite=use_sqlite,
    )


async def advance_checkpoint(
    session: AsyncSession,
    site_id: str,
    entity: str,
    *,
    last_remote_id: int,
    last_modified: datetime | None,
    synced_delta: int,
    window_offset: int,
    use_sqlite: bool,
) -> Checkpoint:
    """Move the cursor forward; a smaller id or older timestamp never rewinds it."""

    _check_entity(entity)
    current = await get_checkpoint(session, site_id, entity) or Checkpoint.empty(site_id, entity)
    new_remote_id = max(current.last_remote_id, int(last_remote_id or 0))
    new_modified = _later(current.last_modified, as_utc(last_modified))
    new_count = current.synced_count + max(synced_delta, 0)
    await _write(
        session,
        {
            "site_id": site_id,
            "entity": entity,
            "last_remote_id": new_remote_id,
            "last_modified": new_modified,
            "synced_count": new_count,
            "window_offset": window_offset,
        },
        use_sqlite=use_sqlite,
    )
    return Checkpoint(
        site_id=site_id,
        entity=entity,
        last_remote_id=new_remote_id,
        last_modified=new_modified,
        window_start=current.window_start,
        window_offset=window_offset,
        synced_count=new_count,
        last_status=current.last_status,
        last_error=current.last_error,
        last_duration_ms=current.last_duration_ms,
        last_started_at=current.last_started_at,
        last_completed_at=current.last_completed_at,
    )


async def finish_run(
    session: AsyncSession,
    site_id: str,
    entity: str,
    *,
    status: str,
    duration_ms: int,
    error: str | None = None,
    window_complete: bool = True,
    use_sqlite: bool,
) -> None:
    """Record the outcome; a successful run that reached the end closes its window."""

    _check_entity(entity)
    values = {
        "site_id": site_id,
        "entity": entity,
        "last_status": status,
        "last_error": error,
        "last_duration_ms": duration_ms,
        "last_completed_at": utcnow(),
    }
    if status == STATUS_SUCCESS and window_complete:
        values["window_start"] = None
        values["window_offset"] = 0
    await _write(session, values, use_sqlite=use_sqlite)
