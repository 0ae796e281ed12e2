"""Read-only access to the store registry maintained by the admin surface."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence
from urllib.parse import urlparse

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from storesync.common.db import as_utc
from storesync.sync.tables import stores

RETAIL = "retail"
WHOLESALE = "wholesale"


@dataclass(frozen=True)
class Store:
    id: str
    name: str
    url: str
    api_key: str
    api_secret: str
    enabled: bool
    created_at: Optional[datetime]
    webhook_secret: Optional[str] = None
    site_type: Optional[str] = None

    @classmethod
    def from_row(cls, row: sa.Row) -> "Store":
        return cls(
            id=row.id,
            name=row.name,
            url=row.url,
            api_key=row.api_key,
            api_secret=row.api_secret,
            enabled=bool(row.enabled),
            created_at=as_utc(row.created_at),
            webhook_secret=row.webhook_secret or None,
            site_type=row.site_type,
        )


def _normalize_url(url: str) -> str:
    raw = url.strip().lower()
    parsed = urlparse(raw if "://" in raw else f"//{raw}")
    host = parsed.netloc or parsed.path
    path = parsed.path if parsed.netloc else ""
    return f"{host}{path}".rstrip("/")


async def fetch_store(session: AsyncSession, site_id: str) -> Store | None:
    row = (await session.execute(sa.select(stores).where(stores.c.id == site_id))).first()
    return Store.from_row(row) if row else None


async def fetch_enabled_stores(
    session: AsyncSession, *, site_ids: Iterable[str] | None = None
) -> list[Store]:
    """Enabled stores in creation order, ties broken by id."""

    stmt = sa.select(stores).where(stores.c.enabled.is_(True))
    if site_ids is not None:
        stmt = stmt.where(stores.c.id.in_(list(site_ids)))
    stmt = stmt.order_by(stores.c.created_at.asc(), stores.c.id.asc())
    rows = (await session.execute(stmt)).all()
    return [Store.from_row(row) for row in rows]


async def find_store_by_url(session: AsyncSession, source: str) -> Store | None:
    wanted = _normalize_url(source)
    if not wanted:
        return None
    rows = (await session.execute(sa.select(stores))).all()
    for row in rows:
        if _normalize_url(row.url) == wanted:
            return Store.from_row(row)
    return None


def _name_matches(name: str, candidates: Sequence[str]) -> bool:
    lowered = name.strip().lower()
    return any(candidate.strip().lower() in lowered for candidate in candidates if candidate.strip())


def commercial_type(
    store: Store,
    *,
    retail_names: Sequence[str] = (),
    wholesale_names: Sequence[str] = (),
) -> str:
    """Explicit site_type wins, then the configured name lists; default retail."""

    if store.site_type in (RETAIL, WHOLESALE):
        return store.site_type
    if _name_matches(store.name, wholesale_names):
        return WHOLESALE
    if _name_matches(store.name, retail_names):
        return RETAIL
    if "wholesale" in store.name.lower():
        return WHOLESALE
    return RETAIL


async def mark_store_synced(session: AsyncSession, site_id: str, when: datetime) -> None:
    await session.execute(sa.update(stores).where(stores.c.id == site_id).values(last_sync_at=when))
