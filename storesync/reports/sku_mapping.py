"""Bidirectional index over the canonical-id to local-SKU mapping table."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from storesync.common.db import session_scope
from storesync.common.json_logger import JsonLogger, get_logger
from storesync.sync.tables import sku_mappings


@dataclass(frozen=True)
class SkuMapping:
    canonical_id: str
    local_sku: str
    multiplier: int = 1


@dataclass
class SkuMappingIndex:
    by_canonical: Dict[str, List[SkuMapping]] = field(default_factory=dict)
    by_local: Dict[str, List[SkuMapping]] = field(default_factory=dict)
    valid: int = 0
    skipped: int = 0

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]]) -> "SkuMappingIndex":
        """Build both directions; rows missing either side are counted and skipped."""

        by_canonical: Dict[str, List[SkuMapping]] = defaultdict(list)
        by_local: Dict[str, List[SkuMapping]] = defaultdict(list)
        valid = skipped = 0
        for row in rows:
            canonical = str(row.get("canonical_id") or "").strip()
            local = str(row.get("local_sku") or "").strip()
            if not canonical or not local:
                skipped += 1
                continue
            try:
                multiplier = int(row.get("quantity") or 1)
            except (TypeError, ValueError):
                skipped += 1
                continue
            if multiplier <= 0:
                multiplier = 1
            mapping = SkuMapping(canonical_id=canonical, local_sku=local, multiplier=multiplier)
            by_canonical[canonical].append(mapping)
            by_local[local].append(mapping)
            valid += 1
        return cls(by_canonical=dict(by_canonical), by_local=dict(by_local), valid=valid, skipped=skipped)

    def canonical_for(self, local_sku: str | None) -> List[SkuMapping]:
        if not local_sku:
            return []
        return list(self.by_local.get(local_sku.strip(), ()))

    def local_for(self, canonical_id: str | None) -> List[SkuMapping]:
        if not canonical_id:
            return []
        return list(self.by_canonical.get(canonical_id.strip(), ()))

    def multiplier_sum(self, local_sku: str | None) -> Optional[int]:
        """Total canonical units per local unit, or ``None`` when the SKU is unmapped."""

        mappings = self.canonical_for(local_sku)
        if not mappings:
            return None
        return sum(mapping.multiplier for mapping in mappings)

    def __len__(self) -> int:
        return len(self.by_local)


async def load_sku_index(
    database_url: str, *, logger: JsonLogger | None = None
) -> SkuMappingIndex | None:
    """Read the current mappings once; ``None`` (with a warning) if the source is unavailable."""

    logger = logger or get_logger()
    try:
        async with session_scope(database_url) as session:
            rows = (
                await session.execute(
                    sa.select(sku_mappings.c.canonical_id, sku_mappings.c.local_sku, sku_mappings.c.quantity)
                )
            ).mappings().all()
    except (SQLAlchemyError, OSError) as exc:
        logger.warn(phase="normalize", message="sku mapping source unavailable; using raw quantities", error=str(exc))
        return None

    index = SkuMappingIndex.from_rows(rows)
    logger.info(
        phase="normalize",
        message="sku mapping index loaded",
        local_skus=len(index.by_local),
        canonical_ids=len(index.by_canonical),
        valid=index.valid,
        skipped=index.skipped,
    )
    return index
