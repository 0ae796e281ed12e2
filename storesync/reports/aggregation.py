"""Per-period sales totals by store and SPU, in normalized units."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import sqlalchemy as sa

from storesync.common.db import as_utc, session_scope
from storesync.common.json_logger import JsonLogger, get_logger, timed_event
from storesync.config import Config, get_config
from storesync.reports.normalizer import (
    DEFAULT_FAMILY_RULES,
    UNKNOWN_SPU,
    FamilyRule,
    StoreProfile,
    extract_spu,
    normalize_quantity,
    product_series,
)
from storesync.reports.sku_mapping import SkuMappingIndex, load_sku_index
from storesync.sync.stores import fetch_enabled_stores
from storesync.sync.tables import order_items, orders

BUCKETS = ("day", "week", "month")
DEFAULT_STATUSES = ("completed", "processing")

_UNSET: Any = object()


def period_start(moment: datetime, bucket: str) -> date:
    day = moment.date()
    if bucket == "day":
        return day
    if bucket == "week":
        return day - timedelta(days=day.weekday())
    if bucket == "month":
        return day.replace(day=1)
    raise ValueError(f"unsupported bucket: {bucket}")


def spu_for(sku: str | None, name: str | None) -> str:
    if sku and sku.strip():
        return extract_spu(sku)
    return product_series(name) or UNKNOWN_SPU


@dataclass
class SalesRow:
    period: date
    site_id: str
    site_name: str
    spu: str
    raw_quantity: int = 0
    units: int = 0
    revenue: Decimal = Decimal("0")
    order_ids: set = field(default_factory=set, repr=False)

    @property
    def order_count(self) -> int:
        return len(self.order_ids)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("order_ids")
        data["period"] = self.period.isoformat()
        data["revenue"] = str(self.revenue)
        data["order_count"] = self.order_count
        return data


@dataclass
class SalesReport:
    start: datetime
    end: datetime
    bucket: str
    rows: List[SalesRow]
    mapping_available: bool
    warnings: List[str] = field(default_factory=list)

    @property
    def total_units(self) -> int:
        return sum(row.units for row in self.rows)

    def by_spu(self) -> Dict[str, int]:
        totals: Dict[str, int] = defaultdict(int)
        for row in self.rows:
            totals[row.spu] += row.units
        return dict(sorted(totals.items(), key=lambda item: (-item[1], item[0])))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "bucket": self.bucket,
            "mapping_available": self.mapping_available,
            "warnings": list(self.warnings),
            "total_units": self.total_units,
            "rows": [row.to_dict() for row in self.rows],
        }


async def aggregate_sales(
    database_url: str,
    *,
    start: datetime,
    end: datetime,
    bucket: str = "day",
    site_ids: Sequence[str] | None = None,
    statuses: Iterable[str] = DEFAULT_STATUSES,
    index: Optional[SkuMappingIndex] = _UNSET,
    rules: Sequence[FamilyRule] = DEFAULT_FAMILY_RULES,
    config: Config | None = None,
    logger: JsonLogger | None = None,
) -> SalesReport:
    """Sum order lines created in ``[start, end)``.

    The mapping index is loaded once per call unless one is passed in;
    passing ``None`` explicitly aggregates raw quantities.
    """

    if bucket not in BUCKETS:
        raise ValueError(f"unsupported bucket: {bucket}")
    if end <= start:
        raise ValueError("end must be after start")
    config = config or get_config()
    logger = logger or get_logger()

    warnings: List[str] = []
    if index is _UNSET:
        index = await load_sku_index(database_url, logger=logger)
    if index is None:
        warnings.append("sku mapping unavailable; raw quantities used")

    grouped: Dict[Tuple[date, str, str], SalesRow] = {}
    with timed_event(logger=logger, phase="aggregate", message="sales aggregation", bucket=bucket) as extra:
        async with session_scope(database_url) as session:
            stores = await fetch_enabled_stores(session, site_ids=site_ids)
            profiles = {store.id: StoreProfile.for_store(store, config) for store in stores}
            if not profiles:
                extra["rows"] = 0
                return SalesReport(start, end, bucket, [], index is not None, warnings)
            result = await session.execute(
                sa.select(
                    orders.c.site_id,
                    orders.c.order_id,
                    orders.c.date_created,
                    order_items.c.sku,
                    order_items.c.name,
                    order_items.c.quantity,
                    order_items.c.total,
                )
                .select_from(
                    orders.join(
                        order_items,
                        sa.and_(
                            order_items.c.site_id == orders.c.site_id,
                            order_items.c.order_id == orders.c.order_id,
                        ),
                    )
                )
                .where(
                    orders.c.site_id.in_(list(profiles)),
                    orders.c.status.in_(list(statuses)),
                    orders.c.date_created >= start,
                    orders.c.date_created < end,
                )
                .order_by(orders.c.date_created.asc(), order_items.c.item_id.asc())
            )
            lines = result.all()

        for line in lines:
            profile = profiles[line.site_id]
            created = as_utc(line.date_created)
            key = (period_start(created, bucket), line.site_id, spu_for(line.sku, line.name))
            row = grouped.get(key)
            if row is None:
                row = grouped[key] = SalesRow(period=key[0], site_id=line.site_id, site_name=profile.name, spu=key[2])
            row.raw_quantity += int(line.quantity or 0)
            row.units += normalize_quantity(
                line.quantity or 0, sku=line.sku, name=line.name, profile=profile, index=index, rules=rules
            )
            row.revenue += Decimal(line.total or 0)
            row.order_ids.add(line.order_id)
        extra["rows"] = len(grouped)
        extra["lines"] = len(lines)

    rows = sorted(grouped.values(), key=lambda row: (row.period, row.site_name, row.spu))
    for warning in warnings:
        logger.warn(phase="aggregate", message=warning)
    return SalesReport(start, end, bucket, rows, index is not None, warnings)
