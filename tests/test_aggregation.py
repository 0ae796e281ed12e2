import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
import sqlalchemy as sa

from conftest import insert_store
from storesync.common.cache import SingleFlightCache
from storesync.reports.aggregation import aggregate_sales, period_start, spu_for
from storesync.reports.trends import TrendCache
from storesync.sync.tables import order_items, orders, sku_mappings


def _at(day: int, hour: int = 10) -> datetime:
    return datetime(2024, 5, day, hour, tzinfo=timezone.utc)


ORDERS = [
    ("r1", 1, "completed", _at(6), [("BUNDLE-1", "Bundle", 2, "10.00"), ("FX182-MINT", "FX182 - Mint", 1, "5.00")]),
    ("r1", 2, "completed", _at(7), [("BUNDLE-1", "Bundle", 1, "5.00")]),
    ("r1", 3, "cancelled", _at(7), [("BUNDLE-1", "Bundle", 9, "45.00")]),
    ("w1", 4, "processing", _at(8), [("TRIPLE-ICE", "TRIPLE - Ice", 3, "30.00")]),
    ("r1", 5, "completed", _at(13), [("BUNDLE-1", "Bundle", 1, "5.00")]),
]


def _seed(database_url: str, *, with_mappings: bool = True) -> None:
    insert_store(database_url, "r1", name="City Vapes", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    insert_store(database_url, "w1", name="Bulk Wholesale", created_at=datetime(2024, 1, 2, tzinfo=timezone.utc))
    engine = sa.create_engine(database_url.replace("+aiosqlite", ""))
    with engine.begin() as connection:
        for site_id, order_id, status, created, lines in ORDERS:
            connection.execute(
                sa.insert(orders).values(
                    site_id=site_id, order_id=order_id, status=status, date_created=created, date_modified=created
                )
            )
            connection.execute(
                sa.insert(order_items),
                [
                    {
                        "site_id": site_id,
                        "order_id": order_id,
                        "item_id": order_id * 10 + index,
                        "sku": sku,
                        "name": name,
                        "quantity": quantity,
                        "total": Decimal(total),
                    }
                    for index, (sku, name, quantity, total) in enumerate(lines)
                ],
            )
        if with_mappings:
            connection.execute(
                sa.insert(sku_mappings),
                [
                    {"canonical_id": "C-1", "local_sku": "BUNDLE-1", "quantity": 1},
                    {"canonical_id": "C-2", "local_sku": "BUNDLE-1", "quantity": 3},
                ],
            )
    if not with_mappings:
        sku_mappings.drop(engine)
    engine.dispose()


def test_period_start_buckets() -> None:
    moment = datetime(2024, 5, 9, 18, tzinfo=timezone.utc)

    assert period_start(moment, "day") == date(2024, 5, 9)
    assert period_start(moment, "week") == date(2024, 5, 6)
    assert period_start(moment, "month") == date(2024, 5, 1)
    with pytest.raises(ValueError):
        period_start(moment, "year")


def test_spu_falls_back_to_product_series() -> None:
    assert spu_for("fx182-mint", "ignored") == "FX182"
    assert spu_for(None, "Surprise Box - Mixed") == "Surprise Box"
    assert spu_for("", "") == "UNKNOWN"


@pytest.mark.asyncio
async def test_daily_totals_use_normalized_units(database_url: str, logger) -> None:
    _seed(database_url)

    report = await aggregate_sales(database_url, start=_at(1, 0), end=_at(13, 0), logger=logger)

    assert report.mapping_available
    assert report.warnings == []
    summary = [(row.period.day, row.site_id, row.spu, row.raw_quantity, row.units) for row in report.rows]
    assert summary == [
        (6, "r1", "BUNDLE", 2, 8),
        (6, "r1", "FX182", 1, 1),
        (7, "r1", "BUNDLE", 1, 4),
        (8, "w1", "TRIPLE", 3, 30),
    ]
    assert report.rows[0].revenue == Decimal("10.00")
    assert report.total_units == 43


@pytest.mark.asyncio
async def test_weekly_bucket_merges_days_and_counts_orders(database_url: str, logger) -> None:
    _seed(database_url)

    report = await aggregate_sales(database_url, start=_at(1, 0), end=_at(13, 0), bucket="week", logger=logger)

    bundle = next(row for row in report.rows if row.spu == "BUNDLE")
    assert bundle.period == date(2024, 5, 6)
    assert bundle.units == 12
    assert bundle.order_count == 2
    assert report.by_spu() == {"TRIPLE": 30, "BUNDLE": 12, "FX182": 1}
    payload = report.to_dict()
    assert next(row for row in payload["rows"] if row["spu"] == "BUNDLE")["order_count"] == 2
    assert payload["total_units"] == 43


@pytest.mark.asyncio
async def test_missing_mapping_falls_back_to_raw_quantities(database_url: str, logger, log_stream) -> None:
    _seed(database_url, with_mappings=False)

    report = await aggregate_sales(database_url, start=_at(1, 0), end=_at(13, 0), bucket="month", logger=logger)

    assert not report.mapping_available
    assert report.warnings == ["sku mapping unavailable; raw quantities used"]
    assert report.by_spu() == {"TRIPLE": 30, "BUNDLE": 3, "FX182": 1}
    assert "raw quantities used" in log_stream.getvalue()


@pytest.mark.asyncio
async def test_filters_by_store_and_status(database_url: str, logger) -> None:
    _seed(database_url)

    wholesale_only = await aggregate_sales(
        database_url, start=_at(1, 0), end=_at(31, 0), site_ids=["w1"], index=None, logger=logger
    )
    cancelled = await aggregate_sales(
        database_url, start=_at(1, 0), end=_at(31, 0), statuses=["cancelled"], index=None, logger=logger
    )

    assert [row.spu for row in wholesale_only.rows] == ["TRIPLE"]
    assert cancelled.total_units == 9


@pytest.mark.asyncio
async def test_invalid_ranges_are_rejected(database_url: str, logger) -> None:
    with pytest.raises(ValueError, match="bucket"):
        await aggregate_sales(database_url, start=_at(1), end=_at(2), bucket="year", logger=logger)
    with pytest.raises(ValueError, match="after start"):
        await aggregate_sales(database_url, start=_at(2), end=_at(2), logger=logger)


@pytest.mark.asyncio
async def test_trend_cache_fills_missing_days_and_loads_once(database_url: str, logger) -> None:
    _seed(database_url)
    cache: SingleFlightCache = SingleFlightCache(ttl_seconds=60)
    trends = TrendCache(database_url, days=7, logger=logger, now=lambda: _at(8, 15), cache=cache)

    first, second = await asyncio.gather(trends.trend("bundle"), trends.trend(" BUNDLE "))

    assert first == second
    assert cache.loads == 1
    assert [point.day.day for point in first] == [2, 3, 4, 5, 6, 7, 8]
    assert [point.units for point in first] == [0, 0, 0, 0, 8, 4, 0]

    preloaded = await trends.preload(["bundle", "triple", " "])
    assert sorted(preloaded) == ["BUNDLE", "TRIPLE"]
    assert preloaded["TRIPLE"][-1].units == 30
    assert cache.loads == 2

    trends.clear()
    await trends.trend("bundle")
    assert cache.loads == 3
