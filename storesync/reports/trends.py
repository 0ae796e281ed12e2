"""Daily unit trends per SPU, cached with one in-flight load per key."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Tuple

from storesync.common.cache import SingleFlightCache
from storesync.common.db import utcnow
from storesync.common.json_logger import JsonLogger, get_logger
from storesync.config import Config
from storesync.reports.aggregation import SalesReport, aggregate_sales


@dataclass(frozen=True)
class TrendPoint:
    day: date
    units: int


class TrendCache:
    def __init__(
        self,
        database_url: str,
        *,
        days: int = 30,
        ttl_seconds: float = 60.0,
        config: Config | None = None,
        logger: JsonLogger | None = None,
        now: Callable[[], datetime] = utcnow,
        cache: SingleFlightCache | None = None,
    ) -> None:
        if days < 1:
            raise ValueError("days must be at least 1")
        self.database_url = database_url
        self.days = days
        self.config = config
        self.logger = logger or get_logger()
        self._now = now
        self._cache: SingleFlightCache[List[TrendPoint]] = cache or SingleFlightCache(ttl_seconds=ttl_seconds)

    def _window(self) -> Tuple[datetime, datetime]:
        end = self._now().replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
        return end - timedelta(days=self.days), end

    async def _load(self, spu: str) -> List[TrendPoint]:
        start, end = self._window()
        report: SalesReport = await aggregate_sales(
            self.database_url,
            start=start,
            end=end,
            bucket="day",
            config=self.config,
            logger=self.logger,
        )
        per_day: Dict[date, int] = {}
        for row in report.rows:
            if row.spu.upper() == spu:
                per_day[row.period] = per_day.get(row.period, 0) + row.units
        first = start.date()
        return [
            TrendPoint(day=first + timedelta(days=offset), units=per_day.get(first + timedelta(days=offset), 0))
            for offset in range(self.days)
        ]

    async def trend(self, spu: str) -> List[TrendPoint]:
        key = spu.strip().upper()
        return await self._cache.get_or_load((key, self.days), lambda: self._load(key))

    async def preload(self, spus: Iterable[str]) -> Dict[str, List[TrendPoint]]:
        wanted = sorted({spu.strip().upper() for spu in spus if spu and spu.strip()})
        series = await asyncio.gather(*(self.trend(spu) for spu in wanted))
        return dict(zip(wanted, series))

    def clear(self) -> None:
        self._cache.invalidate()
