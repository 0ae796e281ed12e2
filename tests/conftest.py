import io
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs

import httpx
import pytest
import sqlalchemy as sa

ROOT = Path(__file__).resolve().parents[1]
PROJECT_PARENT = ROOT.parent

for path in (ROOT, PROJECT_PARENT):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

from storesync import config as config_module
from storesync.common import db as db_module
from storesync.common.json_logger import JsonLogger, reset_loggers
from storesync.sync.remote import WooCommerceClient
from storesync.sync.tables import metadata, slot_allowlist, stores


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'env.sqlite'}")
    monkeypatch.setenv("JSON_LOG_FILE", "")
    monkeypatch.delenv("WEBHOOK_FORWARD_URL", raising=False)
    monkeypatch.delenv("WEBHOOK_FORWARD_SECRET", raising=False)
    config_module.reset_config()
    reset_loggers()
    yield
    reset_loggers()
    config_module.reset_config()
    db_module._engine_cache.clear()
    db_module._session_factory_cache.clear()


def create_tables(database_url: str) -> None:
    engine = sa.create_engine(database_url.replace("+aiosqlite", ""))
    metadata.create_all(engine)
    engine.dispose()


@pytest.fixture
def database_url(tmp_path) -> str:
    url = f"sqlite+aiosqlite:///{tmp_path / 'storesync.sqlite'}"
    create_tables(url)
    return url


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(log_stream) -> JsonLogger:
    return JsonLogger(run_id="test-run", stream=log_stream, log_file_path=None)


async def no_sleep(_seconds: float) -> None:
    return None


def insert_store(
    database_url: str,
    site_id: str,
    *,
    name: Optional[str] = None,
    url: Optional[str] = None,
    enabled: bool = True,
    webhook_secret: Optional[str] = None,
    site_type: Optional[str] = None,
    created_at: Optional[datetime] = None,
    scheduled: bool = False,
) -> None:
    engine = sa.create_engine(database_url.replace("+aiosqlite", ""))
    with engine.begin() as connection:
        connection.execute(
            sa.insert(stores).values(
                id=site_id,
                name=name or f"Store {site_id}",
                url=url or f"https://{site_id}.example.com",
                api_key="ck_test",
                api_secret="cs_test",
                enabled=enabled,
                webhook_secret=webhook_secret,
                site_type=site_type,
                created_at=created_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
            )
        )
        if scheduled:
            connection.execute(sa.insert(slot_allowlist).values(site_id=site_id))
    engine.dispose()


def make_order(order_id: int, *, modified: str = "2024-05-01T10:00:00", **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": order_id,
        "number": str(order_id),
        "status": "completed",
        "currency": "EUR",
        "total": "20.00",
        "date_created_gmt": modified,
        "date_modified_gmt": modified,
        "billing": {"first_name": "Ada", "last_name": "Lovelace", "email": "Ada@Example.com"},
        "line_items": [
            {"id": order_id * 10, "product_id": 1, "sku": "FX182-MINT", "name": "FX182 - Mint", "quantity": 2, "price": 5, "total": "10.00"},
            {"id": order_id * 10 + 1, "product_id": 2, "sku": "TRIPLE-ICE", "name": "TRIPLE - Ice", "quantity": 1, "price": 10, "total": "10.00"},
        ],
    }
    payload.update(extra)
    return payload


def make_product(product_id: int, *, modified: str = "2024-05-01T10:00:00", **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": product_id,
        "name": f"Product {product_id}",
        "sku": f"SKU-{product_id}",
        "type": "simple",
        "status": "publish",
        "stock_status": "instock",
        "manage_stock": True,
        "stock_quantity": 5,
        "price": "9.90",
        "date_modified_gmt": modified,
    }
    payload.update(extra)
    return payload


class FakeWooStore:
    """In-memory WooCommerce list API served through ``httpx.MockTransport``."""

    def __init__(
        self,
        *,
        orders: Optional[List[Dict[str, Any]]] = None,
        products: Optional[List[Dict[str, Any]]] = None,
        variations: Optional[Dict[int, List[Dict[str, Any]]]] = None,
    ) -> None:
        self.data: Dict[str, List[Dict[str, Any]]] = {
            "orders": list(orders or []),
            "products": list(products or []),
        }
        self.variations = variations or {}
        self.failures: List[Optional[httpx.Response]] = []
        self.requests: List[httpx.Request] = []

    def fail_next(self, status_code: int, *, times: int = 1, headers: Optional[Dict[str, str]] = None) -> None:
        for _ in range(times):
            self.failures.append(httpx.Response(status_code, json={"code": "error"}, headers=headers or {}))

    def serve_next(self, times: int = 1) -> None:
        """Let the next ``times`` requests through before any queued failure."""

        self.failures.extend([None] * times)

    def _listing(self, entity: str, params: Dict[str, str]) -> httpx.Response:
        items = sorted(self.data[entity], key=lambda item: item["id"])
        modified_after = params.get("modified_after")
        if modified_after:
            bound = datetime.fromisoformat(modified_after).replace(tzinfo=timezone.utc)
            items = [
                item
                for item in items
                if datetime.fromisoformat(item["date_modified_gmt"]).replace(tzinfo=timezone.utc) > bound
            ]
        offset = int(params.get("offset", 0))
        per_page = int(params.get("per_page", 10))
        page = items[offset : offset + per_page]
        total_pages = (len(items) + per_page - 1) // per_page if per_page else 0
        return httpx.Response(
            200,
            json=page,
            headers={"X-WP-Total": str(len(items)), "X-WP-TotalPages": str(total_pages)},
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            queued = self.failures.pop(0)
            if queued is not None:
                return queued
        params = {key: values[-1] for key, values in parse_qs(request.url.query.decode()).items()}
        path = request.url.path.split("/wc/v3", 1)[-1]
        if path == "/orders":
            return self._listing("orders", params)
        if path == "/products":
            return self._listing("products", params)
        if path.startswith("/products/") and path.endswith("/variations"):
            product_id = int(path.split("/")[2])
            return httpx.Response(200, json=self.variations.get(product_id, []), headers={"X-WP-TotalPages": "1"})
        return httpx.Response(404, json={"code": "rest_no_route"})

    def client_factory(self) -> Callable[[Any], WooCommerceClient]:
        def _factory(store: Any) -> WooCommerceClient:
            return WooCommerceClient(store, transport=httpx.MockTransport(self.handler))

        return _factory


async def load_store(database_url: str, site_id: str) -> Any:
    from storesync.common.db import session_scope
    from storesync.sync.stores import fetch_store

    async with session_scope(database_url) as session:
        return await fetch_store(session, site_id)


def count_rows(database_url: str, table: sa.Table, *criteria: Any) -> int:
    engine = sa.create_engine(database_url.replace("+aiosqlite", ""))
    with engine.connect() as connection:
        stmt = sa.select(sa.func.count()).select_from(table)
        if criteria:
            stmt = stmt.where(*criteria)
        total = connection.execute(stmt).scalar_one()
    engine.dispose()
    return int(total)
