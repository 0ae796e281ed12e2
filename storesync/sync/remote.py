"""HTTP client for the WooCommerce REST API of a remote store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from storesync.errors import PermanentRemoteError, RateLimitedError, TransientRemoteError
from storesync.sync.stores import Store

API_PREFIX = "/wp-json/wc/v3"
ENDPOINTS = {
    "orders": "/orders",
    "products": "/products",
}
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass
class RemotePage:
    items: List[Dict[str, Any]] = field(default_factory=list)
    total: Optional[int] = None
    total_pages: Optional[int] = None

    def __len__(self) -> int:
        return len(self.items)


def _header_int(response: httpx.Response, name: str) -> Optional[int]:
    raw = response.headers.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("code") or payload)[:200]
    return str(payload)[:200]


def raise_for_remote_status(response: httpx.Response, *, context: str) -> None:
    status = response.status_code
    if status < 400:
        return
    detail = _error_detail(response)
    message = f"{context}: HTTP {status} {detail}".strip()
    if status == 429:
        raise RateLimitedError(message, status_code=status, retry_after=_retry_after(response))
    if status >= 500 or status in (408, 425):
        raise TransientRemoteError(message, status_code=status)
    raise PermanentRemoteError(message, status_code=status)


class WooCommerceClient:
    """Thin async wrapper over ``/wp-json/wc/v3`` list endpoints."""

    def __init__(
        self,
        store: Store,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = store
        self._client = httpx.AsyncClient(
            base_url=store.url.rstrip("/") + API_PREFIX,
            auth=(store.api_key, store.api_secret),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "WooCommerceClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: Dict[str, Any], *, context: str) -> httpx.Response:
        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as exc:
            raise TransientRemoteError(f"{context}: timeout ({exc.__class__.__name__})") from exc
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"{context}: transport error {exc}") from exc
        raise_for_remote_status(response, context=context)
        return response

    @staticmethod
    def _decode_list(response: httpx.Response, *, context: str) -> List[Dict[str, Any]]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientRemoteError(f"{context}: response is not JSON") from exc
        if not isinstance(payload, list):
            raise PermanentRemoteError(f"{context}: expected a list, got {type(payload).__name__}")
        return [item for item in payload if isinstance(item, dict)]

    async def fetch_page(
        self,
        entity: str,
        *,
        offset: int,
        per_page: int,
        modified_after: datetime | None = None,
    ) -> RemotePage:
        """One page of ``entity`` ordered by id ascending."""

        if entity not in ENDPOINTS:
            raise ValueError(f"unknown entity kind: {entity!r}")
        params: Dict[str, Any] = {
            "per_page": per_page,
            "offset": offset,
            "orderby": "id",
            "order": "asc",
        }
        if modified_after is not None:
            params["modified_after"] = modified_after.strftime("%Y-%m-%dT%H:%M:%S")
            params["dates_are_gmt"] = "true"
        if entity == "orders":
            params["status"] = "any"
        context = f"{self.store.name} {entity} offset={offset}"
        response = await self._get(ENDPOINTS[entity], params, context=context)
        return RemotePage(
            items=self._decode_list(response, context=context),
            total=_header_int(response, "X-WP-Total"),
            total_pages=_header_int(response, "X-WP-TotalPages"),
        )

    async def fetch_variations(self, product_id: int, *, per_page: int = 100) -> List[Dict[str, Any]]:
        variations: List[Dict[str, Any]] = []
        page = 1
        while True:
            context = f"{self.store.name} product {product_id} variations page={page}"
            response = await self._get(
                f"/products/{product_id}/variations",
                {"per_page": per_page, "page": page},
                context=context,
            )
            batch = self._decode_list(response, context=context)
            variations.extend(batch)
            total_pages = _header_int(response, "X-WP-TotalPages")
            if len(batch) < per_page or (total_pages is not None and page >= total_pages):
                return variations
            page += 1
