"""HTTP backend client for a PostgREST-style row API, RPC endpoint and object storage."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Sequence
from urllib.parse import quote

import httpx

from ..config import Settings, get_settings
from .backend import Backend, BackendError, Filter, FilterOp, Order

logger = logging.getLogger(__name__)


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def encode_filter(item: Filter) -> tuple[str, str]:
    """Render a filter the way PostgREST expects it in the query string."""

    if item.op is FilterOp.IN:
        joined = ",".join(_encode_value(value) for value in item.value)
        return item.column, f"in.({joined})"
    if item.op is FilterOp.EQ and item.value is None:
        return item.column, "is.null"
    return item.column, f"{item.op.value}.{_encode_value(item.value)}"


def _content_range_total(header: str | None) -> int:
    # "0-24/3573" or "*/42"
    if not header or "/" not in header:
        raise BackendError("Missing Content-Range header on count request")
    total = header.rsplit("/", 1)[1]
    try:
        return int(total)
    except ValueError as exc:
        raise BackendError(f"Unexpected Content-Range header: {header}") from exc


class RestBackend(Backend):
    """Backend client for a PostgREST-style HTTP API plus object storage."""

    def __init__(self, settings: Settings | None = None, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._base_url = self._settings.backend_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=float(self._settings.http_timeout or 10.0))

    async def __aenter__(self) -> "RestBackend":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        token = self._settings.access_token or self._settings.anon_key
        headers = {"apikey": self._settings.anon_key}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: list[tuple[str, str]] | None = None,
        json: Any = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=json,
                content=content,
                headers=self._headers(headers),
            )
        except httpx.HTTPError as exc:
            logger.warning("Backend request %s %s failed: %s", method, path, exc)
            raise BackendError(f"{method} {path} failed: {exc}") from exc

        if response.is_error:
            detail = response.text[:200]
            logger.warning("Backend returned %s for %s %s: %s", response.status_code, method, path, detail)
            raise BackendError(detail or response.reason_phrase, status_code=response.status_code)
        return response

    @staticmethod
    def _rows(response: httpx.Response) -> list[dict[str, Any]]:
        if not response.content:
            return []
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendError("Backend returned non-JSON response") from exc
        if isinstance(data, dict):
            return [data]
        if not isinstance(data, list):
            raise BackendError("Unexpected row payload")
        return data

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params = [("select", columns)]
        params.extend(encode_filter(item) for item in filters)
        if order is not None:
            params.append(("order", f"{order.column}.{'asc' if order.ascending else 'desc'}"))
        if limit is not None:
            params.append(("limit", str(limit)))
        response = await self._request("GET", f"/rest/v1/{table}", params=params)
        return self._rows(response)

    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        params = [("select", "*")]
        params.extend(encode_filter(item) for item in filters)
        response = await self._request("HEAD", f"/rest/v1/{table}", params=params, headers={"Prefer": "count=exact"})
        return _content_range_total(response.headers.get("content-range"))

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            json=row,
            headers={"Prefer": "return=representation"},
        )
        rows = self._rows(response)
        if not rows:
            raise BackendError(f"Insert into {table} returned no row")
        return rows[0]

    async def update(
        self, table: str, values: dict[str, Any], *, filters: Sequence[Filter]
    ) -> list[dict[str, Any]]:
        response = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=[encode_filter(item) for item in filters],
            json=values,
            headers={"Prefer": "return=representation"},
        )
        return self._rows(response)

    async def upsert(
        self, table: str, row: dict[str, Any], *, on_conflict: Sequence[str]
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            params=[("on_conflict", ",".join(on_conflict))],
            json=row,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        rows = self._rows(response)
        if not rows:
            raise BackendError(f"Upsert into {table} returned no row")
        return rows[0]

    async def delete(self, table: str, *, filters: Sequence[Filter]) -> list[dict[str, Any]]:
        if not filters:
            raise BackendError(f"Refusing to delete from {table} without filters")
        response = await self._request(
            "DELETE",
            f"/rest/v1/{table}",
            params=[encode_filter(item) for item in filters],
            headers={"Prefer": "return=representation"},
        )
        return self._rows(response)

    async def rpc(self, function: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._request("POST", f"/rest/v1/rpc/{function}", json=params or {})
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(f"RPC {function} returned non-JSON response") from exc

    async def upload(self, bucket: str, path: str, data: bytes, *, content_type: str) -> str:
        object_path = quote(path.lstrip("/"))
        await self._request(
            "POST",
            f"/storage/v1/object/{bucket}/{object_path}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "true"},
        )
        return f"{self._base_url}/storage/v1/object/public/{bucket}/{object_path}"


__all__ = ["RestBackend", "encode_filter"]
