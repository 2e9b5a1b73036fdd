from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Sequence

import httpx

from ..config import RemoteConfig
from ..errors import PermanentRemoteError, TransientRemoteError
from ..sql import validate_identifier
from .base import RemoteClient, Rows, as_rows, column_union

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})

RETURN_REPRESENTATION = "return=representation"


def filter_value(value: Any) -> str:
    """Render one equality predicate in PostgREST's operator syntax."""
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


def filter_params(filters: Mapping[str, Any]) -> dict[str, str]:
    return {
        validate_identifier(col, "filter column"): filter_value(val)
        for col, val in sorted(filters.items())
    }


def is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in TRANSIENT_STATUS_CODES


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        parts = [str(body[k]) for k in ("code", "message", "details", "hint") if body.get(k)]
        if parts:
            return " | ".join(parts)
    return response.text


class PostgrestClient(RemoteClient):
    """
    Remote client for a hosted PostgREST endpoint (``{url}/rest/v1``).

    Every request is bounded by ``RemoteConfig.timeout_s``. Timeouts,
    transport errors, 5xx, 408, 425 and 429 raise TransientRemoteError; any
    other 4xx (validation, RLS, constraint violation) raises
    PermanentRemoteError.

    Usage:
        client = PostgrestClient(RemoteConfig(url="https://xyz.supabase.co", api_key="..."))
        client.insert("programs", {"name": "Strength"})
    """

    def __init__(self, config: RemoteConfig, client: Optional[httpx.Client] = None) -> None:
        self.config = config
        headers = {
            "apikey": config.api_key,
            "Authorization": f"Bearer {config.access_token or config.api_key}",
        }
        if config.schema:
            headers["Accept-Profile"] = config.schema
            headers["Content-Profile"] = config.schema
        self._owns_client = client is None
        self.client = client or httpx.Client(
            base_url=f"{config.url.rstrip('/')}/rest/v1",
            timeout=config.timeout_s,
        )
        self.client.headers.update(headers)

    def _send(
        self,
        method: str,
        table: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        json: Any = None,
        prefer: str = RETURN_REPRESENTATION,
    ) -> Rows:
        table = validate_identifier(table, "table")
        try:
            response = self.client.request(
                method,
                f"/{table}",
                params=params,
                json=json,
                headers={"Prefer": prefer},
            )
        except httpx.TimeoutException as exc:
            raise TransientRemoteError(f"{method} {table} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"{method} {table} failed: {exc}") from exc

        if response.is_error:
            message = f"{method} {table} returned {response.status_code}: {_error_message(response)}"
            if is_transient_status(response.status_code):
                raise TransientRemoteError(message)
            raise PermanentRemoteError(message)

        if not response.content:
            return []
        data = response.json()
        return data if isinstance(data, list) else [data]

    def _write_params(
        self,
        rows: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        select: Optional[Sequence[str]],
    ) -> tuple[Any, dict[str, str], list[str]]:
        """
        Body, query parameters and Prefer parts for an insert or upsert.

        A list body is sent with ``columns`` set to every key any row names,
        and ``missing=default`` so that keys a row leaves out take the column
        default instead of NULL.
        """
        params = self._select_params(select)
        if isinstance(rows, Mapping):
            return dict(rows), params, []
        body = as_rows(rows)
        params["columns"] = ",".join(validate_identifier(c, "column") for c in column_union(body))
        return body, params, ["missing=default"]

    @staticmethod
    def _select_params(select: Optional[Sequence[str]]) -> dict[str, str]:
        if not select:
            return {}
        return {"select": ",".join(validate_identifier(c, "select column") for c in select)}

    def insert(
        self,
        table: str,
        rows: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        select: Optional[Sequence[str]] = None,
    ) -> Rows:
        body, params, prefer = self._write_params(rows, select)
        return self._send(
            "POST",
            table,
            params=params or None,
            json=body,
            prefer=",".join([*prefer, RETURN_REPRESENTATION]),
        )

    def update(
        self,
        table: str,
        payload: Mapping[str, Any],
        filters: Mapping[str, Any],
        select: Optional[Sequence[str]] = None,
    ) -> Rows:
        params = {**filter_params(filters), **self._select_params(select)}
        return self._send("PATCH", table, params=params, json=dict(payload))

    def delete(
        self,
        table: str,
        filters: Mapping[str, Any],
        select: Optional[Sequence[str]] = None,
    ) -> Rows:
        params = {**filter_params(filters), **self._select_params(select)}
        return self._send("DELETE", table, params=params)

    def upsert(
        self,
        table: str,
        rows: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        on_conflict: Sequence[str],
        select: Optional[Sequence[str]] = None,
    ) -> Rows:
        body, params, prefer = self._write_params(rows, select)
        params["on_conflict"] = ",".join(
            validate_identifier(c, "conflict column") for c in on_conflict
        )
        return self._send(
            "POST",
            table,
            params=params,
            json=body,
            prefer=",".join(["resolution=merge-duplicates", *prefer, RETURN_REPRESENTATION]),
        )

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
