"""Snapshot storage protocol and its Supabase (PostgREST) implementation.

WHY: Finished transcripts have to outlive the process. The gateway only
needs four primitive operations against a remote table; this module
provides them over HTTP so the policy code never sees request details.

HOW: SnapshotStorage is the protocol the gateway depends on.
SupabaseStorage talks to the PostgREST endpoint of a Supabase project with
httpx.AsyncClient, one short-lived client per call. Rows have the shape
{id, content, updated_at}.

RULES:
- upsert() is idempotent by id (Prefer: resolution=merge-duplicates)
- list_rows() returns rows ordered by updated_at descending
- fetch_row() returns None when no row is visible for the id
- delete_rows() returns the exact affected row count (Prefer: count=exact)
- Every transport or non-2xx error becomes StorageFailure
- Missing URL/key is reported as StorageFailure at call time, never at import
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from chunkscribe.config import SUPABASE_KEY, SUPABASE_TABLE, SUPABASE_URL
from chunkscribe.errors import StorageFailure

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class SnapshotStorage(Protocol):
    """Primitive key-value operations over stored project snapshots."""

    async def upsert(self, item_id: str, content: Dict[str, Any], updated_at: str) -> None:
        ...

    async def list_rows(self) -> List[Row]:
        ...

    async def fetch_row(self, item_id: str) -> Optional[Row]:
        ...

    async def delete_rows(self, item_id: str) -> int:
        ...


class SupabaseStorage:
    """SnapshotStorage over Supabase's REST interface.

    RULES:
    - url/key default to SUPABASE_URL / SUPABASE_KEY from config
    - transport is injectable for tests (httpx.MockTransport)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        table: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_s: float = 30.0,
    ) -> None:
        self._url = (url if url is not None else SUPABASE_URL).rstrip("/")
        self._key = key if key is not None else SUPABASE_KEY
        self._table = table or SUPABASE_TABLE
        self._transport = transport
        self._timeout_s = timeout_s

    def _client(self) -> httpx.AsyncClient:
        if not self._url or not self._key:
            raise StorageFailure(
                "Storage is not configured. Set SUPABASE_URL and SUPABASE_KEY."
            )
        return httpx.AsyncClient(
            base_url="{}/rest/v1".format(self._url),
            headers={
                "apikey": self._key,
                "Authorization": "Bearer {}".format(self._key),
            },
            timeout=self._timeout_s,
            transport=self._transport,
        )

    async def _request(self, method: str, **kwargs: Any) -> httpx.Response:
        async with self._client() as client:
            try:
                resp = await client.request(method, "/{}".format(self._table), **kwargs)
            except httpx.HTTPError as exc:
                raise StorageFailure("Storage request failed: {}".format(exc)) from exc
        if resp.status_code >= 300:
            raise StorageFailure(
                "Storage error {}: {}".format(resp.status_code, resp.text),
                status_code=resp.status_code,
            )
        return resp

    async def upsert(self, item_id: str, content: Dict[str, Any], updated_at: str) -> None:
        await self._request(
            "POST",
            json={"id": item_id, "content": content, "updated_at": updated_at},
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def list_rows(self) -> List[Row]:
        resp = await self._request(
            "GET", params={"select": "*", "order": "updated_at.desc"}
        )
        return resp.json() or []

    async def fetch_row(self, item_id: str) -> Optional[Row]:
        resp = await self._request(
            "GET", params={"select": "*", "id": "eq.{}".format(item_id)}
        )
        rows = resp.json() or []
        return rows[0] if rows else None

    async def delete_rows(self, item_id: str) -> int:
        resp = await self._request(
            "DELETE",
            params={"id": "eq.{}".format(item_id)},
            headers={"Prefer": "count=exact,return=minimal"},
        )
        return parse_content_range_count(resp.headers.get("content-range"))


def parse_content_range_count(header: Optional[str]) -> int:
    """Read the total from a PostgREST Content-Range header ("0-0/1", "*/0").

    A missing or unknown total counts as zero affected rows.
    """
    if not header or "/" not in header:
        return 0
    total = header.rsplit("/", 1)[1].strip()
    if not total.isdigit():
        return 0
    return int(total)
