from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx

from questline.domain.errors import CircuitOpenError, RemoteStoreError, RemoteValidationError
from questline.domain.models.progress import ProgressRecord, SyncState, format_timestamp
from questline.domain.repositories import RemoteProgressStore
from questline.infrastructure.resilient_http import CircuitBreaker, is_retryable_exception, request_with_retry


logger = logging.getLogger(__name__)

DEFAULT_TABLE = "quest_progress"
_COLUMNS = "owner_id,entity_id,kind,completed,completed_at,updated_at"


class PostgrestRemoteProgressStore(RemoteProgressStore):
    """Progress table exposed through a PostgREST (Supabase) endpoint.

    Upserts use ``on_conflict`` with merge-duplicates. PostgREST cannot make that
    conditional on ``updated_at``, so stale overwrites are prevented on the client
    side by the coordinator only ever sending the stored record.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        access_token: str | None = None,
        table: str = DEFAULT_TABLE,
        owner_id: str | None = None,
        timeout_seconds: float = 10.0,
        retries: int = 0,
        backoff_seconds: float = 0.2,
        breaker: CircuitBreaker | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers: Dict[str, str] = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
        bearer = access_token or api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            headers=headers,
        )
        if client is not None:
            self._client.headers.update(headers)
        self._path = f"/rest/v1/{table}"
        self._owner_id = owner_id
        self._retries = max(0, int(retries))
        self._backoff_seconds = max(0.0, float(backoff_seconds))
        self._breaker = breaker or CircuitBreaker()

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def retries(self) -> int:
        return self._retries

    async def upsert(self, record: ProgressRecord) -> None:
        await self._post_rows([record])

    async def batch_upsert(self, records: Sequence[ProgressRecord]) -> int:
        rows = list(records)
        if not rows:
            return 0
        await self._post_rows(rows)
        return len(rows)

    async def fetch_since(self, since: Optional[datetime]) -> List[ProgressRecord]:
        params: Dict[str, Any] = {"select": _COLUMNS, "order": "updated_at.asc"}
        if self._owner_id is not None:
            params["owner_id"] = f"eq.{self._owner_id}"
        if since is not None:
            params["updated_at"] = f"gt.{format_timestamp(since)}"
        response = await self._request("GET", params=params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteStoreError("Remote returned a non-JSON progress listing") from exc
        if not isinstance(payload, list):
            raise RemoteStoreError("Remote returned an unexpected progress listing")

        records: List[ProgressRecord] = []
        for row in payload:
            if not isinstance(row, dict):
                continue
            try:
                records.append(ProgressRecord.from_payload(row, sync_state=SyncState.SYNCED))
            except ValueError as exc:
                logger.warning(
                    "Skipping invalid remote progress row",
                    extra={"entity_id": row.get("entity_id"), "reason": str(exc)},
                )
        return records

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post_rows(self, records: Sequence[ProgressRecord]) -> None:
        body = [
            {
                "owner_id": record.owner_id,
                "entity_id": record.entity_id,
                "kind": record.kind.value,
                "completed": record.completed,
                "completed_at": format_timestamp(record.completed_at),
                "updated_at": format_timestamp(record.updated_at),
            }
            for record in records
        ]
        await self._request(
            "POST",
            params={"on_conflict": "owner_id,entity_id"},
            json=body,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def _request(
        self,
        method: str,
        *,
        params: Dict[str, Any] | None = None,
        json: Any = None,
        headers: Dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            return await request_with_retry(
                self._client,
                method,
                self._path,
                params=params,
                json=json,
                headers=headers,
                retries=self._retries,
                backoff_seconds=self._backoff_seconds,
                breaker=self._breaker,
            )
        except CircuitOpenError:
            raise
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if is_retryable_exception(exc):
                raise RemoteStoreError(f"Remote returned HTTP {status}") from exc
            raise RemoteValidationError(f"Remote rejected request with HTTP {status}: {exc.response.text[:200]}") from exc
        except httpx.HTTPError as exc:
            raise RemoteStoreError(f"Remote request failed: {exc.__class__.__name__}: {exc}") from exc
