"""HttpStore: StorageBackend backed by a remote JSON document API.

Endpoints (relative to ``base_url``):

- ``GET    /ledgers/{user_id}``            -> ``{"ledger": "<json>"}``, 404 if absent
- ``PUT    /ledgers/{user_id}``            <- ``{"ledger": "<json>"}`` -> ``{"id": "..."}``
- ``POST   /ledgers/{user_id}/snapshots``  <- ``{"ledger": ..., "timestamp": ...}``
- ``DELETE /ledgers/{user_id}``            -> 204, or 404 if absent
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Remote store request failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class HttpStore:
    """Remote persistence implementing the ``StorageBackend`` protocol.

    Only a 404 means "no ledger". Every other failure raises StoreError:
    on reads LedgerCache refuses to hand out a ledger it could not load,
    on writes it keeps the entry dirty and retries later.
    """

    def __init__(self, base_url: str, api_key: str | None = None, timeout: float = 15.0) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )

    @staticmethod
    def _path(user_id: str) -> str:
        return f"/ledgers/{quote(user_id, safe='')}"

    @staticmethod
    def _document_id(response: httpx.Response, default: str) -> str:
        try:
            return str(response.json().get("id", default))
        except (ValueError, AttributeError):
            return default

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, endpoint, json=json_data)
        except httpx.HTTPError as exc:
            raise StoreError(f"{method} {endpoint} failed: {exc}") from exc
        if response.status_code >= 400 and response.status_code != 404:
            logger.warning(
                "Remote store %s %s returned HTTP %d.",
                method, endpoint, response.status_code,
            )
            raise StoreError(response.text, status_code=response.status_code)
        return response

    # -- StorageBackend protocol ----------------------------------------------

    async def store_ledger(self, user_id: str, ledger_json: str) -> str:
        resp = await self._request("PUT", self._path(user_id), {"ledger": ledger_json})
        if resp.status_code == 404:
            raise StoreError("Ledger collection not found", status_code=404)
        return self._document_id(resp, user_id)

    async def fetch_ledger(self, user_id: str) -> str | None:
        resp = await self._request("GET", self._path(user_id))
        if resp.status_code == 404:
            return None
        try:
            return resp.json().get("ledger") or None
        except (ValueError, AttributeError):
            raise StoreError(f"Remote store returned an unreadable body for {user_id}.")

    async def snapshot_ledger(
        self, user_id: str, ledger_json: str, timestamp: str
    ) -> str | None:
        resp = await self._request(
            "POST",
            f"{self._path(user_id)}/snapshots",
            {"ledger": ledger_json, "timestamp": timestamp},
        )
        if resp.status_code == 404:
            return None
        return self._document_id(resp, timestamp)

    async def delete_ledger(self, user_id: str) -> bool:
        resp = await self._request("DELETE", self._path(user_id))
        return resp.status_code != 404

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> HttpStore:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
