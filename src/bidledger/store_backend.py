"""Abstract persistence interface for balance ledgers.

Defines the StorageBackend Protocol that LedgerCache depends on.
Concrete implementations live in ``bidledger.stores``.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class StorageBackend(Protocol):
    """Async persistence backend for per-user ledger JSON.

    Any object implementing these four methods can serve as the
    durable backing store for LedgerCache.
    """

    async def store_ledger(self, user_id: str, ledger_json: str) -> str: ...

    async def fetch_ledger(self, user_id: str) -> str | None: ...

    async def snapshot_ledger(
        self, user_id: str, ledger_json: str, timestamp: str
    ) -> str | None: ...

    async def delete_ledger(self, user_id: str) -> bool: ...
