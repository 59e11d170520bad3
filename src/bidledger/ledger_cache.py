"""In-memory LRU cache of BalanceLedgers with write-behind flush to storage.

The cache is the hot path for every balance operation. The storage
backend is the durable copy, updated by explicit ``flush_user()`` calls on
money-moving paths and by a periodic background flush.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, AsyncIterator

from bidledger.constants import DEMO_SEED_BALANCE
from bidledger.ledger import BalanceLedger, LedgerError

if TYPE_CHECKING:
    from bidledger.config import LedgerConfig
    from bidledger.store_backend import StorageBackend

logger = logging.getLogger(__name__)


class LedgerUnavailableError(LedgerError):
    """The stored ledger could not be loaded; no balance is guessed."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Balance for {user_id} is temporarily unavailable. Please try again.")
        self.user_id = user_id


@dataclass
class _CacheEntry:
    """A cached ledger plus write-behind bookkeeping."""

    ledger: BalanceLedger
    dirty: bool = False
    version: int = 0  # bumped on every mark_dirty()


class LedgerCache:
    """LRU cache for BalanceLedger objects with write-behind flush.

    - ``get()`` returns the cached ledger, loading it from storage on a miss.
      A user with no stored ledger gets a freshly seeded demo balance.
    - ``locked()`` wraps a read-modify-write in the user's lock and marks
      the entry dirty afterwards.
    - Dirty entries are flushed by ``flush_user()``, the background task,
      and on LRU eviction. Entries whose lock is held are never evicted.
    """

    def __init__(
        self,
        store: StorageBackend,
        seed_balance: int = DEMO_SEED_BALANCE,
        maxsize: int = 20,
        flush_interval_secs: float = 60,
        flush_retries: int = 1,
        flush_retry_delay: float = 2.0,
    ) -> None:
        self._store = store
        self._seed_balance = seed_balance
        self._maxsize = max(1, maxsize)
        self._flush_interval = flush_interval_secs
        self._flush_retries = flush_retries
        self._flush_retry_delay = flush_retry_delay
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        # A lock lives as long as some task holds or awaits it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._flush_task: asyncio.Task[None] | None = None
        self._last_flush_at: str | None = None
        self._total_flushes = 0
        self._last_flush_check = time.monotonic()

    @classmethod
    def from_config(cls, store: StorageBackend, config: LedgerConfig) -> LedgerCache:
        return cls(
            store,
            seed_balance=config.seed_balance,
            maxsize=config.cache_maxsize,
            flush_interval_secs=config.flush_interval_secs,
        )

    def _get_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def _maybe_flush(self) -> None:
        """Flush dirty entries if the flush interval has elapsed.

        Piggybacks on request traffic so that dirty entries still reach
        storage when no background task is running.
        """
        now = time.monotonic()
        if now - self._last_flush_check < self._flush_interval:
            return
        self._last_flush_check = now
        if self.dirty_count:
            count = await self.flush_dirty()
            if count:
                logger.info("Opportunistic flush: wrote %d ledger(s).", count)

    # -- access ---------------------------------------------------------------

    async def get(self, user_id: str) -> BalanceLedger:
        """Return the user's ledger. Raises LedgerUnavailableError if storage fails."""
        await self._maybe_flush()
        async with self._get_lock(user_id):
            return await self._get_unlocked(user_id)

    @asynccontextmanager
    async def locked(self, user_id: str) -> AsyncIterator[BalanceLedger]:
        """Exclusive access to a user's ledger for a read-modify-write.

        The entry is marked dirty when the block exits without an exception.
        """
        await self._maybe_flush()
        async with self._get_lock(user_id):
            ledger = await self._get_unlocked(user_id)
            yield ledger
            self.mark_dirty(user_id)

    async def replace(self, user_id: str, ledger: BalanceLedger) -> None:
        """Swap in a new ledger for the user (marked dirty)."""
        async with self._get_lock(user_id):
            entry = self._entries.get(user_id)
            if entry is None:
                await self._make_room()
                entry = self._entries[user_id] = _CacheEntry(ledger=ledger)
            entry.ledger = ledger
            self._entries.move_to_end(user_id)
        self.mark_dirty(user_id)

    async def _get_unlocked(self, user_id: str) -> BalanceLedger:
        entry = self._entries.get(user_id)
        if entry is not None:
            self._entries.move_to_end(user_id)
            return entry.ledger

        try:
            ledger_json = await self._store.fetch_ledger(user_id)
        except Exception as exc:
            logger.warning("Failed to load ledger for %s: %s", user_id, exc)
            raise LedgerUnavailableError(user_id) from exc

        await self._make_room()
        if ledger_json is None:
            ledger = BalanceLedger.seeded(self._seed_balance)
            entry = _CacheEntry(ledger=ledger, dirty=True, version=1)
            logger.info("Created demo ledger for %s (seed %d).", user_id, self._seed_balance)
        else:
            entry = _CacheEntry(ledger=BalanceLedger.from_json(ledger_json))
        self._entries[user_id] = entry
        return entry.ledger

    def mark_dirty(self, user_id: str) -> None:
        """Mark a cached entry as needing a flush."""
        entry = self._entries.get(user_id)
        if entry:
            entry.dirty = True
            entry.version += 1

    # -- eviction -------------------------------------------------------------

    async def _make_room(self) -> None:
        while len(self._entries) >= self._maxsize:
            if not await self._evict_lru():
                break

    async def _evict_lru(self) -> bool:
        """Evict the least-recently-used unlocked entry, flushing if dirty.

        The victim's lock is held across flush and removal, so a concurrent
        operation on that user waits and then reloads the flushed ledger.
        """
        for user_id, entry in list(self._entries.items()):
            lock = self._get_lock(user_id)
            if lock.locked():
                continue
            async with lock:
                if self._entries.get(user_id) is not entry:
                    return True
                if entry.dirty and not await self._flush_entry(user_id, entry):
                    logger.error("Evicting %s with unflushed changes.", user_id)
                del self._entries[user_id]
            return True
        return False

    # -- flushing -------------------------------------------------------------

    async def flush_user(self, user_id: str) -> bool:
        """Immediately persist one user's entry.

        Used on money-moving paths where the change must be durable before
        the caller reports success. Returns False on failure (logged).
        """
        entry = self._entries.get(user_id)
        if not entry or not entry.dirty:
            return True
        return await self._flush_entry(user_id, entry)

    async def _flush_entry(self, user_id: str, entry: _CacheEntry) -> bool:
        payload = entry.ledger.to_json()
        version = entry.version
        attempts = 1 + self._flush_retries
        for attempt in range(1, attempts + 1):
            try:
                await self._store.store_ledger(user_id, payload)
            except Exception as exc:
                if attempt < attempts:
                    logger.warning(
                        "Flush attempt %d/%d for %s failed (%s); retrying in %.1fs.",
                        attempt, attempts, user_id, exc, self._flush_retry_delay,
                    )
                    await asyncio.sleep(self._flush_retry_delay)
                else:
                    logger.warning(
                        "Failed to flush ledger for %s after %d attempt(s).",
                        user_id, attempts,
                    )
                continue
            # Changes made while the write was in flight stay dirty.
            if entry.version == version:
                entry.dirty = False
            self._last_flush_at = datetime.now(timezone.utc).isoformat()
            self._total_flushes += 1
            return True
        return False

    async def flush_dirty(self) -> int:
        """Flush all dirty entries. Returns the number written."""
        flushed = 0
        for user_id, entry in list(self._entries.items()):
            if entry.dirty and await self._flush_entry(user_id, entry):
                flushed += 1
        return flushed

    async def flush_all(self) -> int:
        """Flush every dirty entry (used during shutdown)."""
        return await self.flush_dirty()

    async def snapshot_all(self, timestamp: str) -> int:
        """Snapshot every cached ledger. Returns the number of snapshots written."""
        written = 0
        for user_id, entry in list(self._entries.items()):
            try:
                ref = await self._store.snapshot_ledger(
                    user_id, entry.ledger.to_json(), timestamp
                )
            except Exception as exc:
                logger.warning("Failed to snapshot ledger for %s: %s", user_id, exc)
                continue
            if ref is not None:
                written += 1
        return written

    # -- background flush -----------------------------------------------------

    async def start_background_flush(self) -> None:
        if self._flush_task is None:
            self._flush_task = asyncio.create_task(self._background_flush_loop())

    async def _background_flush_loop(self) -> None:
        logger.info("Background flush started (interval=%ss).", self._flush_interval)
        cycles = 0
        try:
            while True:
                await asyncio.sleep(self._flush_interval)
                cycles += 1
                count = await self.flush_dirty()
                if count:
                    logger.info(
                        "Background flush: wrote %d ledger(s) (cycle %d, total %d).",
                        count, cycles, self._total_flushes,
                    )
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        """Cancel the background task and flush whatever is still dirty."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.flush_all()

    # -- introspection --------------------------------------------------------

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def dirty_count(self) -> int:
        return sum(1 for e in self._entries.values() if e.dirty)

    def health(self) -> dict[str, object]:
        """Cache metrics for monitoring."""
        return {
            "cache_size": self.size,
            "dirty_entries": self.dirty_count,
            "last_flush_at": self._last_flush_at,
            "total_flushes": self._total_flushes,
            "background_flush_running": (
                self._flush_task is not None and not self._flush_task.done()
            ),
        }
