"""FileStore: StorageBackend keeping one JSON document per user on disk.

The on-disk analogue of the browser demo's local storage::

    {root}/{user_id}.json
    {root}/snapshots/{user_id}/{timestamp}.json

User IDs are percent-encoded so any ID maps to a single safe filename.
Writes go to a temporary file that is then renamed over the target, so a
crash never leaves a half-written ledger behind.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)

_SUFFIX = ".json"


def _encode(user_id: str) -> str:
    encoded = quote(user_id, safe="@-_")
    # A leading dot would make the file hidden and skipped by list_users().
    if encoded.startswith("."):
        encoded = "%2E" + encoded[1:]
    return encoded


class FileStore:
    """Local-disk persistence implementing the ``StorageBackend`` protocol."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _ledger_path(self, user_id: str) -> Path:
        return self._root / f"{_encode(user_id)}{_SUFFIX}"

    def _snapshot_dir(self, user_id: str) -> Path:
        return self._root / "snapshots" / _encode(user_id)

    # -- sync helpers (run in a worker thread) --------------------------------

    @staticmethod
    def _write_atomic(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=_SUFFIX)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def _read(path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    # -- StorageBackend protocol ----------------------------------------------

    async def store_ledger(self, user_id: str, ledger_json: str) -> str:
        """Write the ledger document. Returns its path."""
        path = self._ledger_path(user_id)
        await asyncio.to_thread(self._write_atomic, path, ledger_json)
        return str(path)

    async def fetch_ledger(self, user_id: str) -> str | None:
        """Read the ledger document, or None if the user has none yet."""
        return await asyncio.to_thread(self._read, self._ledger_path(user_id))

    async def snapshot_ledger(
        self, user_id: str, ledger_json: str, timestamp: str
    ) -> str | None:
        """Write a timestamped copy next to the live document.

        Returns the snapshot path, or None if the user has no ledger yet.
        """
        if not self._ledger_path(user_id).exists():
            return None
        name = timestamp.replace(":", "-") + _SUFFIX
        path = self._snapshot_dir(user_id) / name
        await asyncio.to_thread(self._write_atomic, path, ledger_json)
        return str(path)

    async def delete_ledger(self, user_id: str) -> bool:
        """Remove the live document. Snapshots are kept as history."""
        path = self._ledger_path(user_id)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        logger.info("Deleted ledger for %s.", user_id)
        return True

    # -- extras ---------------------------------------------------------------

    def list_users(self) -> list[str]:
        """User IDs that currently have a stored ledger, sorted."""
        if not self._root.is_dir():
            return []
        return sorted(
            unquote(p.name[: -len(_SUFFIX)])
            for p in self._root.iterdir()
            if p.is_file() and p.name.endswith(_SUFFIX) and not p.name.startswith(".")
        )
