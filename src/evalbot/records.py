"""Durable command → reply bookkeeping.

The record file is the only source of truth about which replies the bot can
still edit or delete after a restart. It is replaced wholesale on every
flush via an atomic rename, so a crash mid-write never leaves a torn file.

The store itself is not concurrency-aware; the synchronization engine owns
it exclusively and serializes access.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Iterator
from pathlib import Path

from evalbot.errors import PersistenceError
from evalbot.logger import logger
from evalbot.types import CommandRecord
from evalbot.utils import write_json_atomic

FILE_FORMAT = 1


class RecordStore:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._records: dict[tuple[int, int], CommandRecord] = {}
        self.dirty = False

    @classmethod
    def load(cls, path: Path) -> RecordStore:
        """Restore the store from *path*.

        A missing file is a fresh start. A file that exists but can't be
        read or parsed raises PersistenceError: starting empty would orphan
        every reply the previous run knew about.
        """
        store = cls(path)
        try:
            raw_text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No record file, starting empty", path=str(path))
            return store
        except OSError as exc:
            raise PersistenceError(f"cannot read {path}: {exc}") from exc

        try:
            raw = json.loads(raw_text)
            entries = raw["records"] if isinstance(raw, dict) else None
            if not isinstance(entries, list):
                raise ValueError("missing 'records' list")
            for entry in entries:
                record = CommandRecord.from_dict(entry)
                store._records[record.key] = record
        except (ValueError, KeyError, TypeError) as exc:
            raise PersistenceError(f"corrupt record file {path}: {exc}") from exc

        logger.info("Record file loaded", path=str(path), records=len(store._records))
        return store

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[CommandRecord]:
        return iter(list(self._records.values()))

    def find(self, chat_id: int, command_message_id: int) -> CommandRecord | None:
        return self._records.get((chat_id, command_message_id))

    def upsert(self, record: CommandRecord) -> None:
        """Insert or replace by (chat_id, command_message_id)."""
        self._records[record.key] = record
        self.dirty = True

    def remove(self, chat_id: int, command_message_id: int) -> None:
        if self._records.pop((chat_id, command_message_id), None) is not None:
            self.dirty = True

    def evict_older_than(
        self,
        cutoff: int,
        *,
        keep: Callable[[tuple[int, int]], bool] = lambda key: False,
    ) -> int:
        """Drop records created before *cutoff* (epoch seconds).

        Records for which ``keep(key)`` is true survive regardless of age.
        Returns how many were dropped.
        """
        stale = [
            key
            for key, record in self._records.items()
            if record.created_at < cutoff and not keep(key)
        ]
        for key in stale:
            del self._records[key]
        if stale:
            self.dirty = True
        return len(stale)

    def to_document(self) -> dict[str, object]:
        return {
            "format": FILE_FORMAT,
            "records": [r.to_dict() for r in self._records.values()],
        }

    def snapshot_and_persist(self) -> None:
        """Atomically replace the record file with the current state.

        Raises PersistenceError on failure; the store stays dirty so the
        next caller retries.
        """
        try:
            write_json_atomic(self.path, self.to_document())
        except (OSError, TypeError, ValueError) as exc:
            self.dirty = True
            raise PersistenceError(f"cannot write {self.path}: {exc}") from exc
        self.dirty = False

    async def flush(self) -> bool:
        """Persist if there are unsaved changes, logging instead of raising.

        After startup a failed flush is not fatal: in-memory state stays
        authoritative and the next mutating event tries again. The write runs
        in a worker thread; the document is snapshotted before it starts, so
        changes made meanwhile leave the store dirty for the next flush.
        """
        if not self.dirty:
            return True
        document = self.to_document()
        self.dirty = False
        try:
            await asyncio.to_thread(write_json_atomic, self.path, document)
        except asyncio.CancelledError:
            self.dirty = True
            raise
        except (OSError, TypeError, ValueError) as exc:
            self.dirty = True
            logger.error("Record flush failed, will retry", path=str(self.path), err=str(exc))
            return False
        return True
