"""Live command/reply synchronization.

Keeps every reply consistent with the command message that produced it:
a new command gets a reply, an edited command gets its reply edited in
place, and a command edited into something else loses its reply.

Each event goes through two steps:

* **accept** runs in the chat's queue worker, in arrival order, under the
  short store lock: recognize the text, drop no-op edits, bump the record's
  version.
* **apply** runs in a tracked task: call the responder with no lock held,
  then under the record's own lock check that no newer event was accepted
  meanwhile, perform the outbound action, update the store and flush.

A superseded responder call is left to finish and its result dropped, so the
later edit always wins without cancelling anything mid-request.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial
from typing import Any, TypeAlias

from evalbot.chat_queue import ChatQueue
from evalbot.errors import CollaboratorError, PlatformActionError
from evalbot.logger import logger
from evalbot.recognizer import recognize
from evalbot.records import RecordStore
from evalbot.types import (
    CommandRecord,
    DrainReport,
    InboundEvent,
    Invalid,
    NewMessage,
    NotRecognized,
    Outbound,
    Recognition,
    Recognized,
    record_key,
)
from evalbot.utils import now_epoch

Respond: TypeAlias = Callable[[Recognized | Invalid], Awaitable[str]]


@dataclass
class _KeyState:
    """In-memory bookkeeping for a record with work in flight."""

    signature: str | None  # latest accepted signature, pending or applied
    version: int = 0
    in_flight: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SyncEngine:
    def __init__(
        self,
        store: RecordStore,
        respond: Respond,
        outbound: Outbound,
        *,
        username: str = "",
        max_age_hours: float = 48.0,
        queue: ChatQueue | None = None,
    ) -> None:
        self.store = store
        self._respond = respond
        self._outbound = outbound
        self._username = username
        self._max_age_seconds = int(max_age_hours * 3600)
        self._queue = queue if queue is not None else ChatQueue()
        self._store_lock = asyncio.Lock()
        self._keys: dict[tuple[int, int], _KeyState] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._applied = 0  # events fully processed, for drain reports

    # --- Intake ---

    def submit(self, event: InboundEvent) -> bool:
        """Queue *event* behind earlier events of the same chat.

        Returns False once intake has stopped.
        """
        return self._queue.enqueue(event.chat_id, partial(self.handle, event))

    def stop_intake(self) -> None:
        self._queue.shutdown()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # --- Accept ---

    async def handle(self, event: InboundEvent) -> None:
        """Accept one event and start its apply step.

        Events of the same record must be handed in arrival order; the chat
        queue guarantees that for ``submit``.
        """
        key = record_key(event)
        recognition = recognize(event.text, username=self._username, is_private=event.is_private)

        async with self._store_lock:
            if isinstance(event, NewMessage):
                self._evict(event.date)

            state = self._keys.get(key)
            record = self.store.find(*key)
            if state is not None:
                latest = state.signature
            elif record is not None:
                latest = record.recognized_signature
            else:
                latest = None
            tracked = state is not None or record is not None

            if isinstance(recognition, NotRecognized) and not tracked:
                return
            if recognition.signature is not None and recognition.signature == latest:
                logger.debug("Edit changes nothing, ignored", chat_id=key[0], message_id=key[1])
                return

            if state is None:
                state = self._keys[key] = _KeyState(signature=latest)
            state.signature = recognition.signature
            state.version += 1
            state.in_flight += 1
            version = state.version

        task = asyncio.create_task(
            self._process(event, recognition, version),
            name=f"sync-{key[0]}-{key[1]}-v{version}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _evict(self, newest_date: int) -> None:
        if newest_date <= 0:
            return
        cutoff = newest_date - self._max_age_seconds
        dropped = self.store.evict_older_than(cutoff, keep=lambda key: key in self._keys)
        if dropped:
            logger.info("Evicted expired records", count=dropped, cutoff=cutoff)

    # --- Apply ---

    def _is_current(self, key: tuple[int, int], version: int) -> bool:
        return self._keys[key].version == version

    async def _process(self, event: InboundEvent, recognition: Recognition, version: int) -> None:
        key = record_key(event)
        state = self._keys[key]
        try:
            text: str | None = None
            failure: CollaboratorError | None = None
            if isinstance(recognition, (Recognized, Invalid)) and self._is_current(key, version):
                try:
                    text = await self._respond(recognition)
                except CollaboratorError as exc:
                    failure = exc

            async with state.lock:
                if not self._is_current(key, version):
                    logger.info(
                        "Superseded result dropped",
                        chat_id=key[0],
                        message_id=key[1],
                        version=version,
                    )
                    return
                await self._apply(event, recognition, text, failure)
        except PlatformActionError as exc:
            logger.warning(
                "Platform rejected reply action, record left unchanged",
                chat_id=key[0],
                message_id=key[1],
                method=exc.method,
                err=exc.description,
            )
        except Exception:
            logger.exception("Unexpected error applying event", chat_id=key[0], message_id=key[1])
        finally:
            self._applied += 1
            async with self._store_lock:
                state.in_flight -= 1
                if state.in_flight == 0:
                    del self._keys[key]

    async def _apply(
        self,
        event: InboundEvent,
        recognition: Recognition,
        text: str | None,
        failure: CollaboratorError | None,
    ) -> None:
        """Bring the reply and record in line with *recognition*.

        Called under the record lock. Outbound calls happen before the store
        is touched, so a PlatformActionError leaves the record as it was.
        """
        chat_id, message_id = record_key(event)
        record = self.store.find(chat_id, message_id)

        if isinstance(recognition, NotRecognized):
            if record is None:
                return
            if record.reply_message_id is not None:
                await self._outbound.delete_message(chat_id, record.reply_message_id)
                logger.info("Reply deleted", chat_id=chat_id, reply_id=record.reply_message_id)
            await self._commit(remove=record)
            return

        signature = recognition.signature
        if failure is not None:
            logger.warning(
                "Responder failed", chat_id=chat_id, message_id=message_id, err=str(failure)
            )
            # An existing reply shows the notice and keeps its record without
            # a signature, so the next edit re-runs.
            text = f"error: {failure.reason}"
            signature = None

        assert text is not None
        if record is not None and record.reply_message_id is not None:
            if await self._outbound.edit_message(chat_id, record.reply_message_id, text):
                logger.info("Reply edited", chat_id=chat_id, reply_id=record.reply_message_id)
            else:
                logger.info(
                    "Reply is gone, forgetting it", chat_id=chat_id, reply_id=record.reply_message_id
                )
                record.reply_message_id = None
            record.recognized_signature = signature
            record.updated_at = now_epoch()
            await self._commit(upsert=record)
            return

        reply_id = await self._outbound.send_message(chat_id, text, reply_to=message_id)
        logger.info("Reply sent", chat_id=chat_id, message_id=message_id, reply_id=reply_id)
        if failure is not None:
            # A command that never got an answer stays untracked
            if record is not None:
                await self._commit(remove=record)
            return
        now = now_epoch()
        await self._commit(
            upsert=CommandRecord(
                chat_id=chat_id,
                command_message_id=message_id,
                reply_message_id=reply_id,
                recognized_signature=signature,
                created_at=record.created_at if record is not None else (event.date or now),
                updated_at=now,
            )
        )

    async def _commit(
        self,
        *,
        upsert: CommandRecord | None = None,
        remove: CommandRecord | None = None,
    ) -> None:
        async with self._store_lock:
            if remove is not None:
                self.store.remove(*remove.key)
            if upsert is not None:
                if upsert.is_dead:
                    self.store.remove(*upsert.key)
                else:
                    self.store.upsert(upsert)
            await self.store.flush()

    # --- Draining ---

    async def join(self) -> None:
        """Wait until every queued and in-flight event has been applied."""
        while True:
            await self._queue.wait_idle()
            if not self._tasks:
                return
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def drain(self, timeout: float) -> DrainReport:
        """Stop intake and let accepted work finish, within *timeout* seconds.

        Work still running at the deadline is cancelled and reported as
        abandoned. The store is flushed either way.
        """
        self.stop_intake()
        applied_before = self._applied
        report = DrainReport()
        cancelled = 0
        try:
            async with asyncio.timeout(timeout):
                await self.join()
        except TimeoutError:
            report.abandoned = sorted(self._keys)
            cancelled = len(self._tasks)
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.warning("Drain timed out, abandoning work", abandoned=report.abandoned)
        report.completed = self._applied - applied_before - cancelled

        async with self._store_lock:
            await self.store.flush()
        logger.info("Sync engine drained", completed=report.completed, records=len(self.store))
        return report
