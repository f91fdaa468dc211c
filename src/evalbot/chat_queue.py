"""Per-chat ordering queue with a global concurrency limit.

Jobs for one chat run one at a time in arrival order; different chats run
concurrently up to ``queue.max_concurrent_chats``.

asyncio.ensure_future doesn't run the coroutine synchronously up to the
first await, so we eagerly set state.active and bump active_count in the
synchronous caller, then clean up in the async finally block.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeAlias

from evalbot.config import get_settings
from evalbot.logger import logger

Job: TypeAlias = Callable[[], Awaitable[None]]


@dataclass
class ChatState:
    active: bool = False
    pending: deque[Job] = field(default_factory=deque)


class ChatQueue:
    def __init__(self) -> None:
        self._chats: dict[int, ChatState] = {}
        self._active_count = 0
        self._waiting_chats: deque[int] = deque()
        self._shutting_down = False
        self._tasks: set[asyncio.Task[None]] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    def _get_chat(self, chat_id: int) -> ChatState:
        if chat_id not in self._chats:
            self._chats[chat_id] = ChatState()
        return self._chats[chat_id]

    def enqueue(self, chat_id: int, job: Job) -> bool:
        """Schedule *job* behind everything already queued for *chat_id*.

        Returns False once the queue is shutting down.
        """
        if self._shutting_down:
            logger.debug("Queue shutting down, job rejected", chat_id=chat_id)
            return False

        state = self._get_chat(chat_id)
        self._idle.clear()

        if state.active:
            state.pending.append(job)
            return True

        # Earlier jobs for this chat are still waiting for a slot
        if state.pending:
            state.pending.append(job)
            return True

        if self._active_count >= get_settings().queue.max_concurrent_chats:
            state.pending.append(job)
            if chat_id not in self._waiting_chats:
                self._waiting_chats.append(chat_id)
            logger.debug(
                "At concurrency limit, job queued",
                chat_id=chat_id,
                active_count=self._active_count,
            )
            return True

        # Eagerly mark as active before scheduling the coroutine
        state.active = True
        self._active_count += 1
        self._spawn(chat_id, job)
        return True

    def snapshot(self) -> dict[str, int]:
        return {
            "active_count": self._active_count,
            "waiting_count": len(self._waiting_chats),
            "pending": sum(len(s.pending) for s in self._chats.values()),
        }

    def _spawn(self, chat_id: int, job: Job) -> None:
        # The loop only keeps weak references to tasks
        task = asyncio.ensure_future(self._run(chat_id, job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, chat_id: int, job: Job) -> None:
        """Run *job*; state is already marked active by the caller."""
        state = self._get_chat(chat_id)
        try:
            await job()
        except Exception:
            logger.exception("Error running queued job", chat_id=chat_id)
        finally:
            state.active = False
            self._active_count -= 1
            self._drain_chat(chat_id)

    def _start_next_pending(self, chat_id: int) -> bool:
        state = self._chats.get(chat_id)
        if state is None or state.active or not state.pending:
            return False
        job = state.pending.popleft()
        state.active = True
        self._active_count += 1
        self._spawn(chat_id, job)
        return True

    def _drain_chat(self, chat_id: int) -> None:
        """After a job finishes, start the next one for this chat or for a waiting chat.

        Jobs already queued still run during shutdown: they were accepted
        before intake stopped.
        """
        if not self._start_next_pending(chat_id):
            if chat_id not in self._waiting_chats:
                del self._chats[chat_id]
            self._drain_waiting()
        if self._active_count == 0 and not self._waiting_chats:
            self._idle.set()

    def _drain_waiting(self) -> None:
        limit = get_settings().queue.max_concurrent_chats
        while self._waiting_chats and self._active_count < limit:
            next_chat = self._waiting_chats.popleft()
            self._start_next_pending(next_chat)

    async def wait_idle(self) -> None:
        """Wait until no job is running or queued."""
        await self._idle.wait()

    def shutdown(self) -> None:
        """Stop accepting new jobs; queued ones still run."""
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Chat queue shutdown", **self.snapshot())
