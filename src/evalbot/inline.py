"""Inline-mode answers (``@bot query`` typed in any chat).

Inline queries bypass the synchronization engine: Telegram wants one answer
per query and nothing is ever edited afterwards. A query whose first word is
``doc`` searches the documentation index; anything else searches crates.io,
and an empty query lists the most recently downloaded crates.

When the lookup fails the query is left unanswered and Telegram shows no
results, so a failure costs nothing but a log line.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeAlias

from evalbot.errors import CollaboratorError, PlatformActionError
from evalbot.logger import logger
from evalbot.types import InlineQuery
from evalbot.utils import create_background_task

Answer: TypeAlias = Callable[[str, list[dict[str, Any]]], Awaitable[None]]


class InlineSource(Protocol):
    name: str

    async def inline(self, query: str) -> list[dict[str, Any]]: ...


def route(query: str) -> tuple[str, str]:
    """Split *query* into the source to ask (``doc`` or ``crate``) and its text."""
    head, _, rest = query.strip().partition(" ")
    if head.lower() == "doc":
        return "doc", rest.strip()
    return "crate", query.strip()


class InlineAnswerer:
    def __init__(
        self,
        *,
        registry: InlineSource,
        docs: InlineSource,
        answer: Answer,
        timeout_seconds: float,
    ) -> None:
        self._sources = {"crate": registry, "doc": docs}
        self._answer = answer
        self._timeout = timeout_seconds
        self._tasks: set[asyncio.Task[Any]] = set()

    def submit(self, query: InlineQuery) -> None:
        task = create_background_task(self.answer(query), name=f"inline-{query.query_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def join(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def results(self, query: str) -> list[dict[str, Any]]:
        kind, text = route(query)
        source = self._sources[kind]
        try:
            async with asyncio.timeout(self._timeout):
                return await source.inline(text)
        except TimeoutError as exc:
            raise CollaboratorError(source.name, "timed out") from exc

    async def answer(self, query: InlineQuery) -> None:
        try:
            results = await self.results(query.query)
        except CollaboratorError as exc:
            logger.warning("Inline lookup failed", query_id=query.query_id, err=str(exc))
            return
        try:
            await self._answer(query.query_id, results)
        except PlatformActionError as exc:
            logger.warning("Cannot answer inline query", query_id=query.query_id, err=str(exc))
            return
        logger.debug("Inline query answered", query_id=query.query_id, results=len(results))
