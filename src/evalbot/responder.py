"""Produce reply text for a recognized command.

Each command kind maps to exactly one collaborator call; ``about``,
``help``, ``--help`` and invalid commands are answered locally. The
responder never touches the record store: deciding what to do with the text
is the synchronization engine's job.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from evalbot.collaborators import DocIndex, Playground, Registry
from evalbot.errors import CollaboratorError
from evalbot.logger import logger
from evalbot.recognizer import COMMANDS, display_help
from evalbot.types import Invalid, Recognized


class Responder:
    def __init__(
        self,
        *,
        playground: Playground,
        registry: Registry,
        docs: DocIndex,
        timeout_seconds: float,
        about_text: str,
    ) -> None:
        self._timeout = timeout_seconds
        self._about_text = about_text
        self._handlers: dict[str, Callable[[Recognized], Awaitable[str]]] = {
            "eval": playground.evaluate,
            "version": playground.version,
            "rustc_version": playground.version,
            "crate": registry.search,
            "doc": docs.search,
        }

    def answer_locally(self, command: Recognized | Invalid) -> str | None:
        """Reply text that needs no collaborator, or None."""
        if isinstance(command, Invalid):
            usage = COMMANDS[command.kind].flag_help()
            return f"error: {command.reason}\n{usage}"
        if command.help:
            return COMMANDS[command.kind].flag_help()
        if command.kind == "about":
            return self._about_text
        if command.kind == "help":
            return display_help(command.is_private)
        return None

    async def respond(self, command: Recognized | Invalid) -> str:
        """Return the reply text for *command*.

        Raises CollaboratorError when the collaborator fails or takes longer
        than the configured timeout.
        """
        local = self.answer_locally(command)
        if local is not None:
            return local

        assert isinstance(command, Recognized)
        handler = self._handlers.get(command.kind)
        if handler is None:
            raise CollaboratorError(command.kind, "no handler for command")

        try:
            async with asyncio.timeout(self._timeout):
                text = await handler(command)
        except TimeoutError as exc:
            logger.warning("Collaborator timed out", kind=command.kind, timeout=self._timeout)
            raise CollaboratorError(command.kind, "timed out") from exc

        text = text.strip()
        return text or "(no output)"
