"""Shared test fixtures for evalbot."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field

import pytest

from evalbot.errors import CollaboratorError, PlatformActionError
from evalbot.types import EditedMessage, Invalid, NewMessage, Recognized

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "project_root",
        "records_path",
        "upgrade_marker_path",
        "docs_index_path",
        "about_text",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (bot, queue, etc.) and cached property
    overrides (project_root, records_path, etc.).

    Usage::

        s = make_settings(records_path=tmp_path / "record_list.json")
        s = make_settings(queue=QueueConfig(max_concurrent_chats=2))
    """
    from evalbot.config import (
        BotConfig,
        LifecycleConfig,
        LoggingConfig,
        QueueConfig,
        RecordsConfig,
        ResponderConfig,
        SecretsConfig,
        Settings,
        TelegramConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "bot": BotConfig(),
        "secrets": SecretsConfig(),
        "telegram": TelegramConfig(),
        "records": RecordsConfig(),
        "responder": ResponderConfig(),
        "lifecycle": LifecycleConfig(),
        "queue": QueueConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def new_message(text: str, *, chat_id: int = 100, message_id: int = 1, **kwargs) -> NewMessage:
    kwargs.setdefault("date", 1_700_000_000)
    return NewMessage(chat_id=chat_id, message_id=message_id, text=text, **kwargs)


def edited_message(
    text: str, *, chat_id: int = 100, message_id: int = 1, **kwargs
) -> EditedMessage:
    kwargs.setdefault("date", 1_700_000_000)
    return EditedMessage(chat_id=chat_id, message_id=message_id, new_text=text, **kwargs)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass
class FakeOutbound:
    """In-memory platform recording every action.

    Message ids listed in ``gone`` behave as deleted on the platform. Set
    ``fail_with`` to make every action raise PlatformActionError.
    """

    next_id: int = 1000
    messages: dict[tuple[int, int], str] = field(default_factory=dict)
    actions: list[tuple] = field(default_factory=list)
    gone: set[int] = field(default_factory=set)
    fail_with: str | None = None

    def _maybe_fail(self, method: str) -> None:
        if self.fail_with is not None:
            raise PlatformActionError(method, self.fail_with, 400)

    async def send_message(self, chat_id: int, text: str, reply_to: int | None = None) -> int:
        self._maybe_fail("sendMessage")
        self.next_id += 1
        self.messages[(chat_id, self.next_id)] = text
        self.actions.append(("send", chat_id, self.next_id, text))
        return self.next_id

    async def edit_message(self, chat_id: int, message_id: int, text: str) -> bool:
        self._maybe_fail("editMessageText")
        self.actions.append(("edit", chat_id, message_id, text))
        if message_id in self.gone:
            return False
        self.messages[(chat_id, message_id)] = text
        return True

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        self._maybe_fail("deleteMessage")
        self.actions.append(("delete", chat_id, message_id))
        self.messages.pop((chat_id, message_id), None)

    def kinds(self) -> list[str]:
        return [a[0] for a in self.actions]


class FakeResponder:
    """Echoes the command back as reply text.

    ``gates`` maps argument text to an Event the call waits on, so tests can
    hold a responder call in flight. ``failures`` lists argument texts that
    raise CollaboratorError.
    """

    def __init__(self) -> None:
        self.calls: list[Recognized | Invalid] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.failures: set[str] = set()

    async def __call__(self, command: Recognized | Invalid) -> str:
        self.calls.append(command)
        args = command.args.strip()
        if (gate := self.gates.get(args)) is not None:
            await gate.wait()
        if args in self.failures:
            raise CollaboratorError("playground", "server error")
        return f"{command.kind}: {args}"

    def hold(self, args: str) -> asyncio.Event:
        gate = self.gates[args] = asyncio.Event()
        return gate


async def settle(condition: Callable[[], bool] | None = None, rounds: int = 50) -> None:
    """Yield to the loop until *condition* holds (or a few rounds pass)."""
    for _ in range(rounds):
        if condition is not None and condition():
            return
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults: no config.toml,
    no .env, no file I/O. Tests are fully isolated from production config.
    """
    safe = make_settings()
    monkeypatch.setattr("evalbot.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def outbound() -> FakeOutbound:
    return FakeOutbound()


@pytest.fixture
def responder() -> FakeResponder:
    return FakeResponder()
