"""Data models for evalbot."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias, runtime_checkable

# --- Inbound events ---


@dataclass(frozen=True)
class NewMessage:
    chat_id: int
    message_id: int
    text: str
    sender_id: int | None = None
    date: int = 0  # UNIX epoch seconds, as reported by the platform
    is_private: bool = False
    update_id: int | None = None


@dataclass(frozen=True)
class EditedMessage:
    chat_id: int
    message_id: int
    new_text: str
    sender_id: int | None = None
    date: int = 0  # date of the original message, not of the edit
    is_private: bool = False
    update_id: int | None = None

    @property
    def text(self) -> str:
        return self.new_text


InboundEvent: TypeAlias = NewMessage | EditedMessage


@dataclass(frozen=True)
class InlineQuery:
    """``@bot query`` typed in any chat.

    Answered once with a list of results and never tracked: there is no
    message to keep in sync.
    """

    query_id: str
    query: str
    sender_id: int | None = None
    update_id: int | None = None


def record_key(event: InboundEvent) -> tuple[int, int]:
    return (event.chat_id, event.message_id)


# --- Recognition outcomes ---


@dataclass(frozen=True)
class Recognized:
    """A command the bot knows how to answer."""

    kind: str
    args: str = ""
    flags: tuple[str, ...] = ()
    help: bool = False  # ``--help`` was given; answer with the command's flag help
    is_private: bool = False

    @property
    def signature(self) -> str:
        """Canonical form used to detect edits that change nothing.

        Flag order and repetition don't change what a command does, and
        neither does surrounding whitespace in the argument text.
        """
        if self.help:
            return "\0".join((self.kind, "--help"))
        return "\0".join((self.kind, " ".join(sorted(set(self.flags))), self.args.strip()))


@dataclass(frozen=True)
class Invalid:
    """Recognized command name with arguments that don't parse."""

    kind: str
    reason: str = "unable to parse the command"
    args: str = ""

    @property
    def signature(self) -> str:
        return "\0".join((self.kind, "!invalid", self.args.strip()))


@dataclass(frozen=True)
class NotRecognized:
    signature: None = None


NOT_RECOGNIZED = NotRecognized()

Recognition: TypeAlias = Recognized | Invalid | NotRecognized


# --- Persisted state ---


@dataclass
class CommandRecord:
    chat_id: int
    command_message_id: int
    reply_message_id: int | None = None
    recognized_signature: str | None = None
    created_at: int = 0
    updated_at: int = 0

    @property
    def key(self) -> tuple[int, int]:
        return (self.chat_id, self.command_message_id)

    @property
    def is_dead(self) -> bool:
        return self.reply_message_id is None and self.recognized_signature is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "command_message_id": self.command_message_id,
            "reply_message_id": self.reply_message_id,
            "recognized_signature": self.recognized_signature,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CommandRecord:
        # Unknown keys are ignored so files from newer versions still load.
        reply = raw.get("reply_message_id")
        return cls(
            chat_id=int(raw["chat_id"]),
            command_message_id=int(raw["command_message_id"]),
            reply_message_id=int(reply) if reply is not None else None,
            recognized_signature=raw.get("recognized_signature"),
            created_at=int(raw.get("created_at", 0)),
            updated_at=int(raw.get("updated_at", 0)),
        )


# --- Outbound actions ---


@runtime_checkable
class Outbound(Protocol):
    """Message actions the engine needs from the platform.

    ``edit_message`` returns False when the target message no longer exists.
    ``delete_message`` treats an already-deleted target as success.
    Anything else the platform rejects raises ``PlatformActionError``.
    """

    async def send_message(
        self, chat_id: int, text: str, reply_to: int | None = None
    ) -> int: ...

    async def edit_message(self, chat_id: int, message_id: int, text: str) -> bool: ...

    async def delete_message(self, chat_id: int, message_id: int) -> None: ...


@dataclass
class DrainReport:
    """What a drain left behind, for the shutdown log line."""

    completed: int = 0
    abandoned: list[tuple[int, int]] = field(default_factory=list)
