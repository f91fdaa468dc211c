"""Telegram Bot API client.

Thin aiohttp wrapper covering what the bot needs: long-polling for updates
and sending, editing and deleting its own messages, plus answering inline
queries. Platform rejections
surface as PlatformActionError; the two benign ones ("not found" when the
target is already gone, "not modified" when the text is unchanged) are
translated to success here so callers never parse error strings.
"""

from __future__ import annotations

from typing import Any

import aiohttp

from evalbot.errors import PlatformActionError
from evalbot.logger import logger
from evalbot.types import EditedMessage, InboundEvent, InlineQuery, NewMessage

_NOT_MODIFIED = "message is not modified"
_EDIT_NOT_FOUND = "message to edit not found"
_DELETE_NOT_FOUND = "message to delete not found"


def parse_update(update: dict[str, Any]) -> InboundEvent | InlineQuery | None:
    """Turn a raw update into an inbound event; None for anything else."""
    update_id = update.get("update_id")
    if (inline := update.get("inline_query")) is not None:
        if "id" not in inline:
            return None
        return InlineQuery(
            query_id=str(inline["id"]),
            query=str(inline.get("query", "")),
            sender_id=(inline.get("from") or {}).get("id"),
            update_id=update_id,
        )
    if (message := update.get("message")) is not None:
        edited = False
    elif (message := update.get("edited_message")) is not None:
        edited = True
    else:
        return None

    text = message.get("text")
    chat = message.get("chat") or {}
    if text is None or "id" not in chat or "message_id" not in message:
        return None

    sender = message.get("from") or {}
    fields: dict[str, Any] = {
        "chat_id": int(chat["id"]),
        "message_id": int(message["message_id"]),
        "sender_id": sender.get("id"),
        "date": int(message.get("date", 0)),
        "is_private": chat.get("type") == "private",
        "update_id": update_id,
    }
    if edited:
        return EditedMessage(new_text=text, **fields)
    return NewMessage(text=text, **fields)


class TelegramClient:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        api_url: str = "https://api.telegram.org",
    ) -> None:
        self._session = session
        self._base_url = f"{api_url}/bot{token}"

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        http_timeout: float | None = None,
    ) -> Any:
        """Invoke a Bot API method and return its ``result``.

        Raises PlatformActionError if the request fails or Telegram replies
        with ``ok: false``.
        """
        payload = {k: v for k, v in (params or {}).items() if v is not None}
        extra: dict[str, Any] = {}
        if http_timeout is not None:
            extra["timeout"] = aiohttp.ClientTimeout(total=http_timeout)
        try:
            async with self._session.post(
                f"{self._base_url}/{method}", json=payload, **extra
            ) as resp:
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, ValueError) as exc:
            raise PlatformActionError(method, str(exc) or type(exc).__name__) from exc

        if not isinstance(body, dict):
            raise PlatformActionError(method, "malformed response")
        if not body.get("ok"):
            raise PlatformActionError(
                method,
                str(body.get("description", "unknown error")),
                body.get("error_code"),
            )
        return body.get("result")

    # --- Inbound ---

    async def get_me(self) -> dict[str, Any]:
        return await self.call("getMe")

    async def get_updates(self, offset: int | None, timeout: int) -> list[dict[str, Any]]:
        """Long-poll for new messages, edits and inline queries."""
        return await self.call(
            "getUpdates",
            {
                "offset": offset,
                "timeout": timeout,
                "allowed_updates": ["message", "edited_message", "inline_query"],
            },
            http_timeout=timeout + 10,
        )

    async def confirm_update(self, update_id: int) -> None:
        """Acknowledge everything up to *update_id* so it isn't redelivered."""
        await self.call("getUpdates", {"offset": update_id + 1, "limit": 1, "timeout": 0})

    # --- Outbound ---

    async def send_message(self, chat_id: int, text: str, reply_to: int | None = None) -> int:
        result = await self.call(
            "sendMessage",
            {
                "chat_id": chat_id,
                "text": text,
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
                "reply_to_message_id": reply_to,
                # Still answer if the command was deleted before the reply
                "allow_sending_without_reply": True if reply_to is not None else None,
            },
        )
        return int(result["message_id"])

    async def edit_message(self, chat_id: int, message_id: int, text: str) -> bool:
        try:
            await self.call(
                "editMessageText",
                {
                    "chat_id": chat_id,
                    "message_id": message_id,
                    "text": text,
                    "parse_mode": "HTML",
                    "disable_web_page_preview": True,
                },
            )
        except PlatformActionError as exc:
            description = exc.description.lower()
            if _NOT_MODIFIED in description:
                return True
            if _EDIT_NOT_FOUND in description:
                logger.info("Message to edit is gone", chat_id=chat_id, message_id=message_id)
                return False
            raise
        return True

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        try:
            await self.call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})
        except PlatformActionError as exc:
            if _DELETE_NOT_FOUND not in exc.description.lower():
                raise
            logger.info("Message to delete already gone", chat_id=chat_id, message_id=message_id)

    async def answer_inline_query(
        self, query_id: str, results: list[dict[str, Any]], cache_time: int | None = None
    ) -> None:
        await self.call(
            "answerInlineQuery",
            {"inline_query_id": query_id, "results": results, "cache_time": cache_time},
        )
