"""crates.io registry lookups."""

from __future__ import annotations

import html
from typing import Any
from urllib.parse import quote

import aiohttp

from evalbot.collaborators._http import fetch_json
from evalbot.errors import CollaboratorError
from evalbot.types import Recognized
from evalbot.utils import encode_with_code

INLINE_LIMIT = 50


def encode_for_url(s: str) -> str:
    return quote(s, safe="")


def format_crate(info: dict[str, Any]) -> str:
    """One line per crate: name, version, info/doc/repo links, description."""
    name = str(info["name"])
    version = str(info.get("max_version") or info.get("newest_version") or "?")
    name_url = encode_for_url(name)
    crate_url = f"https://crates.io/crates/{name_url}"
    doc_url = info.get("documentation") or f"https://docs.rs/crate/{name_url}"
    line = (
        f"<b>{html.escape(name)}</b> ({html.escape(version)})"
        f' - <a href="{html.escape(crate_url)}">info</a>'
        f' - <a href="{html.escape(doc_url)}">doc</a>'
    )
    if repo := info.get("repository"):
        line += f' - <a href="{html.escape(repo)}">repo</a>'
    if description := info.get("description"):
        line += " - " + html.escape(" ".join(description.split()), quote=False)
    return line


def crate_article(info: dict[str, Any]) -> dict[str, Any]:
    """Inline-query result for one crate, with info/doc/repo buttons."""
    name = str(info["name"])
    version = str(info.get("max_version") or info.get("newest_version") or "?")
    description = " ".join(str(info.get("description") or "").split())
    message = f"<b>{html.escape(name)}</b> ({html.escape(version)})"
    if description:
        message += "\n" + encode_with_code(description)

    name_url = encode_for_url(name)
    buttons = [
        {"text": "info", "url": f"https://crates.io/crates/{name_url}"},
        {"text": "doc", "url": info.get("documentation") or f"https://docs.rs/crate/{name_url}"},
    ]
    if repo := info.get("repository"):
        buttons.append({"text": "repo", "url": repo})

    article: dict[str, Any] = {
        "type": "article",
        "id": str(info.get("id") or name),
        "title": f"{name} {version}",
        "input_message_content": {
            "message_text": message,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        },
        "reply_markup": {"inline_keyboard": [buttons]},
    }
    if description:
        article["description"] = description
    return article


class Registry:
    name = "registry"

    def __init__(
        self, session: aiohttp.ClientSession, base_url: str = "https://crates.io"
    ) -> None:
        self._session = session
        self._base_url = base_url

    async def search(self, command: Recognized) -> str:
        query = command.args.strip()
        if not query:
            return "(empty query)"
        if "--keyword" in command.flags or "--query" in command.flags:
            return await self._list(command, query)
        return await self._lookup(query)

    async def _lookup(self, query: str) -> str:
        status, resp = await fetch_json(
            self._session,
            "GET",
            f"{self._base_url}/api/v1/crates/{encode_for_url(query)}",
            collaborator=self.name,
            accept=(404,),
        )
        if status == 404:
            return f"<b>{html.escape(query)}</b> - not found"
        try:
            return format_crate(resp["crate"])
        except (KeyError, TypeError) as exc:
            raise CollaboratorError(self.name, "failed to parse result") from exc

    async def _list(self, command: Recognized, query: str) -> str:
        # The last mode flag wins, as with every other flag.
        keyword = [f for f in command.flags if f in ("--keyword", "--query")][-1] == "--keyword"
        params = {
            "keyword" if keyword else "q": query,
            "sort": "recent-downloads" if keyword else "relevance",
            "per_page": "10" if command.is_private else "3",
        }
        _, resp = await fetch_json(
            self._session,
            "GET",
            f"{self._base_url}/api/v1/crates",
            collaborator=self.name,
            params=params,
        )
        try:
            crates = resp["crates"]
            total = int(resp["meta"]["total"])
            lines = [format_crate(c) for c in crates]
        except (KeyError, TypeError, ValueError) as exc:
            raise CollaboratorError(self.name, "failed to parse result") from exc

        if not lines:
            return "(none)"
        if len(lines) < total:
            encoded = encode_for_url(query)
            more = (
                f"https://crates.io/keywords/{encoded}"
                if keyword
                else f"https://crates.io/search?q={encoded}"
            )
            lines.append(f'<a href="{html.escape(more)}">More...</a>')
        return "\n".join(lines)

    async def inline(self, query: str) -> list[dict[str, Any]]:
        """Inline-mode results: relevance search, or recent downloads when empty."""
        query = query.strip()
        if query:
            url = f"{self._base_url}/api/v1/crates"
            params = {"q": query, "sort": "relevance", "per_page": str(INLINE_LIMIT)}
            field = "crates"
        else:
            url = f"{self._base_url}/api/v1/summary"
            params = {}
            field = "most_recently_downloaded"
        _, resp = await fetch_json(
            self._session, "GET", url, collaborator=self.name, params=params
        )
        try:
            return [crate_article(c) for c in resp[field][:INLINE_LIMIT]]
        except (KeyError, TypeError) as exc:
            raise CollaboratorError(self.name, "failed to parse result") from exc
