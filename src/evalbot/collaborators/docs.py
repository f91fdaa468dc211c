"""Standard library documentation search.

The index is a JSON file exported from rustdoc's search index, one entry per
item::

    [{"path": "std::collections", "name": "BTreeMap", "kind": "struct",
      "parent": null, "desc": "An ordered map based on a B-Tree."}, ...]

``parent`` is the owning type for methods and associated items, written as
``{"name": "BTreeMap", "kind": "struct"}``.
"""

from __future__ import annotations

import asyncio
import hashlib
import html
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from evalbot.errors import CollaboratorError
from evalbot.logger import logger
from evalbot.types import Recognized
from evalbot.utils import encode_with_code, text_width, truncate_output

ROOTS = ("alloc", "core", "std")
TOTAL_MAX_WIDTH = 80
DESC_SEP = " - "
INLINE_LIMIT = 50

_TYPE_SUFFIX = {"keyword": " (keyword)", "primitive": " (primitive type)"}

# Items owned by a parent type are linked as anchors on the parent's page.
_ANCHOR_KINDS = {"method", "tymethod", "associatedtype", "associatedconstant", "structfield", "variant"}


@dataclass(frozen=True)
class DocParent:
    name: str
    kind: str


@dataclass(frozen=True)
class DocItem:
    path: str
    name: str
    kind: str
    desc: str = ""
    parent: DocParent | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DocItem:
        parent = raw.get("parent")
        return cls(
            path=str(raw["path"]),
            name=str(raw["name"]),
            kind=str(raw.get("kind", "")),
            desc=str(raw.get("desc") or ""),
            parent=DocParent(str(parent["name"]), str(parent.get("kind", ""))) if parent else None,
        )

    @property
    def is_keyword_or_primitive(self) -> bool:
        return self.kind in ("keyword", "primitive")

    @property
    def type_rank(self) -> int:
        return {"keyword": 0, "primitive": 1}.get(self.kind, 2)

    def matches_path(self, root: str, path: list[str]) -> bool:
        """Each query level must appear, in order, somewhere in the item path."""
        levels = self.path.split("::")
        if self.parent is not None:
            levels.append(self.parent.name)
        if levels[0] != root:
            return False
        remaining = iter(levels[1:])
        return all(any(level in candidate for candidate in remaining) for level in path)

    def display_path(self) -> str:
        parts: list[str] = []
        parent_is_builtin = self.parent is not None and self.parent.kind in ("keyword", "primitive")
        if not self.is_keyword_or_primitive and not parent_is_builtin:
            parts.append(self.path)
        if self.parent is not None:
            parts.append(self.parent.name)
        parts.append(self.name + ("!" if self.kind == "macro" else ""))
        return "::".join(parts)

    def url_path(self) -> str:
        base = self.path.replace("::", "/")
        if self.is_keyword_or_primitive:
            return f"{self.path.split('::')[0]}/{self.kind}.{self.name}.html"
        if self.parent is not None:
            owner = f"{base}/{self.parent.kind}.{self.parent.name}.html"
            if self.parent.kind in ("keyword", "primitive"):
                owner = f"{self.path.split('::')[0]}/{self.parent.kind}.{self.parent.name}.html"
            anchor = self.kind if self.kind in _ANCHOR_KINDS else "method"
            return f"{owner}#{anchor}.{self.name}"
        if self.kind == "mod":
            return f"{base}/{self.name}/index.html"
        return f"{base}/{self.kind}.{self.name}.html"


def is_subsequence(needle: str, haystack: str) -> bool:
    it = iter(haystack)
    return all(c in it for c in needle)


def split_query(query: str) -> tuple[str, list[str], str] | None:
    """Split ``[root::]a::b::name`` into (root, [a, b], name)."""
    parts = [p.strip() for p in query.split("::")]
    parts = [p for p in parts if p]
    if not parts:
        return None
    root = "std"
    if parts[0] in ROOTS:
        root = parts.pop(0)
    if not parts:
        return None
    return root, parts[:-1], parts[-1]


class DocIndex:
    name = "docs"

    def __init__(self, index_path: Path, base_url: str = "https://doc.rust-lang.org") -> None:
        self._index_path = index_path
        self._base_url = base_url
        self._items: list[DocItem] | None = None
        self._load_lock = asyncio.Lock()

    def _read_index(self) -> list[DocItem]:
        try:
            raw = json.loads(self._index_path.read_text(encoding="utf-8"))
            return [DocItem.from_dict(entry) for entry in raw]
        except FileNotFoundError as exc:
            raise CollaboratorError(self.name, "documentation index unavailable") from exc
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.error("Cannot load documentation index", path=str(self._index_path), err=str(exc))
            raise CollaboratorError(self.name, "documentation index unavailable") from exc

    async def items(self) -> list[DocItem]:
        async with self._load_lock:
            if self._items is None:
                self._items = await asyncio.to_thread(self._read_index)
                logger.info("Documentation index loaded", items=len(self._items))
        return self._items

    def format_item(self, item: DocItem) -> str:
        path = item.display_path()
        type_str = _TYPE_SUFFIX.get(item.kind, "")
        line = f'<a href="{self._base_url}/{item.url_path()}">{html.escape(path)}</a>{type_str}'
        remaining = TOTAL_MAX_WIDTH - (text_width(path) + len(type_str) + len(DESC_SEP))
        if item.desc and remaining > 0:
            desc = truncate_output(item.desc, 1, remaining)
            line += DESC_SEP + html.escape(desc, quote=False)
        return line

    async def find(self, query: str, limit: int) -> list[DocItem]:
        """Best *limit* items for *query*, shortest names first."""
        parsed = split_query(query)
        if parsed is None:
            return []
        root, path, name = parsed
        needle = name.lower()
        matched = [
            item
            for item in await self.items()
            if is_subsequence(needle, item.name.lower()) and item.matches_path(root, path)
        ]
        matched.sort(
            key=lambda item: (
                len(item.name),
                not item.desc,  # prefer items with a description
                item.type_rank,
                item.path,
                item.parent.name if item.parent else "",
            )
        )
        return matched[:limit]

    async def search(self, command: Recognized) -> str:
        if split_query(command.args) is None:
            return "(empty query)"
        matched = await self.find(command.args, 10 if command.is_private else 3)
        if not matched:
            return "(empty result)"
        return "\n".join(self.format_item(item) for item in matched)

    def item_article(self, item: DocItem) -> dict[str, Any]:
        url = f"{self._base_url}/{item.url_path()}"
        path = item.display_path()
        type_str = _TYPE_SUFFIX.get(item.kind, "")
        message = f'<a href="{url}">{html.escape(path)}</a>{type_str}'
        if item.desc:
            message += DESC_SEP + encode_with_code(item.desc)
        article: dict[str, Any] = {
            "type": "article",
            "id": hashlib.sha256(url.encode()).hexdigest(),
            "title": path + type_str,
            "input_message_content": {
                "message_text": message,
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            },
        }
        if item.desc:
            article["description"] = item.desc
        return article

    async def inline(self, query: str) -> list[dict[str, Any]]:
        return [self.item_article(item) for item in await self.find(query, INLINE_LIMIT)]
