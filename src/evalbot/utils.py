"""Shared utility functions.

Small helpers used across multiple modules: atomic file writing, background
task creation, and output truncation for group chats.
"""

from __future__ import annotations

import asyncio
import html
import json
import os
import tempfile
import unicodedata
from collections.abc import Coroutine
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from evalbot.logger import logger


def write_json_atomic(path: Path, data: Any, *, indent: int | None = None) -> None:
    """Write JSON data to a file using atomic rename (tmp → final).

    Ensures the target file is never partially written: readers either
    see the old content or the complete new content, even if the process
    is killed mid-write. The temp file lives in the target's directory so
    the rename never crosses filesystems.

    Creates parent directories if they don't exist.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def now_epoch() -> int:
    return int(datetime.now(UTC).timestamp())


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    A drop-in replacement for ``asyncio.create_task`` for fire-and-forget
    work (admin notices, update confirmation) where we don't await the
    result but still want failures to appear in logs.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Done-callback for background tasks: logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work here because we're in a
        # done-callback, not an except handler.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )


def char_width(c: str) -> int:
    """Display width of a character, counting East Asian wide/ambiguous as 2."""
    if unicodedata.east_asian_width(c) in ("W", "F", "A"):
        return 2
    return 1


def text_width(s: str) -> int:
    return sum(char_width(c) for c in s)


def truncate_output(output: str, max_lines: int, max_total_columns: int) -> str:
    """Cut *output* to at most *max_lines* lines and *max_total_columns* columns.

    A truncated result ends with ``...``; room for the ellipsis is taken from
    the kept text so the total never exceeds the column budget.
    """
    line_count = 0
    column_count = 0
    for pos, c in enumerate(output):
        column_count += char_width(c)
        if column_count > max_total_columns:
            truncate_width = 0
            for back in range(pos - 1, -1, -1):
                truncate_width += char_width(output[back])
                if truncate_width >= 3:
                    return output[:back] + "..."
            return "..."
        if c == "\n":
            line_count += 1
            if line_count == max_lines:
                return output[:pos] + "..."
    return output


def encode_with_code(text: str) -> str:
    """HTML-escape *text*, turning `backtick` spans into <code> tags."""
    parts = html.escape(text, quote=False).split("`")
    return "".join(f"<code>{p}</code>" if i % 2 else p for i, p in enumerate(parts))
