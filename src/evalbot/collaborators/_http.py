"""Shared aiohttp request helper for collaborators.

Translates transport failures into CollaboratorError at the boundary so
callers only ever see one exception type.
"""

from __future__ import annotations

from collections.abc import Collection
from typing import Any

import aiohttp

from evalbot.errors import CollaboratorError
from evalbot.logger import logger


def describe_status(status: int) -> str:
    if status >= 500:
        return "server error"
    if status >= 400:
        return "client error"
    return "unknown error"


async def fetch_json(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    *,
    collaborator: str,
    accept: Collection[int] = (),
    **kwargs: Any,
) -> tuple[int, Any]:
    """Perform a request and decode its JSON body.

    Returns ``(status, body)``. Statuses >= 400 raise CollaboratorError
    unless listed in *accept*, in which case the body is None.
    """
    try:
        async with session.request(method, url, **kwargs) as resp:
            if resp.status in accept:
                return resp.status, None
            if resp.status >= 400:
                logger.warning(
                    "Collaborator returned error status",
                    collaborator=collaborator,
                    url=url,
                    status=resp.status,
                )
                raise CollaboratorError(collaborator, describe_status(resp.status))
            try:
                return resp.status, await resp.json(content_type=None)
            except ValueError as exc:
                raise CollaboratorError(collaborator, "failed to parse result") from exc
    except aiohttp.ClientError as exc:
        logger.warning("Collaborator request failed", collaborator=collaborator, err=str(exc))
        raise CollaboratorError(collaborator, "failed to request") from exc
