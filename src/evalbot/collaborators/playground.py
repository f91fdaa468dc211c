"""Rust playground client: code execution and rustc version lookup."""

from __future__ import annotations

import html
import re
from typing import Any

import aiohttp

from evalbot.collaborators._http import fetch_json
from evalbot.errors import CollaboratorError
from evalbot.logger import logger
from evalbot.types import Recognized
from evalbot.utils import encode_with_code, truncate_output

# Group chats get a short preview; private chats get everything.
MAX_LINES = 3
MAX_TOTAL_COLUMNS = MAX_LINES * 72

_RE_ERROR = re.compile(r"^error\[(E\d{4})\]:")
_RE_ISSUE = re.compile(r"\(see issue #(\d+)\)")

# Crate-level attributes and ``extern crate`` items must stay outside main().
_HEADER_RE = re.compile(
    r"\s*(?:(?:(?:#\s*\[[^\]]*\]\s*)*extern\s+crate\s+[A-Za-z0-9_]+\s*;"
    r"|#\s*!\s*\[[^\]]*\])\s*)*"
)

_TEMPLATE = """\
#![allow(unreachable_code)]
{header}

fn main() {{
    {code}
}}
"""

_PRINT_TEMPLATE = """\
println!("{{:?}}", {{
        {body}
    }});"""

_CHANNELS = ("stable", "beta", "nightly")
_EDITIONS = ("2015", "2018", "2021")


def pick(flags: tuple[str, ...], choices: tuple[str, ...], default: str) -> str:
    """Last flag among ``--<choice>`` wins, like repeated CLI flags."""
    picked = default
    for flag in flags:
        if flag[2:] in choices:
            picked = flag[2:]
    return picked


def extract_code_headers(code: str) -> tuple[str, str]:
    """Split *code* into (crate-level header, body)."""
    m = _HEADER_RE.match(code)
    end = m.end() if m else 0
    return code[:end], code[end:]


def build_program(code: str, *, bare: bool) -> str:
    if bare:
        return code
    header, body = extract_code_headers(code)
    if "println!" not in body and "print!" not in body:
        body = _PRINT_TEMPLATE.format(body=body)
    return _TEMPLATE.format(header=header, code=body)


def format_compiler_error(stderr: str, channel: str) -> str:
    """Pick the most useful stderr line and decorate it with links."""
    chosen: str | None = None
    for raw in stderr.split("\n"):
        line = raw.strip()
        if line.startswith(("Compiling", "Finished", "Running")):
            continue
        if line.startswith("error"):
            chosen = line
            break
        if chosen is None:
            chosen = line
    if not chosen:
        return "(nothing??)"

    line = encode_with_code(chosen)
    line = _RE_ERROR.sub(
        lambda m: (
            f'error<a href="https://doc.rust-lang.org/{channel}/error-index.html#{m[1]}">'
            f"[{m[1]}]</a>:"
        ),
        line,
        count=1,
    )
    return _RE_ISSUE.sub(
        lambda m: (
            f'(see issue <a href="https://github.com/rust-lang/rust/issues/{m[1]}">#{m[1]}</a>)'
        ),
        line,
        count=1,
    )


class Playground:
    name = "playground"

    def __init__(self, session: aiohttp.ClientSession, base_url: str) -> None:
        self._session = session
        self._base_url = base_url

    async def evaluate(self, command: Recognized) -> str:
        channel = pick(command.flags, _CHANNELS, "stable")
        request: dict[str, Any] = {
            "channel": channel,
            "edition": pick(command.flags, _EDITIONS, "2021"),
            "mode": pick(command.flags, ("debug", "release"), "debug"),
            "crateType": "bin",
            "tests": False,
            "backtrace": False,
            "code": build_program(command.args, bare="--bare" in command.flags),
        }
        _, resp = await fetch_json(
            self._session,
            "POST",
            f"{self._base_url}/execute",
            collaborator=self.name,
            json=request,
        )
        if not isinstance(resp, dict) or "success" not in resp:
            raise CollaboratorError(self.name, "failed to parse result")

        if not resp["success"]:
            return format_compiler_error(str(resp.get("stderr", "")), channel)

        output = str(resp.get("stdout", "")).strip()
        if not command.is_private:
            output = truncate_output(output, MAX_LINES, MAX_TOTAL_COLUMNS)
        if not output:
            return "(no output)"
        return f"<pre>{html.escape(output, quote=False)}</pre>"

    async def version(self, command: Recognized) -> str:
        channel = pick(command.flags, _CHANNELS, "stable")
        _, resp = await fetch_json(
            self._session,
            "GET",
            f"{self._base_url}/meta/version/{channel}",
            collaborator=self.name,
        )
        try:
            return f"rustc {resp['version']} ({resp['hash'][:9]} {resp['date']})"
        except (KeyError, TypeError) as exc:
            logger.warning("Unexpected version payload", payload=resp)
            raise CollaboratorError(self.name, "failed to parse result") from exc
