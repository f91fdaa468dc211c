"""Command recognition.

Pure mapping from message text to a recognition outcome. It is called again
on every edit, so it must stay deterministic and free of side effects.

Grammar: ``/name[@botusername][<whitespace> args]``. Leading ``--flag``
tokens in *args* are parsed against the command's flag table; the rest is
the command argument.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from evalbot.errors import RecognitionError
from evalbot.types import NOT_RECOGNIZED, Invalid, Recognition, Recognized


@dataclass(frozen=True)
class CommandSpec:
    name: str
    description: str
    flags: dict[str, str]  # flag -> help text
    specific: bool = False  # only in private chats or when addressed as /name@bot

    def flag_help(self) -> str:
        lines = [f"<code>{flag}</code> - {text}" for flag, text in self.flags.items()]
        lines.append("<code>--help</code> - show this information")
        return "\n".join(lines)


_CHANNEL_FLAGS = {
    "--stable": "use stable channel",
    "--beta": "use beta channel",
    "--nightly": "use nightly channel",
}

COMMANDS: dict[str, CommandSpec] = {
    spec.name: spec
    for spec in (
        CommandSpec(
            "crate",
            "query crate information",
            {"--keyword": "query by keyword", "--query": "general query"},
        ),
        CommandSpec("doc", "query document of Rust's standard library", {}),
        CommandSpec(
            "eval",
            "evaluate a piece of Rust code",
            {
                **_CHANNEL_FLAGS,
                "--2015": "use 2015 edition",
                "--2018": "use 2018 edition",
                "--2021": "use 2021 edition",
                "--debug": "do debug build",
                "--release": "do release build",
                "--bare": "don't add any wrapping code",
            },
        ),
        CommandSpec("rustc_version", "display rustc version being used", dict(_CHANNEL_FLAGS)),
        CommandSpec(
            "version", "display rustc version being used", dict(_CHANNEL_FLAGS), specific=True
        ),
        CommandSpec("about", "display information about this bot", {}, specific=True),
        CommandSpec("help", "show this information", {}, specific=True),
    )
}

_COMMAND_RE = re.compile(r"^/(?P<name>[A-Za-z0-9_]+)(?:@(?P<target>[A-Za-z0-9_]+))?(?:\s+|$)")
_FLAG_RE = re.compile(r"(--[A-Za-z0-9]+)(?:\s+|$)")


def display_help(is_private: bool) -> str:
    """List of commands; specific ones are only advertised in private chats."""
    lines = [
        f"<code>/{spec.name}</code> - {spec.description}"
        for spec in COMMANDS.values()
        if (is_private or not spec.specific) and spec.name != "help"
    ]
    if is_private:
        lines.append("<code>/help</code> - show this information")
    return "\n".join(lines)


def split_flags(args: str) -> tuple[list[str], str]:
    """Peel leading ``--flag`` tokens off *args*.

    Returns the flags in order and the remaining text (left-stripped).
    A token only counts as a flag if it is entirely ``--alnum``.
    """
    flags: list[str] = []
    rest = args.lstrip()
    pos = 0
    while (m := _FLAG_RE.match(rest, pos)) is not None:
        flags.append(m.group(1))
        pos = m.end()
    return flags, rest[pos:]


def parse_command_flags(spec: CommandSpec, args: str) -> tuple[list[str], str, bool]:
    """Parse *args* against the flag table of *spec*.

    Returns (flags, remaining text, whether --help was given). Raises
    RecognitionError on a flag the command doesn't know, even alongside --help.
    """
    flags, rest = split_flags(args)
    for flag in flags:
        if flag != "--help" and flag not in spec.flags:
            raise RecognitionError(spec.name)
    return flags, rest, "--help" in flags


def recognize(text: str, *, username: str = "", is_private: bool = False) -> Recognition:
    """Classify *text* as a command the bot answers, an invalid one, or neither."""
    stripped = text.strip()
    m = _COMMAND_RE.match(stripped)
    if m is None:
        return NOT_RECOGNIZED

    target = m.group("target")
    at_self = target is not None and target.lower() == username.lower() != ""
    if target is not None and not at_self:
        return NOT_RECOGNIZED

    spec = COMMANDS.get(m.group("name"))
    if spec is None:
        return NOT_RECOGNIZED
    if spec.specific and not (is_private or at_self):
        return NOT_RECOGNIZED

    args = stripped[m.end() :]
    try:
        flags, rest, wants_help = parse_command_flags(spec, args)
    except RecognitionError as exc:
        return Invalid(kind=spec.name, reason=str(exc), args=args)
    if wants_help:
        return Recognized(kind=spec.name, help=True, is_private=is_private)
    return Recognized(kind=spec.name, args=rest, flags=tuple(flags), is_private=is_private)
