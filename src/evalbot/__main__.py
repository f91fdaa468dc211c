"""Entry point for `python -m evalbot` / `evalbot`.

Configuration comes from ./config.toml and ./.env in the working directory,
overridable by environment variables (see evalbot.config).
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from evalbot import __version__


def _run() -> None:
    from evalbot.app import EvalBotApp
    from evalbot.errors import EvalBotError
    from evalbot.logger import logger

    app = EvalBotApp()
    try:
        asyncio.run(app.run())
    except EvalBotError as exc:
        logger.critical("Fatal error", err=str(exc))
        sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="evalbot",
        description="Telegram bot that evaluates Rust code and keeps its replies in sync",
    )
    parser.add_argument("--version", action="version", version=f"evalbot {__version__}")
    parser.parse_args()
    _run()


if __name__ == "__main__":
    main()
