"""evalbot: a Telegram bot that evaluates Rust snippets and keeps its replies in sync."""

__version__ = "0.4.0"
