"""Tests for log redaction."""

from __future__ import annotations

from evalbot.logger import redact_tokens


def test_bot_token_is_redacted():
    event = {
        "event": "Polling failed",
        "err": "Cannot connect to https://api.telegram.org/bot123456:AAE-x_y9/getUpdates",
        "attempt": 2,
    }

    result = redact_tokens(None, "warning", event)

    assert result["err"] == "Cannot connect to https://api.telegram.org/bot<redacted>/getUpdates"
    assert result["attempt"] == 2
    assert result["event"] == "Polling failed"


def test_plain_text_untouched():
    event = {"event": "Reply sent", "text": "robot 12:30 meeting"}
    assert redact_tokens(None, "info", event) == event
