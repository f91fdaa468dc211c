"""Tests for command recognition."""

from __future__ import annotations

import pytest

from evalbot.errors import RecognitionError
from evalbot.recognizer import (
    COMMANDS,
    CommandSpec,
    display_help,
    parse_command_flags,
    recognize,
    split_flags,
)
from evalbot.types import NOT_RECOGNIZED, Invalid, Recognized

_TEST_COMMAND = CommandSpec(
    "test",
    "test command",
    {"--chars": "", "--12345": "", "--chars12345": ""},
)


class TestFlagParsing:
    def test_flags_then_argument(self):
        assert parse_command_flags(_TEST_COMMAND, "--chars --12345 --chars12345 xxx") == (
            ["--chars", "--12345", "--chars12345"],
            "xxx",
            False,
        )

    def test_flags_only(self):
        assert parse_command_flags(_TEST_COMMAND, "--12345 --chars") == (
            ["--12345", "--chars"],
            "",
            False,
        )

    def test_repeated_flags_are_kept(self):
        flags, rest, _ = parse_command_flags(_TEST_COMMAND, "--12345 --12345 --chars --chars")
        assert flags == ["--12345", "--12345", "--chars", "--chars"]
        assert rest == ""

    @pytest.mark.parametrize("args", ["--help", "--help xxxxx", "--12345 --help --chars xxx"])
    def test_help_anywhere_in_flag_run(self, args):
        assert parse_command_flags(_TEST_COMMAND, args)[2] is True

    @pytest.mark.parametrize(
        "args", ["--unknown", "--help --unknown", "--12345 --unknown", "--unknown --12345"]
    )
    def test_unknown_flag_is_an_error(self, args):
        with pytest.raises(RecognitionError):
            parse_command_flags(_TEST_COMMAND, args)

    def test_flag_must_be_followed_by_whitespace(self):
        assert split_flags("--stable--2015") == ([], "--stable--2015")

    def test_flags_stop_at_first_non_flag(self):
        assert split_flags("--bare 1 --release") == (["--bare"], "1 --release")


class TestRecognize:
    def test_unknown_command(self):
        assert recognize("/unknown") is NOT_RECOGNIZED

    def test_plain_text(self):
        assert recognize("eval 1+1") is NOT_RECOGNIZED

    def test_command_with_nothing(self):
        assert recognize("/eval") == Recognized(kind="eval")

    def test_command_with_content(self):
        result = recognize("/eval something after")
        assert result == Recognized(kind="eval", args="something after")

    def test_content_on_next_line(self):
        assert recognize("/eval\nsome content").args == "some content"

    def test_command_name_must_end_at_whitespace(self):
        assert recognize("/evaluate 1") is NOT_RECOGNIZED

    def test_unknown_flag_is_invalid(self):
        result = recognize("/eval --unknown")
        assert isinstance(result, Invalid)
        assert result.kind == "eval"
        assert result.reason == "unable to parse the command"

    @pytest.mark.parametrize("flag", ["--stable", "--beta", "--nightly", "--2015", "--2018"])
    def test_eval_flags(self, flag):
        assert recognize(f"/eval {flag}").flags == (flag,)

    def test_multiline_flags_and_content(self):
        text = "/eval\n--stable --bare\n--nightly --debug --2015\nrest\ncontent"
        result = recognize(text)
        assert result.flags == ("--stable", "--bare", "--nightly", "--debug", "--2015")
        assert result.args == "rest\ncontent"

    def test_help_flag(self):
        result = recognize("/eval --help")
        assert result == Recognized(kind="eval", help=True)

    def test_addressed_to_us(self):
        assert recognize("/eval@EvalBot 1", username="evalbot").args == "1"

    def test_addressed_to_another_bot(self):
        assert recognize("/eval@otherbot 1", username="evalbot") is NOT_RECOGNIZED

    def test_specific_command_needs_private_chat_or_mention(self):
        assert recognize("/about", username="evalbot") is NOT_RECOGNIZED
        assert recognize("/about", username="evalbot", is_private=True).kind == "about"
        assert recognize("/about@evalbot", username="evalbot").kind == "about"

    def test_general_command_works_in_groups(self):
        assert recognize("/rustc_version --beta").flags == ("--beta",)

    def test_crate_flags_are_not_eval_flags(self):
        assert isinstance(recognize("/crate --nightly serde"), Invalid)


class TestSignature:
    def test_whitespace_and_flag_order_are_normalized(self):
        a = recognize("/eval --release --nightly  1+1 ")
        b = recognize("/eval --nightly --release --nightly 1+1")
        assert a.signature == b.signature

    def test_kind_distinguishes(self):
        assert recognize("/crate serde").signature != recognize("/doc serde").signature

    def test_privacy_is_not_part_of_signature(self):
        private = recognize("/eval 1", is_private=True)
        group = recognize("/eval 1")
        assert private.signature == group.signature

    def test_help_ignores_arguments(self):
        assert recognize("/eval --help a").signature == recognize("/eval --help b").signature

    def test_invalid_differs_from_valid(self):
        assert recognize("/eval --bogus 1").signature != recognize("/eval 1").signature


class TestHelp:
    def test_group_help_hides_specific_commands(self):
        text = display_help(is_private=False)
        assert "/eval" in text
        assert "/about" not in text

    def test_private_help_lists_everything(self):
        text = display_help(is_private=True)
        for name in COMMANDS:
            assert f"/{name}" in text

    def test_flag_help_mentions_help_flag(self):
        assert "--help" in COMMANDS["eval"].flag_help()
        assert "--bare" in COMMANDS["eval"].flag_help()
