"""Tests for the command/reply synchronization engine."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeOutbound, FakeResponder, edited_message, new_message, settle

from evalbot.records import RecordStore
from evalbot.sync import SyncEngine
from evalbot.types import CommandRecord, Invalid


@pytest.fixture
def store(tmp_path) -> RecordStore:
    return RecordStore(tmp_path / "record_list.json")


@pytest.fixture
def engine(store, responder, outbound) -> SyncEngine:
    return SyncEngine(store, responder, outbound, username="evalbot")


async def feed(engine: SyncEngine, *events) -> None:
    for event in events:
        await engine.handle(event)
    await engine.join()


class TestNewMessages:
    async def test_eval_sends_one_reply_and_tracks_it(self, engine, store, outbound):
        await feed(engine, new_message("/eval 1+1"))

        assert outbound.actions == [("send", 100, 1001, "eval: 1+1")]
        record = store.find(100, 1)
        assert record is not None
        assert record.reply_message_id == 1001
        assert record.recognized_signature is not None
        assert record.created_at == 1_700_000_000

    async def test_reply_is_persisted_immediately(self, engine, store):
        await feed(engine, new_message("/eval 1+1"))

        reloaded = RecordStore.load(store.path)
        assert reloaded.find(100, 1) == store.find(100, 1)

    async def test_plain_text_is_ignored(self, engine, store, outbound, responder):
        await feed(engine, new_message("hello there"))

        assert outbound.actions == []
        assert responder.calls == []
        assert len(store) == 0
        assert not store.path.exists()

    async def test_command_for_another_bot_is_ignored(self, engine, outbound):
        await feed(engine, new_message("/eval@otherbot 1+1"))

        assert outbound.actions == []

    async def test_invalid_flag_still_gets_a_reply(self, engine, store, responder):
        await feed(engine, new_message("/eval --bogus 1+1"))

        assert isinstance(responder.calls[0], Invalid)
        assert store.find(100, 1) is not None

    async def test_collaborator_failure_sends_error_notice(
        self, engine, store, outbound, responder
    ):
        responder.failures.add("1+1")

        await feed(engine, new_message("/eval 1+1"))

        assert outbound.actions == [("send", 100, 1001, "error: server error")]
        assert store.find(100, 1) is None

    async def test_edit_after_failure_is_answered_as_new(self, engine, store, outbound, responder):
        responder.failures.add("1+1")
        await feed(engine, new_message("/eval 1+1"))
        responder.failures.clear()

        await feed(engine, edited_message("/eval 1+1"))

        assert outbound.kinds() == ["send", "send"]
        assert outbound.actions[1] == ("send", 100, 1002, "eval: 1+1")
        assert store.find(100, 1).reply_message_id == 1002

    async def test_failure_on_untracked_edit_sends_notice(
        self, engine, store, outbound, responder
    ):
        responder.failures.add("1+1")

        await feed(engine, edited_message("/eval 1+1"))

        assert outbound.actions == [("send", 100, 1001, "error: server error")]
        assert store.find(100, 1) is None

    async def test_platform_failure_creates_no_record(self, engine, store, outbound):
        outbound.fail_with = "Forbidden: bot was blocked by the user"

        await feed(engine, new_message("/eval 1+1"))

        assert store.find(100, 1) is None

    async def test_redelivered_message_is_not_answered_twice(self, engine, outbound):
        await feed(engine, new_message("/eval 1+1"), new_message("/eval 1+1"))

        assert outbound.kinds() == ["send"]


class TestEdits:
    async def test_edit_to_plain_text_deletes_reply_and_record(self, engine, store, outbound):
        await feed(engine, new_message("/eval 1+1"), edited_message("not a command"))

        assert outbound.kinds() == ["send", "delete"]
        assert outbound.actions[1] == ("delete", 100, 1001)
        assert store.find(100, 1) is None
        assert RecordStore.load(store.path).find(100, 1) is None

    async def test_edit_to_other_command_edits_reply_in_place(self, engine, store, outbound):
        await feed(engine, new_message("/eval 1+1"), edited_message("/eval 2+2"))

        assert outbound.actions[1] == ("edit", 100, 1001, "eval: 2+2")
        assert outbound.messages[(100, 1001)] == "eval: 2+2"
        record = store.find(100, 1)
        assert record.reply_message_id == 1001
        assert record.recognized_signature.endswith("2+2")

    async def test_edit_that_changes_nothing_is_a_noop(self, engine, outbound, responder):
        await feed(engine, new_message("/eval 1+1"), edited_message("/eval   1+1  "))

        assert outbound.kinds() == ["send"]
        assert len(responder.calls) == 1

    async def test_flag_order_does_not_matter(self, engine, outbound):
        await feed(
            engine,
            new_message("/eval --nightly --release 1+1"),
            edited_message("/eval --release --nightly 1+1"),
        )

        assert outbound.kinds() == ["send"]

    async def test_untracked_edit_into_command_creates_reply(self, engine, store, outbound):
        await feed(engine, edited_message("/eval 1+1"))

        assert outbound.kinds() == ["send"]
        assert store.find(100, 1).reply_message_id == 1001

    async def test_untracked_edit_into_plain_text_does_nothing(self, engine, store, outbound):
        await feed(engine, edited_message("still not a command"))

        assert outbound.actions == []
        assert len(store) == 0

    async def test_command_to_text_to_command(self, engine, store, outbound):
        await feed(
            engine,
            new_message("/eval 1"),
            edited_message("oops"),
            edited_message("/eval 2"),
        )

        assert outbound.kinds() == ["send", "delete", "send"]
        assert store.find(100, 1).reply_message_id == 1002

    async def test_collaborator_failure_on_edit_marks_reply(
        self, engine, store, outbound, responder
    ):
        responder.failures.add("2+2")

        await feed(engine, new_message("/eval 1+1"), edited_message("/eval 2+2"))

        assert outbound.actions[-1] == ("edit", 100, 1001, "error: server error")
        record = store.find(100, 1)
        assert record.reply_message_id == 1001
        assert record.recognized_signature is None

    async def test_failed_edit_is_retried_by_same_text(self, engine, outbound, responder):
        responder.failures.add("2+2")
        await feed(engine, new_message("/eval 1+1"), edited_message("/eval 2+2"))
        responder.failures.clear()

        await feed(engine, edited_message("/eval 2+2"))

        assert outbound.actions[-1] == ("edit", 100, 1001, "eval: 2+2")

    async def test_platform_failure_on_delete_keeps_record(self, engine, store, outbound):
        await feed(engine, new_message("/eval 1+1"))
        before = store.find(100, 1).to_dict()
        outbound.fail_with = "Bad Request: message can't be deleted"

        await feed(engine, edited_message("plain"))

        assert store.find(100, 1).to_dict() == before

    async def test_reply_deleted_on_platform_is_forgotten(self, engine, store, outbound):
        await feed(engine, new_message("/eval 1+1"))
        outbound.gone.add(1001)

        await feed(engine, edited_message("/eval 2+2"))

        record = store.find(100, 1)
        assert record.reply_message_id is None
        assert record.recognized_signature is not None

        await feed(engine, edited_message("/eval 3+3"))

        assert outbound.actions[-1] == ("send", 100, 1002, "eval: 3+3")
        assert store.find(100, 1).reply_message_id == 1002

    async def test_deleted_command_leaves_reply_in_place(self, engine, store, outbound):
        # The platform never tells bots about deleted messages, so nothing
        # can arrive here; the reply and record simply stay.
        await feed(engine, new_message("/eval 1+1"))

        assert outbound.messages == {(100, 1001): "eval: 1+1"}
        assert store.find(100, 1) is not None


class TestRaces:
    async def test_later_edit_wins(self, engine, store, outbound, responder):
        await feed(engine, new_message("/eval a"))
        gate_b = responder.hold("b")

        await engine.handle(edited_message("/eval b"))
        await engine.handle(edited_message("/eval c"))
        await settle(lambda: ("edit", 100, 1001, "eval: c") in outbound.actions)
        gate_b.set()
        await engine.join()

        assert outbound.actions == [
            ("send", 100, 1001, "eval: a"),
            ("edit", 100, 1001, "eval: c"),
        ]
        assert store.find(100, 1).recognized_signature.endswith("c")

    async def test_edit_while_first_reply_pending(self, engine, store, outbound, responder):
        gate_a = responder.hold("a")

        await engine.handle(new_message("/eval a"))
        await engine.handle(edited_message("/eval b"))
        await settle(lambda: outbound.actions)
        gate_a.set()
        await engine.join()

        assert outbound.actions == [("send", 100, 1001, "eval: b")]
        assert store.find(100, 1).reply_message_id == 1001

    async def test_edit_back_to_original_while_pending(self, engine, outbound, responder):
        await feed(engine, new_message("/eval a"))
        gate_b = responder.hold("b")

        await engine.handle(edited_message("/eval b"))
        await engine.handle(edited_message("/eval a"))
        await settle(lambda: len(outbound.actions) == 2)
        gate_b.set()
        await engine.join()

        assert outbound.messages[(100, 1001)] == "eval: a"
        assert len(outbound.actions) == 2

    async def test_edit_to_text_while_reply_pending(self, engine, store, outbound, responder):
        gate = responder.hold("slow")

        await engine.handle(new_message("/eval slow"))
        await engine.handle(edited_message("never mind"))
        gate.set()
        await engine.join()

        assert outbound.actions == []
        assert len(store) == 0

    async def test_chats_do_not_block_each_other(self, engine, outbound, responder):
        gate = responder.hold("slow")

        assert engine.submit(new_message("/eval slow", chat_id=1))
        assert engine.submit(new_message("/eval fast", chat_id=2))
        await settle(lambda: outbound.actions, rounds=200)

        assert outbound.actions == [("send", 2, 1001, "eval: fast")]
        gate.set()
        await engine.join()
        assert len(outbound.actions) == 2

    async def test_events_for_one_chat_keep_arrival_order(self, engine, outbound):
        engine.submit(new_message("/eval 1", message_id=1))
        engine.submit(edited_message("/eval 2", message_id=1))
        engine.submit(edited_message("/eval 3", message_id=1))
        await engine.join()

        assert outbound.messages[(100, 1001)] == "eval: 3"


class TestEviction:
    async def test_new_message_evicts_expired_records(self, engine, store):
        store.upsert(CommandRecord(100, 7, 900, "x", created_at=1_000, updated_at=1_000))

        await feed(engine, new_message("/eval 1", date=1_000 + 49 * 3600))

        assert store.find(100, 7) is None
        assert store.find(100, 1) is not None

    async def test_recent_records_survive(self, engine, store):
        store.upsert(CommandRecord(100, 7, 900, "x", created_at=1_000, updated_at=1_000))

        await feed(engine, new_message("hello", date=1_000 + 3600))

        assert store.find(100, 7) is not None


class TestDrain:
    async def test_drain_finishes_in_flight_work(self, engine, store, responder, outbound):
        gate = responder.hold("x")
        await engine.handle(new_message("/eval x", message_id=1))
        await engine.handle(new_message("/eval x", message_id=2))

        async def release_later():
            await asyncio.sleep(0.01)
            gate.set()

        releaser = asyncio.create_task(release_later())
        report = await engine.drain(timeout=5)
        await releaser

        assert report.completed == 2
        assert report.abandoned == []
        assert len(RecordStore.load(store.path)) == 2
        assert not engine.submit(new_message("/eval y", message_id=3))

    async def test_drain_timeout_abandons_stuck_work(self, engine, store, responder):
        responder.hold("stuck")
        await engine.handle(new_message("/eval stuck"))

        report = await engine.drain(timeout=0.05)

        assert report.abandoned == [(100, 1)]
        assert report.completed == 0
        assert len(store) == 0
