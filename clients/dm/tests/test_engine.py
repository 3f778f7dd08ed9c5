import asyncio
import json
import unittest

from dm_engine.classifier import TrustGraph
from dm_engine.config import EngineConfig
from dm_engine.engine import DirectMessageEngine
from dm_engine.events import KIND_GIFT_WRAP, KIND_LEGACY_DM, RawEvent
from dm_engine.models import Attachment
from dm_engine.outbox import SendState
from dm_engine.protocol import Protocol
from dm_engine.relay import TransportFailure

from .dm_test_util import (
    ALICE,
    BASE_TS,
    BOB,
    CAROL,
    DAVE,
    ControlledRelay,
    conversation_history,
    legacy_dm,
    sealed_dm,
    settle,
    wait_until,
)

NOW = BASE_TS + 10_000


def keys(conversations):
    return [conversation.counterparty_key for conversation in conversations]


class EngineTestCase(unittest.IsolatedAsyncioTestCase):
    def make_engine(self, relay=None, *, signer=ALICE, follows=(), **config):
        self.relay = relay if relay is not None else ControlledRelay()
        engine = DirectMessageEngine(
            signer,
            self.relay,
            trust_graph=TrustGraph.of(follows=follows),
            config=EngineConfig(**config),
            clock=lambda: NOW,
        )
        self.addAsyncCleanup(engine.close)
        return engine


class OptimisticSendTests(EngineTestCase):
    async def test_placeholder_is_visible_until_confirmed(self):
        engine = self.make_engine()
        self.relay.publish_gate = asyncio.Event()

        sending = asyncio.create_task(engine.send_message(BOB.pubkey, "hi bob"))
        await settle()

        [placeholder] = engine.get_messages(BOB.pubkey)
        self.assertTrue(placeholder.is_optimistic)
        self.assertTrue(placeholder.is_sending)
        self.assertEqual(placeholder.text, "hi bob")
        self.assertEqual(placeholder.timestamp, NOW)
        self.assertEqual(engine.outbox.pending()[0].state, SendState.SENDING)
        self.assertIn(BOB.pubkey, keys(engine.conversations()))
        self.assertEqual(engine.aggregator.keys(), [])

        self.relay.publish_gate.set()
        message = await sending

        [confirmed] = engine.get_messages(BOB.pubkey)
        self.assertEqual(confirmed, message)
        self.assertFalse(confirmed.is_optimistic)
        self.assertIs(confirmed.source_protocol, Protocol.LEGACY)
        self.assertEqual(engine.outbox.pending(), [])
        self.assertEqual(keys(engine.get_conversations("known")), [BOB.pubkey])
        self.assertEqual([event.kind for event in self.relay.published], [KIND_LEGACY_DM])

    async def test_failed_send_leaves_state_unchanged(self):
        engine = self.make_engine()
        await engine.ingest([legacy_dm(BOB, ALICE.pubkey, "hello?", BASE_TS)])
        messages_before = engine.get_messages(BOB.pubkey)
        known_before = engine.get_conversations("known")
        requests_before = engine.get_conversations("newRequests")
        self.relay.fail_publish = True

        with self.assertRaises(TransportFailure):
            await engine.send_message(BOB.pubkey, "reply that never lands")

        self.assertEqual(engine.get_messages(BOB.pubkey), messages_before)
        self.assertEqual(engine.get_conversations("known"), known_before)
        self.assertEqual(engine.get_conversations("newRequests"), requests_before)
        self.assertEqual(engine.outbox.pending(), [])
        self.assertNotIn(BOB.pubkey, engine.classifier.manually_marked_known)

    async def test_failed_first_message_leaves_no_conversation(self):
        engine = self.make_engine()
        self.relay.fail_publish = True

        with self.assertRaises(TransportFailure):
            await engine.send_message(CAROL.pubkey, "lost")

        self.assertEqual(engine.conversations(), [])

    async def test_concurrent_sends_are_independent(self):
        engine = self.make_engine()

        results = await asyncio.gather(
            engine.send_message(BOB.pubkey, "same words"),
            engine.send_message(CAROL.pubkey, "to carol"),
            engine.send_message(BOB.pubkey, "same words", protocol="nip17"),
        )

        self.assertEqual(len({message.id for message in results}), 3)
        self.assertEqual(len(engine.get_messages(BOB.pubkey)), 2)
        self.assertEqual(len(engine.get_messages(CAROL.pubkey)), 1)
        self.assertEqual(engine.outbox.pending(), [])
        self.assertEqual(set(keys(engine.get_conversations("known"))), {BOB.pubkey, CAROL.pubkey})

    async def test_sealed_send_publishes_recipient_and_self_copies(self):
        engine = self.make_engine()

        message = await engine.send_message(BOB.pubkey, "sealed hi", Protocol.SEALED)

        self.assertEqual([event.kind for event in self.relay.published], [KIND_GIFT_WRAP, KIND_GIFT_WRAP])
        self.assertEqual(
            {event.first_tag("p") for event in self.relay.published},
            {BOB.pubkey, ALICE.pubkey},
        )
        self.assertIs(message.source_protocol, Protocol.SEALED)
        self.assertEqual(message.timestamp, NOW)
        self.assertTrue(engine.conversation(BOB.pubkey).has_protocol_b)

    async def test_recipient_can_read_what_was_sent(self):
        engine = self.make_engine()
        attachment = Attachment(url="https://files.example/cat.jpg", mime_type="image/jpeg")

        await engine.send_message(BOB.pubkey, "see attached", attachments=[attachment])

        bob = self.make_engine(self.relay, signer=BOB)
        await bob.ingest(self.relay.published)
        [received] = bob.get_messages(ALICE.pubkey)
        self.assertEqual(received.text, "see attached\n\nhttps://files.example/cat.jpg")
        self.assertEqual(received.attachments, [attachment])

    async def test_sealed_send_rejected_when_disabled(self):
        engine = self.make_engine(sealed_enabled=False)

        with self.assertRaises(ValueError):
            await engine.send_message(BOB.pubkey, "nope", "nip17")
        self.assertEqual(self.relay.published, [])

    async def test_invalid_sends_are_rejected_before_publishing(self):
        engine = self.make_engine()

        with self.assertRaises(ValueError):
            await engine.send_message("not-a-key", "hi")
        with self.assertRaises(ValueError):
            await engine.send_message(BOB.pubkey, "   ")
        self.assertEqual(engine.outbox.pending(), [])
        self.assertEqual(self.relay.published, [])

    async def test_default_protocol_comes_from_config(self):
        engine = self.make_engine(default_protocol=Protocol.SEALED)

        message = await engine.send_message(BOB.pubkey, "default")

        self.assertIs(message.source_protocol, Protocol.SEALED)

    async def test_reply_keeps_the_conversation_protocol(self):
        engine = self.make_engine()
        await engine.ingest(
            [
                sealed_dm(BOB, ALICE.pubkey, "sealed only", BASE_TS),
                legacy_dm(CAROL, ALICE.pubkey, "legacy only", BASE_TS),
                legacy_dm(DAVE, ALICE.pubkey, "legacy first", BASE_TS),
                sealed_dm(DAVE, ALICE.pubkey, "then sealed", BASE_TS + 1),
            ]
        )

        to_bob = await engine.send_message(BOB.pubkey, "still sealed")
        to_carol = await engine.send_message(CAROL.pubkey, "still legacy")
        to_dave = await engine.send_message(DAVE.pubkey, "upgrade")

        self.assertIs(to_bob.source_protocol, Protocol.SEALED)
        self.assertIs(to_carol.source_protocol, Protocol.LEGACY)
        self.assertIs(to_dave.source_protocol, Protocol.SEALED)

    async def test_reply_protocol_falls_back_when_sealed_disabled(self):
        engine = self.make_engine(sealed_enabled=False)
        await engine.ingest([sealed_dm(BOB, ALICE.pubkey, "sealed only", BASE_TS)])

        self.assertIs(engine.outbox.preferred_protocol(BOB.pubkey), Protocol.LEGACY)
        self.assertIs(engine.outbox.preferred_protocol(CAROL.pubkey), Protocol.LEGACY)

    async def test_legacy_conversation_overrides_sealed_default(self):
        engine = self.make_engine(default_protocol=Protocol.SEALED)
        await engine.ingest([legacy_dm(BOB, ALICE.pubkey, "legacy only", BASE_TS)])

        message = await engine.send_message(BOB.pubkey, "reply")

        self.assertIs(message.source_protocol, Protocol.LEGACY)
        self.assertIs(engine.outbox.preferred_protocol(CAROL.pubkey), Protocol.SEALED)

    async def test_echo_with_other_id_confirms_placeholder_inside_window(self):
        engine = self.make_engine()
        self.relay.publish_gate = asyncio.Event()
        sending = asyncio.create_task(engine.send_message(BOB.pubkey, "on my way"))
        await wait_until(lambda: any(item.message_id for item in engine.outbox.pending()))
        [pending] = engine.outbox.pending(BOB.pubkey)
        echo = legacy_dm(ALICE, BOB.pubkey, "on my way", NOW + 20)
        self.assertNotEqual(echo.id, pending.message_id)

        await engine.ingest([echo])

        self.assertEqual(engine.outbox.pending(), [])
        self.assertEqual(pending.state, SendState.CONFIRMED)
        self.assertEqual(pending.message_id, echo.id)
        [shown] = engine.get_messages(BOB.pubkey)
        self.assertEqual(shown.id, echo.id)
        self.assertFalse(shown.is_optimistic)

        self.relay.publish_gate.set()
        await sending

    async def test_echo_outside_window_or_with_other_text_is_not_matched(self):
        engine = self.make_engine()
        self.relay.publish_gate = asyncio.Event()
        sending = asyncio.create_task(engine.send_message(BOB.pubkey, "on my way"))
        await settle()

        await engine.ingest(
            [
                legacy_dm(ALICE, BOB.pubkey, "on my way", NOW + 31),
                legacy_dm(ALICE, BOB.pubkey, "something else", NOW + 1),
            ]
        )

        [pending] = engine.outbox.pending(BOB.pubkey)
        self.assertEqual(pending.state, SendState.SENDING)
        messages = engine.get_messages(BOB.pubkey)
        self.assertEqual([m.is_optimistic for m in messages], [True, False, False])
        self.assertEqual([m.text for m in messages], ["on my way", "something else", "on my way"])

        self.relay.publish_gate.set()
        await sending
        self.assertEqual(engine.outbox.pending(), [])
        self.assertEqual(len(engine.get_messages(BOB.pubkey)), 3)

    async def test_placeholder_sorts_after_confirmed_message_of_same_second(self):
        engine = self.make_engine()
        await engine.ingest(
            [
                legacy_dm(BOB, ALICE.pubkey, "same second", NOW),
                legacy_dm(BOB, ALICE.pubkey, "before", NOW - 5),
            ]
        )
        self.relay.publish_gate = asyncio.Event()
        sending = asyncio.create_task(engine.send_message(BOB.pubkey, "mine"))
        await settle()

        messages = engine.get_messages(BOB.pubkey)

        self.assertEqual([m.text for m in messages], ["before", "same second", "mine"])
        self.assertEqual([m.is_optimistic for m in messages], [False, False, True])
        self.assertEqual(engine.conversation(BOB.pubkey).last_message.text, "mine")

        self.relay.publish_gate.set()
        await sending
        self.assertFalse(any(m.is_optimistic for m in engine.get_messages(BOB.pubkey)))


class ClassificationTests(EngineTestCase):
    async def test_categories_and_mark_as_responded(self):
        engine = self.make_engine(follows=[CAROL.pubkey])
        await engine.ingest(
            [
                legacy_dm(BOB, ALICE.pubkey, "who dis", BASE_TS),
                legacy_dm(CAROL, ALICE.pubkey, "hey friend", BASE_TS + 1),
            ]
        )

        self.assertEqual(keys(engine.get_conversations("known")), [CAROL.pubkey])
        self.assertEqual(keys(engine.get_conversations("new_requests")), [BOB.pubkey])

        engine.mark_as_responded(BOB.pubkey)
        await engine.ingest([legacy_dm(BOB, ALICE.pubkey, "thanks", BASE_TS + 2)])

        self.assertEqual(keys(engine.get_conversations("known")), [BOB.pubkey, CAROL.pubkey])
        self.assertEqual(engine.get_conversations("newRequests"), [])

    async def test_unknown_category_is_rejected(self):
        engine = self.make_engine()

        with self.assertRaises(ValueError):
            engine.get_conversations("spam")


class LiveAndHistoryTests(EngineTestCase):
    async def test_start_loads_recent_history_and_follows_live_traffic(self):
        relay = ControlledRelay(conversation_history(BOB, ALICE.pubkey, 5, start=NOW - 100))
        engine = self.make_engine(relay)

        await engine.start(discover=False)

        self.assertEqual(len(engine.get_messages(BOB.pubkey)), 5)
        self.assertTrue(engine.live)
        filters = engine.live_filters()
        self.assertEqual(filters[0]["since"], NOW - 100 + 40 - 60)
        self.assertEqual(filters[2]["since"], NOW - 60 - engine.config.wrap_jitter_s)

        relay.add(legacy_dm(DAVE, ALICE.pubkey, "live legacy", NOW + 1))
        relay.add(sealed_dm(CAROL, ALICE.pubkey, "live sealed", NOW + 2, wrap_created_at=NOW - 86_400))
        await wait_until(lambda: len(engine.conversations()) == 3)

        self.assertEqual(engine.get_messages(CAROL.pubkey)[0].timestamp, NOW + 2)
        self.assertEqual(keys(engine.get_conversations("newRequests"))[:2], [CAROL.pubkey, DAVE.pubkey])

    async def test_start_surfaces_total_relay_failure(self):
        relay = ControlledRelay()
        relay.fail_queries = True
        engine = self.make_engine(relay)

        with self.assertRaises(TransportFailure):
            await engine.start(discover=False)
        self.assertFalse(engine.live)

    async def test_start_runs_discovery_in_background(self):
        relay = ControlledRelay([legacy_dm(CAROL, ALICE.pubkey, "old", BASE_TS)])
        engine = self.make_engine(relay, follows=[CAROL.pubkey], initial_page_size=0, discovery_batch_delay_s=0)

        await engine.start()
        await wait_until(lambda: engine.progress.phase == "done")

        self.assertEqual(keys(engine.get_conversations("known")), [CAROL.pubkey])

    async def test_older_messages_through_engine(self):
        history = conversation_history(BOB, ALICE.pubkey, 30)
        relay = ControlledRelay(history)
        engine = self.make_engine(relay, messages_per_page=25)
        await engine.ingest(history[25:])

        self.assertTrue(engine.has_more_messages(BOB.pubkey))
        task = engine.load_older_messages(BOB.pubkey)
        self.assertTrue(engine.loading_older_messages(BOB.pubkey))
        await task

        self.assertEqual(len(engine.get_messages(BOB.pubkey)), 30)
        self.assertFalse(engine.has_more_messages(BOB.pubkey))

    async def test_close_stops_live_subscription(self):
        engine = self.make_engine()
        await engine.start(discover=False)
        self.assertEqual(self.relay.subscription_count, 1)

        await engine.close()

        self.assertFalse(engine.live)
        self.assertEqual(self.relay.subscription_count, 0)

    async def test_close_detaches_send_reconciliation_until_restarted(self):
        engine = self.make_engine()
        attached = len(engine.aggregator._listeners)

        await engine.close()
        await engine.close()
        self.assertEqual(len(engine.aggregator._listeners), attached - 1)

        await engine.start(discover=False)
        self.assertEqual(len(engine.aggregator._listeners), attached)


class StateTests(EngineTestCase):
    async def test_snapshot_restores_conversations_and_bookkeeping(self):
        engine = self.make_engine()
        await engine.ingest(
            [
                legacy_dm(BOB, ALICE.pubkey, "one", BASE_TS),
                legacy_dm(BOB, ALICE.pubkey, "two", BASE_TS + 1),
                sealed_dm(CAROL, ALICE.pubkey, "three", BASE_TS + 2),
            ]
        )
        engine.mark_read(BOB.pubkey)
        engine.mark_as_responded(CAROL.pubkey)

        snapshot = json.loads(json.dumps(engine.snapshot()))
        self.assertNotIn("three", json.dumps(snapshot))

        restored = self.make_engine(ControlledRelay())
        await restored.restore(snapshot)

        self.assertEqual(
            [m.id for m in restored.get_messages(BOB.pubkey)],
            [m.id for m in engine.get_messages(BOB.pubkey)],
        )
        self.assertEqual(restored.conversation(BOB.pubkey).unread_count, 0)
        self.assertEqual(keys(restored.get_conversations("known")), [CAROL.pubkey])

    async def test_snapshot_for_other_identity_is_rejected(self):
        engine = self.make_engine()
        other = self.make_engine(signer=BOB)

        with self.assertRaises(ValueError):
            await other.restore(engine.snapshot())

    async def test_search_matches_readable_text_newest_first(self):
        engine = self.make_engine()
        await engine.ingest(
            [
                legacy_dm(BOB, ALICE.pubkey, "Lunch tomorrow?", BASE_TS),
                legacy_dm(CAROL, ALICE.pubkey, "lunch was great", BASE_TS + 5),
                legacy_dm(CAROL, ALICE.pubkey, "unrelated", BASE_TS + 6),
            ]
        )

        hits = engine.search("LUNCH")

        self.assertEqual([hit.text for hit in hits], ["lunch was great", "Lunch tomorrow?"])
        self.assertEqual(engine.search("  "), [])

    async def test_logout_forgets_everything(self):
        engine = self.make_engine()
        await engine.ingest([legacy_dm(BOB, ALICE.pubkey, "secret", BASE_TS)])
        engine.mark_as_responded(BOB.pubkey)

        await engine.logout()

        self.assertEqual(engine.conversations(), [])
        self.assertEqual(len(engine.cache), 0)
        self.assertEqual(engine.classifier.manually_marked_known, frozenset())

    async def test_listeners_hear_about_changes(self):
        engine = self.make_engine()
        calls = []
        remove = engine.add_listener(lambda: calls.append(1))

        await engine.ingest([legacy_dm(BOB, ALICE.pubkey, "ping", BASE_TS)])
        engine.mark_as_responded(BOB.pubkey)
        remove()
        engine.mark_read(BOB.pubkey)

        self.assertEqual(len(calls), 2)

    async def test_invalid_signatures_dropped_when_verification_enabled(self):
        engine = self.make_engine(verify_signatures=True)
        genuine = legacy_dm(BOB, ALICE.pubkey, "real", BASE_TS)
        forged = RawEvent(**{**legacy_dm(BOB, ALICE.pubkey, "fake", BASE_TS + 1).__dict__, "signature": "11" * 64})

        await engine.ingest([genuine, forged])

        self.assertEqual([m.text for m in engine.get_messages(BOB.pubkey)], ["real"])
        self.assertEqual(engine.rejected_signatures, 1)

    async def test_debug_info_summarises_state(self):
        engine = self.make_engine()
        await engine.ingest(
            [
                legacy_dm(BOB, ALICE.pubkey, "a", BASE_TS),
                sealed_dm(BOB, ALICE.pubkey, "b", BASE_TS + 1),
            ]
        )

        info = engine.debug_info()

        self.assertEqual(info["conversations"], 1)
        self.assertEqual((info["nip4"], info["nip17"]), (1, 1))
        self.assertEqual(info["new_requests"], 1)
        self.assertEqual(info["cache_misses"], 2)
        self.assertFalse(info["live"])


if __name__ == "__main__":
    unittest.main()
