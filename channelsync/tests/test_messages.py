import asyncio
import unittest

from channelsync.channels import ChannelRegistry
from channelsync.config import Scope
from channelsync.errors import (
    ChannelNotFound,
    EmptyText,
    NotApprovedMember,
    TransportError,
    ValidationError,
)
from channelsync.identity import IdentityDirectory
from channelsync.membership import MembershipStateMachine
from channelsync.messages import MessageStream
from channelsync.store import InMemoryDocumentStore


class FakeClock:
    def __init__(self, now_ms: int) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


class MessageStreamTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = InMemoryDocumentStore()
        self.scope = Scope("app1")
        self.clock = FakeClock(10_000)
        self.identity = IdentityDirectory(self.store, self.scope)
        self.channels = ChannelRegistry(self.store, self.scope)
        self.memberships = MembershipStateMachine(self.store, self.scope, self.channels)
        self.messages = MessageStream(
            self.store, self.scope, self.memberships, max_message_length=20, now_func=self.clock
        )
        self.alice = await self.identity.register("alice", "Alice")
        self.bob = await self.identity.register("bob", "Bob")
        self.dave = await self.identity.register("dave")
        self.general = await self.channels.create("general", "public", self.alice)
        self.secret = await self.channels.create("secret", "private", self.alice)

    async def asyncTearDown(self):
        self.store.close()

    async def test_append_assigns_seq_and_snapshot(self):
        first = await self.messages.append(self.general, self.alice, "hello")
        second = await self.messages.append(self.general, self.alice, "again")

        self.assertEqual((first.seq, second.seq), (1, 2))
        self.assertEqual(first.ts_ms, 10_000)
        self.assertEqual(first.sender_name, "Alice")
        self.assertEqual(first.channel_id, self.general)

    async def test_non_member_append_rejected(self):
        with self.assertRaises(NotApprovedMember):
            await self.messages.append(self.general, self.dave, "hi")

        self.assertEqual(await self.messages.history(self.general), [])

    async def test_pending_member_append_rejected(self):
        await self.memberships.request_join(self.secret, self.bob)

        with self.assertRaises(NotApprovedMember):
            await self.messages.append(self.secret, self.bob, "let me in")

        await self.memberships.decide(self.secret, self.alice, self.bob, "approve")
        message = await self.messages.append(self.secret, self.bob, "thanks")
        self.assertEqual(message.seq, 1)

    async def test_rejected_member_append_rejected(self):
        await self.memberships.request_join(self.secret, self.bob)
        await self.memberships.decide(self.secret, self.alice, self.bob, "reject")

        with self.assertRaises(NotApprovedMember):
            await self.messages.append(self.secret, self.bob, "hello?")

    async def test_empty_and_oversized_text_rejected(self):
        for text in ["", "   ", "\n\t"]:
            with self.subTest(text=text):
                with self.assertRaises(EmptyText):
                    await self.messages.append(self.general, self.alice, text)

        with self.assertRaises(ValidationError) as ctx:
            await self.messages.append(self.general, self.alice, "x" * 21)
        self.assertEqual(ctx.exception.code, "message_too_long")
        self.assertEqual(await self.messages.history(self.general), [])

    async def test_profile_edit_does_not_rewrite_history(self):
        await self.messages.append(self.general, self.alice, "before")
        await self.identity.update_profile(self.alice, self.alice, display_name="Alicia", avatar="new.png")
        await self.messages.append(self.general, self.alice, "after")

        history = await self.messages.history(self.general)

        self.assertEqual([(m.text, m.sender_name) for m in history], [("before", "Alice"), ("after", "Alicia")])
        self.assertEqual(history[1].sender_avatar, "new.png")

    async def test_timestamps_never_go_backwards(self):
        first = await self.messages.append(self.general, self.alice, "one")
        self.clock.now_ms = 5_000
        second = await self.messages.append(self.general, self.alice, "two")
        self.clock.now_ms = 20_000
        third = await self.messages.append(self.general, self.alice, "three")

        self.assertEqual([m.ts_ms for m in (first, second, third)], [10_000, 10_000, 20_000])
        self.assertEqual([m.seq for m in (first, second, third)], [1, 2, 3])

    async def test_history_limit_keeps_newest(self):
        for index in range(5):
            await self.messages.append(self.general, self.alice, f"m{index}")

        self.assertEqual([m.text for m in await self.messages.history(self.general, limit=2)], ["m3", "m4"])
        self.assertEqual(len(await self.messages.history(self.general, limit=10)), 5)
        self.assertEqual(await self.messages.history(self.general, limit=0), [])
        with self.assertRaises(ValidationError):
            await self.messages.history(self.general, limit=-1)

    async def test_channels_have_independent_sequences(self):
        await self.messages.append(self.general, self.alice, "general one")
        secret_message = await self.messages.append(self.secret, self.alice, "secret one")

        self.assertEqual(secret_message.seq, 1)

    async def test_concurrent_appends_get_distinct_ordered_seqs(self):
        await self.memberships.request_join(self.general, self.bob)

        sent = await asyncio.gather(
            *(self.messages.append(self.general, sender, f"m{index}")
              for index, sender in enumerate([self.alice, self.bob] * 5))
        )

        self.assertEqual(sorted(message.seq for message in sent), list(range(1, 11)))
        history = await self.messages.history(self.general)
        self.assertEqual([m.seq for m in history], list(range(1, 11)))

    async def test_subscribe_replays_history_then_live(self):
        await self.messages.append(self.general, self.alice, "one")
        await self.messages.append(self.general, self.alice, "two")

        async with await self.messages.subscribe(self.general) as subscription:
            replayed = subscription.pending_nowait()
            await self.messages.append(self.general, self.alice, "three")
            live = await asyncio.wait_for(subscription.__anext__(), timeout=1)

        self.assertEqual([m.text for m in replayed], ["one", "two"])
        self.assertEqual(live.text, "three")
        self.assertTrue(subscription.closed)
        self.assertEqual(self.store.hub.watch_count(), 0)

    async def test_closing_one_subscription_leaves_others_running(self):
        first = await self.messages.subscribe(self.general)
        second = await self.messages.subscribe(self.general)

        first.close()
        await self.messages.append(self.general, self.alice, "hi")

        self.assertEqual([m.text for m in second.pending_nowait()], ["hi"])
        self.assertEqual(first.pending_nowait(), [])
        self.assertTrue(first.closed)
        self.assertFalse(second.closed)
        self.assertEqual(self.store.hub.watch_count(), 1)
        second.close()
        self.assertEqual(self.store.hub.watch_count(), 0)

    async def test_subscription_ordering_is_non_decreasing(self):
        subscription = await self.messages.subscribe(self.general)
        for now_ms in [30_000, 10_000, 40_000, 40_000]:
            self.clock.now_ms = now_ms
            await self.messages.append(self.general, self.alice, f"at {now_ms}")

        delivered = subscription.pending_nowait()
        subscription.close()

        timestamps = [m.ts_ms for m in delivered]
        self.assertEqual(timestamps, sorted(timestamps))
        self.assertEqual([m.seq for m in delivered], [1, 2, 3, 4])

    async def test_subscription_ends_after_close(self):
        subscription = await self.messages.subscribe(self.general)
        subscription.close()

        received = [message async for message in subscription]

        self.assertEqual(received, [])

    async def test_subscription_raises_when_store_closes(self):
        subscription = await self.messages.subscribe(self.general)

        self.store.close()

        with self.assertRaises(TransportError):
            await asyncio.wait_for(subscription.__anext__(), timeout=1)

    async def test_subscribe_unknown_channel(self):
        with self.assertRaises(ChannelNotFound):
            await self.messages.subscribe("ch_missing")


if __name__ == "__main__":
    unittest.main()
