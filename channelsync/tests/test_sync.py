import asyncio
import unittest

from channelsync.channels import ChannelRegistry
from channelsync.config import Scope
from channelsync.errors import TransportError
from channelsync.identity import IdentityDirectory
from channelsync.membership import MembershipStateMachine
from channelsync.store import InMemoryDocumentStore
from channelsync.sync import LiveView, SyncFacade, WatchSpec


class FlakyStore(InMemoryDocumentStore):
    """In-memory store whose next ``watch_failures`` watch calls are refused."""

    def __init__(self) -> None:
        super().__init__()
        self.watch_failures = 0
        self.watch_attempts = 0

    async def watch(self, collection, where, callback, on_error=None):
        self.watch_attempts += 1
        if self.watch_failures:
            self.watch_failures -= 1
            raise TransportError("watch refused")
        return await super().watch(collection, where, callback, on_error)


async def wait_for_state(view, predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate(view.state):
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"view {view.name} never reached the expected state: {view.state}")
        await asyncio.sleep(0.01)
    return view.state


class SyncFacadeTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = FlakyStore()
        self.scope = Scope("app1")
        self.identity = IdentityDirectory(self.store, self.scope)
        self.channels = ChannelRegistry(self.store, self.scope)
        self.memberships = MembershipStateMachine(self.store, self.scope, self.channels)
        self.sync = SyncFacade(
            self.store,
            self.scope,
            self.channels,
            retry_initial_delay_s=0.01,
            retry_max_delay_s=0.05,
        )
        self.alice = await self.identity.register("alice")
        self.bob = await self.identity.register("bob")
        self.general = await self.channels.create("general", "public", self.alice)
        self.secret = await self.channels.create("secret", "private", self.alice)

    async def asyncTearDown(self):
        self.store.close()

    async def test_initial_views(self):
        async with await self.sync.views_for(self.alice) as views:
            joined = views.joined.state
            pending = views.pending.state

        self.assertFalse(joined.stale)
        self.assertEqual([channel.name for channel in joined.items], ["general", "secret"])
        self.assertFalse(pending.stale)
        self.assertEqual(pending.items, ())

    async def test_views_follow_join_and_decisions(self):
        alice_views = await self.sync.views_for(self.alice)
        bob_views = await self.sync.views_for(self.bob)
        self.assertEqual(bob_views.joined.state.items, ())

        await self.memberships.request_join(self.general, self.bob)
        await self.memberships.request_join(self.secret, self.bob)
        await alice_views.wait_idle()
        await bob_views.wait_idle()

        self.assertEqual([channel.name for channel in bob_views.joined.state.items], ["general"])
        self.assertEqual(
            [(channel.name, membership.account_id) for channel, membership in alice_views.pending.state.items],
            [("secret", self.bob)],
        )
        self.assertEqual(bob_views.pending.state.items, ())

        await self.memberships.decide(self.secret, self.alice, self.bob, "approve")
        await alice_views.wait_idle()
        await bob_views.wait_idle()

        self.assertEqual([channel.name for channel in bob_views.joined.state.items], ["general", "secret"])
        self.assertEqual(alice_views.pending.state.items, ())

        await alice_views.close()
        await bob_views.close()
        self.assertEqual(self.store.hub.watch_count(), 0)

    async def test_rejection_clears_pending_without_joining(self):
        views = await self.sync.views_for(self.alice)
        bob_views = await self.sync.views_for(self.bob)
        await self.memberships.request_join(self.secret, self.bob)
        await views.wait_idle()
        self.assertEqual(len(views.pending.state.items), 1)

        await self.memberships.decide(self.secret, self.alice, self.bob, "reject")
        await views.wait_idle()
        await bob_views.wait_idle()

        self.assertEqual(views.pending.state.items, ())
        self.assertEqual(bob_views.joined.state.items, ())
        await views.close()
        await bob_views.close()

    async def test_listeners_receive_current_and_later_states(self):
        views = await self.sync.views_for(self.bob)
        received = []

        views.joined.add_listener(received.append)
        await self.memberships.request_join(self.general, self.bob)
        await views.wait_idle()
        views.joined.remove_listener(received.append)
        await self.channels.create("later", "public", self.bob)
        await views.wait_idle()

        self.assertEqual([len(state.items) for state in received], [0, 1])
        self.assertEqual(len(views.joined.state.items), 2)
        await views.close()

    async def test_updates_iterator(self):
        views = await self.sync.views_for(self.bob)
        updates = views.joined.updates()

        first = await asyncio.wait_for(updates.__anext__(), timeout=1)
        await self.memberships.request_join(self.general, self.bob)
        second = await asyncio.wait_for(updates.__anext__(), timeout=1)
        await views.close()
        with self.assertRaises(StopAsyncIteration):
            await asyncio.wait_for(updates.__anext__(), timeout=1)

        self.assertEqual(first.items, ())
        self.assertEqual([channel.name for channel in second.items], ["general"])
        self.assertGreater(second.version, first.version)

    async def test_dropped_watch_marks_stale_then_recovers(self):
        views = await self.sync.views_for(self.alice)
        self.store.watch_failures = 2

        with self.assertLogs("channelsync.sync", level="WARNING"):
            self.store.hub.fail_all(TransportError("connection lost"))

        stale = views.joined.state
        self.assertTrue(stale.stale)
        self.assertIsInstance(stale.error, TransportError)
        self.assertEqual([channel.name for channel in stale.items], ["general", "secret"])

        await self.memberships.request_join(self.general, self.bob)
        await self.memberships.request_join(self.secret, self.bob)

        recovered = await wait_for_state(views.pending, lambda state: not state.stale)
        self.assertIsNone(recovered.error)
        self.assertEqual([membership.account_id for _, membership in recovered.items], [self.bob])
        await wait_for_state(views.joined, lambda state: not state.stale)
        self.assertGreater(self.store.watch_attempts, 4)
        await views.close()

    async def test_initial_watch_failure_retries_in_background(self):
        self.store.watch_failures = 1

        with self.assertLogs("channelsync.sync", level="WARNING"):
            views = await self.sync.views_for(self.alice)

        self.assertTrue(views.joined.state.stale)
        self.assertEqual(views.joined.state.items, ())
        recovered = await wait_for_state(views.joined, lambda state: not state.stale)
        self.assertEqual([channel.name for channel in recovered.items], ["general", "secret"])
        await views.close()

    async def test_close_stops_retrying(self):
        self.store.watch_failures = 1000
        with self.assertLogs("channelsync.sync", level="WARNING"):
            views = await self.sync.views_for(self.alice)
            await asyncio.sleep(0.05)
            await views.close()
        attempts = self.store.watch_attempts

        await asyncio.sleep(0.1)

        self.assertEqual(self.store.watch_attempts, attempts)
        self.assertTrue(views.joined.state.stale)


class LiveViewRetryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = FlakyStore()
        self.compute_calls = 0

    async def asyncTearDown(self):
        self.store.close()

    async def test_unexpected_error_while_reestablishing_keeps_retrying(self):
        async def compute():
            self.compute_calls += 1
            if self.compute_calls == 1:
                raise RuntimeError("read failed")
            return ["ok"]

        view = LiveView(
            "numbers",
            self.store,
            [WatchSpec("apps/app1/numbers")],
            compute,
            retry_initial_delay_s=0.01,
            retry_max_delay_s=0.05,
        )
        states = []
        view.add_listener(states.append)
        self.store.watch_failures = 1

        with self.assertLogs("channelsync.sync", level="WARNING") as logs:
            await view.start()
            recovered = await wait_for_state(view, lambda state: not state.stale)

        self.assertEqual(recovered.items, ("ok",))
        self.assertIsNone(recovered.error)
        self.assertTrue(any(isinstance(state.error, RuntimeError) and state.stale for state in states))
        self.assertTrue(any("failed to re-establish" in line for line in logs.output))
        self.assertEqual(self.compute_calls, 2)
        self.assertEqual(self.store.hub.watch_count(), 1)
        await view.close()
        self.assertEqual(self.store.hub.watch_count(), 0)


if __name__ == "__main__":
    unittest.main()
