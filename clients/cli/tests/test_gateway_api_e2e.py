import asyncio
import unittest
import warnings

from aiohttp.test_utils import TestServer

from chat_client.gateway_client import GatewayApi, PushAuthRejected, PushListener, RequestFailed, unverified_identity
from chat_client.sync_engine import ClientSyncEngine, SendFailed
from chat_gateway.auth import issue_token
from chat_gateway.config import GatewayConfig
from chat_gateway.presence import PresenceRegistry
from chat_gateway.store import MessageStore
from chat_gateway.ws_transport import create_app

warnings.filterwarnings("ignore", message=".*web\\.AppKey.*")

SECRET = "e2e-secret"


class GatewayRoundTripTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.presence = PresenceRegistry()
        self.store = MessageStore()
        config = GatewayConfig(jwt_secret=SECRET, ping_interval_s=3600)
        self.server = TestServer(create_app(config, presence=self.presence, store=self.store))
        await self.server.start_server()
        self.base_url = str(self.server.make_url(""))
        self.tokens = {user: issue_token(user, SECRET) for user in ("alice", "bob")}
        self.apis: list[GatewayApi] = []
        self.listeners: list[tuple[PushListener, asyncio.Task]] = []

    async def asyncTearDown(self):
        for listener, task in self.listeners:
            await listener.stop()
            try:
                await asyncio.wait_for(task, timeout=5)
            except asyncio.TimeoutError:
                task.cancel()
        for api in self.apis:
            await api.close()
        await self.server.close()

    def _engine(self, user_id: str) -> ClientSyncEngine:
        api = GatewayApi(self.base_url, self.tokens[user_id])
        self.apis.append(api)
        return ClientSyncEngine(api, user_id)

    async def _listen(self, engine: ClientSyncEngine) -> PushListener:
        ready = asyncio.Event()
        listener = PushListener(
            self.base_url,
            self.tokens[engine.user_id],
            engine.handle_push,
            reconnect_delay_s=0.05,
            on_ready=lambda _user: ready.set(),
        )
        task = asyncio.create_task(listener.run())
        self.listeners.append((listener, task))
        await asyncio.wait_for(ready.wait(), timeout=5)
        await self._until(lambda: engine.is_online(engine.user_id))
        return listener

    async def _until(self, predicate, timeout: float = 5.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                self.fail("condition not reached")
            await asyncio.sleep(0.01)

    async def test_message_to_closed_conversation_counts_as_unseen(self):
        alice = self._engine("alice")
        bob = self._engine("bob")
        await self._listen(bob)

        await alice.open("bob")
        sent = await alice.send("hi")

        self.assertEqual(alice.live_view[0].id, sent.id)
        await self._until(lambda: bob.unseen("alice") == 1)
        self.assertIn("alice", bob.online_users)

        messages = await bob.open("alice")
        self.assertEqual([m.id for m in messages], [sent.id])
        self.assertEqual(bob.unseen("alice"), 0)
        self.assertTrue(self.store.get(sent.id).seen)

    async def test_message_to_open_conversation_is_acknowledged(self):
        alice = self._engine("alice")
        bob = self._engine("bob")
        await self._listen(bob)
        await bob.open("alice")

        await alice.open("bob")
        sent = await alice.send("are you there")

        await self._until(lambda: bool(bob.live_view) and bob.live_view[0].id == sent.id)
        await bob.wait_idle()
        self.assertEqual(bob.unseen("alice"), 0)
        self.assertTrue(self.store.get(sent.id).seen)

    async def test_delete_reaches_counterpart(self):
        alice = self._engine("alice")
        bob = self._engine("bob")
        await self._listen(bob)
        await bob.open("alice")
        await alice.open("bob")
        sent = await alice.send("oops")
        await self._until(lambda: bool(bob.live_view))

        await alice.delete(sent.id)

        self.assertTrue(alice.live_view[0].deleted)
        await self._until(lambda: bob.live_view[0].deleted)

    async def test_rejected_send_is_rolled_back(self):
        alice = self._engine("alice")
        await alice.open("bob")

        with self.assertRaises(SendFailed) as ctx:
            await alice.send("")

        self.assertIsInstance(ctx.exception.__cause__, RequestFailed)
        self.assertEqual(ctx.exception.__cause__.status, 400)
        self.assertEqual(alice.live_view, [])

    async def test_bad_token_is_reported(self):
        api = GatewayApi(self.base_url, "junk")
        self.apis.append(api)
        with self.assertRaises(RequestFailed) as ctx:
            await api.fetch_partners()
        self.assertEqual(ctx.exception.status, 401)
        self.assertEqual(unverified_identity(self.tokens["bob"]), "bob")

    async def test_listener_reconnects_after_server_close(self):
        bob = self._engine("bob")
        sessions: list[str] = []
        listener = PushListener(
            self.base_url,
            self.tokens["bob"],
            bob.handle_push,
            reconnect_delay_s=0.05,
            on_ready=sessions.append,
        )
        task = asyncio.create_task(listener.run())
        self.listeners.append((listener, task))
        await self._until(lambda: len(sessions) == 1 and self.presence.lookup("bob") is not None)

        first_handle = self.presence.lookup("bob")
        await first_handle.close(code=1001, message="restart")

        await self._until(lambda: len(sessions) == 2)
        await self._until(lambda: self.presence.lookup("bob") not in (None, first_handle))
        self.assertEqual(sessions, ["bob", "bob"])
        self.assertFalse(task.done())

    async def test_listener_stops_on_auth_rejection(self):
        sessions: list[str] = []
        listener = PushListener(
            self.base_url,
            "not-a-token",
            lambda frame: None,
            reconnect_delay_s=0.05,
            on_ready=sessions.append,
        )

        with self.assertRaises(PushAuthRejected):
            await asyncio.wait_for(listener.run(), timeout=5)

        self.assertEqual(sessions, [])
        self.assertEqual(self.presence.online(), frozenset())


if __name__ == "__main__":
    unittest.main()
