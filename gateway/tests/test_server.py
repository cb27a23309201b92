import io
import json
import unittest

from chat_gateway.auth import TokenValidator
from chat_gateway.config import ConfigError, GatewayConfig
from chat_gateway.server import _load_frames, main, simulate


def _pushes(buffer: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


class TestSimulate(unittest.TestCase):
    def test_load_frames_accepts_array_or_lines(self):
        array_buffer = io.StringIO(json.dumps([{"t": "connect"}]))
        ndjson_buffer = io.StringIO("\n".join(['{"t": "one"}', '{"t": "two"}']))

        self.assertEqual(list(_load_frames(array_buffer)), [{"t": "connect"}])
        self.assertEqual(list(_load_frames(ndjson_buffer)), [{"t": "one"}, {"t": "two"}])
        self.assertEqual(list(_load_frames(io.StringIO("  "))), [])

    def test_send_to_online_user_is_pushed(self):
        frames = [
            {"t": "connect", "user_id": "a"},
            {"t": "connect", "user_id": "b"},
            {"t": "send", "sender_id": "a", "receiver_id": "b", "text": "hi"},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        pushes = _pushes(buffer)
        presence = [p for p in pushes if p["frame"]["t"] == "getOnlineUsers"]
        messages = [p for p in pushes if p["frame"]["t"] == "newMessage"]
        self.assertEqual(len(presence), 3)
        self.assertEqual(presence[-1]["frame"]["body"]["user_ids"], ["a", "b"])
        self.assertEqual(len(messages), 1)
        self.assertEqual(messages[0]["to"], "b")
        self.assertEqual(messages[0]["frame"]["body"]["text"], "hi")

    def test_stale_disconnect_is_ignored(self):
        frames = [
            {"t": "connect", "user_id": "a", "handle": "h1"},
            {"t": "connect", "user_id": "a", "handle": "h2"},
            {"t": "disconnect", "user_id": "a", "handle": "h1"},
            {"t": "connect", "user_id": "b", "handle": "hb"},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        last = _pushes(buffer)[-1]
        self.assertEqual(last["frame"]["body"]["user_ids"], ["a", "b"])

    def test_delete_defaults_to_last_message(self):
        frames = [
            {"t": "connect", "user_id": "b"},
            {"t": "send", "sender_id": "a", "receiver_id": "b", "text": "oops"},
            {"t": "delete", "user_id": "a"},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        deleted = [p for p in _pushes(buffer) if p["frame"]["t"] == "messageDeleted"]
        self.assertEqual(len(deleted), 1)
        self.assertTrue(deleted[0]["frame"]["body"]["deleted"])

    def test_unknown_frame_type_raises(self):
        with self.assertRaises(ValueError):
            simulate([{"t": "conv.subscribe"}], io.StringIO())


class TestCli(unittest.TestCase):
    def test_issue_token_produces_valid_token(self):
        buffer = io.StringIO()
        exit_code = main(["issue-token", "alice", "--secret", "s3"], output=buffer)

        self.assertEqual(exit_code, 0)
        self.assertEqual(TokenValidator("s3").validate(buffer.getvalue().strip()), "alice")


class TestGatewayConfig(unittest.TestCase):
    def test_from_env_parses_types(self):
        config = GatewayConfig.from_env(
            {
                "CHAT_JWT_SECRET": "s",
                "CHAT_PORT": "9000",
                "CHAT_CLOSE_REPLACED_CONNECTIONS": "yes",
                "CHAT_DB_PATH": "",
                "UNRELATED": "x",
            }
        )
        self.assertEqual(config.jwt_secret, "s")
        self.assertEqual(config.port, 9000)
        self.assertTrue(config.close_replaced_connections)
        self.assertIsNone(config.db_path)
        config.validate()

    def test_invalid_values_raise(self):
        with self.assertRaises(ConfigError):
            GatewayConfig.from_env({"CHAT_PORT": "eighty"})
        with self.assertRaises(ConfigError):
            GatewayConfig.from_env({"CHAT_CLOSE_REPLACED_CONNECTIONS": "maybe"})
        with self.assertRaises(ConfigError):
            GatewayConfig().validate()


if __name__ == "__main__":
    unittest.main()
