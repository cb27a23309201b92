import unittest

from chat_client.messages import TOMBSTONE_TEXT, ChatMessage, TempIdFactory


class ChatMessageTests(unittest.TestCase):
    def test_from_payload_normalises_fields(self):
        message = ChatMessage.from_payload(
            {"id": 7, "sender_id": "bob", "receiver_id": "me", "text": None, "image": "img://1", "created_at": "42"}
        )
        self.assertEqual(message.id, "7")
        self.assertEqual(message.text, "")
        self.assertEqual(message.created_at, 42)
        self.assertFalse(message.seen)
        self.assertEqual(ChatMessage.from_payload(message.to_payload()), message)

    def test_deleted_payload_is_tombstoned(self):
        message = ChatMessage.from_payload(
            {"id": "m", "sender_id": "bob", "receiver_id": "me", "text": "secret", "image": "x", "deleted": True}
        )
        self.assertEqual(message.text, TOMBSTONE_TEXT)
        self.assertEqual(message.image, "")
        self.assertIs(message.tombstoned(), message)

    def test_invalid_payloads(self):
        for payload in (None, [], {"id": "m"}, {"id": "m", "sender_id": "a", "receiver_id": "b", "created_at": "soon"}):
            with self.subTest(payload=payload):
                with self.assertRaises(ValueError):
                    ChatMessage.from_payload(payload)

    def test_counterpart(self):
        message = ChatMessage("m", "me", "bob", "hi", "", 1)
        self.assertTrue(message.involves("bob"))
        self.assertFalse(message.involves("carol"))
        self.assertEqual(message.counterpart_of("me"), "bob")
        self.assertEqual(message.counterpart_of("bob"), "me")


class TempIdFactoryTests(unittest.TestCase):
    def test_ids_increase_with_frozen_clock(self):
        factory = TempIdFactory(lambda: 1000)
        self.assertEqual([factory(), factory(), factory()], ["tmp_1000", "tmp_1001", "tmp_1002"])


if __name__ == "__main__":
    unittest.main()
