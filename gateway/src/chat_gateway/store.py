from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

TOMBSTONE_TEXT = "This message was deleted"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_message_id() -> str:
    return f"msg_{secrets.token_urlsafe(12)}"


@dataclass(frozen=True)
class Message:
    """A persisted direct message between two users."""

    id: str
    sender_id: str
    receiver_id: str
    text: str
    image: str
    created_at: int
    seen: bool = False
    deleted: bool = False

    def tombstoned(self) -> "Message":
        """Return the deleted form of this message; idempotent."""

        if self.deleted and self.text == TOMBSTONE_TEXT and not self.image:
            return self
        return replace(self, deleted=True, text=TOMBSTONE_TEXT, image="")

    def counterpart_of(self, user_id: str) -> str:
        return self.receiver_id if user_id == self.sender_id else self.sender_id

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "text": self.text,
            "image": self.image,
            "created_at": self.created_at,
            "seen": self.seen,
            "deleted": self.deleted,
        }


class MessageStore:
    """In-memory message store used when SQLite durability is disabled."""

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._lock = threading.Lock()
        self._messages: Dict[str, Message] = {}
        self._order: List[str] = []

    def create(self, sender_id: str, receiver_id: str, text: str, image: str = "") -> Message:
        message = Message(
            id=_new_message_id(),
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            image=image,
            created_at=self._now(),
        )
        with self._lock:
            self._messages[message.id] = message
            self._order.append(message.id)
        return message

    def get(self, message_id: str) -> Optional[Message]:
        with self._lock:
            return self._messages.get(message_id)

    def between(self, user_a: str, user_b: str) -> list[Message]:
        """Messages exchanged by the two users, oldest first."""

        pair = {user_a, user_b}
        with self._lock:
            found = [
                self._messages[message_id]
                for message_id in self._order
                if {self._messages[message_id].sender_id, self._messages[message_id].receiver_id} == pair
            ]
        return sorted(found, key=lambda message: message.created_at)

    def mark_seen(self, message_id: str) -> Optional[Message]:
        return self._update(message_id, lambda message: replace(message, seen=True))

    def mark_conversation_seen(self, reader_id: str, counterpart_id: str) -> int:
        """Mark everything ``counterpart_id`` sent to ``reader_id`` as seen."""

        updated = 0
        with self._lock:
            for message_id, message in self._messages.items():
                if message.sender_id == counterpart_id and message.receiver_id == reader_id and not message.seen:
                    self._messages[message_id] = replace(message, seen=True)
                    updated += 1
        return updated

    def tombstone(self, message_id: str) -> Optional[Message]:
        return self._update(message_id, lambda message: message.tombstoned())

    def unseen_counts(self, receiver_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._lock:
            for message in self._messages.values():
                if message.receiver_id == receiver_id and not message.seen:
                    counts[message.sender_id] = counts.get(message.sender_id, 0) + 1
        return counts

    def last_message_times(self, user_id: str) -> Dict[str, int]:
        """Newest ``created_at`` per counterpart ``user_id`` has exchanged messages with."""

        latest: Dict[str, int] = {}
        with self._lock:
            for message in self._messages.values():
                if user_id not in (message.sender_id, message.receiver_id):
                    continue
                other = message.counterpart_of(user_id)
                if other != user_id and message.created_at > latest.get(other, -1):
                    latest[other] = message.created_at
        return latest

    def close(self) -> None:
        return None

    def _update(self, message_id: str, change: Callable[[Message], Message]) -> Optional[Message]:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return None
            updated = change(message)
            self._messages[message_id] = updated
            return updated
