"""Client-side message model and the provisional/confirmed entry states."""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional

TOMBSTONE_TEXT = "This message was deleted"


@dataclass(frozen=True)
class ChatMessage:
    id: str
    sender_id: str
    receiver_id: str
    text: str
    image: str
    created_at: int
    seen: bool = False
    deleted: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChatMessage":
        if not isinstance(payload, dict):
            raise ValueError("message payload must be an object")
        try:
            message = cls(
                id=str(payload["id"]),
                sender_id=str(payload["sender_id"]),
                receiver_id=str(payload["receiver_id"]),
                text=str(payload.get("text") or ""),
                image=str(payload.get("image") or ""),
                created_at=int(payload.get("created_at") or 0),
                seen=bool(payload.get("seen", False)),
                deleted=bool(payload.get("deleted", False)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid message payload: {exc}") from exc
        return message.tombstoned() if message.deleted else message

    def to_payload(self) -> Dict[str, Any]:
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

    def tombstoned(self) -> "ChatMessage":
        if self.deleted and self.text == TOMBSTONE_TEXT and not self.image:
            return self
        return replace(self, deleted=True, text=TOMBSTONE_TEXT, image="")

    def involves(self, user_id: str) -> bool:
        return user_id in (self.sender_id, self.receiver_id)

    def counterpart_of(self, user_id: str) -> str:
        return self.receiver_id if self.sender_id == user_id else self.sender_id


class EntryState(enum.Enum):
    PROVISIONAL = "provisional"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Entry:
    """One row of a conversation.

    Provisional rows are keyed by their temp id until the server assigns the
    authoritative one.
    """

    message: ChatMessage
    state: EntryState = EntryState.CONFIRMED
    temp_id: Optional[str] = None

    @property
    def key(self) -> str:
        return self.message.id


class TempIdFactory:
    """Hands out session-unique, strictly increasing timestamp ids."""

    def __init__(self, now_func: Callable[[], int] | None = None) -> None:
        self._now = now_func or (lambda: int(time.time() * 1000))
        self._last = 0
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            value = max(self._now(), self._last + 1)
            self._last = value
        return f"tmp_{value}"
