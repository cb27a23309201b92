from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from .directory import DirectoryUser, UserDirectory
from .presence import PresenceRegistry
from .store import Message

logger = logging.getLogger(__name__)


class InvalidMessage(Exception):
    pass


class MessageNotFound(Exception):
    pass


class Forbidden(Exception):
    pass


class Store(Protocol):
    def create(self, sender_id: str, receiver_id: str, text: str, image: str = "") -> Message:
        ...

    def get(self, message_id: str) -> Optional[Message]:
        ...

    def between(self, user_a: str, user_b: str) -> list[Message]:
        ...

    def mark_seen(self, message_id: str) -> Optional[Message]:
        ...

    def mark_conversation_seen(self, reader_id: str, counterpart_id: str) -> int:
        ...

    def tombstone(self, message_id: str) -> Optional[Message]:
        ...

    def unseen_counts(self, receiver_id: str) -> Dict[str, int]:
        ...

    def last_message_times(self, user_id: str) -> Dict[str, int]:
        ...


@dataclass(frozen=True)
class PartnerSummary:
    user: DirectoryUser
    last_message_at: int = 0

    def to_payload(self) -> dict:
        payload = self.user.to_payload()
        payload["last_message_at"] = self.last_message_at
        return payload


def message_frame(event_type: str, message: Message) -> dict:
    return {"v": 1, "t": event_type, "body": message.to_payload()}


class MessageDispatcher:
    """Persists messages and pushes them to the counterpart when online."""

    def __init__(self, store: Store, presence: PresenceRegistry, directory: UserDirectory | None = None) -> None:
        self.store = store
        self.presence = presence
        self.directory = directory or UserDirectory()

    def send(self, sender_id: str, receiver_id: str, text: str | None, image: str | None = None) -> Message:
        """Persist a new message; the result does not depend on push delivery."""

        text = text or ""
        image = image or ""
        if not receiver_id:
            raise InvalidMessage("receiver required")
        if not isinstance(text, str) or not isinstance(image, str):
            raise InvalidMessage("text and image must be strings")
        if not text.strip() and not image:
            raise InvalidMessage("message needs text or image")

        message = self.store.create(sender_id, receiver_id, text, image)
        self._push(receiver_id, message_frame("newMessage", message))
        return message

    def delete(self, requester_id: str, message_id: str) -> Message:
        message = self.store.get(message_id)
        if message is None:
            raise MessageNotFound(message_id)
        if message.sender_id != requester_id:
            raise Forbidden("only the sender can delete a message")

        tombstoned = self.store.tombstone(message_id)
        if tombstoned is None:
            raise MessageNotFound(message_id)
        self._push(tombstoned.counterpart_of(requester_id), message_frame("messageDeleted", tombstoned))
        return tombstoned

    def mark_seen(self, reader_id: str, message_id: str) -> Message:
        message = self.store.get(message_id)
        if message is None:
            raise MessageNotFound(message_id)
        if message.receiver_id != reader_id:
            raise Forbidden("only the receiver can mark a message seen")
        if message.seen:
            return message
        updated = self.store.mark_seen(message_id)
        if updated is None:
            raise MessageNotFound(message_id)
        return updated

    def conversation(self, reader_id: str, counterpart_id: str) -> list[Message]:
        """Return the conversation oldest first and mark the counterpart's messages seen."""

        self.store.mark_conversation_seen(reader_id, counterpart_id)
        return self.store.between(reader_id, counterpart_id)

    def partners(self, user_id: str) -> tuple[list[PartnerSummary], Dict[str, int]]:
        """Directory users plus anyone with stored history, most recent conversation first."""

        latest = self.store.last_message_times(user_id)
        users = {user.user_id: user for user in self.directory.others(user_id)}
        for other_id in latest:
            if other_id not in users:
                users[other_id] = self.directory.get(other_id) or DirectoryUser(user_id=other_id, name=other_id)
        summaries = [PartnerSummary(user, latest.get(uid, 0)) for uid, user in users.items()]
        summaries.sort(key=lambda summary: (-summary.last_message_at, summary.user.user_id))
        return summaries, self.store.unseen_counts(user_id)

    def _push(self, recipient_id: str, frame: dict) -> None:
        handle = self.presence.lookup(recipient_id)
        if handle is None:
            logger.debug("%s offline; %s stored only", recipient_id, frame["t"])
            return
        try:
            handle.push(frame)
        except Exception:
            logger.warning("push of %s to %s failed", frame["t"], recipient_id, exc_info=True)
