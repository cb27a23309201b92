from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .messages import ChatMessage, Entry, EntryState


class Conversation:
    """Newest-first message rows for one counterpart.

    The live view of the open conversation renders these rows directly; there
    is no second copy to keep in step.
    """

    def __init__(self, counterpart_id: str, messages: Iterable[ChatMessage] = ()) -> None:
        self.counterpart_id = counterpart_id
        ordered = sorted(messages, key=lambda message: message.created_at, reverse=True)
        self._entries: List[Entry] = [Entry(message=message) for message in ordered]

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def messages(self) -> List[ChatMessage]:
        return [entry.message for entry in self._entries]

    @property
    def entries(self) -> List[Entry]:
        return list(self._entries)

    def entry(self, key: str) -> Optional[Entry]:
        for entry in self._entries:
            if entry.key == key:
                return entry
        return None

    def contains(self, message_id: str) -> bool:
        return self.entry(message_id) is not None

    def prepend(self, entry: Entry) -> bool:
        """Insert at the front unless a row with the same id already exists."""

        if self.contains(entry.key):
            return False
        self._entries.insert(0, entry)
        return True

    def confirm(self, temp_id: str, message: ChatMessage) -> bool:
        """Swap the provisional row for the server's copy, keeping its position."""

        for index, entry in enumerate(self._entries):
            if entry.temp_id == temp_id and entry.state is EntryState.PROVISIONAL:
                if any(other.key == message.id for other in self._entries if other is not entry):
                    # Already delivered by push; keep that single copy.
                    entry.state = EntryState.ROLLED_BACK
                    del self._entries[index]
                else:
                    entry.message = message
                    entry.state = EntryState.CONFIRMED
                return True
        return False

    def roll_back(self, temp_id: str) -> bool:
        for index, entry in enumerate(self._entries):
            if entry.temp_id == temp_id and entry.state is EntryState.PROVISIONAL:
                entry.state = EntryState.ROLLED_BACK
                del self._entries[index]
                return True
        return False

    def replace(self, message: ChatMessage) -> bool:
        entry = self.entry(message.id)
        if entry is None:
            return False
        entry.message = message
        return True

    def tombstone(self, message_id: str) -> bool:
        entry = self.entry(message_id)
        if entry is None:
            return False
        entry.message = entry.message.tombstoned()
        return True

    def merge(self, messages: Iterable[ChatMessage]) -> None:
        """Add confirmed messages not yet present, then restore newest-first order."""

        added = False
        for message in messages:
            if not self.contains(message.id):
                self._entries.append(Entry(message=message))
                added = True
        if added:
            self._entries.sort(key=lambda entry: entry.message.created_at, reverse=True)


class ConversationCache:
    """Per-counterpart conversations plus unseen-message counters."""

    def __init__(self) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._unseen: Dict[str, int] = {}

    def get(self, counterpart_id: str) -> Optional[Conversation]:
        return self._conversations.get(counterpart_id)

    def put(self, counterpart_id: str, messages: Iterable[ChatMessage]) -> Conversation:
        conversation = Conversation(counterpart_id, messages)
        self._conversations[counterpart_id] = conversation
        return conversation

    def conversations(self) -> Dict[str, Conversation]:
        return dict(self._conversations)

    def find(self, message_id: str) -> Optional[Conversation]:
        for conversation in self._conversations.values():
            if conversation.contains(message_id):
                return conversation
        return None

    def unseen(self, counterpart_id: str) -> int:
        return self._unseen.get(counterpart_id, 0)

    def unseen_counts(self) -> Dict[str, int]:
        return {key: value for key, value in self._unseen.items() if value}

    def increment_unseen(self, counterpart_id: str) -> int:
        self._unseen[counterpart_id] = self._unseen.get(counterpart_id, 0) + 1
        return self._unseen[counterpart_id]

    def reset_unseen(self, counterpart_id: str) -> None:
        self._unseen[counterpart_id] = 0

    def replace_unseen(self, counts: Dict[str, int]) -> None:
        self._unseen = {key: max(0, int(value)) for key, value in counts.items()}
