"""Optimistic client state for two-party conversations.

The engine owns a :class:`ConversationCache` and keeps the open
conversation's rows consistent with the server:

* sends are inserted provisionally under a temp id and later confirmed or
  rolled back by that id, never appended blindly;
* deletes are tombstoned locally first and are not rolled back on failure;
* push frames (``newMessage``, ``messageDeleted``, ``getOnlineUsers``) are
  applied as discrete reactions on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Protocol, Set

from .cache import Conversation, ConversationCache
from .messages import ChatMessage, Entry, EntryState, TempIdFactory

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Base class for failures reported to the user."""


class SendFailed(SyncError):
    pass


class DeleteFailed(SyncError):
    pass


class FetchFailed(SyncError):
    pass


class SyncApi(Protocol):
    async def fetch_partners(self) -> Dict[str, Any]:
        ...

    async def fetch_messages(self, counterpart_id: str) -> List[Dict[str, Any]]:
        ...

    async def send_message(self, counterpart_id: str, text: str, image: str) -> Dict[str, Any]:
        ...

    async def mark_seen(self, message_id: str) -> Dict[str, Any]:
        ...

    async def delete_message(self, message_id: str) -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class Partner:
    user_id: str
    name: str
    last_message_at: int = 0


def _reason(exc: BaseException, default: str) -> str:
    message = getattr(exc, "message", None)
    return message if isinstance(message, str) and message else default


class ClientSyncEngine:
    def __init__(
        self,
        api: SyncApi,
        user_id: str,
        *,
        notify: Callable[[SyncError], None] | None = None,
        cache: ConversationCache | None = None,
        temp_ids: Callable[[], str] | None = None,
        now_func: Callable[[], int] | None = None,
    ) -> None:
        self.api = api
        self.user_id = user_id
        self.cache = cache or ConversationCache()
        self.open_counterpart: Optional[str] = None
        self.online_users: FrozenSet[str] = frozenset()
        self._notify_callback = notify
        self._now = now_func or (lambda: int(time.time() * 1000))
        self._temp_ids = temp_ids or TempIdFactory(self._now)
        self._partners: Dict[str, Partner] = {}
        self._requested: Optional[str] = None
        self._fetching: Dict[str, List[ChatMessage]] = {}
        self._background: Set[asyncio.Task] = set()

    # -- views -------------------------------------------------------------

    @property
    def conversation(self) -> Optional[Conversation]:
        if self.open_counterpart is None:
            return None
        return self.cache.get(self.open_counterpart)

    @property
    def live_view(self) -> List[ChatMessage]:
        conversation = self.conversation
        return conversation.messages if conversation is not None else []

    @property
    def partners(self) -> List[Partner]:
        return sorted(self._partners.values(), key=lambda partner: (-partner.last_message_at, partner.user_id))

    def unseen(self, counterpart_id: str) -> int:
        return self.cache.unseen(counterpart_id)

    def is_online(self, user_id: str) -> bool:
        return user_id in self.online_users

    # -- requests ----------------------------------------------------------

    async def load_partners(self) -> List[Partner]:
        try:
            payload = await self.api.fetch_partners()
            users = payload.get("users") or []
            unseen = payload.get("unseen") or {}
            partners = {
                str(user["id"]): Partner(
                    user_id=str(user["id"]),
                    name=str(user.get("name") or user["id"]),
                    last_message_at=int(user.get("last_message_at") or 0),
                )
                for user in users
            }
            counts = {str(key): int(value) for key, value in unseen.items()}
        except Exception as exc:
            raise self._report(FetchFailed(_reason(exc, "Failed to load conversations")), exc) from exc

        for user_id, partner in partners.items():
            previous = self._partners.get(user_id)
            if previous is not None and previous.last_message_at > partner.last_message_at:
                partners[user_id] = replace(partner, last_message_at=previous.last_message_at)
        self._partners = partners
        self.cache.replace_unseen(counts)
        if self.open_counterpart is not None:
            self.cache.reset_unseen(self.open_counterpart)
        return self.partners

    async def open(self, counterpart_id: str) -> List[ChatMessage]:
        """Show a conversation, from cache when warm, otherwise after one fetch.

        On a cache miss the previous conversation is detached while the fetch
        runs, so its pushes count as unseen and ``send`` is refused until the
        new one is ready. A failed fetch re-attaches the previous conversation.
        """

        previous = self.open_counterpart
        self._requested = counterpart_id
        cached = self.cache.get(counterpart_id)
        if cached is not None:
            self.open_counterpart = counterpart_id
            self.cache.reset_unseen(counterpart_id)
            return cached.messages

        self.open_counterpart = None
        self._fetching.setdefault(counterpart_id, [])
        try:
            payloads = await self.api.fetch_messages(counterpart_id)
            messages = [ChatMessage.from_payload(payload) for payload in payloads]
        except Exception as exc:
            for message in self._fetching.pop(counterpart_id, []):
                if self._counts_as_unseen(message):
                    self.cache.increment_unseen(counterpart_id)
            if self._requested == counterpart_id:
                self._requested = previous
                if previous is not None and self.cache.get(previous) is not None:
                    self.open_counterpart = previous
                    self.cache.reset_unseen(previous)
            raise self._report(FetchFailed(_reason(exc, "Failed to load messages")), exc) from exc

        buffered = self._fetching.pop(counterpart_id, [])
        conversation = self.cache.get(counterpart_id)
        if conversation is None:
            conversation = self.cache.put(counterpart_id, messages)
        else:
            conversation.merge(messages)
        conversation.merge(buffered)

        if self._requested == counterpart_id:
            self.open_counterpart = counterpart_id
            self.cache.reset_unseen(counterpart_id)
        else:
            for message in buffered:
                if self._counts_as_unseen(message):
                    self.cache.increment_unseen(counterpart_id)
        return conversation.messages

    def close(self) -> None:
        self.open_counterpart = None
        self._requested = None

    async def send(self, text: str = "", image: str = "") -> ChatMessage:
        counterpart_id = self.open_counterpart
        conversation = self.conversation
        if counterpart_id is None or conversation is None:
            raise RuntimeError("no conversation is open")

        temp_id = self._temp_ids()
        provisional = ChatMessage(
            id=temp_id,
            sender_id=self.user_id,
            receiver_id=counterpart_id,
            text=text or "",
            image=image or "",
            created_at=self._now(),
        )
        conversation.prepend(Entry(message=provisional, state=EntryState.PROVISIONAL, temp_id=temp_id))

        try:
            payload = await self.api.send_message(counterpart_id, text or "", image or "")
            confirmed = ChatMessage.from_payload(payload)
        except Exception as exc:
            conversation.roll_back(temp_id)
            logger.info("send %s to %s rolled back: %s", temp_id, counterpart_id, exc)
            raise self._report(SendFailed(_reason(exc, "Failed to send message")), exc) from exc

        if not confirmed.created_at:
            confirmed = replace(confirmed, created_at=provisional.created_at)
        conversation.confirm(temp_id, confirmed)
        self._touch_partner(counterpart_id, confirmed.created_at)
        return confirmed

    async def delete(self, message_id: str) -> None:
        conversation = self.conversation
        if conversation is None or not conversation.contains(message_id):
            conversation = self.cache.find(message_id)
        if conversation is not None:
            entry = conversation.entry(message_id)
            if entry is not None and entry.state is EntryState.PROVISIONAL:
                raise ValueError("cannot delete a message the server has not confirmed")
            conversation.tombstone(message_id)

        try:
            await self.api.delete_message(message_id)
        except Exception as exc:
            logger.warning("delete of %s failed; keeping local tombstone: %s", message_id, exc)
            self._report(DeleteFailed("Failed to delete message"), exc)

    # -- push handling -----------------------------------------------------

    def handle_push(self, frame: Dict[str, Any]) -> bool:
        """Apply one server push frame; returns False for frames it ignores."""

        frame_type = frame.get("t")
        body = frame.get("body")
        try:
            if frame_type == "getOnlineUsers":
                self.on_online_users((body or {}).get("user_ids") or [])
            elif frame_type == "newMessage":
                self.on_new_message(body or {})
            elif frame_type == "messageDeleted":
                self.on_message_deleted(body or {})
            else:
                return False
        except (ValueError, AttributeError, TypeError) as exc:
            logger.warning("dropping malformed %s push: %s", frame_type, exc)
            return False
        return True

    def on_online_users(self, user_ids: Iterable[Any]) -> None:
        self.online_users = frozenset(str(user_id) for user_id in user_ids)

    def on_new_message(self, payload: Dict[str, Any]) -> None:
        message = ChatMessage.from_payload(payload)
        for user_id in (message.sender_id, message.receiver_id):
            if user_id != self.user_id:
                self._touch_partner(user_id, message.created_at)

        counterpart_id = self.open_counterpart
        conversation = self.conversation
        if counterpart_id is not None and conversation is not None and message.involves(counterpart_id):
            added = conversation.prepend(Entry(message=message))
            if added and self._counts_as_unseen(message):
                self._spawn(self._mark_seen(message.id))
            self.cache.reset_unseen(counterpart_id)
            return

        other_id = message.counterpart_of(self.user_id)
        if other_id in self._fetching:
            self._fetching[other_id].append(message)
            return
        cached = self.cache.get(other_id)
        if cached is not None:
            cached.prepend(Entry(message=message))
        if self._counts_as_unseen(message):
            self.cache.increment_unseen(other_id)

    def on_message_deleted(self, payload: Dict[str, Any]) -> None:
        message = ChatMessage.from_payload(payload).tombstoned()
        conversation = self.conversation
        if conversation is None or not conversation.contains(message.id):
            conversation = self.cache.find(message.id)
        if conversation is not None:
            conversation.replace(message)

    async def wait_idle(self) -> None:
        """Wait for outstanding acknowledgements issued by push handling."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -- internals ---------------------------------------------------------

    def _counts_as_unseen(self, message: ChatMessage) -> bool:
        return message.receiver_id == self.user_id and not message.seen

    async def _mark_seen(self, message_id: str) -> None:
        try:
            await self.api.mark_seen(message_id)
        except Exception as exc:
            logger.warning("mark seen for %s failed: %s", message_id, exc)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _touch_partner(self, user_id: str, created_at: int) -> None:
        partner = self._partners.get(user_id) or Partner(user_id=user_id, name=user_id)
        if created_at > partner.last_message_at:
            partner = replace(partner, last_message_at=created_at)
        self._partners[user_id] = partner

    def _report(self, error: SyncError, cause: BaseException | None = None) -> SyncError:
        error.__cause__ = cause
        if self._notify_callback is not None:
            try:
                self._notify_callback(error)
            except Exception:
                logger.exception("notify callback failed")
        return error
