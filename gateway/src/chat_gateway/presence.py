from __future__ import annotations

import logging
import threading
from typing import Dict, FrozenSet, Optional, Protocol

logger = logging.getLogger(__name__)


class PushTarget(Protocol):
    """Anything the registry can hold as a live connection handle."""

    def push(self, frame: dict) -> None:
        ...


def online_users_frame(user_ids: FrozenSet[str]) -> dict:
    return {"v": 1, "t": "getOnlineUsers", "body": {"user_ids": sorted(user_ids)}}


class PresenceRegistry:
    """Maps each online identity to its single live connection handle.

    Every mutation happens under one lock; broadcasts are delivered after the
    lock is released using a snapshot taken inside it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: Dict[str, PushTarget] = {}
        self._closed = False

    def register(self, identity: str, handle: PushTarget) -> Optional[PushTarget]:
        """Make ``handle`` the current connection for ``identity``.

        Returns the handle it replaced, if any.
        """

        with self._lock:
            if self._closed:
                raise RuntimeError("presence registry is closed")
            previous = self._handles.get(identity)
            self._handles[identity] = handle
            online = frozenset(self._handles)
            targets = list(self._handles.values())
        if previous is not None and previous is not handle:
            logger.info("connection for %s replaced", identity)
        logger.info("%s online (%d connected)", identity, len(online))
        self._broadcast(online, targets)
        return previous if previous is not handle else None

    def deregister(self, identity: str, handle: PushTarget) -> bool:
        """Remove ``identity`` only while ``handle`` is still its current connection."""

        with self._lock:
            if self._handles.get(identity) is not handle:
                return False
            del self._handles[identity]
            online = frozenset(self._handles)
            targets = list(self._handles.values())
        logger.info("%s offline (%d connected)", identity, len(online))
        self._broadcast(online, targets)
        return True

    def lookup(self, identity: str) -> Optional[PushTarget]:
        with self._lock:
            return self._handles.get(identity)

    def online(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._handles)

    def close(self) -> None:
        """Drop every entry at shutdown; later registrations are refused."""

        with self._lock:
            self._closed = True
            self._handles.clear()

    def _broadcast(self, online: FrozenSet[str], targets: list[PushTarget]) -> None:
        frame = online_users_frame(online)
        for target in targets:
            try:
                target.push(frame)
            except Exception:
                logger.warning("presence push to %r failed", target, exc_info=True)
