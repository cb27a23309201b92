from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Optional


@dataclass(frozen=True)
class DirectoryUser:
    user_id: str
    name: str

    def to_payload(self) -> dict:
        return {"id": self.user_id, "name": self.name}


class UserDirectory:
    """Known users, seeded at startup and extended on successful auth."""

    def __init__(self, users: Iterable[DirectoryUser] = ()) -> None:
        self._lock = threading.Lock()
        self._users: Dict[str, DirectoryUser] = {user.user_id: user for user in users}

    def touch(self, user_id: str, name: Optional[str] = None) -> DirectoryUser:
        with self._lock:
            user = self._users.get(user_id)
            if user is None or (name and name != user.name):
                user = DirectoryUser(user_id=user_id, name=name or (user.name if user else user_id))
                self._users[user_id] = user
            return user

    def get(self, user_id: str) -> Optional[DirectoryUser]:
        with self._lock:
            return self._users.get(user_id)

    def others(self, user_id: str) -> list[DirectoryUser]:
        with self._lock:
            return sorted(
                (user for uid, user in self._users.items() if uid != user_id),
                key=lambda user: user.user_id,
            )
