from __future__ import annotations

import sqlite3
from typing import Callable, Dict, Optional

from .sqlite_backend import SQLiteBackend
from .store import TOMBSTONE_TEXT, Message, _new_message_id, _now_ms

_COLUMNS = "id, sender_id, receiver_id, text, image, created_at, seen, deleted"


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row[0],
        sender_id=row[1],
        receiver_id=row[2],
        text=row[3],
        image=row[4],
        created_at=row[5],
        seen=bool(row[6]),
        deleted=bool(row[7]),
    )


class SQLiteMessageStore:
    """Durable message store backed by SQLite."""

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def create(self, sender_id: str, receiver_id: str, text: str, image: str = "") -> Message:
        message = Message(
            id=_new_message_id(),
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            image=image,
            created_at=self._now(),
        )
        with self._backend.lock:
            self._backend.connection.execute(
                f"INSERT INTO messages ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, 0, 0)",
                (message.id, sender_id, receiver_id, text, image, message.created_at),
            )
        return message

    def get(self, message_id: str) -> Optional[Message]:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_COLUMNS} FROM messages WHERE id=?", (message_id,)
            ).fetchone()
        return _row_to_message(row) if row else None

    def between(self, user_a: str, user_b: str) -> list[Message]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE (sender_id=? AND receiver_id=?) OR (sender_id=? AND receiver_id=?)
                ORDER BY created_at ASC, rowid ASC
                """,
                (user_a, user_b, user_b, user_a),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def mark_seen(self, message_id: str) -> Optional[Message]:
        with self._backend.lock:
            self._backend.connection.execute("UPDATE messages SET seen=1 WHERE id=?", (message_id,))
        return self.get(message_id)

    def mark_conversation_seen(self, reader_id: str, counterpart_id: str) -> int:
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                "UPDATE messages SET seen=1 WHERE sender_id=? AND receiver_id=? AND seen=0",
                (counterpart_id, reader_id),
            )
            return cursor.rowcount

    def tombstone(self, message_id: str) -> Optional[Message]:
        with self._backend.lock:
            self._backend.connection.execute(
                "UPDATE messages SET deleted=1, text=?, image='' WHERE id=?",
                (TOMBSTONE_TEXT, message_id),
            )
        return self.get(message_id)

    def unseen_counts(self, receiver_id: str) -> Dict[str, int]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT sender_id, COUNT(*) FROM messages WHERE receiver_id=? AND seen=0 GROUP BY sender_id",
                (receiver_id,),
            ).fetchall()
        return {row[0]: int(row[1]) for row in rows}

    def last_message_times(self, user_id: str) -> Dict[str, int]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                """
                SELECT CASE WHEN sender_id=? THEN receiver_id ELSE sender_id END AS other, MAX(created_at)
                FROM messages
                WHERE (sender_id=? OR receiver_id=?) AND sender_id != receiver_id
                GROUP BY other
                """,
                (user_id, user_id, user_id),
            ).fetchall()
        return {row[0]: int(row[1]) for row in rows}

    def close(self) -> None:
        self._backend.close()
