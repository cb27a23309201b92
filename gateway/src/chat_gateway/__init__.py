"""Presence tracking and live message delivery for two-party chat."""

from .auth import AuthInvalid, TokenValidator, issue_token
from .dispatcher import Forbidden, InvalidMessage, MessageDispatcher, MessageNotFound
from .presence import PresenceRegistry
from .server import main, simulate
from .store import TOMBSTONE_TEXT, Message, MessageStore

__all__ = [
    "AuthInvalid",
    "TokenValidator",
    "issue_token",
    "Forbidden",
    "InvalidMessage",
    "MessageDispatcher",
    "MessageNotFound",
    "PresenceRegistry",
    "main",
    "simulate",
    "TOMBSTONE_TEXT",
    "Message",
    "MessageStore",
]
