"""Bearer token verification for gateway connections and requests."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict

_HEADER = {"alg": "HS256", "typ": "JWT"}


class AuthInvalid(Exception):
    """Raised when a presented token cannot be trusted."""


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    try:
        return base64.urlsafe_b64decode(segment + padding)
    except (binascii.Error, ValueError) as exc:
        raise AuthInvalid("malformed token segment") from exc


def _sign(signing_input: bytes, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()


def issue_token(
    user_id: str,
    secret: str,
    *,
    ttl_seconds: int | None = 7 * 24 * 60 * 60,
    identity_claim: str = "userId",
    now_func: Callable[[], float] = time.time,
) -> str:
    """Mint an HS256 token carrying ``user_id``.

    Token issuance belongs to the external auth service; this helper exists
    for development tooling and tests.
    """

    claims: Dict[str, Any] = {identity_claim: user_id, "iat": int(now_func())}
    if ttl_seconds is not None:
        claims["exp"] = int(now_func()) + ttl_seconds
    header = _b64url_encode(json.dumps(_HEADER, separators=(",", ":")).encode("utf-8"))
    payload = _b64url_encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header}.{payload}".encode("ascii")
    return f"{header}.{payload}.{_b64url_encode(_sign(signing_input, secret))}"


class TokenValidator:
    """Verifies HS256 bearer tokens against a shared secret."""

    def __init__(
        self,
        secret: str,
        *,
        identity_claim: str = "userId",
        leeway_seconds: int = 0,
        now_func: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must be non-empty")
        self._secret = secret
        self.identity_claim = identity_claim
        self.leeway_seconds = leeway_seconds
        self._now = now_func

    def validate(self, token: Any) -> str:
        """Return the identity asserted by ``token`` or raise ``AuthInvalid``."""

        if not isinstance(token, str) or not token.strip():
            raise AuthInvalid("missing token")
        token = token.strip()
        if token.startswith("Bearer "):
            token = token[len("Bearer ") :].strip()

        parts = token.split(".")
        if len(parts) != 3:
            raise AuthInvalid("malformed token")
        header_b64, payload_b64, signature_b64 = parts

        expected = _sign(f"{header_b64}.{payload_b64}".encode("utf-8"), self._secret)
        if not hmac.compare_digest(expected, _b64url_decode(signature_b64)):
            raise AuthInvalid("bad signature")

        try:
            header = json.loads(_b64url_decode(header_b64))
            claims = json.loads(_b64url_decode(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise AuthInvalid("malformed payload") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise AuthInvalid("unsupported algorithm")
        if not isinstance(claims, dict):
            raise AuthInvalid("malformed payload")

        exp = claims.get("exp")
        if exp is not None:
            if not isinstance(exp, (int, float)) or isinstance(exp, bool):
                raise AuthInvalid("malformed expiry")
            if self._now() > exp + self.leeway_seconds:
                raise AuthInvalid("token expired")

        identity = claims.get(self.identity_claim)
        if not isinstance(identity, str) or not identity:
            raise AuthInvalid(f"missing {self.identity_claim} claim")
        return identity
