"""aiohttp client for the gateway's HTTP routes and push socket."""

from __future__ import annotations

import asyncio
import base64
import binascii
import inspect
import json
import logging
import urllib.parse
from typing import Any, Callable, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)


class RequestFailed(Exception):
    def __init__(self, status: int, code: str, message: str) -> None:
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"{status} {code}: {message}")


class PushAuthRejected(Exception):
    pass


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _segment(value: str) -> str:
    return urllib.parse.quote(value, safe="")


def unverified_identity(token: str, identity_claim: str = "userId") -> Optional[str]:
    """Read the identity claim without checking the signature (display only)."""

    if token.startswith("Bearer "):
        token = token[len("Bearer ") :]
    parts = token.split(".")
    if len(parts) != 3:
        return None
    padded = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(padded))
    except (binascii.Error, ValueError):
        return None
    identity = claims.get(identity_claim) if isinstance(claims, dict) else None
    return identity if isinstance(identity, str) else None


class GatewayApi:
    """Request/response calls used by the sync engine."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url
        self.token = token
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def __aenter__(self) -> "GatewayApi":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(self, method: str, path: str, payload: Dict[str, Any] | None = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            async with self._client().request(
                method, _build_url(self.base_url, path), json=payload, headers=headers
            ) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None
                if not isinstance(data, dict):
                    data = {}
                if response.status >= 400:
                    raise RequestFailed(
                        response.status,
                        str(data.get("code") or "http_error"),
                        str(data.get("message") or response.reason or "request failed"),
                    )
                return data
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RequestFailed(0, "transport_error", str(exc) or type(exc).__name__) from exc

    async def fetch_partners(self) -> Dict[str, Any]:
        return await self._request("GET", "/v1/messages/partners")

    async def fetch_messages(self, counterpart_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/v1/messages/{_segment(counterpart_id)}")
        return list(data.get("messages") or [])

    async def send_message(self, counterpart_id: str, text: str, image: str = "") -> Dict[str, Any]:
        data = await self._request(
            "POST", f"/v1/messages/send/{_segment(counterpart_id)}", {"text": text, "image": image}
        )
        return data["message"]

    async def mark_seen(self, message_id: str) -> Dict[str, Any]:
        data = await self._request("PUT", f"/v1/messages/mark/{_segment(message_id)}")
        return data.get("message") or {}

    async def delete_message(self, message_id: str) -> Dict[str, Any]:
        data = await self._request("DELETE", f"/v1/messages/{_segment(message_id)}")
        return data.get("message") or {}


class PushListener:
    """Holds the push socket open and feeds frames to ``handler``.

    ``run`` reconnects after transport loss; an auth rejection ends it.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        handler: Callable[[Dict[str, Any]], Any],
        *,
        session: aiohttp.ClientSession | None = None,
        reconnect_delay_s: float = 2.0,
        on_ready: Callable[[str], Any] | None = None,
    ) -> None:
        self.base_url = base_url
        self.token = token
        self.user_id: Optional[str] = None
        self._handler = handler
        self._session = session
        self._reconnect_delay_s = reconnect_delay_s
        self._on_ready = on_ready
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._stopped = False

    async def run(self) -> None:
        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession()
        try:
            while not self._stopped:
                try:
                    await self.run_once(session)
                except (aiohttp.ClientError, ConnectionResetError, asyncio.TimeoutError) as exc:
                    logger.info("push connection lost: %s", exc)
                if self._stopped:
                    break
                await asyncio.sleep(self._reconnect_delay_s)
        finally:
            if owns_session:
                await session.close()

    async def run_once(self, session: aiohttp.ClientSession | None = None) -> None:
        session = session or self._session
        if session is None:
            raise RuntimeError("run_once needs a client session")
        async with session.ws_connect(_build_url(self.base_url, "/v1/ws")) as ws:
            self._ws = ws
            try:
                await self._handshake(ws)
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        try:
                            frame = msg.json()
                        except ValueError:
                            logger.warning("ignoring malformed push frame")
                            continue
                        await self._dispatch(ws, frame)
                    elif msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                        break
            finally:
                self._ws = None

    async def stop(self) -> None:
        self._stopped = True
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.send_json({"v": 1, "t": "session.end"})
            await ws.close()

    async def _handshake(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        await ws.send_json({"v": 1, "t": "session.start", "id": "start", "body": {"token": self.token}})
        msg = await ws.receive()
        if msg.type != aiohttp.WSMsgType.TEXT:
            raise PushAuthRejected("connection closed during handshake")
        frame = msg.json()
        if frame.get("t") == "error":
            raise PushAuthRejected((frame.get("body") or {}).get("message") or "unauthorized")
        if frame.get("t") != "session.ready":
            raise PushAuthRejected(f"unexpected handshake reply {frame.get('t')!r}")
        self.user_id = (frame.get("body") or {}).get("user_id")
        logger.info("push session ready for %s", self.user_id)
        if self._on_ready is not None:
            self._on_ready(self.user_id)

    async def _dispatch(self, ws: aiohttp.ClientWebSocketResponse, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        if frame_type == "ping":
            await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
            return
        if frame_type in {"pong", "error"}:
            if frame_type == "error":
                logger.warning("gateway error: %s", frame.get("body"))
            return
        result = self._handler(frame)
        if inspect.isawaitable(result):
            await result
