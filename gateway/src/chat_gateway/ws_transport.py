from __future__ import annotations

import asyncio
import enum
import logging
import weakref
from typing import Any, Optional

from aiohttp import WSMsgType, web

from .auth import AuthInvalid, TokenValidator
from .config import GatewayConfig
from .directory import UserDirectory
from .dispatcher import Forbidden, InvalidMessage, MessageDispatcher, MessageNotFound, Store
from .presence import PresenceRegistry
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteMessageStore
from .store import MessageStore

logger = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    CLOSED = "closed"


_TRANSITIONS = {
    ConnectionState.CONNECTING: {ConnectionState.AUTHENTICATED, ConnectionState.CLOSED},
    ConnectionState.AUTHENTICATED: {ConnectionState.ACTIVE, ConnectionState.CLOSED},
    ConnectionState.ACTIVE: {ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}


class ConnectionClosedError(Exception):
    pass


class Connection:
    """One client WebSocket; the handle stored in the presence registry.

    Frames pushed from other connections are queued and written by a single
    writer task, so delivery order on this socket matches push order.
    """

    def __init__(self, ws: web.WebSocketResponse, *, queue_size: int = 1000) -> None:
        self.ws = ws
        self.identity: Optional[str] = None
        self.state = ConnectionState.CONNECTING
        self._outbound: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=queue_size)
        self._writer_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<Connection {self.identity or '?'} {self.state.value}>"

    def transition(self, new_state: ConnectionState) -> None:
        if new_state is self.state and new_state is ConnectionState.CLOSED:
            return
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    def push(self, frame: dict) -> None:
        if self.state is ConnectionState.CLOSED:
            raise ConnectionClosedError(f"{self!r} is closed")
        try:
            self._outbound.put_nowait(frame)
        except asyncio.QueueFull:
            if self._close_task is None:
                self._close_task = asyncio.get_running_loop().create_task(
                    self.close(code=1011, message="backpressure")
                )
            raise ConnectionClosedError(f"{self!r} outbound queue full") from None

    def start_writer(self) -> None:
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._writer())

    async def stop_writer(self) -> None:
        if self._writer_task is None:
            return
        try:
            self._outbound.put_nowait(None)
        except asyncio.QueueFull:
            self._writer_task.cancel()
        await asyncio.gather(self._writer_task, return_exceptions=True)
        self._writer_task = None

    async def close(self, *, code: int = 1000, message: str = "") -> None:
        self.transition(ConnectionState.CLOSED)
        if not self.ws.closed:
            await self.ws.close(code=code, message=message.encode("utf-8"))

    async def _writer(self) -> None:
        try:
            while True:
                frame = await self._outbound.get()
                if frame is None:
                    break
                await self.ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except (ConnectionResetError, RuntimeError):
            logger.debug("writer for %r stopped: transport gone", self)


class Runtime:
    def __init__(
        self,
        *,
        config: GatewayConfig,
        validator: TokenValidator,
        presence: PresenceRegistry,
        dispatcher: MessageDispatcher,
        directory: UserDirectory,
        store: Store,
    ) -> None:
        self.config = config
        self.validator = validator
        self.presence = presence
        self.dispatcher = dispatcher
        self.directory = directory
        self.store = store
        self.connections: "weakref.WeakSet[Connection]" = weakref.WeakSet()


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _error("unauthorized", "invalid bearer token", 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _authenticate_request(request: web.Request) -> str | None:
    runtime: Runtime = request.app["runtime"]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    try:
        user_id = runtime.validator.validate(auth_header[len("Bearer ") :])
    except AuthInvalid as exc:
        logger.info("rejected request to %s: %s", request.path, exc)
        return None
    runtime.directory.touch(user_id)
    return user_id


async def handle_partners(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user_id = _authenticate_request(request)
    if user_id is None:
        return _unauthorized()
    users, unseen = runtime.dispatcher.partners(user_id)
    return web.json_response({"users": [user.to_payload() for user in users], "unseen": unseen})


async def handle_conversation(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user_id = _authenticate_request(request)
    if user_id is None:
        return _unauthorized()
    counterpart_id = request.match_info["user_id"]
    messages = runtime.dispatcher.conversation(user_id, counterpart_id)
    return web.json_response({"messages": [message.to_payload() for message in messages]})


async def handle_send(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user_id = _authenticate_request(request)
    if user_id is None:
        return _unauthorized()
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    if not isinstance(body, dict):
        return _invalid_request("body must be an object")

    try:
        message = runtime.dispatcher.send(
            user_id, request.match_info["user_id"], body.get("text"), body.get("image")
        )
    except InvalidMessage as exc:
        return _invalid_request(str(exc))
    return web.json_response({"message": message.to_payload()})


async def handle_mark_seen(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user_id = _authenticate_request(request)
    if user_id is None:
        return _unauthorized()
    try:
        message = runtime.dispatcher.mark_seen(user_id, request.match_info["message_id"])
    except MessageNotFound:
        return _error("not_found", "unknown message", 404)
    except Forbidden as exc:
        return _error("forbidden", str(exc), 403)
    return web.json_response({"message": message.to_payload()})


async def handle_delete(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user_id = _authenticate_request(request)
    if user_id is None:
        return _unauthorized()
    try:
        message = runtime.dispatcher.delete(user_id, request.match_info["message_id"])
    except MessageNotFound:
        return _error("not_found", "unknown message", 404)
    except Forbidden as exc:
        return _error("forbidden", str(exc), 403)
    return web.json_response({"message": message.to_payload()})


def create_app(
    config: GatewayConfig | None = None,
    *,
    presence: PresenceRegistry | None = None,
    store: Store | None = None,
    directory: UserDirectory | None = None,
    validator: TokenValidator | None = None,
) -> web.Application:
    config = config or GatewayConfig()
    if validator is None:
        validator = TokenValidator(
            config.jwt_secret,
            identity_claim=config.identity_claim,
            leeway_seconds=config.token_leeway_s,
        )
    if store is None:
        store = SQLiteMessageStore(SQLiteBackend(config.db_path)) if config.db_path else MessageStore()
    presence = presence or PresenceRegistry()
    directory = directory or UserDirectory()
    runtime = Runtime(
        config=config,
        validator=validator,
        presence=presence,
        dispatcher=MessageDispatcher(store, presence, directory),
        directory=directory,
        store=store,
    )

    app = web.Application(client_max_size=config.max_msg_size)
    app["runtime"] = runtime
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/messages/partners", handle_partners)
    app.router.add_get("/v1/messages/{user_id}", handle_conversation)
    app.router.add_post("/v1/messages/send/{user_id}", handle_send)
    app.router.add_put("/v1/messages/mark/{message_id}", handle_mark_seen)
    app.router.add_delete("/v1/messages/{message_id}", handle_delete)
    app.router.add_get("/v1/ws", websocket_handler)

    async def close_connections(_: web.Application) -> None:
        for connection in list(runtime.connections):
            if connection.state is not ConnectionState.CLOSED:
                await connection.close(code=1001, message="server shutdown")

    async def close_runtime(_: web.Application) -> None:
        presence.close()
        store.close()

    app.on_shutdown.append(close_connections)
    app.on_cleanup.append(close_runtime)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def _read_handshake(ws: web.WebSocketResponse, timeout: float) -> tuple[Any, Any]:
    """Return ``(token, request_id)`` from the ``session.start`` frame."""

    try:
        first_msg = await asyncio.wait_for(ws.receive(), timeout=timeout)
    except asyncio.TimeoutError:
        raise AuthInvalid("handshake timeout") from None
    if first_msg.type != WSMsgType.TEXT:
        raise AuthInvalid("invalid handshake")
    try:
        payload = first_msg.json()
    except ValueError:
        raise AuthInvalid("invalid json") from None
    if not isinstance(payload, dict) or payload.get("v") != 1:
        raise AuthInvalid("unsupported version")
    if payload.get("t") != "session.start":
        raise AuthInvalid("first frame must start session")
    body = payload.get("body") or {}
    if not isinstance(body, dict):
        raise AuthInvalid("invalid handshake body")
    return body.get("token"), payload.get("id")


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    config = runtime.config

    ws = web.WebSocketResponse(max_msg_size=config.max_msg_size)
    await ws.prepare(request)
    connection = Connection(ws, queue_size=config.outbound_queue_size)
    runtime.connections.add(connection)

    request_id = None
    try:
        token, request_id = await _read_handshake(ws, config.ping_interval_s)
        identity = runtime.validator.validate(token)
    except Exception as exc:
        reason = str(exc) if isinstance(exc, AuthInvalid) else "internal error"
        if not isinstance(exc, AuthInvalid):
            logger.exception("handshake from %s failed", request.remote)
        logger.info("connection from %s refused: %s", request.remote, reason)
        connection.transition(ConnectionState.CLOSED)
        if not ws.closed:
            try:
                await ws.send_json(_error_frame("unauthorized", reason, request_id=request_id))
            except ConnectionResetError:
                pass
            await ws.close(code=1008, message=b"unauthorized")
        return ws

    connection.identity = identity
    connection.transition(ConnectionState.AUTHENTICATED)
    runtime.directory.touch(identity)
    await ws.send_json({"v": 1, "t": "session.ready", "id": request_id, "body": {"user_id": identity}})
    logger.info("%s connected from %s", identity, request.remote)

    connection.start_writer()
    previous = runtime.presence.register(identity, connection)
    if previous is not None and config.close_replaced_connections and isinstance(previous, Connection):
        asyncio.create_task(previous.close(code=4000, message="replaced"))
    connection.transition(ConnectionState.ACTIVE)

    last_activity = asyncio.get_running_loop().time()
    missed_heartbeats = 0

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_running_loop().time()
        missed_heartbeats = 0

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(config.ping_interval_s)
                if ws.closed:
                    return
                now = asyncio.get_running_loop().time()
                if now - last_activity >= config.ping_interval_s:
                    connection.push({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > config.ping_miss_limit:
                        await connection.close(code=1001, message="heartbeat timeout")
                        return
        except (asyncio.CancelledError, ConnectionClosedError):
            return

    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    connection.push(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    connection.push(_error_frame("invalid_request", "unsupported version"))
                    continue

                frame_type = frame.get("t")
                if frame_type == "ping":
                    connection.push({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "pong":
                    continue
                elif frame_type == "session.end":
                    break
                else:
                    connection.push(
                        _error_frame("invalid_request", "unknown frame type", request_id=frame.get("id"))
                    )
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await connection.close(code=1003, message="unsupported frame type")
                break
    except ConnectionClosedError:
        pass
    finally:
        heartbeat_task.cancel()
        connection.transition(ConnectionState.CLOSED)
        runtime.presence.deregister(identity, connection)
        await asyncio.gather(heartbeat_task, return_exceptions=True)
        await connection.stop_writer()
        if not ws.closed:
            await ws.close()
        logger.info("%s disconnected", identity)

    return ws
