"""Gateway entry point with token and simulation helpers."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Iterable, TextIO

from aiohttp import web

from .auth import issue_token
from .config import ConfigError, GatewayConfig
from .directory import UserDirectory
from .dispatcher import MessageDispatcher
from .presence import PresenceRegistry
from .store import MessageStore
from .ws_transport import create_app

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class _SimulatedConnection:
    def __init__(self, user_id: str, label: str, output: TextIO) -> None:
        self.user_id = user_id
        self.label = label
        self._output = output

    def push(self, frame: dict) -> None:
        message = {"t": "push", "to": self.user_id, "handle": self.label, "frame": frame}
        self._output.write(json.dumps(message, sort_keys=True) + "\n")


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Run connect/disconnect/send/delete frames through the presence core.

    Every push the core performs is written to ``output`` as one JSON line.
    """

    presence = PresenceRegistry()
    dispatcher = MessageDispatcher(MessageStore(), presence, UserDirectory())
    handles: dict[str, _SimulatedConnection] = {}
    last_message_id: str | None = None

    for frame in frames:
        frame_type = frame.get("t")
        if frame_type == "connect":
            user_id = frame["user_id"]
            label = frame.get("handle") or f"{user_id}#{len(handles) + 1}"
            handle = _SimulatedConnection(user_id, label, output)
            handles[label] = handle
            dispatcher.directory.touch(user_id)
            presence.register(user_id, handle)
        elif frame_type == "disconnect":
            user_id = frame["user_id"]
            label = frame.get("handle")
            handle = handles.get(label) if label else presence.lookup(user_id)
            if handle is not None:
                presence.deregister(user_id, handle)
        elif frame_type == "send":
            message = dispatcher.send(frame["sender_id"], frame["receiver_id"], frame.get("text"), frame.get("image"))
            last_message_id = message.id
        elif frame_type == "delete":
            message_id = frame.get("message_id") or last_message_id
            if message_id is None:
                raise ValueError("delete without a prior send needs message_id")
            dispatcher.delete(frame["user_id"], message_id)
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output)
    return 0


def _run_issue_token(args: argparse.Namespace, config: GatewayConfig, output: TextIO) -> int:
    secret = args.secret or config.jwt_secret
    if not secret:
        print("error: a secret is required (--secret or CHAT_JWT_SECRET)", file=sys.stderr)
        return 2
    token = issue_token(
        args.user_id,
        secret,
        ttl_seconds=args.ttl if args.ttl > 0 else None,
        identity_claim=config.identity_claim,
    )
    output.write(token + "\n")
    return 0


def _run_serve(args: argparse.Namespace, config: GatewayConfig) -> int:
    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.ping_interval is not None:
        config.ping_interval_s = args.ping_interval
    if args.db is not None:
        config.db_path = args.db
    if args.close_replaced:
        config.close_replaced_connections = True
    try:
        config.validate()
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(level=config.log_level.upper(), format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    app = create_app(config)
    web.run_app(app, host=config.host, port=config.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="chat-gateway", description="Presence and messaging gateway")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--ping-interval", type=int, default=None, help="Seconds between heartbeat pings")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument(
        "--close-replaced",
        action="store_true",
        help="Close a user's older connection when they connect again",
    )

    token_parser = subparsers.add_parser("issue-token", help="Mint a development bearer token")
    token_parser.add_argument("user_id", help="Identity to embed in the token")
    token_parser.add_argument("--secret", default=None, help="Signing secret; defaults to CHAT_JWT_SECRET")
    token_parser.add_argument("--ttl", type=int, default=7 * 24 * 60 * 60, help="Lifetime in seconds, 0 for none")

    simulate_parser = subparsers.add_parser("simulate", help="Simulate presence and message frames")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    args = parser.parse_args(argv)
    try:
        config = GatewayConfig.from_env()
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    if args.command == "issue-token":
        return _run_issue_token(args, config, output or sys.stdout)
    return _run_serve(args, config)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
