"""Command line client: inspect conversations, send messages, follow pushes."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, TextIO

from chat_client import credentials_store
from chat_client.gateway_client import GatewayApi, PushListener, PushAuthRejected, unverified_identity
from chat_client.messages import ChatMessage
from chat_client.sync_engine import ClientSyncEngine, SyncError


def _format_message(message: ChatMessage, me: str) -> str:
    who = "me" if message.sender_id == me else message.sender_id
    image = f" [image {message.image}]" if message.image else ""
    marker = " (seen)" if message.seen and message.sender_id == me else ""
    return f"{who}: {message.text}{image}{marker}"


def _engine(api: GatewayApi, token: str, errors: TextIO) -> ClientSyncEngine:
    def notify(error: SyncError) -> None:
        errors.write(f"error: {error}\n")

    return ClientSyncEngine(api, unverified_identity(token) or "me", notify=notify)


async def _partners(creds: Dict[str, str], output: TextIO, errors: TextIO) -> int:
    async with GatewayApi(creds["base_url"], creds["token"]) as api:
        engine = _engine(api, creds["token"], errors)
        try:
            partners = await engine.load_partners()
        except SyncError:
            return 1
        for partner in partners:
            unseen = engine.unseen(partner.user_id)
            suffix = f" ({unseen} unseen)" if unseen else ""
            output.write(f"{partner.user_id}\t{partner.name}{suffix}\n")
    return 0


async def _history(creds: Dict[str, str], counterpart_id: str, output: TextIO, errors: TextIO) -> int:
    async with GatewayApi(creds["base_url"], creds["token"]) as api:
        engine = _engine(api, creds["token"], errors)
        try:
            messages = await engine.open(counterpart_id)
        except SyncError:
            return 1
        for message in reversed(messages):
            output.write(_format_message(message, engine.user_id) + "\n")
    return 0


async def _send(creds: Dict[str, str], counterpart_id: str, text: str, image: str, output: TextIO, errors: TextIO) -> int:
    async with GatewayApi(creds["base_url"], creds["token"]) as api:
        engine = _engine(api, creds["token"], errors)
        try:
            await engine.open(counterpart_id)
            message = await engine.send(text, image)
        except SyncError:
            return 1
        output.write(f"sent {message.id}\n")
    return 0


async def _listen(creds: Dict[str, str], counterpart_id: str | None, output: TextIO, errors: TextIO) -> int:
    async with GatewayApi(creds["base_url"], creds["token"]) as api:
        engine = _engine(api, creds["token"], errors)
        if counterpart_id:
            try:
                await engine.open(counterpart_id)
            except SyncError:
                return 1

        def on_push(frame: Dict[str, Any]) -> None:
            if not engine.handle_push(frame):
                return
            frame_type = frame.get("t")
            if frame_type == "getOnlineUsers":
                output.write("online: " + ", ".join(sorted(engine.online_users)) + "\n")
            elif frame_type == "newMessage":
                message = ChatMessage.from_payload(frame["body"])
                if engine.open_counterpart and message.involves(engine.open_counterpart):
                    output.write(_format_message(message, engine.user_id) + "\n")
                else:
                    other_id = message.counterpart_of(engine.user_id)
                    output.write(f"{other_id}: {engine.unseen(other_id)} unseen\n")
            elif frame_type == "messageDeleted":
                output.write(f"deleted {frame['body'].get('id')}\n")
            output.flush()

        def on_ready(user_id: str) -> None:
            engine.user_id = user_id

        listener = PushListener(creds["base_url"], creds["token"], on_push, on_ready=on_ready)
        try:
            await listener.run()
        except PushAuthRejected as exc:
            errors.write(f"error: push connection refused: {exc}\n")
            return 1
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None, errors: TextIO | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    output = output or sys.stdout
    errors = errors or sys.stderr

    parser = argparse.ArgumentParser(prog="chat-client", description="Two-party chat client")
    parser.add_argument(
        "--credentials",
        type=Path,
        default=credentials_store.CREDENTIALS_PATH,
        help="Where the gateway URL and token are stored",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log client activity to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    login_parser = subparsers.add_parser("login", help="Store gateway URL and bearer token")
    login_parser.add_argument("--url", required=True, help="Gateway base URL, e.g. http://127.0.0.1:8080")
    login_parser.add_argument("--token", required=True, help="Bearer token issued by the auth service")

    subparsers.add_parser("partners", help="List conversation partners and unseen counts")

    history_parser = subparsers.add_parser("history", help="Print a conversation, oldest first")
    history_parser.add_argument("user_id")

    send_parser = subparsers.add_parser("send", help="Send a message")
    send_parser.add_argument("user_id")
    send_parser.add_argument("text", nargs="?", default="")
    send_parser.add_argument("--image", default="", help="Image reference to attach")

    listen_parser = subparsers.add_parser("listen", help="Follow presence and message pushes")
    listen_parser.add_argument("--open", dest="open_user", default=None, help="Conversation to keep open")

    args = parser.parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if args.command == "login":
        credentials_store.save_credentials(args.url, args.token, args.credentials)
        output.write(f"saved credentials for {unverified_identity(args.token) or 'unknown user'}\n")
        return 0

    creds = credentials_store.load_credentials(args.credentials)
    if creds is None:
        errors.write("error: not logged in; run `chat-client login` first\n")
        return 2

    if args.command == "partners":
        return asyncio.run(_partners(creds, output, errors))
    if args.command == "history":
        return asyncio.run(_history(creds, args.user_id, output, errors))
    if args.command == "send":
        if not args.text and not args.image:
            errors.write("error: nothing to send\n")
            return 2
        return asyncio.run(_send(creds, args.user_id, args.text, args.image, output, errors))
    try:
        return asyncio.run(_listen(creds, args.open_user, output, errors))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
