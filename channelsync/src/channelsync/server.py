"""Command line entry point: run the aiohttp server or replay scripted frames."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from typing import Iterable, List, TextIO, Tuple

from aiohttp import web

from .config import Settings, load_settings_from_env
from .errors import ChannelSyncError
from .logging_config import setup_logging
from .messages import MessageSubscription
from .store import InMemoryDocumentStore
from .ws_transport import Runtime, create_app


def _emit(output: TextIO, payload: dict) -> None:
    output.write(json.dumps(payload, sort_keys=True) + "\n")


async def _apply_frame(runtime: Runtime, frame: dict, subscriptions: List[Tuple[str, str, MessageSubscription]]) -> dict:
    frame_type = frame.get("t")
    if frame_type == "register":
        account_id = await runtime.identity.register(
            frame["handle"], frame.get("display_name"), account_id=frame.get("account_id")
        )
        return {"t": "registered", "account_id": account_id, "handle": frame["handle"]}
    if frame_type == "create":
        channel_id = await runtime.channels.create(frame["name"], frame.get("visibility", "public"), frame["actor"])
        return {"t": "created", "channel": frame["name"], "channel_id": channel_id}
    if frame_type == "join":
        channel = await runtime.channels.find_by_name(frame["channel"])
        result = await runtime.memberships.request_join(channel.channel_id, frame["actor"])
        return {
            "t": "join",
            "account_id": frame["actor"],
            "channel": channel.name,
            "status": result.status.value,
            "created": result.created,
        }
    if frame_type == "decide":
        channel = await runtime.channels.find_by_name(frame["channel"])
        membership = await runtime.memberships.decide(
            channel.channel_id, frame["actor"], frame["account"], frame["decision"]
        )
        return {
            "t": "decided",
            "account_id": membership.account_id,
            "channel": channel.name,
            "status": membership.status.value,
        }
    if frame_type == "subscribe":
        channel = await runtime.channels.find_by_name(frame["channel"])
        await runtime.require_approved(channel.channel_id, frame["actor"])
        subscription = await runtime.messages.subscribe(channel.channel_id)
        subscriptions.append((frame["actor"], channel.name, subscription))
        return {"t": "subscribed", "account_id": frame["actor"], "channel": channel.name}
    if frame_type == "send":
        channel = await runtime.channels.find_by_name(frame["channel"])
        message = await runtime.messages.append(channel.channel_id, frame["actor"], frame["text"])
        return {"t": "sent", "channel": channel.name, "message_id": message.message_id, "seq": message.seq}
    raise ValueError(f"unsupported frame type: {frame_type}")


async def simulate_async(frames: Iterable[dict], output: TextIO, settings: Settings | None = None) -> None:
    runtime = Runtime(store=InMemoryDocumentStore(), settings=settings or Settings())
    subscriptions: List[Tuple[str, str, MessageSubscription]] = []
    try:
        for frame in frames:
            try:
                result = await _apply_frame(runtime, frame, subscriptions)
            except ChannelSyncError as exc:
                result = {"t": "error", "frame": frame.get("t"), "code": exc.code, "message": exc.message}
            _emit(output, result)
            for subscriber, channel_name, subscription in subscriptions:
                for message in subscription.pending_nowait():
                    _emit(
                        output,
                        {
                            "t": "message",
                            "subscriber": subscriber,
                            "channel": channel_name,
                            "sender_id": message.sender_id,
                            "sender_name": message.sender_name,
                            "text": message.text,
                            "seq": message.seq,
                        },
                    )
    finally:
        for _, _, subscription in subscriptions:
            subscription.close()
        runtime.close()


def simulate(frames: Iterable[dict], output: TextIO, settings: Settings | None = None) -> None:
    """Run JSON frames through an in-memory runtime and write one JSON line per outcome."""

    asyncio.run(simulate_async(list(frames), output, settings))


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
    if args.file is None:
        frames = _load_frames(sys.stdin)
    else:
        with args.file as handle:
            frames = _load_frames(handle)
    simulate(frames, output)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    settings = load_settings_from_env()
    overrides = {}
    if args.db is not None:
        overrides["db_path"] = args.db
    if args.app_id is not None:
        overrides["app_id"] = args.app_id
    settings = dataclasses.replace(settings, **overrides)
    setup_logging(settings.log_level)
    app = create_app(settings=settings, ping_interval_s=args.ping_interval)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Channel membership and message sync server")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay JSON frames against an in-memory runtime")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument("--app-id", type=str, default=None, help="Tenant scope for every stored record")

    args = parser.parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
