from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Tuple

from aiohttp import WSMsgType, web

from .channels import ChannelRegistry
from .config import Settings
from .errors import (
    AccessDenied,
    ChannelSyncError,
    ConflictError,
    NotApprovedMember,
    NotFoundError,
    TransportError,
    ValidationError,
)
from .identity import IdentityDirectory
from .membership import MembershipStateMachine
from .messages import MessageStream, MessageSubscription
from .models import Channel, Membership, MembershipStatus
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteDocumentStore
from .store import InMemoryDocumentStore
from .sync import AccountViews, SyncFacade, ViewState


logger = logging.getLogger(__name__)


class Runtime:
    def __init__(self, *, store, settings: Settings) -> None:
        scope = settings.scope
        self.store = store
        self.settings = settings
        self.identity = IdentityDirectory(store, scope)
        self.channels = ChannelRegistry(store, scope)
        self.memberships = MembershipStateMachine(store, scope, self.channels)
        self.messages = MessageStream(
            store, scope, self.memberships, max_message_length=settings.max_message_length
        )
        self.sync = SyncFacade(
            store,
            scope,
            self.channels,
            retry_initial_delay_s=settings.retry_initial_delay_s,
            retry_max_delay_s=settings.retry_max_delay_s,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Runtime":
        if settings.db_path is not None:
            store = SQLiteDocumentStore(SQLiteBackend(settings.db_path))
        else:
            store = InMemoryDocumentStore()
        return cls(store=store, settings=settings)

    async def require_approved(self, channel_id: str, account_id: str) -> Membership:
        await self.channels.get(channel_id)
        membership = await self.memberships.get(channel_id, account_id)
        if membership is None or membership.status is not MembershipStatus.APPROVED:
            raise NotApprovedMember(f"{account_id!r} is not an approved member of {channel_id!r}")
        return membership

    def close(self) -> None:
        self.store.close()


_ERROR_STATUS: Tuple[Tuple[type, int], ...] = (
    (ValidationError, 400),
    (ConflictError, 409),
    (AccessDenied, 403),
    (NotFoundError, 404),
    (TransportError, 503),
)


def _status_for(exc: ChannelSyncError) -> int:
    for error_type, status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 400


def _error_response(exc: ChannelSyncError) -> web.Response:
    return web.json_response({"code": exc.code, "message": exc.message}, status=_status_for(exc))


def _unauthorized() -> web.Response:
    return web.json_response({"code": "unauthorized", "message": "missing bearer account"}, status=401)


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _authenticate_request(request: web.Request) -> str | None:
    """Return the account id carried by an already-verified bearer token."""

    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    account_id = auth_header[len("Bearer ") :].strip()
    return account_id or None


async def _read_body(request: web.Request) -> dict | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def _optional_str(body: dict, key: str) -> Tuple[bool, str | None]:
    value = body.get(key)
    return (value is None or isinstance(value, str)), value


def _channel_for(channel: Channel, account_id: str) -> dict[str, Any]:
    payload = channel.to_api_dict()
    if account_id not in channel.members:
        payload.pop("members", None)
    return payload


def _pending_entry(entry: Tuple[Channel, Membership]) -> dict[str, Any]:
    channel, membership = entry
    return {"channel": channel.to_api_dict(), "membership": membership.to_api_dict()}


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_register(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    account_id = _authenticate_request(request)
    if account_id is None:
        return _unauthorized()
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")

    handle = body.get("handle")
    ok_name, display_name = _optional_str(body, "display_name")
    ok_avatar, avatar = _optional_str(body, "avatar")
    if not isinstance(handle, str) or not ok_name or not ok_avatar:
        return _invalid_request("handle required; display_name and avatar must be strings")
    try:
        await runtime.identity.register(handle, display_name, account_id=account_id, avatar=avatar or "")
        account = await runtime.identity.lookup(account_id)
    except ChannelSyncError as exc:
        return _error_response(exc)
    return web.json_response({"status": "ok", "account": account.to_api_dict()})


async def handle_account_get(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    if _authenticate_request(request) is None:
        return _unauthorized()
    try:
        account = await runtime.identity.lookup(request.match_info["account_id"])
    except ChannelSyncError as exc:
        return _error_response(exc)
    return web.json_response(account.to_api_dict())


async def handle_profile_update(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    account_id = _authenticate_request(request)
    if account_id is None:
        return _unauthorized()
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")

    ok_name, display_name = _optional_str(body, "display_name")
    ok_avatar, avatar = _optional_str(body, "avatar")
    if not ok_name or not ok_avatar:
        return _invalid_request("display_name and avatar must be strings")
    try:
        account = await runtime.identity.update_profile(
            account_id, account_id, display_name=display_name, avatar=avatar
        )
    except ChannelSyncError as exc:
        return _error_response(exc)
    return web.json_response({"status": "ok", "account": account.to_api_dict()})


async def handle_channel_create(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    account_id = _authenticate_request(request)
    if account_id is None:
        return _unauthorized()
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")

    name = body.get("name")
    visibility = body.get("visibility")
    ok_avatar, avatar = _optional_str(body, "avatar")
    if not isinstance(name, str) or not isinstance(visibility, str) or not ok_avatar:
        return _invalid_request("name and visibility required")
    try:
        channel_id = await runtime.channels.create(name, visibility, account_id, avatar=avatar or "")
        channel = await runtime.channels.get(channel_id)
    except ChannelSyncError as exc:
        return _error_response(exc)
    return web.json_response({"status": "ok", "channel": channel.to_api_dict()})


async def handle_channel_lookup(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    account_id = _authenticate_request(request)
    if account_id is None:
        return _unauthorized()
    name = request.query.get("name")
    if not name:
        return _invalid_request("name required")
    try:
        channel = await runtime.channels.find_by_name(name)
    except ChannelSyncError as exc:
        return _error_response(exc)
    return web.json_response(_channel_for(channel, account_id))


async def handle_channels_joined(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    account_id = _authenticate_request(request)
    if account_id is None:
        return _unauthorized()
    try:
        channels = await runtime.channels.list_for_account(account_id)
    except ChannelSyncError as exc:
        return _error_response(exc)
    return web.json_response({"channels": [channel.to_api_dict() for channel in channels]})


async def handle_channels_pending(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    account_id = _authenticate_request(request)
    if account_id is None:
        return _unauthorized()
    try:
        entries = await runtime.channels.list_pending_administered_by(account_id)
    except ChannelSyncError as exc:
        return _error_response(exc)
    return web.json_response({"requests": [_pending_entry(entry) for entry in entries]})


async def handle_channel_join(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    account_id = _authenticate_request(request)
    if account_id is None:
        return _unauthorized()
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")

    channel_id = body.get("channel_id")
    if not isinstance(channel_id, str) or not channel_id:
        return _invalid_request("channel_id required")
    try:
        result = await runtime.memberships.request_join(channel_id, account_id)
    except ChannelSyncError as exc:
        return _error_response(exc)
    return web.json_response(
        {
            "status": result.status.value,
            "created": result.created,
            "already_member": result.already_member,
            "membership": result.membership.to_api_dict(),
        }
    )


async def handle_channel_decide(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    account_id = _authenticate_request(request)
    if account_id is None:
        return _unauthorized()
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")

    channel_id = body.get("channel_id")
    target = body.get("account_id")
    decision = body.get("decision")
    if not all(isinstance(value, str) and value for value in (channel_id, target, decision)):
        return _invalid_request("channel_id, account_id and decision required")
    try:
        membership = await runtime.memberships.decide(channel_id, account_id, target, decision)
    except ChannelSyncError as exc:
        return _error_response(exc)
    return web.json_response({"status": "ok", "membership": membership.to_api_dict()})


async def handle_channel_members(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    account_id = _authenticate_request(request)
    if account_id is None:
        return _unauthorized()
    channel_id = request.query.get("channel_id")
    if not channel_id:
        return _invalid_request("channel_id required")
    try:
        await runtime.require_approved(channel_id, account_id)
        members = await runtime.channels.list_members(channel_id)
    except ChannelSyncError as exc:
        return _error_response(exc)
    return web.json_response({"channel_id": channel_id, "members": [m.to_api_dict() for m in members]})


async def handle_message_send(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    account_id = _authenticate_request(request)
    if account_id is None:
        return _unauthorized()
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")

    channel_id = body.get("channel_id")
    text = body.get("text")
    if not isinstance(channel_id, str) or not channel_id or not isinstance(text, str):
        return _invalid_request("channel_id and text required")
    try:
        message = await runtime.messages.append(channel_id, account_id, text)
    except ChannelSyncError as exc:
        return _error_response(exc)
    return web.json_response({"status": "ok", "message": message.to_api_dict()})


async def handle_message_history(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    account_id = _authenticate_request(request)
    if account_id is None:
        return _unauthorized()
    channel_id = request.query.get("channel_id")
    if not channel_id:
        return _invalid_request("channel_id required")
    limit: int | None = None
    raw_limit = request.query.get("limit")
    if raw_limit is not None:
        try:
            limit = int(raw_limit)
        except ValueError:
            return _invalid_request("limit must be an integer")
    try:
        await runtime.require_approved(channel_id, account_id)
        messages = await runtime.messages.history(channel_id, limit=limit)
    except ChannelSyncError as exc:
        return _error_response(exc)
    return web.json_response({"channel_id": channel_id, "messages": [m.to_api_dict() for m in messages]})


def create_app(
    *,
    settings: Settings | None = None,
    store=None,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    outbound_queue_size: int = 1000,
) -> web.Application:
    settings = settings or Settings()
    if store is not None:
        runtime = Runtime(store=store, settings=settings)
    else:
        runtime = Runtime.from_settings(settings)

    app = web.Application()
    app["runtime"] = runtime
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
        "outbound_queue_size": outbound_queue_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/accounts/register", handle_register)
    app.router.add_post("/v1/accounts/profile", handle_profile_update)
    app.router.add_get("/v1/accounts/{account_id}", handle_account_get)
    app.router.add_post("/v1/channels/create", handle_channel_create)
    app.router.add_get("/v1/channels/lookup", handle_channel_lookup)
    app.router.add_get("/v1/channels/joined", handle_channels_joined)
    app.router.add_get("/v1/channels/pending", handle_channels_pending)
    app.router.add_post("/v1/channels/join", handle_channel_join)
    app.router.add_post("/v1/channels/decide", handle_channel_decide)
    app.router.add_get("/v1/channels/members", handle_channel_members)
    app.router.add_post("/v1/messages/send", handle_message_send)
    app.router.add_get("/v1/messages/history", handle_message_history)
    app.router.add_get("/v1/ws", websocket_handler)

    async def close_store(_: web.Application) -> None:
        runtime.close()

    app.on_cleanup.append(close_store)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _view_frame(frame_type: str, state: ViewState, encode: Callable[[Any], dict]) -> dict[str, Any]:
    body: dict[str, Any] = {"items": [encode(item) for item in state.items], "stale": state.stale}
    if state.error is not None:
        body["error"] = getattr(state.error, "code", "error")
    return {"v": 1, "t": frame_type, "body": body}


async def websocket_handler(request: web.Request) -> web.StreamResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    account_id = _authenticate_request(request)
    if account_id is None:
        return _unauthorized()

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    last_activity = asyncio.get_running_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=ws_config["outbound_queue_size"])
    subscriptions: Dict[str, Tuple[MessageSubscription, asyncio.Task]] = {}
    views: AccountViews | None = None
    closed = False
    close_task: asyncio.Task | None = None

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_running_loop().time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        nonlocal close_task
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            if closed or close_task is not None:
                return
            logger.warning("closing socket for %s: outbound queue full", account_id)
            close_task = asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_running_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    async def pump(subscription: MessageSubscription) -> None:
        try:
            async for message in subscription:
                enqueue({"v": 1, "t": "message", "body": message.to_api_dict()})
        except TransportError as exc:
            enqueue(_error_frame(exc.code, exc.message))

    async def subscribe_channel(channel_id: str, request_id: str | None) -> None:
        subscription: MessageSubscription | None = None
        try:
            await runtime.require_approved(channel_id, account_id)
            if channel_id not in subscriptions:
                subscription = await runtime.messages.subscribe(channel_id)
        except ChannelSyncError as exc:
            await ws.send_json(_error_frame(exc.code, exc.message, request_id=request_id))
            return
        await ws.send_json({"v": 1, "t": "channel.subscribed", "id": request_id, "body": {"channel_id": channel_id}})
        if subscription is not None:
            subscriptions[channel_id] = (subscription, asyncio.create_task(pump(subscription)))

    async def unsubscribe_channel(channel_id: str) -> None:
        entry = subscriptions.pop(channel_id, None)
        if entry is None:
            return
        subscription, task = entry
        subscription.close()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    await ws.send_json(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    await ws.send_json(_error_frame("invalid_request", "frame must be an object"))
                    continue

                mark_activity()
                if frame.get("v") != 1:
                    await ws.send_json(_error_frame("invalid_request", "unsupported version", request_id=frame.get("id")))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body")
                if body is None:
                    body = {}
                if not isinstance(body, dict):
                    await ws.send_json(_error_frame("invalid_request", "body must be an object", request_id=frame.get("id")))
                    continue

                if frame_type == "ping":
                    await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "pong":
                    continue
                elif frame_type == "channel.subscribe":
                    channel_id = body.get("channel_id")
                    if not isinstance(channel_id, str) or not channel_id:
                        await ws.send_json(_error_frame("invalid_request", "channel_id required", request_id=frame.get("id")))
                        continue
                    await subscribe_channel(channel_id, frame.get("id"))
                elif frame_type == "channel.unsubscribe":
                    channel_id = body.get("channel_id")
                    if not isinstance(channel_id, str) or not channel_id:
                        await ws.send_json(_error_frame("invalid_request", "channel_id required", request_id=frame.get("id")))
                        continue
                    await unsubscribe_channel(channel_id)
                    await ws.send_json(
                        {"v": 1, "t": "channel.unsubscribed", "id": frame.get("id"), "body": {"channel_id": channel_id}}
                    )
                elif frame_type == "views.subscribe":
                    if views is None:
                        views = await runtime.sync.views_for(account_id)
                        views.joined.add_listener(
                            lambda state: enqueue(_view_frame("view.joined", state, Channel.to_api_dict))
                        )
                        views.pending.add_listener(
                            lambda state: enqueue(_view_frame("view.pending", state, _pending_entry))
                        )
                else:
                    await ws.send_json(_error_frame("invalid_request", "unknown frame type", request_id=frame.get("id")))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        for channel_id in list(subscriptions):
            await unsubscribe_channel(channel_id)
        if views is not None:
            await views.close()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        pending = [heartbeat_task, writer_task]
        if close_task is not None:
            pending.append(close_task)
        await asyncio.gather(*pending, return_exceptions=True)

    return ws
