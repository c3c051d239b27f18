from __future__ import annotations

import asyncio
import logging
from typing import List, Union

from .config import Scope
from .documents import ChangeEvent, Create, Increment, PreconditionFailed, Update
from .errors import ChannelNotFound, ConflictError, EmptyText, NotApprovedMember, TransportError, ValidationError
from .locks import KeyedLocks
from .membership import MembershipStateMachine
from .models import Capability, Message, _now_ms, new_id


logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGE_LENGTH = 4000
_APPEND_ATTEMPTS = 3


class MessageSubscription:
    """Live feed of one channel's messages.

    Yields the stored history ordered by ``(ts_ms, seq)`` and then each new
    message as it is committed. Iteration ends after :meth:`close`; a dropped
    watch is raised from the iterator as :class:`TransportError`.
    """

    def __init__(self, store, scope: Scope, channel_id: str) -> None:
        self.channel_id = channel_id
        self._store = store
        self._scope = scope
        self._queue: asyncio.Queue[Union[Message, TransportError, None]] = asyncio.Queue()
        self._watch = None
        self._buffer: List[Message] | None = []
        self._last_key: tuple[int, int] = (-1, -1)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> "MessageSubscription":
        self._watch = await self._store.watch(
            self._scope.messages(self.channel_id), None, self._on_change, on_error=self._on_error
        )
        buffered = sorted(self._buffer or [], key=lambda message: message.order_key)
        self._buffer = None
        for message in buffered:
            self._push(message)
        return self

    def _on_change(self, event: ChangeEvent) -> None:
        if event.kind != "added":
            return
        message = Message.from_doc(event.document.data)
        if self._buffer is not None:
            self._buffer.append(message)
            return
        self._push(message)

    def _push(self, message: Message) -> None:
        if self._closed or message.order_key <= self._last_key:
            return
        self._last_key = message.order_key
        self._queue.put_nowait(message)

    def _on_error(self, exc: TransportError) -> None:
        if self._closed:
            return
        self._closed = True
        logger.warning("message watch for %s dropped: %s", self.channel_id, exc)
        self._queue.put_nowait(exc)
        self._queue.put_nowait(None)

    def pending_nowait(self) -> List[Message]:
        """Return the messages already queued without waiting for more."""

        messages: List[Message] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return messages
            if item is None:
                self._queue.put_nowait(None)
                return messages
            if isinstance(item, TransportError):
                raise item
            messages.append(item)

    def close(self) -> None:
        if self._watch is not None:
            self._watch.cancel()
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def __aiter__(self) -> "MessageSubscription":
        return self

    async def __anext__(self) -> Message:
        item = await self._queue.get()
        if item is None:
            self._queue.put_nowait(None)
            raise StopAsyncIteration
        if isinstance(item, TransportError):
            raise item
        return item

    async def __aenter__(self) -> "MessageSubscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class MessageStream:
    """Append-only, per-channel ordered message log."""

    def __init__(
        self,
        store,
        scope: Scope,
        memberships: MembershipStateMachine,
        *,
        max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH,
        now_func=_now_ms,
    ) -> None:
        self._store = store
        self._scope = scope
        self._memberships = memberships
        self._max_message_length = max_message_length
        self._now = now_func
        self._locks = KeyedLocks()

    async def append(self, channel_id: str, sender_id: str, text: str) -> Message:
        """Append ``text`` from an approved member.

        The sender's display name and avatar are copied into the message, so
        later profile edits leave history untouched. ``ts_ms`` never goes
        backwards within a channel and ``seq`` breaks ties.
        """

        if not isinstance(text, str) or not text.strip():
            raise EmptyText("message text must not be empty")
        if len(text) > self._max_message_length:
            raise ValidationError(
                f"message text exceeds {self._max_message_length} characters", code="message_too_long"
            )
        membership = await self._memberships.get(channel_id, sender_id)
        if membership is None or not membership.can(Capability.SEND_MESSAGE):
            raise NotApprovedMember(f"{sender_id!r} is not an approved member of {channel_id!r}")

        profile = await self._store.get(self._scope.account(sender_id)) or {}
        sender_name = profile.get("display_name") or profile.get("handle") or sender_id
        sender_avatar = profile.get("avatar", "")

        seq_path = self._scope.channel_seq(channel_id)
        async with self._locks.hold(channel_id):
            for _ in range(_APPEND_ATTEMPTS):
                counters = await self._store.get(seq_path)
                if counters is None:
                    raise ChannelNotFound(f"unknown channel {channel_id!r}")
                seq = int(counters["next_seq"])
                ts_ms = max(self._now(), int(counters.get("last_ts_ms", 0)))
                message = Message(
                    message_id=new_id("m"),
                    channel_id=channel_id,
                    sender_id=sender_id,
                    sender_name=sender_name,
                    sender_avatar=sender_avatar,
                    text=text,
                    ts_ms=ts_ms,
                    seq=seq,
                )
                try:
                    await self._store.commit(
                        [
                            Create(self._scope.message(channel_id, message.message_id), message.to_doc()),
                            Update(
                                seq_path,
                                {"next_seq": Increment(1), "last_ts_ms": ts_ms},
                                expect={"next_seq": seq},
                            ),
                        ]
                    )
                except PreconditionFailed:
                    continue
                logger.debug("appended message %s seq=%d to %s", message.message_id, seq, channel_id)
                return message
        raise ConflictError(f"could not append to {channel_id!r}", code="append_contention")

    async def history(self, channel_id: str, *, limit: int | None = None) -> List[Message]:
        """Stored messages ordered by ``(ts_ms, seq)``; ``limit`` keeps the newest."""

        if limit is not None and limit < 0:
            raise ValidationError("limit must be non-negative")
        documents = await self._store.query(self._scope.messages(channel_id))
        messages = sorted((Message.from_doc(doc.data) for doc in documents), key=lambda message: message.order_key)
        if limit is not None:
            return messages[-limit:] if limit else []
        return messages

    async def subscribe(self, channel_id: str) -> MessageSubscription:
        if await self._store.get(self._scope.channel(channel_id)) is None:
            raise ChannelNotFound(f"unknown channel {channel_id!r}")
        subscription = MessageSubscription(self._store, self._scope, channel_id)
        return await subscription.start()
