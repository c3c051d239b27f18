from __future__ import annotations

import logging
from typing import List, Tuple

from .config import Scope
from .documents import AlreadyExists, Create
from .errors import ChannelNotFound, InvalidName, NameTaken, ValidationError
from .models import (
    Capability,
    Channel,
    Membership,
    MembershipStatus,
    Role,
    ROLE_CAPABILITIES,
    Visibility,
    _now_ms,
    is_valid_channel_name,
    new_id,
)


logger = logging.getLogger(__name__)


def _decider_roles() -> List[str]:
    return [role.value for role, caps in ROLE_CAPABILITIES.items() if Capability.DECIDE_JOIN in caps]


class ChannelRegistry:
    """Creates and looks up channels by unique name."""

    def __init__(self, store, scope: Scope, *, now_func=_now_ms) -> None:
        self._store = store
        self._scope = scope
        self._now = now_func

    async def create(self, name: str, visibility: Visibility | str, creator_id: str, *, avatar: str = "") -> str:
        """Create a channel administered by ``creator_id``.

        The name index, the channel (with the creator already in its member
        set) and the creator's approved admin membership land in one commit.
        """

        if not is_valid_channel_name(name):
            raise InvalidName("channel name must be 2-16 letters or digits")
        try:
            visibility = Visibility(visibility)
        except ValueError as exc:
            raise ValidationError("visibility must be 'public' or 'private'", code="invalid_visibility") from exc
        now_ms = self._now()
        channel = Channel(
            channel_id=new_id("ch"),
            name=name,
            visibility=visibility,
            admin_id=creator_id,
            avatar=avatar or "",
            created_at_ms=now_ms,
            members=frozenset({creator_id}),
        )
        membership = Membership(
            channel_id=channel.channel_id,
            account_id=creator_id,
            role=Role.ADMIN,
            status=MembershipStatus.APPROVED,
            joined_at_ms=now_ms,
            updated_at_ms=now_ms,
        )
        name_path = self._scope.channel_name(name)
        try:
            await self._store.commit(
                [
                    Create(name_path, {"channel_id": channel.channel_id}),
                    Create(self._scope.channel(channel.channel_id), channel.to_doc()),
                    Create(self._scope.channel_seq(channel.channel_id), {"next_seq": 1, "last_ts_ms": 0}),
                    Create(self._scope.membership(channel.channel_id, creator_id), membership.to_doc()),
                ]
            )
        except AlreadyExists as exc:
            if exc.path == name_path:
                raise NameTaken(f"channel name {name!r} is already taken") from exc
            raise
        logger.info("created %s channel %s (%s) for %s", visibility.value, name, channel.channel_id, creator_id)
        return channel.channel_id

    async def get(self, channel_id: str) -> Channel:
        data = await self._store.get(self._scope.channel(channel_id))
        if data is None:
            raise ChannelNotFound(f"unknown channel {channel_id!r}")
        return Channel.from_doc(data)

    async def find_by_name(self, name: str) -> Channel:
        if not is_valid_channel_name(name):
            raise ChannelNotFound(f"unknown channel {name!r}")
        index = await self._store.get(self._scope.channel_name(name))
        if index is None:
            raise ChannelNotFound(f"unknown channel {name!r}")
        return await self.get(index["channel_id"])

    async def list_for_account(self, account_id: str) -> List[Channel]:
        """Channels where ``account_id`` holds an approved membership, by name."""

        documents = await self._store.query(
            self._scope.all_memberships(),
            {"account_id": account_id, "status": MembershipStatus.APPROVED.value},
        )
        channels = await self._load_channels(doc.data["channel_id"] for doc in documents)
        return sorted(channels, key=lambda channel: channel.name)

    async def list_pending_administered_by(self, account_id: str) -> List[Tuple[Channel, Membership]]:
        """One entry per pending membership in channels ``account_id`` administers."""

        administered: List[Channel] = []
        for role in _decider_roles():
            documents = await self._store.query(
                self._scope.all_memberships(),
                {"account_id": account_id, "role": role, "status": MembershipStatus.APPROVED.value},
            )
            administered.extend(await self._load_channels(doc.data["channel_id"] for doc in documents))

        entries: List[Tuple[Channel, Membership]] = []
        for channel in sorted(administered, key=lambda channel: channel.name):
            pending = await self._store.query(
                self._scope.memberships(channel.channel_id), {"status": MembershipStatus.PENDING.value}
            )
            memberships = sorted(
                (Membership.from_doc(doc.data) for doc in pending),
                key=lambda membership: (membership.joined_at_ms, membership.account_id),
            )
            entries.extend((channel, membership) for membership in memberships)
        return entries

    async def list_members(self, channel_id: str) -> List[Membership]:
        await self.get(channel_id)
        documents = await self._store.query(
            self._scope.memberships(channel_id), {"status": MembershipStatus.APPROVED.value}
        )
        return sorted(
            (Membership.from_doc(doc.data) for doc in documents),
            key=lambda membership: (membership.joined_at_ms, membership.account_id),
        )

    async def _load_channels(self, channel_ids) -> List[Channel]:
        channels: List[Channel] = []
        for channel_id in dict.fromkeys(channel_ids):
            data = await self._store.get(self._scope.channel(channel_id))
            if data is not None:
                channels.append(Channel.from_doc(data))
        return channels
