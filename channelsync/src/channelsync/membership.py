from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from .channels import ChannelRegistry
from .config import Scope
from .documents import AlreadyExists, ArrayRemove, ArrayUnion, Create, PreconditionFailed, Update
from .errors import ChannelNotFound, NoSuchMembership, NotAdmin, ValidationError
from .locks import KeyedLocks
from .models import Capability, Channel, Decision, Membership, MembershipStatus, Role, _now_ms


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JoinResult:
    membership: Membership
    created: bool

    @property
    def status(self) -> MembershipStatus:
        return self.membership.status

    @property
    def already_member(self) -> bool:
        return not self.created and self.membership.status is MembershipStatus.APPROVED


class MembershipStateMachine:
    """Join requests and admin decisions per (channel, account).

    ``absent -> pending -> approved | rejected``, with ``absent -> approved``
    for public channels. ``approved`` and ``rejected`` are terminal. The
    membership record and the channel's member set are always written in the
    same commit.
    """

    def __init__(self, store, scope: Scope, channels: ChannelRegistry, *, now_func=_now_ms) -> None:
        self._store = store
        self._scope = scope
        self._channels = channels
        self._now = now_func
        self._locks = KeyedLocks()

    async def get(self, channel_id: str, account_id: str) -> Membership | None:
        data = await self._store.get(self._scope.membership(channel_id, account_id))
        if data is None:
            return None
        return Membership.from_doc(data)

    async def request_join(self, channel_id: str, account_id: str) -> JoinResult:
        channel = await self._channels.get(channel_id)
        existing = await self.get(channel_id, account_id)
        if existing is not None:
            return JoinResult(existing, created=False)

        now_ms = self._now()
        status = MembershipStatus.APPROVED if channel.is_public else MembershipStatus.PENDING
        membership = Membership(
            channel_id=channel_id,
            account_id=account_id,
            role=Role.MEMBER,
            status=status,
            joined_at_ms=now_ms,
            updated_at_ms=now_ms,
        )
        writes = [Create(self._scope.membership(channel_id, account_id), membership.to_doc())]
        if status is MembershipStatus.APPROVED:
            writes.append(Update(self._scope.channel(channel_id), {"members": ArrayUnion(account_id)}))
        try:
            await self._store.commit(writes)
        except AlreadyExists:
            winner = await self.get(channel_id, account_id)
            if winner is None:
                raise
            return JoinResult(winner, created=False)
        except PreconditionFailed as exc:
            raise ChannelNotFound(f"unknown channel {channel_id!r}") from exc
        logger.info("%s requested to join %s: %s", account_id, channel.name, status.value)
        return JoinResult(membership, created=True)

    async def decide(
        self,
        channel_id: str,
        decider_id: str,
        target_account_id: str,
        decision: Decision | str,
    ) -> Membership:
        """Approve or reject a pending membership.

        Only an account holding the ``decide_join`` capability on the channel
        may decide. Repeating the decision that already holds returns the
        record unchanged; any other decision on a membership that has left
        ``pending`` fails with :class:`NoSuchMembership` and changes nothing.
        """

        try:
            decision = Decision(decision)
        except ValueError as exc:
            raise ValidationError("decision must be 'approve' or 'reject'", code="invalid_decision") from exc
        channel = await self._channels.get(channel_id)
        await self.require(channel, decider_id, Capability.DECIDE_JOIN)

        if decision is Decision.APPROVE:
            status = MembershipStatus.APPROVED
            projection = ArrayUnion(target_account_id)
        else:
            status = MembershipStatus.REJECTED
            projection = ArrayRemove(target_account_id)

        async with self._locks.hold((channel_id, target_account_id)):
            current = await self.get(channel_id, target_account_id)
            if current is not None and current.status is status:
                return current
            if current is None or current.status is not MembershipStatus.PENDING:
                raise NoSuchMembership(f"no pending request from {target_account_id!r} in {channel.name!r}")

            now_ms = self._now()
            try:
                await self._store.commit(
                    [
                        Update(
                            self._scope.membership(channel_id, target_account_id),
                            {"status": status.value, "updated_at_ms": now_ms},
                            expect={"status": MembershipStatus.PENDING.value},
                        ),
                        Update(self._scope.channel(channel_id), {"members": projection}),
                    ]
                )
            except PreconditionFailed as exc:
                raise NoSuchMembership(
                    f"no pending request from {target_account_id!r} in {channel.name!r}"
                ) from exc

        logger.info("%s %s %s in %s", decider_id, status.value, target_account_id, channel.name)
        return replace(current, status=status, updated_at_ms=now_ms)

    async def require(self, channel: Channel, account_id: str, capability: Capability) -> Membership:
        membership = await self.get(channel.channel_id, account_id)
        if membership is None or not membership.can(capability):
            raise NotAdmin(f"{account_id!r} lacks {capability.value} in {channel.name!r}")
        return membership
