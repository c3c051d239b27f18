from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet


HANDLE_RE = re.compile(r"^[A-Za-z0-9._]{2,16}$")
CHANNEL_NAME_RE = re.compile(r"^[A-Za-z0-9]{2,16}$")
MAX_DISPLAY_NAME_LENGTH = 64


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(12)}"


def is_valid_handle(handle: object) -> bool:
    if not isinstance(handle, str) or not HANDLE_RE.fullmatch(handle):
        return False
    return not set(handle) <= {".", "_"}


def is_valid_channel_name(name: object) -> bool:
    return isinstance(name, str) and CHANNEL_NAME_RE.fullmatch(name) is not None


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class Role(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class MembershipStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class Capability(str, Enum):
    DECIDE_JOIN = "decide_join"
    SEND_MESSAGE = "send_message"


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.ADMIN: frozenset({Capability.DECIDE_JOIN, Capability.SEND_MESSAGE}),
    Role.MEMBER: frozenset({Capability.SEND_MESSAGE}),
}


@dataclass(frozen=True)
class Account:
    account_id: str
    handle: str
    display_name: str
    avatar: str = ""
    created_at_ms: int = 0

    def to_doc(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "handle": self.handle,
            "display_name": self.display_name,
            "avatar": self.avatar,
            "created_at_ms": self.created_at_ms,
        }

    @classmethod
    def from_doc(cls, data: dict[str, Any]) -> "Account":
        return cls(
            account_id=data["account_id"],
            handle=data["handle"],
            display_name=data.get("display_name") or data["handle"],
            avatar=data.get("avatar", ""),
            created_at_ms=int(data.get("created_at_ms", 0)),
        )

    def to_api_dict(self) -> dict[str, Any]:
        return self.to_doc()


@dataclass(frozen=True)
class Channel:
    channel_id: str
    name: str
    visibility: Visibility
    admin_id: str
    avatar: str = ""
    created_at_ms: int = 0
    members: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_public(self) -> bool:
        return self.visibility is Visibility.PUBLIC

    def to_doc(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "name": self.name,
            "visibility": self.visibility.value,
            "admin_id": self.admin_id,
            "avatar": self.avatar,
            "created_at_ms": self.created_at_ms,
            "members": sorted(self.members),
        }

    @classmethod
    def from_doc(cls, data: dict[str, Any]) -> "Channel":
        return cls(
            channel_id=data["channel_id"],
            name=data["name"],
            visibility=Visibility(data["visibility"]),
            admin_id=data["admin_id"],
            avatar=data.get("avatar", ""),
            created_at_ms=int(data.get("created_at_ms", 0)),
            members=frozenset(data.get("members") or ()),
        )

    def to_api_dict(self) -> dict[str, Any]:
        return self.to_doc()


@dataclass(frozen=True)
class Membership:
    channel_id: str
    account_id: str
    role: Role
    status: MembershipStatus
    joined_at_ms: int
    updated_at_ms: int = 0

    def to_doc(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "account_id": self.account_id,
            "role": self.role.value,
            "status": self.status.value,
            "joined_at_ms": self.joined_at_ms,
            "updated_at_ms": self.updated_at_ms,
        }

    @classmethod
    def from_doc(cls, data: dict[str, Any]) -> "Membership":
        return cls(
            channel_id=data["channel_id"],
            account_id=data["account_id"],
            role=Role(data["role"]),
            status=MembershipStatus(data["status"]),
            joined_at_ms=int(data.get("joined_at_ms", 0)),
            updated_at_ms=int(data.get("updated_at_ms", 0)),
        )

    def can(self, capability: Capability) -> bool:
        if self.status is not MembershipStatus.APPROVED:
            return False
        return capability in ROLE_CAPABILITIES.get(self.role, frozenset())

    def to_api_dict(self) -> dict[str, Any]:
        return self.to_doc()


@dataclass(frozen=True)
class Message:
    """A message as it was sent; sender fields are a snapshot, not a live lookup."""

    message_id: str
    channel_id: str
    sender_id: str
    sender_name: str
    sender_avatar: str
    text: str
    ts_ms: int
    seq: int

    @property
    def order_key(self) -> tuple[int, int]:
        return (self.ts_ms, self.seq)

    def to_doc(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "channel_id": self.channel_id,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "sender_avatar": self.sender_avatar,
            "text": self.text,
            "ts_ms": self.ts_ms,
            "seq": self.seq,
        }

    @classmethod
    def from_doc(cls, data: dict[str, Any]) -> "Message":
        return cls(
            message_id=data["message_id"],
            channel_id=data["channel_id"],
            sender_id=data["sender_id"],
            sender_name=data.get("sender_name", ""),
            sender_avatar=data.get("sender_avatar", ""),
            text=data["text"],
            ts_ms=int(data["ts_ms"]),
            seq=int(data["seq"]),
        )

    def to_api_dict(self) -> dict[str, Any]:
        return self.to_doc()
