from __future__ import annotations


class ChannelSyncError(Exception):
    """Base class for errors surfaced to callers of the core operations."""

    code = "error"

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        super().__init__(message or self.code)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(ChannelSyncError):
    code = "invalid_request"


class InvalidHandle(ValidationError):
    code = "invalid_handle"


class InvalidName(ValidationError):
    code = "invalid_name"


class EmptyText(ValidationError):
    code = "empty_text"


class ConflictError(ChannelSyncError):
    code = "conflict"


class HandleTaken(ConflictError):
    code = "handle_taken"


class NameTaken(ConflictError):
    code = "name_taken"


class AccessDenied(ChannelSyncError, PermissionError):
    code = "forbidden"


class NotAdmin(AccessDenied):
    code = "not_admin"


class NotApprovedMember(AccessDenied):
    code = "not_approved_member"


class NotFoundError(ChannelSyncError):
    code = "not_found"


class AccountNotFound(NotFoundError):
    code = "account_not_found"


class ChannelNotFound(NotFoundError):
    code = "channel_not_found"


class NoSuchMembership(NotFoundError):
    code = "no_such_membership"


class TransportError(ChannelSyncError):
    """The document store is unreachable or a live watch was dropped."""

    code = "unavailable"
