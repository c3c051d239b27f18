from __future__ import annotations

import logging
from typing import Any, Dict

from .config import Scope
from .documents import AlreadyExists, Create, PreconditionFailed, Update
from .errors import AccessDenied, AccountNotFound, ConflictError, HandleTaken, InvalidHandle, ValidationError
from .models import MAX_DISPLAY_NAME_LENGTH, Account, _now_ms, is_valid_handle, new_id


logger = logging.getLogger(__name__)


def _clean_display_name(display_name: str) -> str:
    if not isinstance(display_name, str):
        raise ValidationError("display_name must be a string", code="invalid_display_name")
    cleaned = display_name.strip()
    if not cleaned or len(cleaned) > MAX_DISPLAY_NAME_LENGTH:
        raise ValidationError(
            f"display_name must be 1-{MAX_DISPLAY_NAME_LENGTH} characters", code="invalid_display_name"
        )
    return cleaned


class IdentityDirectory:
    """Maps unique handles to accounts."""

    def __init__(self, store, scope: Scope, *, now_func=_now_ms) -> None:
        self._store = store
        self._scope = scope
        self._now = now_func

    async def register(
        self,
        handle: str,
        display_name: str | None = None,
        *,
        account_id: str | None = None,
        avatar: str = "",
    ) -> str:
        """Create an account holding ``handle``.

        The handle index entry and the account are written in one conditional
        commit, so two concurrent registrations of the same handle cannot both
        succeed.
        """

        if not is_valid_handle(handle):
            raise InvalidHandle("handle must be 2-16 characters of letters, digits, '.' or '_'")
        name = handle if display_name is None or not display_name.strip() else _clean_display_name(display_name)
        account = Account(
            account_id=account_id or new_id("u"),
            handle=handle,
            display_name=name,
            avatar=avatar or "",
            created_at_ms=self._now(),
        )
        handle_path = self._scope.handle(handle)
        try:
            await self._store.commit(
                [
                    Create(handle_path, {"account_id": account.account_id}),
                    Create(self._scope.account(account.account_id), account.to_doc()),
                ]
            )
        except AlreadyExists as exc:
            if exc.path == handle_path:
                raise HandleTaken(f"handle {handle!r} is already taken") from exc
            raise ConflictError("account already registered", code="account_exists") from exc
        logger.info("registered account %s as %s", account.account_id, handle)
        return account.account_id

    async def lookup(self, account_id: str) -> Account:
        data = await self._store.get(self._scope.account(account_id))
        if data is None:
            raise AccountNotFound(f"unknown account {account_id!r}")
        return Account.from_doc(data)

    async def find_by_handle(self, handle: str) -> Account:
        if not is_valid_handle(handle):
            raise AccountNotFound(f"unknown handle {handle!r}")
        index = await self._store.get(self._scope.handle(handle))
        if index is None:
            raise AccountNotFound(f"unknown handle {handle!r}")
        return await self.lookup(index["account_id"])

    async def update_profile(
        self,
        actor_id: str,
        account_id: str,
        display_name: str | None = None,
        avatar: str | None = None,
    ) -> Account:
        """Change display name and/or avatar; fields left as ``None`` are kept."""

        if actor_id != account_id:
            raise AccessDenied("only the account owner may edit the profile")
        current = await self.lookup(account_id)
        fields: Dict[str, Any] = {}
        if display_name is not None:
            fields["display_name"] = _clean_display_name(display_name)
        if avatar is not None:
            if not isinstance(avatar, str):
                raise ValidationError("avatar must be a string", code="invalid_avatar")
            fields["avatar"] = avatar
        if not fields:
            return current
        try:
            await self._store.commit([Update(self._scope.account(account_id), fields)])
        except PreconditionFailed as exc:
            raise AccountNotFound(f"unknown account {account_id!r}") from exc
        return await self.lookup(account_id)
