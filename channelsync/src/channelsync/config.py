from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Scope:
    """Tenant scope that prefixes every document path.

    A scope is handed to each registry and stream when it is built, so two
    apps sharing one store never see each other's records.
    """

    app_id: str

    def path(self, *segments: str) -> str:
        return "/".join(("apps", self.app_id) + segments)

    def accounts(self) -> str:
        return self.path("accounts")

    def account(self, account_id: str) -> str:
        return self.path("accounts", account_id)

    def handle(self, handle: str) -> str:
        return self.path("handles", handle)

    def channels(self) -> str:
        return self.path("channels")

    def channel(self, channel_id: str) -> str:
        return self.path("channels", channel_id)

    def channel_name(self, name: str) -> str:
        return self.path("channel_names", name)

    def channel_seq(self, channel_id: str) -> str:
        return self.path("channel_seq", channel_id)

    def memberships(self, channel_id: str) -> str:
        return self.path("channels", channel_id, "memberships")

    def membership(self, channel_id: str, account_id: str) -> str:
        return self.path("channels", channel_id, "memberships", account_id)

    def all_memberships(self) -> str:
        return self.path("channels", "*", "memberships")

    def messages(self, channel_id: str) -> str:
        return self.path("channels", channel_id, "messages")

    def message(self, channel_id: str, message_id: str) -> str:
        return self.path("channels", channel_id, "messages", message_id)


@dataclass(frozen=True)
class Settings:
    app_id: str = "default"
    db_path: str | None = None
    max_message_length: int = 4000
    retry_initial_ms: int = 250
    retry_max_ms: int = 10_000
    log_level: str = "INFO"

    @property
    def scope(self) -> Scope:
        return Scope(self.app_id)

    @property
    def retry_initial_delay_s(self) -> float:
        return max(self.retry_initial_ms, 1) / 1000

    @property
    def retry_max_delay_s(self) -> float:
        return max(self.retry_max_ms, self.retry_initial_ms, 1) / 1000


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_str(name: str, default: str | None) -> str | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def load_settings_from_env() -> Settings:
    app_id = _parse_str("CHANNELSYNC_APP_ID", "default")
    if "/" in app_id:
        raise ValueError("CHANNELSYNC_APP_ID must not contain '/'")
    max_message_length = _parse_non_negative_int("CHANNELSYNC_MAX_MESSAGE_LENGTH", 4000)
    if max_message_length == 0:
        raise ValueError("CHANNELSYNC_MAX_MESSAGE_LENGTH must be positive")
    return Settings(
        app_id=app_id,
        db_path=_parse_str("CHANNELSYNC_DB_PATH", None),
        max_message_length=max_message_length,
        retry_initial_ms=max(1, _parse_non_negative_int("CHANNELSYNC_RETRY_INITIAL_MS", 250)),
        retry_max_ms=max(1, _parse_non_negative_int("CHANNELSYNC_RETRY_MAX_MS", 10_000)),
        log_level=(_parse_str("CHANNELSYNC_LOG_LEVEL", "INFO") or "INFO").upper(),
    )
