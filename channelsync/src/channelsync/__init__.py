"""Channel membership lifecycle and realtime message sync."""

from .channels import ChannelRegistry
from .config import Scope, Settings, load_settings_from_env
from .identity import IdentityDirectory
from .membership import JoinResult, MembershipStateMachine
from .messages import MessageStream, MessageSubscription
from .server import main, simulate
from .sqlite_store import SQLiteDocumentStore
from .store import InMemoryDocumentStore
from .sync import AccountViews, LiveView, SyncFacade, ViewState

__all__ = [
    "AccountViews",
    "ChannelRegistry",
    "IdentityDirectory",
    "InMemoryDocumentStore",
    "JoinResult",
    "LiveView",
    "MembershipStateMachine",
    "MessageStream",
    "MessageSubscription",
    "SQLiteDocumentStore",
    "Scope",
    "Settings",
    "SyncFacade",
    "ViewState",
    "load_settings_from_env",
    "main",
    "simulate",
]
