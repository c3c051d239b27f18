from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Awaitable, Callable, List, Mapping, Optional, Sequence, Tuple

from .channels import ChannelRegistry
from .config import Scope
from .documents import ChangeEvent
from .errors import TransportError
from .models import MembershipStatus


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViewState:
    """Snapshot published by a live view.

    ``stale`` is set before the first computation and whenever the watches
    behind the view are down; ``items`` then holds the last good result.
    """

    items: Tuple[Any, ...] = ()
    stale: bool = True
    error: Optional[Exception] = None
    version: int = 0


@dataclass(frozen=True)
class WatchSpec:
    collection: str
    where: Optional[Mapping[str, Any]] = None


Listener = Callable[[ViewState], None]


class LiveView:
    """Projection recomputed from a fresh read on every change notification."""

    def __init__(
        self,
        name: str,
        store,
        specs: Sequence[WatchSpec],
        compute: Callable[[], Awaitable[Sequence[Any]]],
        *,
        retry_initial_delay_s: float = 0.25,
        retry_max_delay_s: float = 10.0,
    ) -> None:
        self.name = name
        self._store = store
        self._specs = list(specs)
        self._compute = compute
        self._retry_initial_delay_s = retry_initial_delay_s
        self._retry_max_delay_s = max(retry_max_delay_s, retry_initial_delay_s)
        self._state = ViewState()
        self._listeners: List[Listener] = []
        self._iterators: List[asyncio.Queue] = []
        self._watches: list = []
        self._refresh_task: asyncio.Task | None = None
        self._retry_task: asyncio.Task | None = None
        self._dirty = False
        self._establishing = False
        self._closed = False

    @property
    def state(self) -> ViewState:
        return self._state

    def add_listener(self, listener: Listener) -> None:
        """Register ``listener``; it is called at once when a state exists."""

        self._listeners.append(listener)
        if self._state.version:
            listener(self._state)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    async def updates(self) -> AsyncIterator[ViewState]:
        queue: asyncio.Queue[ViewState | None] = asyncio.Queue()
        self._iterators.append(queue)
        if self._state.version:
            queue.put_nowait(self._state)
        try:
            while True:
                state = await queue.get()
                if state is None:
                    return
                yield state
        finally:
            if queue in self._iterators:
                self._iterators.remove(queue)

    async def start(self) -> None:
        try:
            await self._establish()
        except TransportError as exc:
            self._mark_stale(exc)
            self._schedule_retry()

    async def wait_idle(self) -> None:
        """Wait until queued recomputations have been published."""

        while self._refresh_task is not None and not self._refresh_task.done():
            await asyncio.wait({self._refresh_task})

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_watches()
        tasks = [task for task in (self._refresh_task, self._retry_task) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for queue in list(self._iterators):
            queue.put_nowait(None)

    async def _establish(self) -> None:
        self._establishing = True
        watches = []
        try:
            for spec in self._specs:
                watches.append(
                    await self._store.watch(spec.collection, spec.where, self._on_change, on_error=self._on_error)
                )
        except BaseException:
            for watch in watches:
                watch.cancel()
            raise
        finally:
            self._establishing = False
        self._watches = watches
        try:
            await self._recompute()
        except BaseException:
            self._cancel_watches()
            raise

    async def _recompute(self) -> None:
        items = await self._compute()
        if self._closed:
            return
        self._publish(ViewState(items=tuple(items), stale=False, error=None, version=self._state.version + 1))

    def _on_change(self, event: ChangeEvent) -> None:
        if self._establishing or self._closed:
            return
        self._dirty = True
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._dirty and not self._closed:
            self._dirty = False
            try:
                await self._recompute()
            except TransportError as exc:
                self._on_error(exc)
                return
            except Exception as exc:
                logger.exception("view %s failed to recompute", self.name)
                self._publish(replace(self._state, stale=True, error=exc, version=self._state.version + 1))
                return

    def _on_error(self, exc: TransportError) -> None:
        if self._closed:
            return
        self._cancel_watches()
        self._mark_stale(exc)
        self._schedule_retry()

    def _mark_stale(self, exc: TransportError) -> None:
        logger.warning("view %s is stale: %s", self.name, exc)
        self._publish(replace(self._state, stale=True, error=exc, version=self._state.version + 1))

    def _schedule_retry(self) -> None:
        if self._closed or (self._retry_task is not None and not self._retry_task.done()):
            return
        self._retry_task = asyncio.get_running_loop().create_task(self._retry())

    async def _retry(self) -> None:
        delay = self._retry_initial_delay_s
        while not self._closed:
            await asyncio.sleep(delay)
            try:
                await self._establish()
            except TransportError as exc:
                self._mark_stale(exc)
            except Exception as exc:
                logger.exception("view %s failed to re-establish", self.name)
                self._publish(replace(self._state, stale=True, error=exc, version=self._state.version + 1))
            else:
                logger.info("view %s recovered", self.name)
                return
            delay = min(delay * 2, self._retry_max_delay_s)

    def _cancel_watches(self) -> None:
        watches, self._watches = self._watches, []
        for watch in watches:
            watch.cancel()

    def _publish(self, state: ViewState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("listener for view %s failed", self.name)
        for queue in list(self._iterators):
            queue.put_nowait(state)


class AccountViews:
    """The joined-channels and pending-requests views of one account."""

    def __init__(self, account_id: str, joined: LiveView, pending: LiveView) -> None:
        self.account_id = account_id
        self.joined = joined
        self.pending = pending

    async def start(self) -> "AccountViews":
        await self.joined.start()
        await self.pending.start()
        return self

    async def wait_idle(self) -> None:
        await self.joined.wait_idle()
        await self.pending.wait_idle()

    async def close(self) -> None:
        await self.joined.close()
        await self.pending.close()

    async def __aenter__(self) -> "AccountViews":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class SyncFacade:
    """Answers "what can this account see right now" as push-based views."""

    def __init__(
        self,
        store,
        scope: Scope,
        channels: ChannelRegistry,
        *,
        retry_initial_delay_s: float = 0.25,
        retry_max_delay_s: float = 10.0,
    ) -> None:
        self._store = store
        self._scope = scope
        self._channels = channels
        self._retry_initial_delay_s = retry_initial_delay_s
        self._retry_max_delay_s = retry_max_delay_s

    def joined_channels_view(self, account_id: str) -> LiveView:
        return self._view(
            f"joined:{account_id}",
            [
                WatchSpec(self._scope.all_memberships(), {"account_id": account_id}),
                WatchSpec(self._scope.channels(), {"members": account_id}),
            ],
            lambda: self._channels.list_for_account(account_id),
        )

    def pending_requests_view(self, account_id: str) -> LiveView:
        return self._view(
            f"pending:{account_id}",
            [
                WatchSpec(self._scope.all_memberships(), {"account_id": account_id}),
                WatchSpec(self._scope.all_memberships(), {"status": MembershipStatus.PENDING.value}),
            ],
            lambda: self._channels.list_pending_administered_by(account_id),
        )

    async def views_for(self, account_id: str) -> AccountViews:
        views = AccountViews(
            account_id,
            self.joined_channels_view(account_id),
            self.pending_requests_view(account_id),
        )
        return await views.start()

    def _view(self, name: str, specs: Sequence[WatchSpec], compute) -> LiveView:
        return LiveView(
            name,
            self._store,
            specs,
            compute,
            retry_initial_delay_s=self._retry_initial_delay_s,
            retry_max_delay_s=self._retry_max_delay_s,
        )
