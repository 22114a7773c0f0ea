from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from .coordinator import OptimisticMutationCoordinator
from .errors import AuthError, FetchError, TodoSyncError
from .feed import DEFAULT_RETRY_SECONDS, Subscription, TaskFeedSynchronizer
from .logging import get_logger
from .models import Session
from .notifications import Notifier
from .services import Backend, BackendClient
from .session_store import SessionStore
from .view_state import TaskListView, insert_if_absent, merge_loaded, remove, upsert

logger = get_logger(__name__)

DEFAULT_IDLE_SECONDS = 1800.0


class ClientContext:
    """
    Everything one browser session needs: its session store, notifications,
    and while signed in, the task view with its subscription and coordinator.

    The view follows the session: a different user (or none) detaches the old
    view synchronously, so nothing authenticated is served after sign-out even
    while the old subscription is still being torn down.
    """

    def __init__(
        self,
        client_id: str,
        services: BackendClient,
        *,
        retry_delay: float = DEFAULT_RETRY_SECONDS,
    ) -> None:
        self.client_id = client_id
        self.services = services
        self.session_store = SessionStore(services.identity)
        self.notifier = Notifier()
        self.synchronizer = TaskFeedSynchronizer(services.data, services.feed, retry_delay=retry_delay)
        self.view: Optional[TaskListView] = None
        self.coordinator: Optional[OptimisticMutationCoordinator] = None
        self.subscription: Optional[Subscription] = None
        self._background: Set["asyncio.Future[None]"] = set()
        self.last_seen = 0.0
        self.live_connections = 0
        self._remove_listener = self.session_store.add_listener(self._on_session_changed)

    @property
    def user_id(self) -> Optional[str]:
        return self.view.user_id if self.view is not None else None

    @contextmanager
    def reporting(self) -> Iterator[None]:
        """Turn service errors raised inside the block into error notifications, then re-raise."""
        try:
            yield
        except TodoSyncError as exc:
            self.notifier.error(exc.message or exc.kind)
            raise

    async def start(self) -> None:
        """Follow auth notifications and restore a persisted session if there is one."""
        self.session_store.start()
        try:
            await self.session_store.refresh_session()
        except AuthError as exc:
            self.notifier.error(exc.message or "Could not restore the session.")

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def settle(self) -> None:
        """Wait for background mount/teardown work and in-flight mutations."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self.coordinator is not None:
            await self.coordinator.drain()

    def _on_session_changed(self, session: Optional[Session]) -> None:
        user_id = session.user_id if session is not None else None
        if user_id == self.user_id:
            return
        self._detach()
        if user_id is not None:
            self._attach(user_id)

    def _attach(self, user_id: str) -> None:
        view = TaskListView(user_id)
        self.view = view
        self.coordinator = OptimisticMutationCoordinator(view, self.services.data, self.notifier)
        self.subscription = self.synchronizer.subscribe(
            user_id,
            on_insert=lambda task: view.apply(insert_if_absent, task),
            on_update=lambda task: view.apply(upsert, task),
            on_delete=lambda task_id: view.apply(remove, task_id),
            on_resubscribed=lambda: self._spawn(self.reload()),
        )
        logger.info("task_view_mounted", client_id=self.client_id, user_id=user_id)
        self._spawn(self.reload())

    def _detach(self) -> None:
        view, self.view = self.view, None
        self.coordinator = None
        subscription, self.subscription = self.subscription, None
        if view is not None:
            view.close()
            logger.info("task_view_unmounted", client_id=self.client_id, user_id=view.user_id)
        if subscription is not None and subscription.cancel():
            self._spawn(subscription.wait_closed())

    async def reload(self) -> None:
        """
        (Re)load the current user's tasks into the view. Entries changed while
        the load was in flight keep their newer local state.
        """
        view = self.view
        if view is None:
            return
        base = view.tasks
        view.set_loading(True)
        try:
            tasks = await self.synchronizer.load_all(view.user_id)
        except FetchError as exc:
            self.notifier.error(exc.message or "Could not load tasks.")
            tasks = None
        if tasks is not None:
            view.apply(merge_loaded, tasks, base)
        view.set_loading(False)

    async def close(self) -> None:
        self._detach()
        self._remove_listener()
        self.session_store.close()
        await self.settle()


class ClientRegistry:
    """
    Client contexts keyed by the id stored in the client cookie.

    A context that has seen no request for `idle_timeout` seconds and has no
    live view connected is closed and forgotten. The sweep runs whenever a
    context is looked up.
    """

    def __init__(
        self,
        backend: Backend,
        *,
        retry_delay: float = DEFAULT_RETRY_SECONDS,
        idle_timeout: float = DEFAULT_IDLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._retry_delay = retry_delay
        self._idle_timeout = idle_timeout
        self._clock = clock
        self._clients: Dict[str, ClientContext] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def get(self, client_id: Optional[str]) -> Optional[ClientContext]:
        if not client_id:
            return None
        context = self._clients.get(client_id)
        if context is not None:
            self.touch(context)
        return context

    def touch(self, context: ClientContext) -> None:
        context.last_seen = self._clock()

    async def get_or_create(self, client_id: Optional[str]) -> Tuple[ClientContext, bool]:
        await self.evict_idle()
        existing = self.get(client_id)
        if existing is not None:
            return existing, False
        context = ClientContext(
            uuid.uuid4().hex,
            self._backend.create_client(),
            retry_delay=self._retry_delay,
        )
        self.touch(context)
        self._clients[context.client_id] = context
        await context.start()
        logger.debug("client_created", client_id=context.client_id)
        return context, True

    async def evict_idle(self) -> List[str]:
        """Close contexts idle for longer than the timeout. Returns their ids."""
        now = self._clock()
        idle = [
            context
            for context in self._clients.values()
            if context.live_connections == 0 and now - context.last_seen > self._idle_timeout
        ]
        for context in idle:
            del self._clients[context.client_id]
        for context in idle:
            await context.close()
            logger.info("client_evicted", client_id=context.client_id)
        return [context.client_id for context in idle]

    async def close_all(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for context in clients:
            await context.close()
