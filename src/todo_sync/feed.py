from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Dict, FrozenSet, List, Optional

from .errors import FetchError, SubscriptionError
from .logging import get_logger
from .models import TASKS_TABLE, Task
from .services import (
    ChangeEvent,
    ChangeFeedService,
    ChangeType,
    ChannelHandle,
    ChannelStatus,
    DataService,
    Order,
)

logger = get_logger(__name__)

DEFAULT_RETRY_SECONDS = 5.0
OWNER_FILTER = "user_id"

TaskCallback = Callable[[Task], None]
DeleteCallback = Callable[[str], None]
Sleep = Callable[[float], Awaitable[None]]
ResubscribeCallback = Callable[[], None]


class SubscriptionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


_TRANSITIONS: Dict[SubscriptionState, FrozenSet[SubscriptionState]] = {
    SubscriptionState.IDLE: frozenset({SubscriptionState.CONNECTING, SubscriptionState.CANCELLED}),
    SubscriptionState.CONNECTING: frozenset(
        {SubscriptionState.SUBSCRIBED, SubscriptionState.RETRYING, SubscriptionState.CANCELLED}
    ),
    SubscriptionState.SUBSCRIBED: frozenset({SubscriptionState.RETRYING, SubscriptionState.CANCELLED}),
    SubscriptionState.RETRYING: frozenset({SubscriptionState.CONNECTING, SubscriptionState.CANCELLED}),
    SubscriptionState.CANCELLED: frozenset(),
}


class Subscription:
    """
    Handle for a user-scoped change feed.

    The connection loop walks IDLE -> CONNECTING -> SUBSCRIBED, and on a failed
    join or a dropped channel goes to RETRYING, sleeps the fixed backoff and
    connects again. Only `cancel()` ends it, so any failure to open the
    channel is retried. Once cancelled no callback is forwarded to the
    consumer.

    Changes made while the channel was down are never replayed, so every
    re-established channel after the first is reported through
    `on_resubscribed`; the consumer is expected to reload.
    """

    def __init__(
        self,
        feed: ChangeFeedService,
        user_id: str,
        on_insert: TaskCallback,
        on_update: TaskCallback,
        on_delete: DeleteCallback,
        *,
        table: str = TASKS_TABLE,
        retry_delay: float = DEFAULT_RETRY_SECONDS,
        sleep: Sleep = asyncio.sleep,
        on_resubscribed: Optional[ResubscribeCallback] = None,
    ) -> None:
        self._feed = feed
        self._on_resubscribed = on_resubscribed
        self.user_id = user_id
        self._on_insert = on_insert
        self._on_update = on_update
        self._on_delete = on_delete
        self._table = table
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._state = SubscriptionState.IDLE
        self._channel: Optional[ChannelHandle] = None
        self._runner: Optional["asyncio.Task[None]"] = None
        self._dropped = asyncio.Event()
        self._subscribed = asyncio.Event()
        self.attempts = 0
        self.established = 0
        self.history: List[SubscriptionState] = [SubscriptionState.IDLE]

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._state is SubscriptionState.CANCELLED

    def _transition(self, new: SubscriptionState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"invalid subscription transition {self._state.value} -> {new.value}")
        self._state = new
        self.history.append(new)
        if new is SubscriptionState.SUBSCRIBED:
            self._subscribed.set()
        else:
            self._subscribed.clear()

    def start(self) -> None:
        if self._runner is None and not self.cancelled:
            self._runner = asyncio.ensure_future(self._run())

    async def wait_subscribed(self) -> None:
        await self._subscribed.wait()

    async def _run(self) -> None:
        try:
            while not self.cancelled:
                self._transition(SubscriptionState.CONNECTING)
                self.attempts += 1
                self._dropped.clear()
                try:
                    self._channel = await self._feed.open_channel(
                        self._table,
                        {OWNER_FILTER: self.user_id},
                        self._dispatch,
                        self._on_status,
                    )
                except SubscriptionError as exc:
                    logger.warning(
                        "subscription_failed",
                        user_id=self.user_id,
                        status=exc.channel_status,
                        attempt=self.attempts,
                        retry_in=self._retry_delay,
                    )
                except Exception:
                    logger.exception(
                        "subscription_open_error",
                        user_id=self.user_id,
                        attempt=self.attempts,
                        retry_in=self._retry_delay,
                    )
                else:
                    self._transition(SubscriptionState.SUBSCRIBED)
                    self.established += 1
                    logger.info("subscription_established", user_id=self.user_id, attempt=self.attempts)
                    if self.established > 1 and self._on_resubscribed is not None:
                        self._on_resubscribed()
                    await self._dropped.wait()
                    channel, self._channel = self._channel, None
                    if channel is not None:
                        await channel.cancel()
                    logger.warning("subscription_dropped", user_id=self.user_id, retry_in=self._retry_delay)
                self._transition(SubscriptionState.RETRYING)
                await self._sleep(self._retry_delay)
        finally:
            channel, self._channel = self._channel, None
            if channel is not None:
                await channel.cancel()

    def _on_status(self, status: ChannelStatus) -> None:
        if status is not ChannelStatus.SUBSCRIBED and self._state is SubscriptionState.SUBSCRIBED:
            self._dropped.set()

    def _dispatch(self, event: ChangeEvent) -> None:
        if self.cancelled:
            return
        if event.type is ChangeType.DELETE:
            old = event.old_record or {}
            if "id" in old:
                self._on_delete(str(old["id"]))
            return
        if event.record is None:
            return
        try:
            task = Task.from_row(event.record)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("change_event_malformed", user_id=self.user_id, change=event.type.value, error=repr(exc))
            return
        if event.type is ChangeType.INSERT:
            self._on_insert(task)
        else:
            self._on_update(task)

    def cancel(self) -> bool:
        """
        Stop the connection loop and close the channel. Returns False (and does
        nothing) if the subscription was already cancelled.
        """
        if self.cancelled:
            logger.warning("subscription_cancelled_twice", user_id=self.user_id)
            return False
        self._transition(SubscriptionState.CANCELLED)
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
        return True

    async def wait_closed(self) -> None:
        """Wait until the connection loop has finished tearing down its channel."""
        if self._runner is None:
            return
        try:
            await self._runner
        except asyncio.CancelledError:
            pass


# PUBLIC_INTERFACE
class TaskFeedSynchronizer:
    """Initial load plus live change feed for a user's tasks."""

    def __init__(
        self,
        data: DataService,
        feed: ChangeFeedService,
        *,
        table: str = TASKS_TABLE,
        retry_delay: float = DEFAULT_RETRY_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._data = data
        self._feed = feed
        self._table = table
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._loading: set[str] = set()

    # PUBLIC_INTERFACE
    async def load_all(self, user_id: str) -> Optional[List[Task]]:
        """
        Fetch every task owned by `user_id`, newest first.

        Returns None without issuing a request when a load for the same user is
        already in flight. Raises FetchError on failure.
        """
        if user_id in self._loading:
            logger.debug("load_skipped_in_flight", user_id=user_id)
            return None
        self._loading.add(user_id)
        try:
            rows = await self._data.select(
                self._table,
                filters={OWNER_FILTER: user_id},
                order=Order("created_at", descending=True),
            )
        finally:
            self._loading.discard(user_id)
        try:
            tasks = [Task.from_row(row) for row in rows]
        except (KeyError, TypeError, ValueError) as exc:
            raise FetchError(f"Malformed task row: {exc!r}") from exc
        logger.debug("tasks_loaded", user_id=user_id, count=len(tasks))
        return tasks

    # PUBLIC_INTERFACE
    def subscribe(
        self,
        user_id: str,
        on_insert: TaskCallback,
        on_update: TaskCallback,
        on_delete: DeleteCallback,
        *,
        on_resubscribed: Optional[ResubscribeCallback] = None,
    ) -> Subscription:
        """
        Start a user-scoped change feed. Must be called from a running event loop.
        `on_resubscribed` is called each time the channel comes back after a loss.
        """
        subscription = Subscription(
            self._feed,
            user_id,
            on_insert,
            on_update,
            on_delete,
            table=self._table,
            retry_delay=self._retry_delay,
            sleep=self._sleep,
            on_resubscribed=on_resubscribed,
        )
        subscription.start()
        return subscription
