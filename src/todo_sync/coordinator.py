from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional, Set

from .errors import FetchError
from .logging import get_logger
from .models import TASKS_TABLE, Task, new_temp_id, utcnow
from .notifications import Notifier
from .services import DataService
from .view_state import TaskListView, confirm, insert_if_absent, remove, set_complete

logger = get_logger(__name__)


class MutationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    REJECTED = "rejected"


# PUBLIC_INTERFACE
class OptimisticMutationCoordinator:
    """
    Applies add/toggle/delete to the local view, issues the remote call and
    reconciles or rolls back when it settles.

    Each operation changes local state before returning and hands back a future
    resolving to the MutationOutcome, so the caller can render right away and
    await the outcome only if it wants to.
    """

    def __init__(
        self,
        view: TaskListView,
        data: DataService,
        notifier: Notifier,
        *,
        table: str = TASKS_TABLE,
        clock: Callable = utcnow,
    ) -> None:
        self._view = view
        self._data = data
        self._notifier = notifier
        self._table = table
        self._clock = clock
        self._add_pending = False
        self._inflight: Set["asyncio.Future[MutationOutcome]"] = set()

    @property
    def add_pending(self) -> bool:
        return self._add_pending

    def _settled(self, outcome: MutationOutcome) -> "asyncio.Future[MutationOutcome]":
        future: "asyncio.Future[MutationOutcome]" = asyncio.get_running_loop().create_future()
        future.set_result(outcome)
        return future

    def _track(self, coro: Awaitable[MutationOutcome]) -> "asyncio.Future[MutationOutcome]":
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight remote call to settle."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # PUBLIC_INTERFACE
    def add(self, text: str) -> "asyncio.Future[MutationOutcome]":
        """
        Insert a temporary entry at the head, clear the input, then insert remotely.
        Blank text, a missing view, or another add still in flight is rejected.
        """
        title = text.strip()
        if not title:
            return self._settled(MutationOutcome.REJECTED)
        if self._add_pending:
            logger.debug("add_rejected_pending", user_id=self._view.user_id)
            return self._settled(MutationOutcome.REJECTED)
        if self._view.closed:
            return self._settled(MutationOutcome.REJECTED)

        temp = Task(
            id=new_temp_id(),
            owner_user_id=self._view.user_id,
            text=title,
            is_complete=False,
            created_at=self._clock(),
            pending=True,
        )
        self._add_pending = True
        self._view.apply(insert_if_absent, temp)
        self._view.set_input("")
        return self._track(self._complete_add(temp, text))

    async def _complete_add(self, temp: Task, submitted: str) -> MutationOutcome:
        try:
            row = await self._data.insert(
                self._table,
                {"task": temp.text, "is_complete": False, "user_id": temp.owner_user_id},
            )
            confirmed = Task.from_row(row)
        except FetchError as exc:
            logger.warning("task_add_failed", error=str(exc))
            return self._rollback_add(temp, submitted, exc.message)
        except Exception:
            logger.exception("task_add_failed")
            return self._rollback_add(temp, submitted, None)
        finally:
            self._add_pending = False
        self._view.apply(confirm, temp.id, confirmed)
        self._notifier.success("Task added.")
        logger.info("task_added", task_id=confirmed.id)
        return MutationOutcome.CONFIRMED

    def _rollback_add(self, temp: Task, submitted: str, message: Optional[str]) -> MutationOutcome:
        self._view.apply(remove, temp.id)
        self._view.set_input(submitted)
        self._notifier.error(message or "Could not add the task.")
        return MutationOutcome.ROLLED_BACK

    # PUBLIC_INTERFACE
    def toggle(self, task_id: str) -> "asyncio.Future[MutationOutcome]":
        """Flip is_complete locally, then update remotely; flip back on failure."""
        task = self._view.get(task_id)
        if task is None or task.pending:
            return self._settled(MutationOutcome.REJECTED)
        prior = task.is_complete
        self._view.apply(set_complete, task_id, not prior)
        return self._track(self._complete_toggle(task_id, prior))

    async def _complete_toggle(self, task_id: str, prior: bool) -> MutationOutcome:
        try:
            await self._data.update(self._table, task_id, {"is_complete": not prior})
        except FetchError as exc:
            logger.warning("task_toggle_failed", task_id=task_id, error=str(exc))
            return self._rollback_toggle(task_id, prior, exc.message)
        except Exception:
            logger.exception("task_toggle_failed", task_id=task_id)
            return self._rollback_toggle(task_id, prior, None)
        self._notifier.success("Task updated.")
        return MutationOutcome.CONFIRMED

    def _rollback_toggle(self, task_id: str, prior: bool, message: Optional[str]) -> MutationOutcome:
        self._view.apply(set_complete, task_id, prior)
        self._notifier.error(message or "Could not update the task.")
        return MutationOutcome.ROLLED_BACK

    # PUBLIC_INTERFACE
    def delete(self, task_id: str) -> "asyncio.Future[MutationOutcome]":
        """Delete remotely; the entry leaves the view only after the service confirms."""
        task = self._view.get(task_id)
        if task is None or task.pending:
            return self._settled(MutationOutcome.REJECTED)
        return self._track(self._complete_delete(task_id))

    async def _complete_delete(self, task_id: str) -> MutationOutcome:
        try:
            await self._data.delete(self._table, task_id)
        except FetchError as exc:
            logger.warning("task_delete_failed", task_id=task_id, error=str(exc))
            self._notifier.error(exc.message or "Could not delete the task.")
            return MutationOutcome.ROLLED_BACK
        except Exception:
            logger.exception("task_delete_failed", task_id=task_id)
            self._notifier.error("Could not delete the task.")
            return MutationOutcome.ROLLED_BACK
        self._view.apply(remove, task_id)
        self._notifier.success("Task deleted.")
        return MutationOutcome.CONFIRMED


def outcome_of(pending: "asyncio.Future[MutationOutcome]") -> Optional[MutationOutcome]:
    """The outcome if the mutation has settled, else None."""
    if pending.done() and not pending.cancelled() and pending.exception() is None:
        return pending.result()
    return None
