"""
Local view state of a task list.

The list is an immutable snapshot (a tuple of Task sorted by created_at
descending). Both producers, the mutation coordinator and the feed
synchronizer, change it only through the merge functions below. Each one is
keyed by task id and leaves the snapshot untouched when there is nothing to
do, so they can be applied in any arrival order.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .logging import get_logger
from .models import Task

logger = get_logger(__name__)

TaskSnapshot = Tuple[Task, ...]
ViewListener = Callable[[Optional[int]], None]


def _sort_key(task: Task):
    return (task.created_at, task.id)


def sort_tasks(tasks: Iterable[Task]) -> TaskSnapshot:
    """Newest first; id breaks ties so the order is deterministic."""
    return tuple(sorted(tasks, key=_sort_key, reverse=True))


def find(snapshot: TaskSnapshot, task_id: str) -> Optional[Task]:
    for task in snapshot:
        if task.id == task_id:
            return task
    return None


def insert_if_absent(snapshot: TaskSnapshot, task: Task) -> TaskSnapshot:
    """Add a task unless an entry with the same id is already present."""
    if find(snapshot, task.id) is not None:
        return snapshot
    return sort_tasks((*snapshot, task))


def upsert(snapshot: TaskSnapshot, task: Task) -> TaskSnapshot:
    """Insert or replace the entry with the task's id."""
    existing = find(snapshot, task.id)
    if existing == task:
        return snapshot
    return sort_tasks((*(t for t in snapshot if t.id != task.id), task))


def remove(snapshot: TaskSnapshot, task_id: str) -> TaskSnapshot:
    if find(snapshot, task_id) is None:
        return snapshot
    return tuple(t for t in snapshot if t.id != task_id)


def set_complete(snapshot: TaskSnapshot, task_id: str, value: bool) -> TaskSnapshot:
    existing = find(snapshot, task_id)
    if existing is None or existing.is_complete == value:
        return snapshot
    return tuple(t.with_complete(value) if t.id == task_id else t for t in snapshot)


def confirm(snapshot: TaskSnapshot, temp_id: str, task: Task) -> TaskSnapshot:
    """
    Swap a temporary entry for the server row returned by the insert.
    If the feed already delivered that row, only the temporary entry goes away.
    """
    return upsert(remove(snapshot, temp_id), task)


def merge_loaded(
    snapshot: TaskSnapshot, loaded: Iterable[Task], base: Optional[TaskSnapshot] = None
) -> TaskSnapshot:
    """
    Merge a freshly loaded collection into the view.

    `base` is the snapshot taken when the load started. An entry that changed
    locally since then (added, updated or removed by a mutation or the feed)
    is newer than the load and keeps its current state. Every other entry
    follows the loaded collection. Temporary entries whose insert is still in
    flight are always kept. Without a base the load replaces all confirmed
    entries.
    """
    if base is None:
        base = snapshot
    loaded_by_id: Dict[str, Task] = {task.id: task for task in loaded}
    current_by_id: Dict[str, Task] = {task.id: task for task in snapshot}
    base_by_id: Dict[str, Task] = {task.id: task for task in base}

    merged: Dict[str, Task] = {}
    for task_id in {*loaded_by_id, *current_by_id, *base_by_id}:
        current = current_by_id.get(task_id)
        if current is not None and current.pending:
            merged[task_id] = current
            continue
        if current != base_by_id.get(task_id):
            chosen = current
        else:
            chosen = loaded_by_id.get(task_id)
        if chosen is not None:
            merged[task_id] = chosen
    result = sort_tasks(merged.values())
    return snapshot if result == snapshot else result


class TaskListView:
    """
    Holder of the local view state for one signed-in user.

    Listeners receive the new version after each change and None once the view
    is closed. A closed view ignores all further changes, which is how late
    callbacks for a departed user are short-circuited.
    """

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self._snapshot: TaskSnapshot = ()
        self._input_text = ""
        self._loading = True
        self._version = 0
        self._closed = False
        self._listeners: List[ViewListener] = []

    @property
    def tasks(self) -> TaskSnapshot:
        return self._snapshot

    @property
    def input_text(self) -> str:
        return self._input_text

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def version(self) -> int:
        return self._version

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, task_id: str) -> Optional[Task]:
        return find(self._snapshot, task_id)

    def apply(self, merge: Callable[..., TaskSnapshot], *args) -> bool:
        """Run a merge function against the current snapshot. Returns True if it changed."""
        if self._closed:
            logger.debug("view_closed_merge_ignored", merge=merge.__name__, user_id=self.user_id)
            return False
        updated = merge(self._snapshot, *args)
        if updated is self._snapshot:
            return False
        self._snapshot = updated
        self._changed()
        return True

    def set_input(self, text: str) -> None:
        if self._closed or text == self._input_text:
            return
        self._input_text = text
        self._changed()

    def set_loading(self, loading: bool) -> None:
        if self._closed or loading == self._loading:
            return
        self._loading = loading
        self._changed()

    def add_listener(self, listener: ViewListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for listener in list(self._listeners):
            listener(None)
        self._listeners.clear()

    def _changed(self) -> None:
        self._version += 1
        for listener in list(self._listeners):
            listener(self._version)
