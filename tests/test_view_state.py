from datetime import datetime, timedelta, timezone

from todo_sync.models import Task
from todo_sync.view_state import (
    TaskListView,
    confirm,
    insert_if_absent,
    merge_loaded,
    remove,
    set_complete,
    sort_tasks,
    upsert,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _task(task_id: str, minutes: int = 0, *, text: str = "task", done: bool = False, pending: bool = False) -> Task:
    return Task(
        id=task_id,
        owner_user_id="user-1",
        text=text,
        is_complete=done,
        created_at=T0 + timedelta(minutes=minutes),
        pending=pending,
    )


class TestMergeFunctions:
    def test_sort_newest_first_with_id_tiebreak(self):
        ordered = sort_tasks([_task("a", 0), _task("c", 5), _task("b", 5)])
        assert [t.id for t in ordered] == ["c", "b", "a"]

    def test_insert_if_absent_ignores_known_id(self):
        snapshot = (_task("a"),)
        assert insert_if_absent(snapshot, _task("a", text="other")) is snapshot

    def test_insert_if_absent_keeps_order(self):
        snapshot = sort_tasks([_task("old", 0)])
        updated = insert_if_absent(snapshot, _task("new", 10))
        assert [t.id for t in updated] == ["new", "old"]

    def test_upsert_replaces_entry(self):
        snapshot = (_task("a", text="before"),)
        updated = upsert(snapshot, _task("a", text="after"))
        assert [t.text for t in updated] == ["after"]

    def test_upsert_identical_task_is_noop(self):
        snapshot = (_task("a"),)
        assert upsert(snapshot, _task("a")) is snapshot

    def test_remove_missing_is_noop(self):
        snapshot = (_task("a"),)
        assert remove(snapshot, "missing") is snapshot
        assert remove(snapshot, "a") == ()

    def test_set_complete_only_touches_target(self):
        snapshot = sort_tasks([_task("a", 0), _task("b", 1)])
        updated = set_complete(snapshot, "a", True)
        assert {t.id: t.is_complete for t in updated} == {"a": True, "b": False}
        assert set_complete(updated, "a", True) is updated

    def test_confirm_replaces_temporary_entry(self):
        temp = _task("temp-1", 5, text="Buy milk", pending=True)
        real = _task("row-1", 5, text="Buy milk")
        assert confirm((temp,), "temp-1", real) == (real,)

    def test_confirm_after_feed_delivered_row(self):
        temp = _task("temp-1", 5, text="Buy milk", pending=True)
        real = _task("row-1", 5, text="Buy milk")
        snapshot = insert_if_absent((temp,), real)
        assert len(snapshot) == 2
        assert confirm(snapshot, "temp-1", real) == (real,)

    def test_merge_loaded_keeps_pending_entries(self):
        temp = _task("temp-1", 30, pending=True)
        stale = _task("gone", 1)
        snapshot = sort_tasks([temp, stale])
        loaded = [_task("a", 2), _task("b", 3)]
        merged = merge_loaded(snapshot, loaded)
        assert [t.id for t in merged] == ["temp-1", "b", "a"]

    def test_merge_loaded_same_collection_is_noop(self):
        snapshot = sort_tasks([_task("a", 1), _task("b", 2)])
        assert merge_loaded(snapshot, list(snapshot)) is snapshot

    def test_merge_loaded_keeps_changes_made_during_the_load(self):
        untouched, toggled, deleted = _task("a", 1), _task("b", 2), _task("c", 3)
        base = sort_tasks([untouched, toggled, deleted])
        added = _task("d", 4, text="Buy milk")
        # While the load was in flight: one add, one toggle, one delete.
        current = sort_tasks([untouched, toggled.with_complete(True), added])
        stale = [untouched, toggled, deleted]

        merged = merge_loaded(current, stale, base)

        assert [t.id for t in merged] == ["d", "b", "a"]
        assert {t.id: t.is_complete for t in merged}["b"] is True

    def test_merge_loaded_applies_remote_changes_to_untouched_entries(self):
        kept, removed_remotely = _task("a", 1), _task("b", 2)
        base = sort_tasks([kept, removed_remotely])
        loaded = [kept.with_complete(True), _task("c", 3)]

        merged = merge_loaded(base, loaded, base)

        assert [(t.id, t.is_complete) for t in merged] == [("c", False), ("a", True)]

    def test_merge_loaded_drops_temporary_entry_confirmed_during_the_load(self):
        temp = _task("temp-1", 5, pending=True)
        real = _task("r1", 5, text="Buy milk")
        base = (temp,)

        assert merge_loaded((real,), [], base) == (real,)


class TestTaskListView:
    def test_initial_state(self):
        view = TaskListView("user-1")
        assert view.tasks == ()
        assert view.loading is True
        assert view.input_text == ""
        assert view.version == 0

    def test_apply_notifies_only_on_change(self):
        view = TaskListView("user-1")
        seen = []
        view.add_listener(seen.append)
        assert view.apply(insert_if_absent, _task("a")) is True
        assert view.apply(insert_if_absent, _task("a")) is False
        assert seen == [1]

    def test_input_and_loading_bump_version(self):
        view = TaskListView("user-1")
        view.set_input("Buy milk")
        view.set_input("Buy milk")
        view.set_loading(False)
        assert view.version == 2
        assert view.input_text == "Buy milk"
        assert view.loading is False

    def test_closed_view_ignores_changes(self):
        view = TaskListView("user-1")
        seen = []
        view.add_listener(seen.append)
        view.close()
        assert view.apply(insert_if_absent, _task("a")) is False
        view.set_input("late")
        assert view.tasks == ()
        assert view.input_text == ""
        assert seen == [None]

    def test_removed_listener_is_not_called(self):
        view = TaskListView("user-1")
        seen = []
        remove_listener = view.add_listener(seen.append)
        remove_listener()
        view.set_input("x")
        assert seen == []
