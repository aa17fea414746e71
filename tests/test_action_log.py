import asyncio
import sqlite3

import hog_board as hb


class RefreshSpy:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return True


def make_log(store=None):
    notifier = hb.Notifier()
    refresh = RefreshSpy()
    return hb.ActionLog(notifier, refresh, store=store), notifier, refresh


def test_ring_buffer_keeps_last_ten():
    log, _, _ = make_log()
    for i in range(15):
        log.record(f"action {i}", status=hb.SUCCESS)
    assert len(log.entries) == hb.ACTION_LOG_CAPACITY
    assert log.entries[0].description == "action 5"
    assert [e.description for e in log.recent()] == [f"action {i}" for i in range(10, 15)]


def test_undo_runs_most_recent_thunk_once():
    log, notifier, refresh = make_log()
    ran = []

    async def undo_a():
        ran.append("a")

    async def undo_b():
        ran.append("b")

    log.record("a", status=hb.SUCCESS, undo=undo_a)
    log.record("b", status=hb.SUCCESS, undo=undo_b)
    log.record("c", status=hb.SUCCESS)
    assert asyncio.run(log.undo_last())
    assert ran == ["b"]
    assert asyncio.run(log.undo_last())
    assert ran == ["b", "a"]
    assert not log.has_undoable
    assert refresh.calls == 0


def test_undo_strips_thunk_before_running():
    log, _, _ = make_log()
    seen = []

    async def undo():
        seen.append(log.entries[0].undo)

    log.record("x", status=hb.SUCCESS, undo=undo)
    asyncio.run(log.undo_last())
    assert seen == [None]


def test_nothing_to_undo_notifies():
    log, notifier, _ = make_log()
    assert not asyncio.run(log.undo_last())
    assert notifier.items[-1].message == "Nothing to undo"


def test_failed_undo_refreshes():
    log, notifier, refresh = make_log()

    async def undo():
        raise RuntimeError("server said no")

    log.record("x", status=hb.SUCCESS, undo=undo)
    assert not asyncio.run(log.undo_last())
    assert refresh.calls == 1
    assert any(n.kind == "error" and "server said no" in n.message for n in notifier.items)
    assert not log.has_undoable


def test_store_records_finished_entries_once(tmp_path):
    store = hb.ActionLogStore(str(tmp_path / "log.db"))
    log, _, _ = make_log(store)
    entry = log.record("move #1")
    assert store.recent() == []
    log.update(entry, status=hb.SUCCESS)
    log.update(entry, description="move #1 again")
    rows = store.recent()
    assert [(r["id"], r["description"], r["status"]) for r in rows] == [(entry.id, "move #1", "success")]


def test_store_trims_to_max_rows(tmp_path):
    store = hb.ActionLogStore(str(tmp_path / "log.db"))
    store.MAX_ROWS = 3
    log, _, _ = make_log(store)
    for i in range(5):
        log.record(f"a{i}", status=hb.SUCCESS)
    assert [r["description"] for r in store.recent()] == ["a2", "a3", "a4"]


def test_persistence_failure_is_swallowed(tmp_path):
    store = hb.ActionLogStore(str(tmp_path / "log.db"))
    store.close()
    log, notifier, _ = make_log(store)
    entry = log.record("x", status=hb.ERROR)
    assert log.entries == [entry]
    assert notifier.items == []


def test_store_uses_wal(tmp_path):
    path = str(tmp_path / "log.db")
    hb.ActionLogStore(path)
    mode = sqlite3.connect(path).execute("PRAGMA journal_mode").fetchone()[0]
    assert mode.lower() == "wal"
