# tests/test_todo_store.py

from __future__ import annotations

import datetime
import sqlite3
from pathlib import Path

from todo_store import SessionStore, TodoStore, coerce_datetime


def test_upsert_user_is_keyed_by_email(store: TodoStore) -> None:
    first = store.upsert_user("Bob@Example.com ", "Bob")
    again = store.upsert_user("bob@example.com")
    renamed = store.upsert_user("bob@example.com", "Robert")

    assert first.email == "bob@example.com"
    assert again.id == first.id
    assert again.name == "Bob"
    assert renamed.id == first.id
    assert renamed.name == "Robert"
    assert store.upsert_user("bob@example.com").name == "Robert"


def test_tasks_are_listed_oldest_first_and_scoped(store: TodoStore) -> None:
    alice = store.upsert_user("alice@example.com", "Alice")
    bob = store.upsert_user("bob@example.com", "Bob")

    t1 = store.create_task(alice.id, "first")
    t2 = store.create_task(bob.id, "bob's", priority=3)
    t3 = store.create_task(alice.id, "second")

    assert [t["id"] for t in store.list_tasks(owner_id=alice.id)] == [t1["id"], t3["id"]]
    assert [t["id"] for t in store.list_tasks()] == [t1["id"], t2["id"], t3["id"]]
    assert "owner" not in store.list_tasks(owner_id=alice.id)[0]

    joined = store.list_tasks(with_owner=True)
    assert joined[1]["owner"] == {"id": bob.id, "name": "Bob", "email": "bob@example.com"}


def test_created_task_defaults(store: TodoStore) -> None:
    alice = store.upsert_user("alice@example.com")
    task = store.create_task(alice.id, "Buy milk")

    assert task["completed"] is False
    assert task["priority"] == 0
    assert task["ownerId"] == alice.id
    assert task["createdAt"] == task["updatedAt"]
    assert coerce_datetime(task["createdAt"]).tzinfo is not None


def test_update_applies_only_patched_fields(store: TodoStore) -> None:
    alice = store.upsert_user("alice@example.com")
    task = store.create_task(alice.id, "Buy milk", priority=2)

    updated = store.update_task(task["id"], alice.id, {"completed": True, "owner_id": "someone"})

    assert updated["completed"] is True
    assert updated["name"] == "Buy milk"
    assert updated["priority"] == 2
    assert updated["ownerId"] == alice.id
    assert updated["updatedAt"] >= task["updatedAt"]


def test_conditional_writes_report_zero_rows(store: TodoStore) -> None:
    alice = store.upsert_user("alice@example.com")
    bob = store.upsert_user("bob@example.com")
    task = store.create_task(alice.id, "private")

    assert store.update_task(task["id"], bob.id, {"name": "hijacked"}) is None
    assert store.update_task("no-such-id", alice.id, {"name": "x"}) is None
    assert store.delete_task(task["id"], bob.id) is False
    assert store.list_tasks(owner_id=alice.id)[0]["name"] == "private"

    assert store.delete_task(task["id"], alice.id) is True
    assert store.delete_task(task["id"], alice.id) is False
    assert store.list_tasks(owner_id=alice.id) == []


def test_session_resolve_and_expire(store: TodoStore) -> None:
    alice = store.upsert_user("alice@example.com", "Alice")
    sessions = SessionStore(store)

    token = sessions.create(alice.id)
    assert sessions.resolve(token) == alice
    assert sessions.resolve("bogus") is None
    assert sessions.resolve(None) is None

    sessions.expire(token)
    assert sessions.resolve(token) is None


def test_expired_session_is_removed(store: TodoStore) -> None:
    alice = store.upsert_user("alice@example.com")
    sessions = SessionStore(store, max_age=0)

    token = sessions.create(alice.id)
    assert sessions.resolve(token) is None

    conn = store.get_db()
    try:
        assert conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0] == 0
    finally:
        conn.close()


def _session_row(store: TodoStore, token: str) -> sqlite3.Row:
    conn = store.get_db()
    try:
        return conn.execute("SELECT * FROM sessions WHERE token = ?", (token,)).fetchone()
    finally:
        conn.close()


def test_session_expiry_slides_after_update_age(store: TodoStore) -> None:
    alice = store.upsert_user("alice@example.com")

    fixed = SessionStore(store, update_age=3600)
    token = fixed.create(alice.id)
    before = _session_row(store, token)
    fixed.resolve(token)
    assert _session_row(store, token)["expires_at"] == before["expires_at"]

    sliding = SessionStore(store, update_age=0)
    sliding.resolve(token)
    after = _session_row(store, token)
    assert coerce_datetime(after["expires_at"]) > coerce_datetime(before["expires_at"])
    assert coerce_datetime(after["renewed_at"]) > coerce_datetime(before["renewed_at"])


def test_purge_expired(tmp_path: Path) -> None:
    store = TodoStore(tmp_path / "todo.sqlite3")
    alice = store.upsert_user("alice@example.com")
    SessionStore(store, max_age=0).create(alice.id)
    live = SessionStore(store).create(alice.id)

    assert SessionStore(store).purge_expired() == 1
    assert _session_row(store, live) is not None


def test_coerce_datetime() -> None:
    stamp = datetime.datetime(2024, 1, 15, 10, 30, tzinfo=datetime.timezone.utc)
    assert coerce_datetime(stamp) is stamp
    assert coerce_datetime(stamp.isoformat()) == stamp
    assert coerce_datetime("not a date") is None
    assert coerce_datetime(None) is None
