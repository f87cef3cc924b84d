import json
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import asyncpg
import pytest

from chatwire.domain.chat import feed as feed_module
from chatwire.domain.chat.drafts import build_draft
from chatwire.domain.chat.errors import Forbidden, NotFound, Unauthorized, ValidationFailed, WriteConflict
from chatwire.domain.chat.feed import PostgresChangeFeed
from chatwire.domain.chat.models import ChangeEvent, ChangeKind
from chatwire.domain.chat.postgres_store import PostgresConversationStore

ALICE = "u-alice"
BOB = "u-bob"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class RecordedConnection:
    """Stands in for an asyncpg connection: records statements, replays queued results."""

    def __init__(self):
        self.statements = []
        self.results = {"fetch": deque(), "fetchrow": deque(), "fetchval": deque(), "execute": deque()}
        self.failures = []
        self.transactions = []

    def queue(self, method, *results):
        self.results[method].extend(results)

    def fail_on(self, fragment, exc):
        self.failures.append((fragment, exc))

    async def _run(self, method, query, args):
        sql = " ".join(query.split())
        self.statements.append((method, sql, args))
        for fragment, exc in self.failures:
            if fragment in sql:
                raise exc
        pending = self.results[method]
        if pending:
            return pending.popleft()
        return {"fetch": [], "execute": "UPDATE 1"}.get(method)

    async def fetch(self, query, *args):
        return await self._run("fetch", query, args)

    async def fetchrow(self, query, *args):
        return await self._run("fetchrow", query, args)

    async def fetchval(self, query, *args):
        return await self._run("fetchval", query, args)

    async def execute(self, query, *args):
        return await self._run("execute", query, args)

    @asynccontextmanager
    async def transaction(self):
        try:
            yield
        except BaseException:
            self.transactions.append("rollback")
            raise
        self.transactions.append("commit")

    def executed(self, fragment):
        return [(sql, args) for method, sql, args in self.statements if method == "execute" and fragment in sql]


class RecordedPool:
    def __init__(self, conn):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


def _message_row(**overrides):
    row = {
        "id": "m-1",
        "seq": 1,
        "client_msg_id": "c-1",
        "sender_id": ALICE,
        "recipient_id": BOB,
        "content": "hello",
        "message_type": "text",
        "reply_to_id": None,
        "file_url": None,
        "file_name": None,
        "file_size": None,
        "file_mime_type": None,
        "is_edited": False,
        "edited_content": None,
        "edited_at": None,
        "is_deleted": False,
        "created_at": NOW,
        "reply_id": None,
        "reply_text": None,
        "reply_deleted": None,
        "reply_author": None,
    }
    row.update(overrides)
    return row


def _user_row(user_id, phone, name=None):
    return {"id": user_id, "phone": phone, "name": name, "is_online": False, "last_seen": None, "created_at": NOW}


def _pg_error(cls, constraint=None):
    exc = cls("simulated")
    if constraint is not None:
        exc.constraint_name = constraint
    return exc


@pytest.fixture
def conn():
    return RecordedConnection()


@pytest.fixture
def store(conn):
    return PostgresConversationStore(RecordedPool(conn), channel="chat_changes")


def _known_pair(conn):
    conn.queue("fetch", [{"id": ALICE}, {"id": BOB}])


@pytest.mark.asyncio
async def test_append_bumps_recipient_unread_relatively_and_notifies_last(store, conn):
    _known_pair(conn)
    conn.queue("fetchrow", _message_row())

    message = await store.append_message(build_draft(ALICE, BOB, "hello", client_msg_id="c-1"))

    assert message.sender_id == ALICE
    assert message.text == "hello"
    [(sender_sql, sender_args)] = [s for s in conn.executed("INSERT INTO chat_summaries") if "+ 1" not in s[0]]
    [(recipient_sql, recipient_args)] = conn.executed("unread_count = chat_summaries.unread_count + 1")
    assert sender_args[:2] == (ALICE, BOB)
    assert "VALUES ($1, $2, $3, $4, 0)" in sender_sql
    assert recipient_args[:2] == (BOB, ALICE)
    assert "VALUES ($1, $2, $3, $4, 1)" in recipient_sql
    [(_, insert_args)] = conn.executed("INSERT INTO messages")
    method, sql, args = conn.statements[-1]
    assert "pg_notify" in sql
    assert args[0] == "chat_changes"
    assert json.loads(args[1]) == {"kind": "inserted", "message_id": insert_args[0]}
    assert conn.transactions == ["commit"]


@pytest.mark.asyncio
async def test_append_rejects_unknown_participants_before_writing(store, conn):
    conn.queue("fetch", [{"id": BOB}])
    with pytest.raises(Unauthorized) as excinfo:
        await store.append_message(build_draft(ALICE, BOB, "hi"))
    assert excinfo.value.detail == "unknown_sender"

    conn.queue("fetch", [{"id": ALICE}])
    with pytest.raises(ValidationFailed) as excinfo:
        await store.append_message(build_draft(ALICE, BOB, "hi"))
    assert excinfo.value.detail == "unknown_recipient"

    assert conn.executed("INSERT INTO messages") == []
    assert conn.transactions == ["rollback", "rollback"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "constraint, expected, detail",
    [
        ("messages_sender_fkey", Unauthorized, "unknown_sender"),
        ("messages_recipient_fkey", ValidationFailed, "unknown_recipient"),
    ],
)
async def test_foreign_key_race_maps_to_chat_errors(store, conn, constraint, expected, detail):
    _known_pair(conn)
    conn.fail_on("INSERT INTO messages", _pg_error(asyncpg.exceptions.ForeignKeyViolationError, constraint))

    with pytest.raises(expected) as excinfo:
        await store.append_message(build_draft(ALICE, BOB, "hi"))

    assert excinfo.value.detail == detail
    assert conn.executed("pg_notify") == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [asyncpg.exceptions.SerializationError, asyncpg.exceptions.DeadlockDetectedError],
)
async def test_serialization_failures_become_write_conflicts(store, conn, error):
    conn.queue("fetchrow", {"sender_id": ALICE, "is_deleted": False}, _message_row())
    conn.fail_on("SET is_edited = TRUE", _pg_error(error))

    with pytest.raises(WriteConflict):
        await store.edit_message("m-1", ALICE, "changed")

    assert conn.transactions == ["rollback"]


@pytest.mark.asyncio
async def test_check_violation_is_a_validation_failure(store, conn):
    _known_pair(conn)
    conn.fail_on("INSERT INTO messages", _pg_error(asyncpg.exceptions.CheckViolationError))

    with pytest.raises(ValidationFailed) as excinfo:
        await store.append_message(build_draft(ALICE, BOB, "hi"))

    assert excinfo.value.detail == "constraint_violation"


@pytest.mark.asyncio
async def test_archive_unknown_chat_is_not_found(store, conn):
    conn.queue("execute", "UPDATE 0")
    with pytest.raises(NotFound):
        await store.archive_chat(ALICE, BOB)

    conn.queue("execute", "UPDATE 1")
    await store.archive_chat(ALICE, BOB)


@pytest.mark.asyncio
async def test_find_or_create_rereads_after_losing_the_insert_race(store, conn):
    winner = _user_row("u-winner", "15550000009", "Dana")
    conn.queue("fetchrow", None, None, winner)

    user = await store.find_or_create_user("+1 555 000 0009", "Someone else")

    assert (user.id, user.name) == ("u-winner", "Dana")
    lookups = [(sql, args) for method, sql, args in conn.statements if method == "fetchrow"]
    assert len(lookups) == 3
    assert "ON CONFLICT (phone) DO NOTHING" in lookups[1][0]
    assert lookups[2][0].startswith("SELECT") and lookups[2][1] == ("15550000009",)


@pytest.mark.asyncio
async def test_find_or_create_returns_existing_user_without_insert(store, conn):
    conn.queue("fetchrow", _user_row(ALICE, "15550000001", "Alice"))

    user = await store.find_or_create_user("1-555-000-0001")

    assert user.id == ALICE
    assert len(conn.statements) == 1


@pytest.mark.asyncio
async def test_reply_to_deleted_message_loses_its_text(store, conn):
    conn.queue(
        "fetchrow",
        _message_row(id="m-2", reply_to_id="m-1", reply_id="m-1", reply_text="secret", reply_deleted=True, reply_author="Alice"),
    )

    message = await store.get_message("m-2")

    assert message.reply_preview.id == "m-1"
    assert message.reply_preview.text == ""
    assert message.reply_preview.deleted is True


@pytest.mark.asyncio
async def test_edit_by_non_sender_is_forbidden_and_writes_nothing(store, conn):
    conn.queue("fetchrow", {"sender_id": BOB, "is_deleted": False})

    with pytest.raises(Forbidden) as excinfo:
        await store.edit_message("m-1", ALICE, "mine now")

    assert excinfo.value.detail == "not_message_sender"
    assert conn.executed("UPDATE messages") == []


class FakeListenConnection:
    def __init__(self):
        self.listeners = {}
        self.closed = False

    async def add_listener(self, channel, callback):
        self.listeners[channel] = callback

    async def remove_listener(self, channel, callback):
        if self.listeners.get(channel) is callback:
            del self.listeners[channel]

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_postgres_feed_dispatches_notifications_in_order_and_skips_malformed(monkeypatch):
    listen = FakeListenConnection()

    async def connect(dsn):
        return listen

    monkeypatch.setattr(feed_module.asyncpg, "connect", connect)
    feed = PostgresChangeFeed("postgresql://unused", "chat_changes")
    received = []

    async def subscriber(event):
        received.append(event)

    feed.subscribe(subscriber)
    await feed.start()
    notify = listen.listeners["chat_changes"]

    for payload in (
        json.dumps({"kind": "inserted", "message_id": "m-1"}),
        "not json",
        json.dumps({"kind": "bogus", "message_id": "m-x"}),
        json.dumps({"kind": "updated"}),
        json.dumps(["inserted", "m-y"]),
        json.dumps({"kind": "updated", "message_id": "m-1"}),
        json.dumps({"kind": "inserted", "message_id": "m-2"}),
    ):
        notify(listen, 4242, "chat_changes", payload)
    await feed.drain()

    assert received == [
        ChangeEvent(kind=ChangeKind.INSERTED, message_id="m-1"),
        ChangeEvent(kind=ChangeKind.UPDATED, message_id="m-1"),
        ChangeEvent(kind=ChangeKind.INSERTED, message_id="m-2"),
    ]
    assert all(event.message is None for event in received)

    await feed.close()
    assert listen.closed
    assert listen.listeners == {}
