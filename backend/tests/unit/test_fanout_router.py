import asyncio
import time

import pytest

from chatwire.domain.chat.drafts import build_draft
from chatwire.domain.chat.feed import ChangeFeed
from chatwire.domain.chat.router import FanoutRouter
from chatwire.domain.chat.store import MemoryConversationStore
from chatwire.domain.presence import ConnectionHandle, PresenceRegistry
from chatwire.infra.auth import AuthenticatedUser


async def _connect(registry, user, sid, active_peer=None):
    handle = ConnectionHandle(sid=sid, user_id=user.id, active_peer=active_peer)
    await registry.register_connection(user.id, handle)
    return handle


async def _received(transport, sid, count, timeout=2.0):
    async def arrived():
        while len(transport.events_for(sid, "messageReceived")) < count:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(arrived(), timeout)


@pytest.mark.asyncio
async def test_sequential_sends_arrive_in_commit_order(chat_context, transport, users):
    alice, bob = users
    await _connect(chat_context.registry, bob, "bob-1")

    sent = []
    for i in range(10):
        message = await chat_context.service.send_message(AuthenticatedUser(id=alice.id), bob.id, f"m{i}")
        sent.append(message.id)
    await chat_context.drain()

    received = [p["message"]["id"] for p in transport.events_for("bob-1", "messageReceived")]
    assert received == sent


@pytest.mark.asyncio
async def test_offline_recipient_gets_no_push_but_can_pull(chat_context, transport, users):
    alice, bob = users

    await chat_context.service.send_message(AuthenticatedUser(id=alice.id), bob.id, "hi")
    await chat_context.drain()

    assert transport.pushes == []
    page = await chat_context.service.list_messages(AuthenticatedUser(id=bob.id), alice.id)
    assert [m.text for m in page.items] == ["hi"]
    summary = await chat_context.store.get_chat_summary(bob.id, alice.id)
    assert summary.unread_count == 1


@pytest.mark.asyncio
async def test_every_device_of_both_participants_receives_the_message(chat_context, transport, users):
    alice, bob = users
    await _connect(chat_context.registry, alice, "alice-phone")
    await _connect(chat_context.registry, alice, "alice-laptop")
    await _connect(chat_context.registry, bob, "bob-1")

    message = await chat_context.service.send_message(
        AuthenticatedUser(id=alice.id), bob.id, "hello", client_msg_id="c-1"
    )
    await chat_context.drain()

    for sid in ("alice-phone", "alice-laptop", "bob-1"):
        payloads = transport.events_for(sid, "messageReceived")
        assert [p["message"]["id"] for p in payloads] == [message.id]
        assert payloads[0]["message"]["clientMsgId"] == "c-1"


@pytest.mark.asyncio
async def test_failing_connection_does_not_block_others(chat_context, transport, users):
    alice, bob = users
    await _connect(chat_context.registry, bob, "bob-broken")
    await _connect(chat_context.registry, bob, "bob-ok")
    transport.failing.add("bob-broken")

    message = await chat_context.service.send_message(AuthenticatedUser(id=alice.id), bob.id, "hello")
    await chat_context.drain()

    assert [p["message"]["id"] for p in transport.events_for("bob-ok", "messageReceived")] == [message.id]
    assert transport.events_for("bob-broken") == []


@pytest.mark.asyncio
async def test_stalled_connection_times_out_in_isolation(transport):
    store = MemoryConversationStore()
    registry = PresenceRegistry(grace_seconds=0.05, typing_ttl_seconds=1)
    router = FanoutRouter(store, registry, transport, push_timeout=0.05)
    alice = await store.find_or_create_user("5550000001", "Alice")
    bob = await store.find_or_create_user("5550000002", "Bob")
    await _connect(registry, bob, "bob-slow")
    await _connect(registry, bob, "bob-fast")
    transport.stalled.add("bob-slow")
    message = await store.append_message(build_draft(alice.id, bob.id, "hey"))

    assert router.on_message_persisted(message) == 2
    await router.flush()

    assert len(transport.events_for("bob-fast", "messageReceived")) == 1
    assert transport.events_for("bob-slow") == []
    await router.close()
    await registry.close()


@pytest.mark.asyncio
async def test_edit_and_delete_fan_out_as_updates(chat_context, transport, users):
    alice, bob = users
    await _connect(chat_context.registry, bob, "bob-1")
    sender = AuthenticatedUser(id=alice.id)
    message = await chat_context.service.send_message(sender, bob.id, "draft")

    await chat_context.service.edit_message(sender, message.id, "final")
    await chat_context.service.delete_message(sender, message.id)
    await chat_context.drain()

    updates = [p["message"] for p in transport.events_for("bob-1", "messageUpdated")]
    assert [(u["content"], u["edited"], u["deleted"]) for u in updates] == [
        ("final", True, False),
        ("", True, True),
    ]


@pytest.mark.asyncio
async def test_typing_reaches_only_the_peer_viewing_this_chat(chat_context, transport, users):
    alice, bob = users
    await _connect(chat_context.registry, bob, "bob-in-chat", active_peer=alice.id)
    await _connect(chat_context.registry, bob, "bob-elsewhere")

    await chat_context.registry.set_typing(alice.id, bob.id, True)
    await chat_context.drain()

    assert transport.events_for("bob-in-chat", "userTyping") == [{"peerId": alice.id, "isTyping": True}]
    assert transport.events_for("bob-elsewhere") == []


@pytest.mark.asyncio
async def test_presence_change_reaches_watchers(chat_context, transport, users):
    alice, bob = users
    await _connect(chat_context.registry, bob, "bob-1", active_peer=alice.id)

    await _connect(chat_context.registry, alice, "alice-1")
    await chat_context.drain()

    assert transport.events_for("bob-1", "presenceChanged") == [{"userId": alice.id, "online": True}]
    assert (await chat_context.store.get_user(alice.id)).online is True


@pytest.mark.asyncio
async def test_closed_router_stops_receiving_changes(chat_context, transport, users):
    alice, bob = users
    await _connect(chat_context.registry, bob, "bob-1")
    await chat_context.router.close()

    await chat_context.service.send_message(AuthenticatedUser(id=alice.id), bob.id, "quiet")
    await chat_context.drain()

    assert transport.events_for("bob-1", "messageReceived") == []


@pytest.mark.asyncio
async def test_stalled_connection_does_not_delay_other_conversations(transport):
    feed = ChangeFeed()
    store = MemoryConversationStore(publish=feed.publish)
    registry = PresenceRegistry(grace_seconds=0.05, typing_ttl_seconds=1)
    router = FanoutRouter(store, registry, transport, push_timeout=1.0)
    router.attach(feed)
    await feed.start()
    alice = await store.find_or_create_user("5550000001", "Alice")
    bob = await store.find_or_create_user("5550000002", "Bob")
    carol = await store.find_or_create_user("5550000003", "Carol")
    dave = await store.find_or_create_user("5550000004", "Dave")
    await _connect(registry, bob, "bob-slow")
    await _connect(registry, dave, "dave-1")
    transport.stalled.add("bob-slow")

    started = time.perf_counter()
    await store.append_message(build_draft(alice.id, bob.id, "to the stalled socket"))
    second = await store.append_message(build_draft(carol.id, dave.id, "unrelated"))
    await feed.drain()
    await _received(transport, "dave-1", 1)
    elapsed = time.perf_counter() - started

    assert elapsed < 0.5
    assert [p["message"]["id"] for p in transport.events_for("dave-1", "messageReceived")] == [second.id]
    await router.close()
    await feed.close()
    await registry.close()


@pytest.mark.asyncio
async def test_stalled_push_holds_back_only_its_own_connection(transport, users, chat_context):
    alice, bob = users
    await _connect(chat_context.registry, bob, "bob-slow")
    await _connect(chat_context.registry, bob, "bob-fast")
    transport.stalled.add("bob-slow")
    sender = AuthenticatedUser(id=alice.id)

    sent = [(await chat_context.service.send_message(sender, bob.id, f"m{i}")).id for i in range(3)]
    await chat_context.feed.drain()
    await _received(transport, "bob-fast", 3)

    assert [p["message"]["id"] for p in transport.events_for("bob-fast", "messageReceived")] == sent
    assert transport.events_for("bob-slow") == []
