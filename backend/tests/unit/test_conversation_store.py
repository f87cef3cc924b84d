import asyncio

import pytest

from chatwire.domain.chat.drafts import build_draft
from chatwire.domain.chat.errors import Forbidden, NotFound, Unauthorized, ValidationFailed
from chatwire.domain.chat.models import ChangeKind, MessageType
from chatwire.domain.chat.store import MemoryConversationStore


@pytest.fixture
def events():
    return []


@pytest.fixture
def store(events):
    return MemoryConversationStore(publish=events.append)


async def _pair(store):
    alice = await store.find_or_create_user("5550000001", "Alice")
    bob = await store.find_or_create_user("5550000002", "Bob")
    return alice, bob


async def _unread(store, owner, peer):
    summary = await store.get_chat_summary(owner.id, peer.id)
    return summary.unread_count if summary else 0


@pytest.mark.asyncio
async def test_append_then_list_returns_message_once_and_bumps_unread(store):
    alice, bob = await _pair(store)

    message = await store.append_message(build_draft(alice.id, bob.id, "hi"))
    page = await store.list_messages(alice.id, bob.id, limit=50)

    assert [m.id for m in page.items] == [message.id]
    assert page.items[0].sender_id == alice.id
    assert page.items[0].content == "hi"
    assert await _unread(store, bob, alice) == 1
    assert await _unread(store, alice, bob) == 0


@pytest.mark.asyncio
async def test_list_is_symmetric_between_participants(store):
    alice, bob = await _pair(store)
    await store.append_message(build_draft(alice.id, bob.id, "one"))
    await store.append_message(build_draft(bob.id, alice.id, "two"))

    forward = await store.list_messages(alice.id, bob.id, limit=10)
    backward = await store.list_messages(bob.id, alice.id, limit=10)

    assert [m.content for m in forward.items] == ["one", "two"]
    assert [m.id for m in forward.items] == [m.id for m in backward.items]


@pytest.mark.asyncio
async def test_mark_read_is_idempotent(store):
    alice, bob = await _pair(store)
    await store.append_message(build_draft(alice.id, bob.id, "hi"))

    await store.mark_read(bob.id, alice.id)
    assert await _unread(store, bob, alice) == 0
    await store.mark_read(bob.id, alice.id)
    assert await _unread(store, bob, alice) == 0


@pytest.mark.asyncio
async def test_pagination_returns_newest_page_in_ascending_order(store):
    alice, bob = await _pair(store)
    sent = [await store.append_message(build_draft(alice.id, bob.id, f"m{i}")) for i in range(5)]

    page = await store.list_messages(alice.id, bob.id, limit=3)
    assert [m.content for m in page.items] == ["m2", "m3", "m4"]
    assert page.has_more is True

    older = await store.list_messages(alice.id, bob.id, limit=3, before=page.items[0].created_at)
    assert all(m.created_at < page.items[0].created_at for m in older.items)
    assert older.has_more is (len(older.items) == 3)

    newer = await store.list_messages(alice.id, bob.id, limit=10, after=sent[0].created_at)
    assert all(m.created_at > sent[0].created_at for m in newer.items)
    assert newer.has_more is False


@pytest.mark.asyncio
async def test_list_rejects_non_positive_limit(store):
    alice, bob = await _pair(store)
    with pytest.raises(ValidationFailed):
        await store.list_messages(alice.id, bob.id, limit=0)


@pytest.mark.asyncio
async def test_unknown_sender_and_recipient_are_rejected(store):
    alice, _ = await _pair(store)

    with pytest.raises(Unauthorized):
        await store.append_message(build_draft("ghost", alice.id, "boo"))
    with pytest.raises(ValidationFailed) as excinfo:
        await store.append_message(build_draft(alice.id, "ghost", "boo"))
    assert excinfo.value.detail == "unknown_recipient"
    assert await store.list_chat_summaries(alice.id) == []


@pytest.mark.asyncio
async def test_edit_by_other_user_is_forbidden_and_leaves_message_unchanged(store):
    alice, bob = await _pair(store)
    message = await store.append_message(build_draft(alice.id, bob.id, "original"))

    with pytest.raises(Forbidden):
        await store.edit_message(message.id, bob.id, "hijacked")
    with pytest.raises(Forbidden):
        await store.soft_delete_message(message.id, bob.id)

    current = await store.get_message(message.id)
    assert current.text == "original"
    assert current.edited is False
    assert current.deleted is False


@pytest.mark.asyncio
async def test_edit_overlays_content_and_refreshes_preview(store):
    alice, bob = await _pair(store)
    message = await store.append_message(build_draft(alice.id, bob.id, "typo"))

    edited = await store.edit_message(message.id, alice.id, "fixed")

    assert edited.edited is True
    assert edited.content == "typo"
    assert edited.text == "fixed"
    assert edited.edited_at is not None
    summary = await store.get_chat_summary(bob.id, alice.id)
    assert summary.last_message_preview == "fixed"


@pytest.mark.asyncio
async def test_soft_delete_hides_message_but_keeps_row(store):
    alice, bob = await _pair(store)
    first = await store.append_message(build_draft(alice.id, bob.id, "keep"))
    second = await store.append_message(build_draft(alice.id, bob.id, "drop"))

    deleted = await store.soft_delete_message(second.id, alice.id)

    assert deleted.deleted is True
    page = await store.list_messages(alice.id, bob.id, limit=10)
    assert [m.id for m in page.items] == [first.id]
    assert (await store.get_message(second.id)).deleted is True
    with pytest.raises(NotFound):
        await store.edit_message(second.id, alice.id, "again")
    summary = await store.get_chat_summary(alice.id, bob.id)
    assert summary.last_message_preview == "keep"


@pytest.mark.asyncio
async def test_missing_message_is_not_found(store):
    alice, _ = await _pair(store)
    with pytest.raises(NotFound):
        await store.edit_message("missing", alice.id, "x")
    with pytest.raises(NotFound):
        await store.get_message("missing")


@pytest.mark.asyncio
async def test_concurrent_appends_never_lose_unread_increments(store):
    alice, bob = await _pair(store)

    await asyncio.gather(*(store.append_message(build_draft(alice.id, bob.id, f"m{i}")) for i in range(25)))

    assert await _unread(store, bob, alice) == 25
    page = await store.list_messages(alice.id, bob.id, limit=100)
    assert len(page.items) == 25


@pytest.mark.asyncio
async def test_summaries_sorted_by_latest_and_exclude_archived(store):
    alice, bob = await _pair(store)
    carol = await store.find_or_create_user("5550000003", "Carol")
    await store.append_message(build_draft(alice.id, bob.id, "to bob"))
    await store.append_message(build_draft(carol.id, alice.id, "from carol"))

    summaries = await store.list_chat_summaries(alice.id)
    assert [s.peer_id for s in summaries] == [carol.id, bob.id]
    assert summaries[0].peer.name == "Carol"

    await store.archive_chat(alice.id, carol.id)
    assert [s.peer_id for s in await store.list_chat_summaries(alice.id)] == [bob.id]

    await store.append_message(build_draft(carol.id, alice.id, "ping"))
    assert [s.peer_id for s in await store.list_chat_summaries(alice.id)] == [carol.id, bob.id]


@pytest.mark.asyncio
async def test_archive_without_conversation_is_not_found(store):
    alice, bob = await _pair(store)
    with pytest.raises(NotFound):
        await store.archive_chat(alice.id, bob.id)


@pytest.mark.asyncio
async def test_update_chat_settings_replaces_settings(store):
    alice, bob = await _pair(store)

    summary = await store.update_chat_settings(alice.id, bob.id, {"muted": True, "wallpaper": "dark"})
    assert summary.settings == {"muted": True, "wallpaper": "dark"}

    summary = await store.update_chat_settings(alice.id, bob.id, {"muted": False})
    assert summary.settings == {"muted": False}
    assert (await store.get_chat_summary(bob.id, alice.id)) is None


@pytest.mark.asyncio
async def test_reply_carries_preview_and_must_stay_in_conversation(store):
    alice, bob = await _pair(store)
    carol = await store.find_or_create_user("5550000003", "Carol")
    original = await store.append_message(build_draft(alice.id, bob.id, "question?"))
    elsewhere = await store.append_message(build_draft(alice.id, carol.id, "other chat"))

    reply = await store.append_message(build_draft(bob.id, alice.id, "answer", reply_to_id=original.id))

    assert reply.reply_preview is not None
    assert reply.reply_preview.id == original.id
    assert reply.reply_preview.text == "question?"
    assert reply.reply_preview.author == "Alice"
    with pytest.raises(ValidationFailed) as excinfo:
        await store.append_message(build_draft(bob.id, alice.id, "nope", reply_to_id=elsewhere.id))
    assert excinfo.value.detail == "reply_target_invalid"


@pytest.mark.asyncio
async def test_reply_preview_hides_text_of_deleted_target(store):
    alice, bob = await _pair(store)
    original = await store.append_message(build_draft(alice.id, bob.id, "regret this"))
    reply = await store.append_message(build_draft(bob.id, alice.id, "what?", reply_to_id=original.id))

    await store.soft_delete_message(original.id, alice.id)

    preview = (await store.get_message(reply.id)).reply_preview
    assert (preview.id, preview.text, preview.deleted) == (original.id, "", True)
    page = await store.list_messages(alice.id, bob.id, limit=10)
    assert [m.reply_preview.text for m in page.items] == [""]


@pytest.mark.asyncio
async def test_file_message_preview_uses_file_name(store):
    alice, bob = await _pair(store)
    draft = build_draft(
        alice.id,
        bob.id,
        "",
        MessageType.FILE,
        file={"url": "https://cdn.example/a.pdf", "name": "a.pdf", "size": 10, "mimeType": "application/pdf"},
    )

    message = await store.append_message(draft)

    assert message.file.mime_type == "application/pdf"
    summary = await store.get_chat_summary(bob.id, alice.id)
    assert summary.last_message_preview == "a.pdf"


@pytest.mark.asyncio
async def test_writes_publish_change_events_in_commit_order(store, events):
    alice, bob = await _pair(store)
    first = await store.append_message(build_draft(alice.id, bob.id, "a"))
    second = await store.append_message(build_draft(alice.id, bob.id, "b"))
    await store.edit_message(first.id, alice.id, "a2")
    await store.soft_delete_message(second.id, alice.id)
    await store.mark_read(bob.id, alice.id)

    assert [(e.kind, e.message_id) for e in events] == [
        (ChangeKind.INSERTED, first.id),
        (ChangeKind.INSERTED, second.id),
        (ChangeKind.UPDATED, first.id),
        (ChangeKind.UPDATED, second.id),
    ]


@pytest.mark.asyncio
async def test_offline_recipient_scenario(store):
    alice, bob = await _pair(store)

    await store.append_message(build_draft(alice.id, bob.id, "hi"))

    page = await store.list_messages(alice.id, bob.id, limit=50)
    assert [(m.sender_id, m.text) for m in page.items] == [(alice.id, "hi")]
    assert await _unread(store, bob, alice) == 1
    await store.mark_read(bob.id, alice.id)
    assert await _unread(store, bob, alice) == 0
