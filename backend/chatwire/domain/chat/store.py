"""Conversation store contract and its in-memory backend.

The store owns every persisted message, chat summary and user row. Writes
that commit publish a ChangeEvent so the fan-out router can push them; the
publish happens after the commit and in commit order.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

import ulid

from . import phone as phone_utils
from .drafts import MessageDraft, validate_edit
from .errors import Forbidden, NotFound, Unauthorized, ValidationFailed
from .models import (
	ChangeEvent,
	ChangeKind,
	ChatSummary,
	ConversationKey,
	Message,
	MessagePage,
	ReplyPreview,
	User,
	preview_of,
)

Publisher = Callable[[ChangeEvent], None]


class ConversationStore(Protocol):
	async def append_message(self, draft: MessageDraft) -> Message:
		...

	async def get_message(self, message_id: str) -> Message:
		...

	async def list_messages(
		self,
		user_a: str,
		user_b: str,
		*,
		limit: int,
		before: Optional[datetime] = None,
		after: Optional[datetime] = None,
	) -> MessagePage:
		...

	async def edit_message(self, message_id: str, editor_id: str, new_content: str) -> Message:
		...

	async def soft_delete_message(self, message_id: str, requester_id: str) -> Message:
		...

	async def mark_read(self, owner_id: str, peer_id: str) -> None:
		...

	async def list_chat_summaries(self, owner_id: str) -> List[ChatSummary]:
		...

	async def get_chat_summary(self, owner_id: str, peer_id: str) -> Optional[ChatSummary]:
		...

	async def archive_chat(self, owner_id: str, peer_id: str) -> None:
		...

	async def update_chat_settings(self, owner_id: str, peer_id: str, settings: Mapping[str, Any]) -> ChatSummary:
		...

	async def find_or_create_user(self, phone: str, name: Optional[str] = None) -> User:
		...

	async def get_user(self, user_id: str) -> User:
		...

	async def find_user_by_phone(self, query: str, *, exclude_user_id: Optional[str] = None) -> User:
		...

	async def set_user_presence(self, user_id: str, online: bool, *, at: Optional[datetime] = None) -> None:
		...

	async def ping(self) -> None:
		...


def _now() -> datetime:
	return datetime.now(timezone.utc)


def _sort_key(message: Message) -> Tuple[datetime, int]:
	return (message.created_at, message.seq)


class MemoryConversationStore:
	"""Process-local store used for development and tests.

	A single lock makes every operation atomic, which gives the same
	all-or-nothing behaviour the Postgres backend gets from transactions.
	"""

	def __init__(self, publish: Optional[Publisher] = None) -> None:
		self._lock = asyncio.Lock()
		self._publish = publish
		self._seq = 0
		self._users: Dict[str, User] = {}
		self._users_by_phone: Dict[str, str] = {}
		self._messages: Dict[str, Message] = {}
		self._conversations: Dict[ConversationKey, List[str]] = {}
		self._summaries: Dict[Tuple[str, str], ChatSummary] = {}

	def _emit(self, kind: ChangeKind, message: Message) -> None:
		if self._publish is not None:
			self._publish(ChangeEvent(kind=kind, message_id=message.id, message=message.copy()))

	def _project(self, message: Message) -> Message:
		preview = None
		if message.reply_to_id:
			target = self._messages.get(message.reply_to_id)
			if target is not None:
				author = self._users.get(target.sender_id)
				preview = ReplyPreview(
					id=target.id,
					text="" if target.deleted else target.text,
					author=author.display_name if author else "User",
					deleted=target.deleted,
				)
		return message.copy(reply_preview=preview)

	def _summary(self, owner_id: str, peer_id: str) -> ChatSummary:
		key = (owner_id, peer_id)
		summary = self._summaries.get(key)
		if summary is None:
			summary = ChatSummary(owner_id=owner_id, peer_id=peer_id)
			self._summaries[key] = summary
		return summary

	def _refresh_previews(self, conversation: ConversationKey) -> None:
		visible = [
			self._messages[mid]
			for mid in self._conversations.get(conversation, [])
			if not self._messages[mid].deleted
		]
		latest = max(visible, key=_sort_key) if visible else None
		user_a, user_b = conversation.participants()
		for owner, peer in ((user_a, user_b), (user_b, user_a)):
			summary = self._summaries.get((owner, peer))
			if summary is None:
				continue
			summary.last_message_preview = preview_of(latest) if latest else None
			summary.last_message_at = latest.created_at if latest else summary.last_message_at

	async def append_message(self, draft: MessageDraft) -> Message:
		async with self._lock:
			if draft.sender_id not in self._users:
				raise Unauthorized("unknown_sender")
			if draft.recipient_id not in self._users:
				raise ValidationFailed("unknown_recipient")
			conversation = ConversationKey.from_participants(draft.sender_id, draft.recipient_id)
			if draft.reply_to_id:
				target = self._messages.get(draft.reply_to_id)
				if target is None or target.conversation != conversation:
					raise ValidationFailed("reply_target_invalid")
			self._seq += 1
			message = Message(
				id=str(ulid.new()),
				client_msg_id=draft.client_msg_id,
				sender_id=draft.sender_id,
				recipient_id=draft.recipient_id,
				content=draft.content,
				message_type=draft.message_type,
				created_at=_now(),
				seq=self._seq,
				reply_to_id=draft.reply_to_id,
				file=draft.file,
			)
			self._messages[message.id] = message
			self._conversations.setdefault(conversation, []).append(message.id)
			preview = preview_of(message)
			outgoing = self._summary(draft.sender_id, draft.recipient_id)
			incoming = self._summary(draft.recipient_id, draft.sender_id)
			for summary in (outgoing, incoming):
				summary.last_message_preview = preview
				summary.last_message_at = message.created_at
				summary.archived = False
			incoming.unread_count += 1
			projected = self._project(message)
			self._emit(ChangeKind.INSERTED, projected)
			return projected

	async def get_message(self, message_id: str) -> Message:
		async with self._lock:
			message = self._messages.get(message_id)
			if message is None:
				raise NotFound("message_not_found")
			return self._project(message)

	async def list_messages(
		self,
		user_a: str,
		user_b: str,
		*,
		limit: int,
		before: Optional[datetime] = None,
		after: Optional[datetime] = None,
	) -> MessagePage:
		if limit <= 0:
			raise ValidationFailed("limit_invalid")
		async with self._lock:
			conversation = ConversationKey.from_participants(user_a, user_b)
			candidates = [
				self._messages[mid]
				for mid in self._conversations.get(conversation, [])
				if not self._messages[mid].deleted
			]
			if before is not None:
				candidates = [m for m in candidates if m.created_at < before]
			if after is not None:
				candidates = [m for m in candidates if m.created_at > after]
			candidates.sort(key=_sort_key, reverse=True)
			page = candidates[:limit]
			page.reverse()
			return MessagePage(items=[self._project(m) for m in page], has_more=len(page) == limit)

	def _owned(self, message_id: str, actor_id: str) -> Message:
		message = self._messages.get(message_id)
		if message is None or message.deleted:
			raise NotFound("message_not_found")
		if message.sender_id != actor_id:
			raise Forbidden("not_message_sender")
		return message

	async def edit_message(self, message_id: str, editor_id: str, new_content: str) -> Message:
		text = validate_edit(new_content)
		async with self._lock:
			current = self._owned(message_id, editor_id)
			updated = current.copy(edited=True, edited_content=text, edited_at=_now())
			self._messages[message_id] = updated
			self._refresh_previews(updated.conversation)
			projected = self._project(updated)
			self._emit(ChangeKind.UPDATED, projected)
			return projected

	async def soft_delete_message(self, message_id: str, requester_id: str) -> Message:
		async with self._lock:
			current = self._owned(message_id, requester_id)
			updated = current.copy(deleted=True)
			self._messages[message_id] = updated
			self._refresh_previews(updated.conversation)
			projected = self._project(updated)
			self._emit(ChangeKind.UPDATED, projected)
			return projected

	async def mark_read(self, owner_id: str, peer_id: str) -> None:
		async with self._lock:
			summary = self._summaries.get((owner_id, peer_id))
			if summary is not None:
				summary.unread_count = 0

	def _with_peer(self, summary: ChatSummary) -> ChatSummary:
		peer = self._users.get(summary.peer_id)
		return ChatSummary(
			owner_id=summary.owner_id,
			peer_id=summary.peer_id,
			last_message_preview=summary.last_message_preview,
			last_message_at=summary.last_message_at,
			unread_count=summary.unread_count,
			archived=summary.archived,
			settings=dict(summary.settings),
			peer=replace(peer) if peer else None,
		)

	async def list_chat_summaries(self, owner_id: str) -> List[ChatSummary]:
		async with self._lock:
			owned = [
				s
				for (owner, _), s in self._summaries.items()
				if owner == owner_id and not s.archived
			]
			epoch = datetime.min.replace(tzinfo=timezone.utc)
			owned.sort(key=lambda s: s.last_message_at or epoch, reverse=True)
			return [self._with_peer(s) for s in owned]

	async def get_chat_summary(self, owner_id: str, peer_id: str) -> Optional[ChatSummary]:
		async with self._lock:
			summary = self._summaries.get((owner_id, peer_id))
			return self._with_peer(summary) if summary else None

	async def archive_chat(self, owner_id: str, peer_id: str) -> None:
		async with self._lock:
			summary = self._summaries.get((owner_id, peer_id))
			if summary is None:
				raise NotFound("chat_not_found")
			summary.archived = True

	async def update_chat_settings(self, owner_id: str, peer_id: str, settings: Mapping[str, Any]) -> ChatSummary:
		async with self._lock:
			if peer_id not in self._users:
				raise NotFound("user_not_found")
			if owner_id == peer_id:
				raise ValidationFailed("cannot_message_self")
			summary = self._summary(owner_id, peer_id)
			summary.settings = dict(settings)
			return self._with_peer(summary)

	async def find_or_create_user(self, phone: str, name: Optional[str] = None) -> User:
		try:
			normalized = phone_utils.normalize(phone)
		except ValueError as exc:
			raise ValidationFailed(str(exc)) from None
		async with self._lock:
			existing_id = self._users_by_phone.get(normalized)
			if existing_id is not None:
				return replace(self._users[existing_id])
			user = User(id=str(uuid.uuid4()), phone=normalized, name=name, created_at=_now())
			self._users[user.id] = user
			self._users_by_phone[normalized] = user.id
			return replace(user)

	async def get_user(self, user_id: str) -> User:
		async with self._lock:
			user = self._users.get(str(user_id))
			if user is None:
				raise NotFound("user_not_found")
			return replace(user)

	async def find_user_by_phone(self, query: str, *, exclude_user_id: Optional[str] = None) -> User:
		suffix = phone_utils.search_suffix(query)
		if suffix is None:
			raise NotFound("user_not_found")
		async with self._lock:
			for stored_phone, user_id in sorted(self._users_by_phone.items()):
				if user_id == exclude_user_id:
					continue
				if stored_phone.endswith(suffix):
					return replace(self._users[user_id])
		raise NotFound("user_not_found")

	async def set_user_presence(self, user_id: str, online: bool, *, at: Optional[datetime] = None) -> None:
		async with self._lock:
			user = self._users.get(user_id)
			if user is None:
				return
			user.online = online
			user.last_seen = at or _now()

	async def ping(self) -> None:
		return None
