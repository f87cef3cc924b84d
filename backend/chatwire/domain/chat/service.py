"""Chat service: the single write path shared by sockets and HTTP routes."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Mapping, Optional

from chatwire.infra import rate_limit
from chatwire.infra.auth import AuthenticatedUser
from chatwire.infra.locks import KeyedLocks
from chatwire.obs import metrics as obs_metrics
from chatwire.settings import settings

from .drafts import build_draft
from .errors import ValidationFailed
from .models import ChatSummary, ConversationKey, FileMeta, Message, MessagePage, MessageType, User
from .store import ConversationStore

logger = logging.getLogger(__name__)


def clamp_limit(limit: Optional[int]) -> int:
	if limit is None:
		return settings.messages_default_limit
	if limit <= 0:
		raise ValidationFailed("limit_invalid")
	return min(limit, settings.messages_max_limit)


class ChatService:
	"""Serializes writes per conversation so commits and fan-out share one order."""

	def __init__(self, store: ConversationStore, locks: KeyedLocks | None = None) -> None:
		self._store = store
		self._locks = locks or KeyedLocks()

	@property
	def store(self) -> ConversationStore:
		return self._store

	async def _check_send_rate(self, user_id: str) -> None:
		allowed = await rate_limit.allow(
			"send",
			user_id,
			limit=settings.send_rate_limit,
			window_seconds=settings.send_rate_window_seconds,
		)
		if not allowed:
			obs_metrics.inc_rate_limit_reject("send")
			raise ValidationFailed("rate_limited")

	async def send_message(
		self,
		auth_user: AuthenticatedUser,
		peer_id: str,
		content: Optional[str],
		message_type: MessageType | str = MessageType.TEXT,
		*,
		reply_to_id: Optional[str] = None,
		file: Mapping[str, object] | FileMeta | None = None,
		client_msg_id: Optional[str] = None,
	) -> Message:
		draft = build_draft(
			auth_user.id,
			peer_id,
			content,
			message_type,
			reply_to_id=reply_to_id,
			file=file,
			client_msg_id=client_msg_id,
		)
		await self._check_send_rate(auth_user.id)
		conversation = ConversationKey.from_participants(draft.sender_id, draft.recipient_id)
		async with self._locks.hold(conversation):
			message = await self._store.append_message(draft)
		obs_metrics.inc_chat_message("sent")
		logger.info("chat message stored", extra={"message_id": message.id, "type": message.message_type.value})
		return message

	async def edit_message(self, auth_user: AuthenticatedUser, message_id: str, content: Optional[str]) -> Message:
		current = await self._store.get_message(message_id)
		async with self._locks.hold(current.conversation):
			message = await self._store.edit_message(message_id, auth_user.id, content or "")
		obs_metrics.inc_chat_message("edited")
		return message

	async def delete_message(self, auth_user: AuthenticatedUser, message_id: str) -> Message:
		current = await self._store.get_message(message_id)
		async with self._locks.hold(current.conversation):
			message = await self._store.soft_delete_message(message_id, auth_user.id)
		obs_metrics.inc_chat_message("deleted")
		return message

	async def list_messages(
		self,
		auth_user: AuthenticatedUser,
		peer_id: str,
		*,
		limit: Optional[int] = None,
		before: Optional[datetime] = None,
		after: Optional[datetime] = None,
	) -> MessagePage:
		return await self._store.list_messages(
			auth_user.id,
			peer_id,
			limit=clamp_limit(limit),
			before=before,
			after=after,
		)

	async def mark_read(self, auth_user: AuthenticatedUser, peer_id: str) -> None:
		await self._store.mark_read(auth_user.id, peer_id)
		obs_metrics.inc_chat_read()

	async def list_chats(self, auth_user: AuthenticatedUser) -> List[ChatSummary]:
		return await self._store.list_chat_summaries(auth_user.id)

	async def archive_chat(self, auth_user: AuthenticatedUser, peer_id: str) -> None:
		await self._store.archive_chat(auth_user.id, peer_id)

	async def update_chat_settings(
		self, auth_user: AuthenticatedUser, peer_id: str, chat_settings: Mapping[str, Any]
	) -> ChatSummary:
		return await self._store.update_chat_settings(auth_user.id, peer_id, chat_settings)

	async def register_user(self, phone: str, name: Optional[str] = None) -> User:
		return await self._store.find_or_create_user(phone, name)

	async def get_user(self, user_id: str) -> User:
		return await self._store.get_user(user_id)

	async def search_user(self, auth_user: AuthenticatedUser | None, phone: str) -> User:
		exclude = auth_user.id if auth_user else None
		return await self._store.find_user_by_phone(phone, exclude_user_id=exclude)
