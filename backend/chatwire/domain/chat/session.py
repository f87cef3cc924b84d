"""Per-connection conversation session.

States: CONNECTED -> AUTHENTICATED -> IN_CHAT, and any state -> DISCONNECTED.
A failed call raises a ChatError and leaves the state untouched. Every
awaiting transition re-checks for a close that landed while it was suspended,
so DISCONNECTED stays terminal.
"""

from __future__ import annotations

import enum
import logging
from typing import Optional

from chatwire.domain.presence import ConnectionHandle, PresenceRegistry
from chatwire.infra.auth import AuthenticatedUser, resolve_claimed_user_id

from .errors import NotFound, TransportFailure, Unauthorized, ValidationFailed
from .models import Message, User
from .schemas import SocketSendMessage
from .service import ChatService

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
	CONNECTED = "connected"
	AUTHENTICATED = "authenticated"
	IN_CHAT = "in_chat"
	DISCONNECTED = "disconnected"


class ConversationSession:
	def __init__(self, sid: str, *, service: ChatService, registry: PresenceRegistry) -> None:
		self.sid = sid
		self.state = SessionState.CONNECTED
		self.user: Optional[AuthenticatedUser] = None
		self.handle: Optional[ConnectionHandle] = None
		self._service = service
		self._registry = registry
		self._authenticating = False

	@property
	def user_id(self) -> Optional[str]:
		return self.user.id if self.user else None

	@property
	def active_peer(self) -> Optional[str]:
		return self.handle.active_peer if self.handle else None

	def _require_open(self) -> None:
		if self.state is SessionState.DISCONNECTED:
			raise TransportFailure("disconnected")

	def _require_user(self) -> AuthenticatedUser:
		self._require_open()
		if self.user is None:
			raise Unauthorized("unauthenticated")
		return self.user

	def _require_chat(self, peer_id: Optional[str]) -> str:
		self._require_user()
		if self.state is not SessionState.IN_CHAT or not self.active_peer:
			raise ValidationFailed("not_in_chat")
		if peer_id and peer_id != self.active_peer:
			raise ValidationFailed("peer_mismatch")
		return self.active_peer

	async def authenticate(self, *, user_id: Optional[str] = None, token: Optional[str] = None) -> User:
		self._require_open()
		if self.state is not SessionState.CONNECTED or self._authenticating:
			raise ValidationFailed("already_authenticated")
		claimed = resolve_claimed_user_id(token=token, user_id=user_id)
		if not claimed:
			raise Unauthorized("unauthenticated")
		self._authenticating = True
		try:
			try:
				user = await self._service.get_user(claimed)
			except NotFound:
				raise Unauthorized("unknown_user") from None
			self._require_open()
			handle = ConnectionHandle(sid=self.sid, user_id=user.id)
			await self._registry.register_connection(user.id, handle)
			if self.state is SessionState.DISCONNECTED:
				await self._registry.unregister_connection(user.id, handle)
				raise TransportFailure("disconnected")
		finally:
			self._authenticating = False
		self.user = AuthenticatedUser(id=user.id)
		self.handle = handle
		self.state = SessionState.AUTHENTICATED
		logger.info("chat session authenticated", extra={"sid": self.sid})
		return user

	async def _stop_typing(self) -> None:
		if self.user and self.active_peer and self._registry.is_typing(self.user.id, self.active_peer):
			await self._registry.set_typing(self.user.id, self.active_peer, False)

	async def join_chat(self, peer_id: Optional[str]) -> User:
		user = self._require_user()
		if not peer_id:
			raise ValidationFailed("peer_required")
		if peer_id == user.id:
			raise ValidationFailed("cannot_message_self")
		peer = await self._service.get_user(peer_id)
		self._require_open()
		if self.active_peer != peer.id:
			await self._stop_typing()
		await self._registry.set_active_peer(self.handle, peer.id)
		self._require_open()
		self.state = SessionState.IN_CHAT
		return peer

	async def leave_chat(self) -> None:
		self._require_chat(None)
		await self._stop_typing()
		await self._registry.set_active_peer(self.handle, None)
		self._require_open()
		self.state = SessionState.AUTHENTICATED

	async def send(self, payload: SocketSendMessage) -> Message:
		peer_id = self._require_chat(payload.peer_id)
		message = await self._service.send_message(
			self.user,
			peer_id,
			payload.content,
			payload.message_type,
			reply_to_id=payload.reply_to,
			file=payload.file.to_meta() if payload.file else None,
			client_msg_id=payload.client_msg_id,
		)
		await self._stop_typing()
		return message

	async def set_typing(self, is_typing: bool, peer_id: Optional[str] = None) -> None:
		active = self._require_chat(peer_id)
		await self._registry.set_typing(self.user.id, active, is_typing)

	async def mark_read(self, peer_id: Optional[str] = None) -> str:
		user = self._require_user()
		target = peer_id or self.active_peer
		if not target:
			raise ValidationFailed("peer_required")
		await self._service.mark_read(user, target)
		return target

	async def heartbeat(self) -> None:
		user = self._require_user()
		await self._registry.touch(user.id)

	async def close(self) -> None:
		"""Terminal transition; safe to call more than once."""
		if self.state is SessionState.DISCONNECTED:
			return
		self.state = SessionState.DISCONNECTED
		if self.user is not None and self.handle is not None:
			await self._stop_typing()
			await self._registry.unregister_connection(self.user.id, self.handle)
