"""Socket.IO namespace for realtime chat."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import socketio
from pydantic import ValidationError

from chatwire.obs import metrics as obs_metrics
from chatwire.obs.logging import bound

from .errors import ChatError, ErrorKind
from .schemas import AuthenticatePayload, MessageResponse, PeerPayload, SocketSendMessage, UserResponse
from .session import ConversationSession

logger = logging.getLogger(__name__)

NAMESPACE = "/chat"

# Client event name -> handler suffix (`on_<suffix>`).
_EVENTS = {
	"authenticate": "authenticate",
	"joinChat": "join_chat",
	"leaveChat": "leave_chat",
	"sendMessage": "send_message",
	"typingStart": "typing_start",
	"typingStop": "typing_stop",
	"markRead": "mark_read",
	"heartbeat": "heartbeat",
}


class SocketIOTransport:
	"""Pushes router events through a Socket.IO server to one sid."""

	def __init__(self, server: socketio.AsyncServer, namespace: str = NAMESPACE) -> None:
		self._server = server
		self._namespace = namespace

	async def push(self, sid: str, event: str, payload: Dict[str, Any]) -> None:
		obs_metrics.socket_event(self._namespace, event)
		await self._server.emit(event, payload, room=sid, namespace=self._namespace)


class ChatNamespace(socketio.AsyncNamespace):
	"""One ConversationSession per sid; handlers delegate to it."""

	def __init__(self, context) -> None:
		super().__init__(NAMESPACE)
		self._context = context
		self._sessions: Dict[str, ConversationSession] = {}

	async def trigger_event(self, event: str, *args):
		return await super().trigger_event(_EVENTS.get(event, event), *args)

	def session_for(self, sid: str) -> Optional[ConversationSession]:
		return self._sessions.get(sid)

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		session = ConversationSession(sid, service=self._context.service, registry=self._context.registry)
		self._sessions[sid] = session
		if auth:
			await self.on_authenticate(sid, auth)

	async def on_disconnect(self, sid: str, reason: Any = None) -> None:
		obs_metrics.socket_disconnected(self.namespace)
		session = self._sessions.pop(sid, None)
		if session is None:
			return
		with bound(user_id=session.user_id, sid=sid):
			await session.close()
			logger.info("chat socket disconnected")

	async def _guarded(
		self,
		sid: str,
		event: str,
		action: Callable[[ConversationSession], Awaitable[None]],
	) -> None:
		obs_metrics.socket_event(self.namespace, event)
		session = self._sessions.get(sid)
		if session is None:
			await self._error(sid, event, ErrorKind.TRANSPORT_FAILURE.value, "disconnected")
			return
		with bound(user_id=session.user_id, sid=sid):
			try:
				await action(session)
			except ValidationError:
				await self._error(sid, event, ErrorKind.VALIDATION_FAILED.value, "invalid_payload")
			except ChatError as exc:
				logger.info("chat event rejected", extra={"event": event, "kind": exc.kind.value})
				await self._error(sid, event, exc.kind.value, exc.detail)

	async def _error(self, sid: str, event: str, kind: str, detail: str) -> None:
		await self.emit("chatError", {"event": event, "kind": kind, "detail": detail}, room=sid)

	async def on_authenticate(self, sid: str, data: Optional[dict] = None) -> None:
		obs_metrics.socket_event(self.namespace, "authenticate")
		session = self._sessions.get(sid)
		if session is None:
			return
		try:
			payload = AuthenticatePayload.model_validate(data or {})
			user = await session.authenticate(user_id=payload.user_id, token=payload.token)
		except ValidationError:
			await self.emit("authenticationFailed", {"reason": "invalid_payload"}, room=sid)
			return
		except ChatError as exc:
			await self.emit("authenticationFailed", {"reason": exc.detail}, room=sid)
			return
		with bound(user_id=user.id, sid=sid):
			logger.info("chat socket authenticated")
		await self.emit("authenticated", {"user": UserResponse.from_model(user).to_wire()}, room=sid)

	async def on_join_chat(self, sid: str, data: Optional[dict] = None) -> None:
		async def action(session: ConversationSession) -> None:
			payload = PeerPayload.model_validate(data or {})
			peer = await session.join_chat(payload.peer_id)
			await self.emit("chatJoined", {"peer": UserResponse.from_model(peer).to_wire()}, room=sid)

		await self._guarded(sid, "joinChat", action)

	async def on_leave_chat(self, sid: str, data: Optional[dict] = None) -> None:
		async def action(session: ConversationSession) -> None:
			await session.leave_chat()

		await self._guarded(sid, "leaveChat", action)

	async def on_send_message(self, sid: str, data: Optional[dict] = None) -> None:
		async def action(session: ConversationSession) -> None:
			payload = SocketSendMessage.model_validate(data or {})
			message = await session.send(payload)
			await self.emit(
				"messageSent",
				{"message": MessageResponse.from_model(message).to_wire(), "clientMsgId": message.client_msg_id},
				room=sid,
			)

		await self._guarded(sid, "sendMessage", action)

	async def on_typing_start(self, sid: str, data: Optional[dict] = None) -> None:
		async def action(session: ConversationSession) -> None:
			payload = PeerPayload.model_validate(data or {})
			await session.set_typing(True, payload.peer_id)

		await self._guarded(sid, "typingStart", action)

	async def on_typing_stop(self, sid: str, data: Optional[dict] = None) -> None:
		async def action(session: ConversationSession) -> None:
			payload = PeerPayload.model_validate(data or {})
			await session.set_typing(False, payload.peer_id)

		await self._guarded(sid, "typingStop", action)

	async def on_mark_read(self, sid: str, data: Optional[dict] = None) -> None:
		async def action(session: ConversationSession) -> None:
			payload = PeerPayload.model_validate(data or {})
			peer_id = await session.mark_read(payload.peer_id)
			await self.emit("chatRead", {"peerId": peer_id}, room=sid)

		await self._guarded(sid, "markRead", action)

	async def on_heartbeat(self, sid: str, data: Optional[dict] = None) -> None:
		async def action(session: ConversationSession) -> None:
			await session.heartbeat()

		await self._guarded(sid, "heartbeat", action)
