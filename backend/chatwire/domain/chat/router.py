"""Fan-out of committed chat changes to live connections."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from typing import Any, Dict, Iterable, Optional, Protocol, Tuple

from chatwire.domain.presence import ConnectionHandle, PresenceChanged, PresenceRegistry, TypingChanged
from chatwire.obs import metrics as obs_metrics
from chatwire.settings import settings

from .errors import NotFound
from .feed import ChangeFeed, Subscription
from .models import ChangeEvent, ChangeKind, Message
from .schemas import MessageResponse
from .store import ConversationStore

logger = logging.getLogger(__name__)

MESSAGE_RECEIVED = "messageReceived"
MESSAGE_UPDATED = "messageUpdated"
USER_TYPING = "userTyping"
PRESENCE_CHANGED = "presenceChanged"


class Transport(Protocol):
	async def push(self, sid: str, event: str, payload: Dict[str, Any]) -> None:
		...


Outgoing = Tuple[str, Dict[str, Any], float]


class _Outbox:
	"""Pushes queued for one connection, sent one at a time in queue order."""

	def __init__(self) -> None:
		self.queue: asyncio.Queue[Outgoing] = asyncio.Queue()
		self.task: Optional[asyncio.Task] = None


class FanoutRouter:
	"""Pushes store changes and presence events to the right connections.

	Routing only enqueues: each connection owns an outbox drained by its own
	task, so a connection sees a pair's messages in commit order while a
	stalled or broken connection delays nobody but itself.
	"""

	def __init__(
		self,
		store: ConversationStore,
		registry: PresenceRegistry,
		transport: Transport,
		*,
		push_timeout: Optional[float] = None,
	) -> None:
		self._store = store
		self._registry = registry
		self._transport = transport
		self._push_timeout = settings.fanout_push_timeout_seconds if push_timeout is None else push_timeout
		self._outboxes: Dict[str, _Outbox] = {}
		self._subscription: Optional[Subscription] = None
		self._presence_subscription = None

	def attach(self, feed: ChangeFeed) -> Subscription:
		self._subscription = feed.subscribe(self.on_change)
		self._presence_subscription = self._registry.subscribe(self.on_presence_event)
		return self._subscription

	async def close(self) -> None:
		if self._subscription is not None:
			self._subscription.cancel()
			self._subscription = None
		if self._presence_subscription is not None:
			self._presence_subscription.cancel()
			self._presence_subscription = None
		tasks = [box.task for box in self._outboxes.values() if box.task is not None]
		self._outboxes.clear()
		for task in tasks:
			task.cancel()
		for task in tasks:
			with suppress(asyncio.CancelledError):
				await task

	async def flush(self) -> None:
		"""Wait until every push queued so far has been sent or has failed."""
		while self._outboxes:
			tasks = [box.task for box in self._outboxes.values() if box.task is not None]
			await asyncio.gather(*tasks, return_exceptions=True)

	async def on_change(self, event: ChangeEvent) -> None:
		message = event.message
		if message is None:
			try:
				message = await self._store.get_message(event.message_id)
			except NotFound:
				logger.warning("change for unknown message %s", event.message_id)
				return
		if event.kind is ChangeKind.INSERTED:
			self.on_message_persisted(message)
		elif message.deleted:
			self.on_message_deleted(message)
		else:
			self.on_message_edited(message)

	def _participant_connections(self, message: Message) -> set[ConnectionHandle]:
		return set(self._registry.connections_for(message.recipient_id)) | set(
			self._registry.connections_for(message.sender_id)
		)

	def on_message_persisted(self, message: Message) -> int:
		if not self._registry.connections_for(message.recipient_id):
			# Recipient catches up through list_messages and the unread count.
			obs_metrics.inc_fanout(MESSAGE_RECEIVED, "offline")
		payload = {"message": MessageResponse.from_model(message).to_wire()}
		return self._enqueue(MESSAGE_RECEIVED, self._participant_connections(message), payload)

	def on_message_edited(self, message: Message) -> int:
		payload = {"message": MessageResponse.from_model(message).to_wire()}
		return self._enqueue(MESSAGE_UPDATED, self._participant_connections(message), payload)

	def on_message_deleted(self, message: Message) -> int:
		payload = {"message": MessageResponse.from_model(message).to_wire()}
		return self._enqueue(MESSAGE_UPDATED, self._participant_connections(message), payload)

	async def on_presence_event(self, event: PresenceChanged | TypingChanged) -> None:
		if isinstance(event, PresenceChanged):
			self.on_presence_changed(event)
		else:
			self.on_typing(event)

	def on_presence_changed(self, event: PresenceChanged) -> int:
		targets = [h for h in self._registry.watchers_of(event.user_id) if h.user_id != event.user_id]
		payload = {"userId": event.user_id, "online": event.online}
		return self._enqueue(PRESENCE_CHANGED, targets, payload)

	def on_typing(self, event: TypingChanged) -> int:
		targets = [h for h in self._registry.connections_for(event.peer_id) if h.active_peer == event.user_id]
		payload = {"peerId": event.user_id, "isTyping": event.is_typing}
		return self._enqueue(USER_TYPING, targets, payload)

	def _enqueue(self, event: str, handles: Iterable[ConnectionHandle], payload: Dict[str, Any]) -> int:
		"""Queue `event` for each connection and return how many were targeted."""
		queued = 0
		now = time.perf_counter()
		for handle in sorted(handles, key=lambda h: h.sid):
			box = self._outboxes.get(handle.sid)
			if box is None:
				box = self._outboxes[handle.sid] = _Outbox()
			box.queue.put_nowait((event, payload, now))
			if box.task is None:
				box.task = asyncio.create_task(self._drain(handle.sid, box), name=f"fanout:{handle.sid}")
			queued += 1
		return queued

	async def _drain(self, sid: str, box: _Outbox) -> None:
		try:
			while not box.queue.empty():
				event, payload, queued_at = box.queue.get_nowait()
				result = await self._push_one(sid, event, payload)
				obs_metrics.inc_fanout(event, result)
				obs_metrics.observe_fanout(time.perf_counter() - queued_at)
		finally:
			# Idle or cancelled: the next push for this sid starts a fresh outbox.
			if self._outboxes.get(sid) is box:
				del self._outboxes[sid]

	async def _push_one(self, sid: str, event: str, payload: Dict[str, Any]) -> str:
		try:
			await asyncio.wait_for(self._transport.push(sid, event, payload), timeout=self._push_timeout)
		except asyncio.TimeoutError:
			logger.warning("push %s to %s timed out", event, sid)
			return "failed"
		except Exception:
			logger.warning("push %s to %s failed", event, sid, exc_info=True)
			return "failed"
		return "delivered"
