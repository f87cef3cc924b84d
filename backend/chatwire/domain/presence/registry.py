"""In-process registry of live connections, online status and typing signals."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple, Union

from chatwire.obs import metrics as obs_metrics
from chatwire.settings import settings

from .models import ConnectionHandle, PresenceChanged, PresenceEntry, TypingChanged, TypingSignal

logger = logging.getLogger(__name__)

PresenceEvent = Union[PresenceChanged, TypingChanged]
Listener = Callable[[PresenceEvent], Awaitable[None]]


class ListenerHandle:
	def __init__(self, registry: "PresenceRegistry", listener: Listener) -> None:
		self._registry = registry
		self.listener = listener

	def cancel(self) -> None:
		self._registry._remove_listener(self)


class PresenceRegistry:
	"""Maps users to their open connections.

	Every mutation happens under one lock. Listeners are invoked after that
	lock is released, but notifications share a second lock so each event
	reaches every listener before the next one starts, in transition order.
	Going offline waits for a grace period so reload/reconnect cycles never
	flip status.
	"""

	def __init__(
		self,
		*,
		grace_seconds: Optional[float] = None,
		typing_ttl_seconds: Optional[float] = None,
	) -> None:
		self._grace = settings.presence_grace_seconds if grace_seconds is None else grace_seconds
		self._typing_ttl = settings.typing_ttl_seconds if typing_ttl_seconds is None else typing_ttl_seconds
		self._lock = asyncio.Lock()
		self._notify_lock = asyncio.Lock()
		self._entries: Dict[str, PresenceEntry] = {}
		self._owners: Dict[str, str] = {}
		self._typing: Dict[Tuple[str, str], TypingSignal] = {}
		self._listeners: List[ListenerHandle] = []

	def subscribe(self, listener: Listener) -> ListenerHandle:
		handle = ListenerHandle(self, listener)
		self._listeners.append(handle)
		return handle

	def _remove_listener(self, handle: ListenerHandle) -> None:
		if handle in self._listeners:
			self._listeners.remove(handle)

	async def _notify(self, event: PresenceEvent) -> None:
		# Callers reach this with no await since releasing _lock, so waiters
		# queue on _notify_lock in transition order.
		async with self._notify_lock:
			for handle in list(self._listeners):
				try:
					await handle.listener(event)
				except Exception:
					logger.exception("presence listener failed for %s", event.user_id)

	def _online_gauge(self) -> None:
		obs_metrics.set_presence_online(sum(1 for entry in self._entries.values() if entry.online))

	async def register_connection(self, user_id: str, handle: ConnectionHandle) -> None:
		went_online = False
		async with self._lock:
			previous_owner = self._owners.get(handle.sid)
			if previous_owner is not None and previous_owner != user_id:
				stale = self._entries.get(previous_owner)
				if stale is not None:
					stale.handles.pop(handle.sid, None)
					if not stale.handles and stale.online and stale.grace_task is None:
						stale.grace_task = asyncio.create_task(
							self._expire_after_grace(previous_owner), name=f"presence-grace:{previous_owner}"
						)
			entry = self._entries.get(user_id)
			if entry is None:
				entry = PresenceEntry(user_id=user_id)
				self._entries[user_id] = entry
			if entry.grace_task is not None:
				entry.grace_task.cancel()
				entry.grace_task = None
			handle.user_id = user_id
			entry.handles[handle.sid] = handle
			entry.last_activity = time.monotonic()
			self._owners[handle.sid] = user_id
			if not entry.online:
				entry.online = True
				went_online = True
			self._online_gauge()
		if went_online:
			obs_metrics.inc_presence_transition(True)
			await self._notify(PresenceChanged(user_id=user_id, online=True, at=datetime.now(timezone.utc)))

	async def unregister_connection(self, user_id: str, handle: ConnectionHandle) -> None:
		go_offline_now = False
		async with self._lock:
			entry = self._entries.get(user_id)
			if entry is None or entry.handles.pop(handle.sid, None) is None:
				return
			self._owners.pop(handle.sid, None)
			if entry.handles or not entry.online:
				return
			if self._grace <= 0:
				self._mark_offline(entry)
				go_offline_now = True
			else:
				entry.grace_task = asyncio.create_task(
					self._expire_after_grace(user_id), name=f"presence-grace:{user_id}"
				)
		if go_offline_now:
			await self._announce_offline(user_id)

	def _mark_offline(self, entry: PresenceEntry) -> None:
		entry.online = False
		entry.grace_task = None
		self._entries.pop(entry.user_id, None)
		for key in [key for key in self._typing if key[0] == entry.user_id]:
			signal = self._typing.pop(key)
			if signal.task is not None:
				signal.task.cancel()
		self._online_gauge()

	async def _announce_offline(self, user_id: str) -> None:
		obs_metrics.inc_presence_transition(False)
		await self._notify(PresenceChanged(user_id=user_id, online=False, at=datetime.now(timezone.utc)))

	async def _expire_after_grace(self, user_id: str) -> None:
		await asyncio.sleep(self._grace)
		async with self._lock:
			entry = self._entries.get(user_id)
			if entry is None or entry.handles or entry.grace_task is not asyncio.current_task():
				return
			self._mark_offline(entry)
		await self._announce_offline(user_id)

	def connections_for(self, user_id: str) -> FrozenSet[ConnectionHandle]:
		entry = self._entries.get(user_id)
		if entry is None:
			return frozenset()
		return frozenset(entry.handles.values())

	def watchers_of(self, user_id: str) -> FrozenSet[ConnectionHandle]:
		"""Connections whose open conversation view is with `user_id`."""
		return frozenset(
			handle
			for entry in self._entries.values()
			for handle in entry.handles.values()
			if handle.active_peer == user_id
		)

	async def set_active_peer(self, handle: ConnectionHandle, peer_id: Optional[str]) -> None:
		async with self._lock:
			handle.active_peer = peer_id

	async def touch(self, user_id: str) -> None:
		async with self._lock:
			entry = self._entries.get(user_id)
			if entry is not None:
				entry.last_activity = time.monotonic()

	def is_online(self, user_id: str) -> bool:
		entry = self._entries.get(user_id)
		return bool(entry and entry.online)

	def last_activity(self, user_id: str) -> Optional[float]:
		entry = self._entries.get(user_id)
		return entry.last_activity if entry else None

	def online_count(self) -> int:
		return sum(1 for entry in self._entries.values() if entry.online)

	def connected_users(self) -> int:
		return sum(1 for entry in self._entries.values() if entry.handles)

	async def set_typing(self, owner_id: str, peer_id: str, is_typing: bool) -> None:
		key = (owner_id, peer_id)
		changed = False
		async with self._lock:
			signal = self._typing.get(key)
			if is_typing:
				if signal is None:
					signal = TypingSignal(owner_id=owner_id, peer_id=peer_id, expires_at=0.0)
					self._typing[key] = signal
					changed = True
				elif signal.task is not None:
					signal.task.cancel()
				signal.expires_at = time.monotonic() + self._typing_ttl
				signal.task = asyncio.create_task(self._expire_typing(key, signal), name=f"typing:{owner_id}:{peer_id}")
			elif signal is not None:
				self._typing.pop(key, None)
				if signal.task is not None:
					signal.task.cancel()
				changed = True
		obs_metrics.inc_typing("start" if is_typing else "stop")
		if changed:
			await self._notify(TypingChanged(user_id=owner_id, peer_id=peer_id, is_typing=is_typing))

	async def _expire_typing(self, key: Tuple[str, str], signal: TypingSignal) -> None:
		await asyncio.sleep(self._typing_ttl)
		async with self._lock:
			if self._typing.get(key) is not signal or signal.task is not asyncio.current_task():
				return
			self._typing.pop(key, None)
		obs_metrics.inc_typing("expired")
		await self._notify(TypingChanged(user_id=key[0], peer_id=key[1], is_typing=False))

	def is_typing(self, owner_id: str, peer_id: str) -> bool:
		return (owner_id, peer_id) in self._typing

	async def close(self) -> None:
		"""Cancel pending timers and forget every connection."""
		async with self._lock:
			tasks = [entry.grace_task for entry in self._entries.values() if entry.grace_task]
			tasks.extend(signal.task for signal in self._typing.values() if signal.task)
			self._entries.clear()
			self._owners.clear()
			self._typing.clear()
			self._listeners.clear()
			self._online_gauge()
		for task in tasks:
			task.cancel()
		for task in tasks:
			with suppress(asyncio.CancelledError):
				await task
