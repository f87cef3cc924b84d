"""Change feed that turns committed store writes into router callbacks.

All events pass through one queue drained by one task, so subscribers observe
them in the order the store committed them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Awaitable, Callable, List, Optional

import asyncpg

from chatwire.obs import metrics as obs_metrics

from .models import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

Callback = Callable[[ChangeEvent], Awaitable[None]]


class Subscription:
	"""Handle returned by `ChangeFeed.subscribe`; cancel it to stop callbacks."""

	def __init__(self, feed: "ChangeFeed", callback: Callback) -> None:
		self._feed = feed
		self.callback = callback
		self.active = True

	def cancel(self) -> None:
		if not self.active:
			return
		self.active = False
		self._feed._remove(self)


class ChangeFeed:
	"""In-process feed; the memory store publishes into it after each commit."""

	def __init__(self) -> None:
		self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
		self._subscriptions: List[Subscription] = []
		self._task: Optional[asyncio.Task] = None

	def subscribe(self, callback: Callback) -> Subscription:
		subscription = Subscription(self, callback)
		self._subscriptions.append(subscription)
		return subscription

	def _remove(self, subscription: Subscription) -> None:
		if subscription in self._subscriptions:
			self._subscriptions.remove(subscription)

	def publish(self, event: ChangeEvent) -> None:
		obs_metrics.inc_change_event(event.kind.value)
		self._queue.put_nowait(event)

	async def start(self) -> None:
		if self._task is None:
			self._task = asyncio.create_task(self._dispatch(), name="chat-change-feed")

	async def _dispatch(self) -> None:
		while True:
			event = await self._queue.get()
			try:
				for subscription in list(self._subscriptions):
					if not subscription.active:
						continue
					try:
						await subscription.callback(event)
					except Exception:
						logger.exception("change feed subscriber failed for %s", event.message_id)
			finally:
				self._queue.task_done()

	async def drain(self) -> None:
		"""Wait until every event published so far has been dispatched."""
		await self._queue.join()

	async def close(self) -> None:
		for subscription in list(self._subscriptions):
			subscription.cancel()
		if self._task is not None:
			self._task.cancel()
			with suppress(asyncio.CancelledError):
				await self._task
			self._task = None


class PostgresChangeFeed(ChangeFeed):
	"""Feed fed by `LISTEN` on one long-lived connection per process."""

	def __init__(self, dsn: str, channel: str) -> None:
		super().__init__()
		self._dsn = dsn
		self._channel = channel
		self._conn: Optional[asyncpg.Connection] = None

	async def start(self) -> None:
		if self._conn is None:
			self._conn = await asyncpg.connect(self._dsn)
			await self._conn.add_listener(self._channel, self._on_notify)
			logger.info("listening for chat changes on %s", self._channel)
		await super().start()

	def _on_notify(self, connection, pid: int, channel: str, payload: str) -> None:
		try:
			data = json.loads(payload)
			event = ChangeEvent(kind=ChangeKind(data["kind"]), message_id=str(data["message_id"]))
		except (ValueError, KeyError, TypeError):
			logger.warning("ignoring malformed change notification on %s", channel)
			return
		self.publish(event)

	async def close(self) -> None:
		if self._conn is not None:
			try:
				await self._conn.remove_listener(self._channel, self._on_notify)
			finally:
				await self._conn.close()
				self._conn = None
		await super().close()
