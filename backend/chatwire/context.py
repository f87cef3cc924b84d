"""Process-wide chat wiring, built once by the application lifespan."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import asyncpg

from chatwire.domain.chat.feed import ChangeFeed, PostgresChangeFeed
from chatwire.domain.chat.postgres_store import PostgresConversationStore
from chatwire.domain.chat.router import FanoutRouter, Transport
from chatwire.domain.chat.service import ChatService
from chatwire.domain.chat.store import ConversationStore, MemoryConversationStore
from chatwire.domain.presence import PresenceChanged, PresenceRegistry
from chatwire.infra import postgres
from chatwire.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ChatContext:
	store: ConversationStore
	feed: ChangeFeed
	registry: PresenceRegistry
	router: FanoutRouter
	service: ChatService
	pool: Optional[asyncpg.pool.Pool] = None
	started_at: float = field(default_factory=time.monotonic)

	@classmethod
	async def build(cls, transport: Transport, *, backend: Optional[str] = None) -> "ChatContext":
		backend = (backend or settings.store_backend).lower()
		pool = None
		if backend == "postgres":
			pool = await postgres.init_pool()
			feed: ChangeFeed = PostgresChangeFeed(settings.postgres_url, settings.change_feed_channel)
			store: ConversationStore = PostgresConversationStore(pool, channel=settings.change_feed_channel)
		elif backend == "memory":
			feed = ChangeFeed()
			store = MemoryConversationStore(publish=feed.publish)
		else:
			raise ValueError(f"unknown store backend: {backend}")
		registry = PresenceRegistry()
		router = FanoutRouter(store, registry, transport)
		router.attach(feed)
		context = cls(
			store=store,
			feed=feed,
			registry=registry,
			router=router,
			service=ChatService(store),
			pool=pool,
		)
		registry.subscribe(context._persist_presence)
		logger.info("chat context built", extra={"backend": backend})
		return context

	async def _persist_presence(self, event) -> None:
		if isinstance(event, PresenceChanged):
			await self.store.set_user_presence(event.user_id, event.online, at=event.at)

	async def start(self) -> None:
		await self.feed.start()

	def uptime_seconds(self) -> float:
		return time.monotonic() - self.started_at

	async def drain(self) -> None:
		"""Wait for committed changes to be routed and their pushes sent."""
		await self.feed.drain()
		await self.router.flush()

	async def close(self) -> None:
		await self.router.close()
		await self.feed.close()
		await self.registry.close()
		await postgres.close_pool(self.pool)
		self.pool = None
