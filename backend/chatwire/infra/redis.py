"""Shared Redis client.

Modules import `redis_client` once; it is a proxy, so tests can point it at
fakeredis with `set_redis_client` and every importer sees the swap. Chat uses
Redis only for send throttling and the readiness probe.
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis

from chatwire.settings import settings


class RedisProxy:
	def __init__(self, client: Optional[redis.Redis] = None) -> None:
		self._client = client

	@property
	def client(self) -> redis.Redis:
		if self._client is None:
			self._client = redis.from_url(settings.redis_url, decode_responses=True)
		return self._client

	def set_client(self, client: Optional[redis.Redis]) -> None:
		self._client = client

	def __getattr__(self, item):
		return getattr(self.client, item)


redis_client = RedisProxy()


def set_redis_client(client: Optional[redis.Redis]) -> None:
	redis_client.set_client(client)


async def close_redis() -> None:
	client = redis_client._client
	if client is not None:
		await client.aclose()
		redis_client.set_client(None)
