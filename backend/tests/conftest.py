import asyncio
from typing import Any, Dict, List, Set, Tuple

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

from chatwire.context import ChatContext
from chatwire.infra.redis import redis_client, set_redis_client
from chatwire.main import app
from chatwire.settings import settings


class RecordingTransport:
	"""Transport double that records pushes and can fail or stall chosen sids."""

	def __init__(self) -> None:
		self.pushes: List[Tuple[str, str, Dict[str, Any]]] = []
		self.failing: Set[str] = set()
		self.stalled: Set[str] = set()

	async def push(self, sid: str, event: str, payload: Dict[str, Any]) -> None:
		if sid in self.failing:
			raise ConnectionError("socket closed")
		if sid in self.stalled:
			await asyncio.sleep(60)
		self.pushes.append((sid, event, payload))

	def events_for(self, sid: str, event: str | None = None) -> List[Dict[str, Any]]:
		return [payload for target, name, payload in self.pushes if target == sid and (event is None or name == event)]


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	original = redis_client._client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Dev mode accepts X-User-Id / bare userId, which most tests rely on."""
	original = (settings.environment, settings.store_backend, settings.presence_grace_seconds)
	settings.environment = "dev"
	settings.store_backend = "memory"
	settings.presence_grace_seconds = 0.05
	try:
		yield
	finally:
		settings.environment, settings.store_backend, settings.presence_grace_seconds = original


@pytest.fixture
def transport() -> RecordingTransport:
	return RecordingTransport()


@pytest_asyncio.fixture
async def chat_context(transport):
	context = await ChatContext.build(transport, backend="memory")
	await context.start()
	try:
		yield context
	finally:
		await context.close()


@pytest_asyncio.fixture
async def users(chat_context):
	"""Alice and Bob, registered through the service."""
	alice = await chat_context.service.register_user("+1 (555) 000-0001", "Alice")
	bob = await chat_context.service.register_user("+1 (555) 000-0002", "Bob")
	return alice, bob


@pytest_asyncio.fixture
async def api_client(chat_context):
	app.state.chat = chat_context
	transport = ASGITransport(app=app)
	try:
		async with AsyncClient(transport=transport, base_url="http://testserver") as client:
			yield client
	finally:
		app.state.chat = None
