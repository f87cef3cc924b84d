"""Liveness, readiness and status probes."""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, Tuple

from chatwire.infra.redis import redis_client
from chatwire.obs import metrics

logger = logging.getLogger(__name__)


async def _probe(name: str, check: Callable[[], Awaitable[Any]], timeout: float) -> Tuple[Dict[str, Any], float]:
	started = perf_counter()
	try:
		await asyncio.wait_for(check(), timeout=timeout)
	except Exception as exc:  # pragma: no cover - depends on runtime
		logger.warning("%s readiness check failed", name, exc_info=True)
		return {"ok": False, "error": str(exc) or exc.__class__.__name__}, 0.0
	elapsed = perf_counter() - started
	return {"ok": True, "latency_ms": round(elapsed * 1000, 2)}, elapsed


async def _redis_status(timeout: float = 0.2) -> Dict[str, Any]:
	result, _ = await _probe("redis", redis_client.ping, timeout)
	metrics.mark_redis(result["ok"])
	return result


async def _store_status(context, timeout: float = 0.3) -> Dict[str, Any]:
	if context is None:
		return {"ok": False, "error": "context_unavailable"}
	result, elapsed = await _probe("store", context.store.ping, timeout)
	metrics.mark_store(result["ok"], latency_seconds=elapsed if result["ok"] else None)
	return result


async def liveness() -> Dict[str, Any]:
	return {"status": "ok"}


async def readiness(context) -> Tuple[int, Dict[str, Any]]:
	checks = {"redis": await _redis_status(), "store": await _store_status(context)}
	ok = all(check["ok"] for check in checks.values())
	return (200 if ok else 503), {"status": "ok" if ok else "degraded", "checks": checks}


def status(context) -> Dict[str, Any]:
	if context is None:
		return {"status": "starting", "uptime_seconds": 0.0, "connected_users": 0, "online_users": 0}
	return {
		"status": "ok",
		"uptime_seconds": round(context.uptime_seconds(), 3),
		"connected_users": context.registry.connected_users(),
		"online_users": context.registry.online_count(),
	}
