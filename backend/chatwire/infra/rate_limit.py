"""Simple Redis-backed rate limiting utilities.

Counters live in fixed windows keyed by slot; every key expires with its
window, so the structure never grows past the active windows.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Optional

from redis.exceptions import RedisError

from chatwire.infra.redis import redis_client

logger = logging.getLogger(__name__)


async def allow(
	kind: str,
	actor_id: str,
	*,
	limit: int,
	window_seconds: int = 60,
	now: Optional[float] = None,
) -> bool:
	"""Return True when the operation is still within the allowed budget.

	When Redis is unreachable the call fails open and logs a warning.
	"""

	if limit <= 0:
		return False
	now = now or time.time()
	window = max(1, int(window_seconds))
	slot = int(math.floor(now / window))
	key = f"rl:{kind}:{actor_id}:{slot}:{window}"
	try:
		async with redis_client.pipeline(transaction=True) as pipe:
			pipe.incr(key)
			pipe.expire(key, window)
			count, _ = await pipe.execute()
	except (RedisError, OSError):
		logger.warning("rate limiter unavailable kind=%s", kind, exc_info=True)
		return True
	return int(count) <= limit
