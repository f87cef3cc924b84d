"""HTTP middleware: request id, access log line and request metrics."""

from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from chatwire.obs import logging as obs_logging
from chatwire.obs import metrics
from chatwire.settings import settings

REQUEST_ID_HEADER = "X-Request-Id"

access_logger = logging.getLogger("chatwire.http")


def _route_template(request: Request) -> str:
	# Templates keep metric label cardinality bounded (no peer ids in labels).
	route = request.scope.get("route")
	return getattr(route, "path", None) or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		if not settings.obs_enabled:
			return await call_next(request)

		request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
		request.state.request_id = request_id
		tokens = obs_logging.bind_context(
			request_id=request_id,
			route=request.url.path,
			user_id=request.headers.get("X-User-Id"),
			client_ip=request.client.host if request.client else None,
		)
		started = time.perf_counter()
		status_code = 500
		try:
			response = await call_next(request)
			status_code = response.status_code
		except Exception:
			access_logger.exception("http_request_error", extra={"method": request.method})
			raise
		finally:
			elapsed = time.perf_counter() - started
			metrics.observe_request(_route_template(request), request.method, status_code, elapsed)
			access_logger.info(
				"http_request",
				extra={"status": status_code, "method": request.method, "latency_ms": round(elapsed * 1000, 3)},
			)
			obs_logging.reset_context(tokens)

		response.headers.setdefault(REQUEST_ID_HEADER, request_id)
		return response


def install(app) -> None:
	app.add_middleware(ObservabilityMiddleware)
