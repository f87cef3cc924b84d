"""Health probes and the Prometheus scrape endpoint."""

from __future__ import annotations

import hmac
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from chatwire.obs import health
from chatwire.settings import settings

router = APIRouter(tags=["ops"])


def _presented_token(x_admin_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
	if x_admin_token:
		return x_admin_token
	scheme, _, value = (authorization or "").partition(" ")
	return value if scheme.lower() == "bearer" and value else None


async def require_metrics_access(
	x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
	authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
	"""Metrics are admin-only unless OBS_METRICS_PUBLIC is set."""
	if settings.obs_metrics_public:
		return
	expected = settings.obs_admin_token
	if not expected:
		raise HTTPException(status.HTTP_403_FORBIDDEN, detail="admin_token_not_configured")
	presented = _presented_token(x_admin_token, authorization) or ""
	if not hmac.compare_digest(presented, expected):
		raise HTTPException(status.HTTP_403_FORBIDDEN, detail="forbidden")


def _context(request: Request):
	return getattr(request.app.state, "chat", None)


@router.get("/health/live")
async def health_live() -> Dict[str, Any]:
	return await health.liveness()


@router.get("/health/ready")
async def health_ready(request: Request) -> JSONResponse:
	status_code, payload = await health.readiness(_context(request))
	return JSONResponse(content=payload, status_code=status_code)


@router.get("/health/status")
async def health_status(request: Request) -> Dict[str, Any]:
	return health.status(_context(request))


@router.get("/metrics", dependencies=[Depends(require_metrics_access)])
async def prometheus_metrics() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
