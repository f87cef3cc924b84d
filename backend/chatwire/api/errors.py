"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatwire.domain.chat.errors import ChatError, ErrorKind

_STATUS_BY_KIND = {
	ErrorKind.VALIDATION_FAILED: 400,
	ErrorKind.UNAUTHORIZED: 401,
	ErrorKind.FORBIDDEN: 403,
	ErrorKind.NOT_FOUND: 404,
	ErrorKind.WRITE_CONFLICT: 409,
	ErrorKind.TRANSPORT_FAILURE: 503,
}


def get_request_id(request: Request) -> str | None:
	return getattr(request.state, "request_id", None)


def status_for(exc: ChatError) -> int:
	return _STATUS_BY_KIND.get(exc.kind, 400)


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(ChatError)
	async def chat_error_handler(request: Request, exc: ChatError):  # type: ignore[override]
		payload = {**exc.to_dict(), "request_id": get_request_id(request)}
		return JSONResponse(status_code=status_for(exc), content=payload)

	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		payload = {"detail": exc.detail, "request_id": get_request_id(request)}
		return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

	@app.exception_handler(RequestValidationError)
	async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
		payload = {
			"detail": "validation_error",
			"kind": ErrorKind.VALIDATION_FAILED.value,
			"errors": exc.errors(),
			"request_id": get_request_id(request),
		}
		return JSONResponse(status_code=422, content=payload)
