"""Typed failures surfaced by the conversation store, presence and sessions."""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
	VALIDATION_FAILED = "validation_failed"
	UNAUTHORIZED = "unauthorized"
	FORBIDDEN = "forbidden"
	NOT_FOUND = "not_found"
	WRITE_CONFLICT = "write_conflict"
	TRANSPORT_FAILURE = "transport_failure"


class ChatError(Exception):
	"""Base class for chat failures; `kind` tags the variant, `detail` explains it."""

	kind: ErrorKind = ErrorKind.VALIDATION_FAILED
	detail: str = "error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail

	def to_dict(self) -> dict[str, str]:
		return {"kind": self.kind.value, "detail": self.detail}


class ValidationFailed(ChatError):
	kind = ErrorKind.VALIDATION_FAILED
	detail = "invalid_payload"


class Unauthorized(ChatError):
	kind = ErrorKind.UNAUTHORIZED
	detail = "unauthenticated"


class Forbidden(ChatError):
	kind = ErrorKind.FORBIDDEN
	detail = "forbidden"


class NotFound(ChatError):
	kind = ErrorKind.NOT_FOUND
	detail = "not_found"


class WriteConflict(ChatError):
	"""Concurrent-write anomaly; retrying the whole operation is safe."""

	kind = ErrorKind.WRITE_CONFLICT
	detail = "write_conflict"


class TransportFailure(ChatError):
	kind = ErrorKind.TRANSPORT_FAILURE
	detail = "transport_failure"
