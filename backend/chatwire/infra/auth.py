"""Authentication helpers for FastAPI endpoints and socket sessions.

Bearer JWTs are always honoured. The `X-User-Id` header (and a bare `userId`
on the socket) is only accepted in development environments.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from chatwire.infra import jwt as jwt_helper
from chatwire.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str


_bearer_scheme = HTTPBearer(auto_error=False)


def user_id_from_token(token: str) -> Optional[str]:
	"""Return the subject of a valid access token, or None."""
	try:
		payload = jwt_helper.decode_access(token)
	except InvalidTokenError:
		return None
	return str(payload["sub"]).strip()


def resolve_claimed_user_id(*, token: Optional[str], user_id: Optional[str]) -> Optional[str]:
	"""Pick the identity a client claims, honouring the dev-only shortcut."""
	if token:
		return user_id_from_token(token)
	if user_id and settings.is_dev():
		return str(user_id).strip() or None
	return None


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user for an HTTP request."""
	token = None
	if credentials and credentials.scheme.lower() == "bearer":
		token = credentials.credentials
	user_id = resolve_claimed_user_id(token=token, user_id=x_user_id)
	if not user_id:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")
	return AuthenticatedUser(id=user_id)
