"""Request dependencies shared by the chat and user routes."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from chatwire.domain.chat.service import ChatService


def get_chat_service(request: Request) -> ChatService:
	context = getattr(request.app.state, "chat", None)
	if context is None:
		raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="chat_unavailable")
	return context.service
