"""FastAPI endpoints for chats and messages.

Writes go through the same ChatService as the socket namespace, so an HTTP
send fans out to live connections exactly like a socket send.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from chatwire.api.deps import get_chat_service
from chatwire.domain.chat.schemas import (
	ChatSettingsRequest,
	ChatSummaryResponse,
	EditMessageRequest,
	MessageListResponse,
	MessageResponse,
	SendMessageRequest,
)
from chatwire.domain.chat.service import ChatService
from chatwire.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(tags=["chat"])


@router.get("/chats", response_model=List[ChatSummaryResponse])
async def list_chats_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> List[ChatSummaryResponse]:
	summaries = await service.list_chats(auth_user)
	return [ChatSummaryResponse.from_model(summary) for summary in summaries]


@router.get("/chats/{peer_id}/messages", response_model=MessageListResponse)
async def list_messages_endpoint(
	peer_id: str,
	limit: Optional[int] = Query(default=None, ge=1),
	before: Optional[datetime] = Query(default=None),
	after: Optional[datetime] = Query(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> MessageListResponse:
	page = await service.list_messages(auth_user, peer_id, limit=limit, before=before, after=after)
	return MessageListResponse.from_page(page)


@router.post("/chats/{peer_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message_endpoint(
	peer_id: str,
	payload: SendMessageRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> MessageResponse:
	message = await service.send_message(
		auth_user,
		peer_id,
		payload.content,
		payload.message_type,
		reply_to_id=payload.reply_to,
		file=payload.file.to_meta() if payload.file else None,
		client_msg_id=payload.client_msg_id,
	)
	return MessageResponse.from_model(message)


@router.post("/chats/{peer_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_read_endpoint(
	peer_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> Response:
	await service.mark_read(auth_user, peer_id)
	return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/chats/{peer_id}/archive", status_code=status.HTTP_204_NO_CONTENT)
async def archive_chat_endpoint(
	peer_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> Response:
	await service.archive_chat(auth_user, peer_id)
	return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/chats/{peer_id}/settings", response_model=ChatSummaryResponse)
async def update_chat_settings_endpoint(
	peer_id: str,
	payload: ChatSettingsRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> ChatSummaryResponse:
	summary = await service.update_chat_settings(auth_user, peer_id, payload.settings)
	return ChatSummaryResponse.from_model(summary)


@router.patch("/messages/{message_id}", response_model=MessageResponse)
async def edit_message_endpoint(
	message_id: str,
	payload: EditMessageRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> MessageResponse:
	message = await service.edit_message(auth_user, message_id, payload.content)
	return MessageResponse.from_model(message)


@router.delete("/messages/{message_id}", response_model=MessageResponse)
async def delete_message_endpoint(
	message_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> MessageResponse:
	message = await service.delete_message(auth_user, message_id)
	return MessageResponse.from_model(message)
