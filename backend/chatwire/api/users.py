"""User directory endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from chatwire.api.deps import get_chat_service
from chatwire.domain.chat.schemas import RegisterUserRequest, UserResponse
from chatwire.domain.chat.service import ChatService
from chatwire.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/users", tags=["users"])


@router.post("", response_model=UserResponse, status_code=status.HTTP_200_OK)
async def register_user_endpoint(
	payload: RegisterUserRequest,
	service: ChatService = Depends(get_chat_service),
) -> UserResponse:
	user = await service.register_user(payload.phone, payload.name)
	return UserResponse.from_model(user)


@router.get("/search", response_model=UserResponse)
async def search_user_endpoint(
	phone: str = Query(..., min_length=1),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> UserResponse:
	user = await service.search_user(auth_user, phone)
	return UserResponse.from_model(user)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user_endpoint(
	user_id: str,
	_: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> UserResponse:
	user = await service.get_user(user_id)
	return UserResponse.from_model(user)
