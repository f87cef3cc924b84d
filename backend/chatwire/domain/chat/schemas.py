"""Pydantic schemas shared by the HTTP routes and the socket namespace.

Wire names are camelCase; Python code uses the snake_case attributes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import ChatSummary, FileMeta, Message, MessagePage, MessageType, ReplyPreview, User


class CamelModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	def to_wire(self) -> Dict[str, Any]:
		return self.model_dump(mode="json", by_alias=True)


class FilePayload(CamelModel):
	url: str
	name: Optional[str] = None
	size: Optional[int] = None
	mime_type: Optional[str] = None

	@classmethod
	def from_meta(cls, meta: FileMeta) -> "FilePayload":
		return cls(url=meta.url, name=meta.name, size=meta.size, mime_type=meta.mime_type)

	def to_meta(self) -> FileMeta:
		return FileMeta(url=self.url, name=self.name, size=self.size, mime_type=self.mime_type)


class ReplyPreviewResponse(CamelModel):
	id: str
	text: str
	author: str
	deleted: bool = False

	@classmethod
	def from_model(cls, preview: ReplyPreview) -> "ReplyPreviewResponse":
		return cls(id=preview.id, text=preview.text, author=preview.author, deleted=preview.deleted)


class MessageResponse(CamelModel):
	id: str
	client_msg_id: str
	sender_id: str
	recipient_id: str
	content: str
	message_type: MessageType = Field(alias="type")
	created_at: datetime
	reply_to_id: Optional[str] = None
	reply_to: Optional[ReplyPreviewResponse] = None
	file: Optional[FilePayload] = None
	edited: bool = False
	edited_at: Optional[datetime] = None
	deleted: bool = False

	@classmethod
	def from_model(cls, message: Message) -> "MessageResponse":
		return cls(
			id=message.id,
			client_msg_id=message.client_msg_id,
			sender_id=message.sender_id,
			recipient_id=message.recipient_id,
			content="" if message.deleted else message.text,
			message_type=message.message_type,
			created_at=message.created_at,
			reply_to_id=message.reply_to_id,
			reply_to=ReplyPreviewResponse.from_model(message.reply_preview) if message.reply_preview else None,
			file=FilePayload.from_meta(message.file) if message.file and not message.deleted else None,
			edited=message.edited,
			edited_at=message.edited_at,
			deleted=message.deleted,
		)


class MessageListResponse(CamelModel):
	items: List[MessageResponse]
	has_more: bool

	@classmethod
	def from_page(cls, page: MessagePage) -> "MessageListResponse":
		return cls(items=[MessageResponse.from_model(m) for m in page.items], has_more=page.has_more)


class UserResponse(CamelModel):
	id: str
	phone: str
	name: Optional[str] = None
	online: bool = False
	last_seen: Optional[datetime] = None

	@classmethod
	def from_model(cls, user: User) -> "UserResponse":
		return cls(id=user.id, phone=user.phone, name=user.name, online=user.online, last_seen=user.last_seen)


class ChatSummaryResponse(CamelModel):
	peer_id: str
	peer: Optional[UserResponse] = None
	last_message_preview: Optional[str] = None
	last_message_at: Optional[datetime] = None
	unread_count: int = 0
	archived: bool = False
	settings: Dict[str, Any] = Field(default_factory=dict)

	@classmethod
	def from_model(cls, summary: ChatSummary) -> "ChatSummaryResponse":
		return cls(
			peer_id=summary.peer_id,
			peer=UserResponse.from_model(summary.peer) if summary.peer else None,
			last_message_preview=summary.last_message_preview,
			last_message_at=summary.last_message_at,
			unread_count=summary.unread_count,
			archived=summary.archived,
			settings=dict(summary.settings),
		)


class SendMessageRequest(CamelModel):
	content: Optional[str] = None
	message_type: MessageType = Field(default=MessageType.TEXT, alias="type")
	reply_to: Optional[str] = None
	file: Optional[FilePayload] = None
	client_msg_id: Optional[str] = None


class SocketSendMessage(SendMessageRequest):
	peer_id: Optional[str] = None


class EditMessageRequest(CamelModel):
	content: str


class RegisterUserRequest(CamelModel):
	phone: str = Field(..., min_length=1, max_length=32)
	name: Optional[str] = Field(default=None, max_length=120)


class ChatSettingsRequest(CamelModel):
	settings: Dict[str, Any] = Field(default_factory=dict)


class AuthenticatePayload(CamelModel):
	user_id: Optional[str] = None
	token: Optional[str] = None


class PeerPayload(CamelModel):
	peer_id: Optional[str] = None
