"""Domain models for one-to-one chat."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple


class MessageType(str, enum.Enum):
	TEXT = "text"
	FILE = "file"


class ChangeKind(str, enum.Enum):
	INSERTED = "inserted"
	UPDATED = "updated"


@dataclass(slots=True, frozen=True)
class ConversationKey:
	"""Canonical representation of a 1:1 chat conversation."""

	user_a: str
	user_b: str

	@classmethod
	def from_participants(cls, user_one: str, user_two: str) -> "ConversationKey":
		ordered = tuple(sorted((str(user_one), str(user_two))))
		return cls(user_a=ordered[0], user_b=ordered[1])

	@property
	def conversation_id(self) -> str:
		return f"chat:{self.user_a}:{self.user_b}"

	def participants(self) -> Tuple[str, str]:
		return (self.user_a, self.user_b)


@dataclass(slots=True)
class User:
	id: str
	phone: str
	name: Optional[str]
	online: bool = False
	last_seen: Optional[datetime] = None
	created_at: Optional[datetime] = None

	@property
	def display_name(self) -> str:
		return self.name or self.phone


@dataclass(slots=True, frozen=True)
class FileMeta:
	url: str
	name: Optional[str] = None
	size: Optional[int] = None
	mime_type: Optional[str] = None


@dataclass(slots=True, frozen=True)
class ReplyPreview:
	id: str
	text: str
	author: str
	deleted: bool = False


@dataclass(slots=True)
class Message:
	"""A persisted message: immutable core plus the edit/delete overlay."""

	id: str
	client_msg_id: str
	sender_id: str
	recipient_id: str
	content: str
	message_type: MessageType
	created_at: datetime
	seq: int = 0
	reply_to_id: Optional[str] = None
	file: Optional[FileMeta] = None
	edited: bool = False
	edited_content: Optional[str] = None
	edited_at: Optional[datetime] = None
	deleted: bool = False
	reply_preview: Optional[ReplyPreview] = None

	@property
	def text(self) -> str:
		"""Content as readers should see it."""
		if self.edited_content is not None:
			return self.edited_content
		return self.content

	@property
	def conversation(self) -> ConversationKey:
		return ConversationKey.from_participants(self.sender_id, self.recipient_id)

	def is_participant(self, user_id: str) -> bool:
		return user_id in (self.sender_id, self.recipient_id)

	def peer_of(self, user_id: str) -> str:
		return self.recipient_id if user_id == self.sender_id else self.sender_id

	def copy(self, **changes: Any) -> "Message":
		return replace(self, **changes)


@dataclass(slots=True)
class ChatSummary:
	"""Per (owner, peer) denormalised conversation state."""

	owner_id: str
	peer_id: str
	last_message_preview: Optional[str] = None
	last_message_at: Optional[datetime] = None
	unread_count: int = 0
	archived: bool = False
	settings: Dict[str, Any] = field(default_factory=dict)
	peer: Optional[User] = None


@dataclass(slots=True)
class MessagePage:
	items: List[Message]
	has_more: bool


@dataclass(slots=True, frozen=True)
class ChangeEvent:
	"""Notification that a message row was committed."""

	kind: ChangeKind
	message_id: str
	# Snapshot taken at commit time; None when the event crossed a process boundary.
	message: Optional[Message] = field(default=None, compare=False)


def preview_of(message: Message, *, limit: int = 120) -> str:
	if message.message_type is MessageType.FILE and message.file is not None:
		return message.file.name or "file"
	text = message.text
	return text if len(text) <= limit else f"{text[:limit]}…"
