"""Validation of outgoing messages before they reach a store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

import ulid

from chatwire.settings import settings

from .errors import ValidationFailed
from .models import FileMeta, MessageType


@dataclass(slots=True, frozen=True)
class MessageDraft:
	sender_id: str
	recipient_id: str
	content: str
	message_type: MessageType
	client_msg_id: str
	reply_to_id: Optional[str] = None
	file: Optional[FileMeta] = None


def normalize_file(entry: Mapping[str, object] | FileMeta | None) -> Optional[FileMeta]:
	"""Validate file metadata sent by clients.

	Accepts `url` (required), `name`, `size` and `mimeType`/`mime_type`.
	Uploading the blob itself happens elsewhere; only its reference is stored.
	"""
	if entry is None:
		return None
	if isinstance(entry, FileMeta):
		return entry
	url = str(entry.get("url") or "").strip()
	if not url:
		raise ValidationFailed("file_url_required")
	size_raw = entry.get("size")
	try:
		size = int(size_raw) if size_raw is not None else None
	except (TypeError, ValueError):
		raise ValidationFailed("file_size_invalid") from None
	if size is not None and size < 0:
		raise ValidationFailed("file_size_invalid")
	name = entry.get("name")
	mime_type = entry.get("mimeType") or entry.get("mime_type")
	return FileMeta(
		url=url,
		name=str(name) if name else None,
		size=size,
		mime_type=str(mime_type) if mime_type else None,
	)


def build_draft(
	sender_id: str,
	recipient_id: str,
	content: Optional[str],
	message_type: MessageType | str = MessageType.TEXT,
	*,
	reply_to_id: Optional[str] = None,
	file: Mapping[str, object] | FileMeta | None = None,
	client_msg_id: Optional[str] = None,
) -> MessageDraft:
	"""Return a validated draft or raise ValidationFailed."""
	sender = str(sender_id or "").strip()
	recipient = str(recipient_id or "").strip()
	if not sender or not recipient:
		raise ValidationFailed("participants_required")
	if sender == recipient:
		raise ValidationFailed("cannot_message_self")
	try:
		kind = MessageType(message_type)
	except ValueError:
		raise ValidationFailed("unknown_message_type") from None
	text = content or ""
	if len(text) > settings.message_max_length:
		raise ValidationFailed("content_too_long")
	file_meta = normalize_file(file)
	if kind is MessageType.TEXT:
		if not text.strip():
			raise ValidationFailed("content_required")
		file_meta = None
	elif file_meta is None:
		raise ValidationFailed("file_required")
	return MessageDraft(
		sender_id=sender,
		recipient_id=recipient,
		content=text,
		message_type=kind,
		client_msg_id=client_msg_id or str(ulid.new()),
		reply_to_id=reply_to_id or None,
		file=file_meta,
	)


def validate_edit(new_content: Optional[str]) -> str:
	text = new_content or ""
	if not text.strip():
		raise ValidationFailed("content_required")
	if len(text) > settings.message_max_length:
		raise ValidationFailed("content_too_long")
	return text
