"""Conversation store backed by asyncpg.

Every write runs in one transaction together with its `pg_notify`, so the
change feed only ever sees committed rows and sees them in commit order.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, List, Mapping, Optional

import asyncpg
import ulid

from . import phone as phone_utils
from .drafts import MessageDraft, validate_edit
from .errors import Forbidden, NotFound, Unauthorized, ValidationFailed, WriteConflict
from .models import (
	ChangeKind,
	ChatSummary,
	FileMeta,
	Message,
	MessagePage,
	MessageType,
	ReplyPreview,
	User,
	preview_of,
)

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = """
	m.id, m.seq, m.client_msg_id, m.sender_id, m.recipient_id, m.content, m.message_type,
	m.reply_to_id, m.file_url, m.file_name, m.file_size, m.file_mime_type,
	m.is_edited, m.edited_content, m.edited_at, m.is_deleted, m.created_at,
	r.id AS reply_id, COALESCE(r.edited_content, r.content) AS reply_text,
	r.is_deleted AS reply_deleted, COALESCE(ru.name, ru.phone) AS reply_author
"""

_MESSAGE_FROM = """
	FROM messages m
	LEFT JOIN messages r ON r.id = m.reply_to_id
	LEFT JOIN users ru ON ru.id = r.sender_id
"""

_PAIR_FILTER = "((m.sender_id = $1 AND m.recipient_id = $2) OR (m.sender_id = $2 AND m.recipient_id = $1))"

_USER_COLUMNS = "id, phone, name, is_online, last_seen, created_at"


@asynccontextmanager
async def _translate_errors() -> AsyncIterator[None]:
	try:
		yield
	except (asyncpg.exceptions.SerializationError, asyncpg.exceptions.DeadlockDetectedError) as exc:
		logger.warning("chat store write conflict: %s", exc.__class__.__name__)
		raise WriteConflict() from exc
	except asyncpg.exceptions.ForeignKeyViolationError as exc:
		constraint = getattr(exc, "constraint_name", "") or ""
		if "sender" in constraint:
			raise Unauthorized("unknown_sender") from exc
		raise ValidationFailed("unknown_recipient") from exc
	except asyncpg.exceptions.CheckViolationError as exc:
		raise ValidationFailed("constraint_violation") from exc


def _row_to_user(row) -> User:
	return User(
		id=str(row["id"]),
		phone=row["phone"],
		name=row["name"],
		online=bool(row["is_online"]),
		last_seen=row["last_seen"],
		created_at=row["created_at"],
	)


def _row_to_message(row) -> Message:
	file_meta = None
	if row["file_url"]:
		file_meta = FileMeta(
			url=row["file_url"],
			name=row["file_name"],
			size=row["file_size"],
			mime_type=row["file_mime_type"],
		)
	reply_preview = None
	if row["reply_id"]:
		deleted = bool(row["reply_deleted"])
		reply_preview = ReplyPreview(
			id=str(row["reply_id"]),
			# A deleted target keeps its id for threading but never its text.
			text="" if deleted else row["reply_text"] or "",
			author=row["reply_author"] or "User",
			deleted=deleted,
		)
	return Message(
		id=str(row["id"]),
		client_msg_id=str(row["client_msg_id"] or row["id"]),
		sender_id=str(row["sender_id"]),
		recipient_id=str(row["recipient_id"]),
		content=row["content"],
		message_type=MessageType(row["message_type"]),
		created_at=row["created_at"],
		seq=int(row["seq"]),
		reply_to_id=str(row["reply_to_id"]) if row["reply_to_id"] else None,
		file=file_meta,
		edited=bool(row["is_edited"]),
		edited_content=row["edited_content"],
		edited_at=row["edited_at"],
		deleted=bool(row["is_deleted"]),
		reply_preview=reply_preview,
	)


def _settings_value(raw: Any) -> dict:
	if isinstance(raw, str):
		return json.loads(raw) if raw else {}
	return dict(raw or {})


class PostgresConversationStore:
	"""Repository backed by an asyncpg pool."""

	def __init__(self, pool: asyncpg.pool.Pool, *, channel: str) -> None:
		self._pool = pool
		self._channel = channel

	async def _notify(self, conn, kind: ChangeKind, message_id: str) -> None:
		payload = json.dumps({"kind": kind.value, "message_id": message_id})
		await conn.execute("SELECT pg_notify($1, $2)", self._channel, payload)

	async def _fetch_message(self, conn, message_id: str) -> Optional[Message]:
		row = await conn.fetchrow(
			f"SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM} WHERE m.id = $1",
			message_id,
		)
		return _row_to_message(row) if row else None

	async def _refresh_previews(self, conn, user_a: str, user_b: str) -> None:
		row = await conn.fetchrow(
			f"""
			SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM}
			WHERE {_PAIR_FILTER} AND NOT m.is_deleted
			ORDER BY m.created_at DESC, m.seq DESC
			LIMIT 1
			""",
			user_a,
			user_b,
		)
		latest = _row_to_message(row) if row else None
		await conn.execute(
			"""
			UPDATE chat_summaries
			SET last_message_preview = $3,
				last_message_at = COALESCE($4, last_message_at)
			WHERE (owner_id = $1 AND peer_id = $2) OR (owner_id = $2 AND peer_id = $1)
			""",
			user_a,
			user_b,
			preview_of(latest) if latest else None,
			latest.created_at if latest else None,
		)

	async def append_message(self, draft: MessageDraft) -> Message:
		async with _translate_errors():
			async with self._pool.acquire() as conn:
				async with conn.transaction():
					known = {
						str(row["id"])
						for row in await conn.fetch(
							"SELECT id FROM users WHERE id = ANY($1::text[])",
							[draft.sender_id, draft.recipient_id],
						)
					}
					if draft.sender_id not in known:
						raise Unauthorized("unknown_sender")
					if draft.recipient_id not in known:
						raise ValidationFailed("unknown_recipient")
					if draft.reply_to_id:
						target = await conn.fetchval(
							f"SELECT m.id FROM messages m WHERE m.id = $3 AND {_PAIR_FILTER}",
							draft.sender_id,
							draft.recipient_id,
							draft.reply_to_id,
						)
						if target is None:
							raise ValidationFailed("reply_target_invalid")
					message_id = str(ulid.new())
					file_meta = draft.file
					await conn.execute(
						"""
						INSERT INTO messages (
							id, client_msg_id, sender_id, recipient_id, content, message_type,
							reply_to_id, file_url, file_name, file_size, file_mime_type
						) VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11)
						""",
						message_id,
						draft.client_msg_id,
						draft.sender_id,
						draft.recipient_id,
						draft.content,
						draft.message_type.value,
						draft.reply_to_id,
						file_meta.url if file_meta else None,
						file_meta.name if file_meta else None,
						file_meta.size if file_meta else None,
						file_meta.mime_type if file_meta else None,
					)
					message = await self._fetch_message(conn, message_id)
					assert message is not None
					preview = preview_of(message)
					# Sender side: preview only. Recipient side: relative +1 so
					# concurrent appends never lose an increment.
					await conn.execute(
						"""
						INSERT INTO chat_summaries (owner_id, peer_id, last_message_preview, last_message_at, unread_count)
						VALUES ($1, $2, $3, $4, 0)
						ON CONFLICT (owner_id, peer_id) DO UPDATE SET
							last_message_preview = EXCLUDED.last_message_preview,
							last_message_at = EXCLUDED.last_message_at,
							is_archived = FALSE
						""",
						draft.sender_id,
						draft.recipient_id,
						preview,
						message.created_at,
					)
					await conn.execute(
						"""
						INSERT INTO chat_summaries (owner_id, peer_id, last_message_preview, last_message_at, unread_count)
						VALUES ($1, $2, $3, $4, 1)
						ON CONFLICT (owner_id, peer_id) DO UPDATE SET
							last_message_preview = EXCLUDED.last_message_preview,
							last_message_at = EXCLUDED.last_message_at,
							unread_count = chat_summaries.unread_count + 1,
							is_archived = FALSE
						""",
						draft.recipient_id,
						draft.sender_id,
						preview,
						message.created_at,
					)
					await self._notify(conn, ChangeKind.INSERTED, message_id)
					return message

	async def get_message(self, message_id: str) -> Message:
		async with self._pool.acquire() as conn:
			message = await self._fetch_message(conn, message_id)
		if message is None:
			raise NotFound("message_not_found")
		return message

	async def list_messages(
		self,
		user_a: str,
		user_b: str,
		*,
		limit: int,
		before: Optional[datetime] = None,
		after: Optional[datetime] = None,
	) -> MessagePage:
		if limit <= 0:
			raise ValidationFailed("limit_invalid")
		params: List[object] = [user_a, user_b]
		where = [_PAIR_FILTER, "NOT m.is_deleted"]
		if before is not None:
			params.append(before)
			where.append(f"m.created_at < ${len(params)}")
		if after is not None:
			params.append(after)
			where.append(f"m.created_at > ${len(params)}")
		params.append(limit)
		query = (
			f"SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM} WHERE "
			+ " AND ".join(where)
			+ f" ORDER BY m.created_at DESC, m.seq DESC LIMIT ${len(params)}"
		)
		async with self._pool.acquire() as conn:
			rows = await conn.fetch(query, *params)
		items = [_row_to_message(row) for row in reversed(rows)]
		return MessagePage(items=items, has_more=len(rows) == limit)

	async def _lock_owned(self, conn, message_id: str, actor_id: str) -> Message:
		row = await conn.fetchrow(
			"SELECT sender_id, is_deleted FROM messages WHERE id = $1 FOR UPDATE",
			message_id,
		)
		if row is None or row["is_deleted"]:
			raise NotFound("message_not_found")
		if str(row["sender_id"]) != actor_id:
			raise Forbidden("not_message_sender")
		message = await self._fetch_message(conn, message_id)
		assert message is not None
		return message

	async def edit_message(self, message_id: str, editor_id: str, new_content: str) -> Message:
		text = validate_edit(new_content)
		async with _translate_errors():
			async with self._pool.acquire() as conn:
				async with conn.transaction():
					current = await self._lock_owned(conn, message_id, editor_id)
					await conn.execute(
						"""
						UPDATE messages
						SET is_edited = TRUE, edited_content = $2, edited_at = clock_timestamp()
						WHERE id = $1
						""",
						message_id,
						text,
					)
					await self._refresh_previews(conn, current.sender_id, current.recipient_id)
					await self._notify(conn, ChangeKind.UPDATED, message_id)
					updated = await self._fetch_message(conn, message_id)
					assert updated is not None
					return updated

	async def soft_delete_message(self, message_id: str, requester_id: str) -> Message:
		async with _translate_errors():
			async with self._pool.acquire() as conn:
				async with conn.transaction():
					current = await self._lock_owned(conn, message_id, requester_id)
					await conn.execute("UPDATE messages SET is_deleted = TRUE WHERE id = $1", message_id)
					await self._refresh_previews(conn, current.sender_id, current.recipient_id)
					await self._notify(conn, ChangeKind.UPDATED, message_id)
					return current.copy(deleted=True)

	async def mark_read(self, owner_id: str, peer_id: str) -> None:
		async with self._pool.acquire() as conn:
			await conn.execute(
				"UPDATE chat_summaries SET unread_count = 0 WHERE owner_id = $1 AND peer_id = $2",
				owner_id,
				peer_id,
			)

	_SUMMARY_SELECT = """
		SELECT s.owner_id, s.peer_id, s.last_message_preview, s.last_message_at,
			s.unread_count, s.is_archived, s.settings,
			u.id, u.phone, u.name, u.is_online, u.last_seen, u.created_at
		FROM chat_summaries s
		JOIN users u ON u.id = s.peer_id
	"""

	@staticmethod
	def _row_to_summary(row) -> ChatSummary:
		return ChatSummary(
			owner_id=str(row["owner_id"]),
			peer_id=str(row["peer_id"]),
			last_message_preview=row["last_message_preview"],
			last_message_at=row["last_message_at"],
			unread_count=int(row["unread_count"]),
			archived=bool(row["is_archived"]),
			settings=_settings_value(row["settings"]),
			peer=_row_to_user(row),
		)

	async def list_chat_summaries(self, owner_id: str) -> List[ChatSummary]:
		async with self._pool.acquire() as conn:
			rows = await conn.fetch(
				self._SUMMARY_SELECT
				+ " WHERE s.owner_id = $1 AND NOT s.is_archived"
				+ " ORDER BY s.last_message_at DESC NULLS LAST",
				owner_id,
			)
		return [self._row_to_summary(row) for row in rows]

	async def get_chat_summary(self, owner_id: str, peer_id: str) -> Optional[ChatSummary]:
		async with self._pool.acquire() as conn:
			row = await conn.fetchrow(
				self._SUMMARY_SELECT + " WHERE s.owner_id = $1 AND s.peer_id = $2",
				owner_id,
				peer_id,
			)
		return self._row_to_summary(row) if row else None

	async def archive_chat(self, owner_id: str, peer_id: str) -> None:
		async with self._pool.acquire() as conn:
			status = await conn.execute(
				"UPDATE chat_summaries SET is_archived = TRUE WHERE owner_id = $1 AND peer_id = $2",
				owner_id,
				peer_id,
			)
		if status.endswith(" 0"):
			raise NotFound("chat_not_found")

	async def update_chat_settings(self, owner_id: str, peer_id: str, settings: Mapping[str, Any]) -> ChatSummary:
		if owner_id == peer_id:
			raise ValidationFailed("cannot_message_self")
		async with _translate_errors():
			async with self._pool.acquire() as conn:
				async with conn.transaction():
					exists = await conn.fetchval("SELECT 1 FROM users WHERE id = $1", peer_id)
					if not exists:
						raise NotFound("user_not_found")
					await conn.execute(
						"""
						INSERT INTO chat_summaries (owner_id, peer_id, settings)
						VALUES ($1, $2, $3::jsonb)
						ON CONFLICT (owner_id, peer_id) DO UPDATE SET settings = EXCLUDED.settings
						""",
						owner_id,
						peer_id,
						json.dumps(dict(settings)),
					)
					row = await conn.fetchrow(
						self._SUMMARY_SELECT + " WHERE s.owner_id = $1 AND s.peer_id = $2",
						owner_id,
						peer_id,
					)
		return self._row_to_summary(row)

	async def find_or_create_user(self, phone: str, name: Optional[str] = None) -> User:
		try:
			normalized = phone_utils.normalize(phone)
		except ValueError as exc:
			raise ValidationFailed(str(exc)) from None
		async with self._pool.acquire() as conn:
			row = await conn.fetchrow(f"SELECT {_USER_COLUMNS} FROM users WHERE phone = $1", normalized)
			if row is not None:
				return _row_to_user(row)
			row = await conn.fetchrow(
				f"""
				INSERT INTO users (phone, name)
				VALUES ($1, $2)
				ON CONFLICT (phone) DO NOTHING
				RETURNING {_USER_COLUMNS}
				""",
				normalized,
				name,
			)
			if row is None:
				# Lost a creation race; the winner's row is authoritative.
				row = await conn.fetchrow(f"SELECT {_USER_COLUMNS} FROM users WHERE phone = $1", normalized)
		return _row_to_user(row)

	async def get_user(self, user_id: str) -> User:
		async with self._pool.acquire() as conn:
			row = await conn.fetchrow(f"SELECT {_USER_COLUMNS} FROM users WHERE id = $1", str(user_id))
		if row is None:
			raise NotFound("user_not_found")
		return _row_to_user(row)

	async def find_user_by_phone(self, query: str, *, exclude_user_id: Optional[str] = None) -> User:
		suffix = phone_utils.search_suffix(query)
		if suffix is None:
			raise NotFound("user_not_found")
		async with self._pool.acquire() as conn:
			row = await conn.fetchrow(
				f"""
				SELECT {_USER_COLUMNS} FROM users
				WHERE right(phone, {phone_utils.SUFFIX_LENGTH}) = $1
					AND ($2::text IS NULL OR id <> $2)
				ORDER BY phone
				LIMIT 1
				""",
				suffix,
				exclude_user_id,
			)
		if row is None:
			raise NotFound("user_not_found")
		return _row_to_user(row)

	async def set_user_presence(self, user_id: str, online: bool, *, at: Optional[datetime] = None) -> None:
		async with self._pool.acquire() as conn:
			await conn.execute(
				"UPDATE users SET is_online = $2, last_seen = COALESCE($3, now()) WHERE id = $1",
				user_id,
				online,
				at,
			)

	async def ping(self) -> None:
		async with self._pool.acquire() as conn:
			await conn.execute("SELECT 1")
