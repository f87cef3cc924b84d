"""Ephemeral presence and typing state."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional


@dataclass(eq=False)
class ConnectionHandle:
	"""One live transport connection; identity is the socket id."""

	sid: str
	user_id: str
	active_peer: Optional[str] = None
	connected_at: float = field(default_factory=time.monotonic)

	def __hash__(self) -> int:
		return hash(self.sid)

	def __eq__(self, other: object) -> bool:
		if not isinstance(other, ConnectionHandle):
			return NotImplemented
		return self.sid == other.sid


@dataclass
class PresenceEntry:
	user_id: str
	handles: Dict[str, ConnectionHandle] = field(default_factory=dict)
	online: bool = False
	last_activity: float = field(default_factory=time.monotonic)
	grace_task: Optional[asyncio.Task] = None


@dataclass
class TypingSignal:
	owner_id: str
	peer_id: str
	expires_at: float
	task: Optional[asyncio.Task] = None


@dataclass(frozen=True)
class PresenceChanged:
	user_id: str
	online: bool
	at: datetime


@dataclass(frozen=True)
class TypingChanged:
	user_id: str
	peer_id: str
	is_typing: bool
