"""Keyed asyncio locks with reference-counted eviction."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable


class _Slot:
	__slots__ = ("lock", "holders")

	def __init__(self) -> None:
		self.lock = asyncio.Lock()
		self.holders = 0


class KeyedLocks:
	"""One lock per key; a key's lock is dropped once nobody holds or waits on it."""

	def __init__(self) -> None:
		self._slots: Dict[Hashable, _Slot] = {}

	@asynccontextmanager
	async def hold(self, key: Hashable) -> AsyncIterator[None]:
		slot = self._slots.get(key)
		if slot is None:
			slot = _Slot()
			self._slots[key] = slot
		slot.holders += 1
		try:
			async with slot.lock:
				yield
		finally:
			slot.holders -= 1
			if slot.holders == 0 and self._slots.get(key) is slot:
				del self._slots[key]

	def __len__(self) -> int:
		return len(self._slots)
