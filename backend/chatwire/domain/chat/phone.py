"""Phone number normalisation used for storage and suffix search."""

from __future__ import annotations

import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D")

SUFFIX_LENGTH = 10


def digits_only(raw: str) -> str:
	return _NON_DIGITS.sub("", raw or "")


def search_suffix(raw: str) -> Optional[str]:
	"""Last ten digits of the input, or None when fewer than ten are present."""
	digits = digits_only(raw)
	if len(digits) < SUFFIX_LENGTH:
		return None
	return digits[-SUFFIX_LENGTH:]


def normalize(raw: str) -> str:
	"""Digits-only storage form; rejects inputs that could never be searched."""
	digits = digits_only(raw)
	if len(digits) < SUFFIX_LENGTH:
		raise ValueError("phone_too_short")
	return digits
