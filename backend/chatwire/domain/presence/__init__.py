from .models import ConnectionHandle, PresenceChanged, TypingChanged
from .registry import PresenceRegistry

__all__ = ["ConnectionHandle", "PresenceChanged", "PresenceRegistry", "TypingChanged"]
