"""Chat domain exports."""

from .errors import ChatError, ErrorKind
from .service import ChatService
from .store import ConversationStore, MemoryConversationStore

__all__ = [
	"ChatError",
	"ChatService",
	"ConversationStore",
	"ErrorKind",
	"MemoryConversationStore",
]
