"""Chat domain exports."""

from .models import ChatMessage, MessageType
from .service import MessageSync

__all__ = [
	"ChatMessage",
	"MessageSync",
	"MessageType",
]
