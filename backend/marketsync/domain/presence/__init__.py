"""Presence domain exports."""

from .models import PresenceRecord, PresenceStatus
from .service import PresenceSync

__all__ = [
	"PresenceRecord",
	"PresenceStatus",
	"PresenceSync",
]
