"""Domain models for booking chat threads."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class MessageType(str, enum.Enum):
	TEXT = "text"
	IMAGE = "image"
	FILE = "file"
	SYSTEM = "system"


@dataclass(frozen=True, slots=True)
class ChatMessage:
	id: str
	booking_id: str
	sender_id: str
	receiver_id: str
	content: str
	message_type: MessageType
	is_read: bool
	created_at: datetime
	updated_at: Optional[datetime] = None

	def is_participant(self, user_id: str) -> bool:
		return user_id in (self.sender_id, self.receiver_id)

	def is_unread_for(self, user_id: str) -> bool:
		return self.receiver_id == user_id and not self.is_read
