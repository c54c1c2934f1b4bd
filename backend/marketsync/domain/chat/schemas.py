"""Pydantic schemas for chat rows crossing the collaborator boundary."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from .models import ChatMessage, MessageType


class MessageRow(BaseModel):
	model_config = ConfigDict(extra="ignore")

	id: str
	booking_id: str
	sender_id: str
	receiver_id: str
	content: str
	message_type: MessageType = MessageType.TEXT
	is_read: bool = False
	created_at: datetime
	updated_at: Optional[datetime] = None

	def to_model(self) -> ChatMessage:
		return ChatMessage(
			id=self.id,
			booking_id=self.booking_id,
			sender_id=self.sender_id,
			receiver_id=self.receiver_id,
			content=self.content,
			message_type=self.message_type,
			is_read=self.is_read,
			created_at=self.created_at,
			updated_at=self.updated_at,
		)


class NewMessage(BaseModel):
	"""Values sent to the persist RPC; the server assigns id and timestamps."""

	booking_id: str
	sender_id: str
	receiver_id: str
	content: str
	message_type: MessageType = MessageType.TEXT


def parse_message(row: Mapping[str, Any]) -> ChatMessage:
	return MessageRow.model_validate(dict(row)).to_model()
