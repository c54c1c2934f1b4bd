"""Pydantic schemas for notification rows crossing the collaborator boundary."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import Notification


class NotificationRow(BaseModel):
	model_config = ConfigDict(extra="ignore")

	id: str
	user_id: Optional[str] = None
	type: str
	message: str = ""
	category: Optional[str] = None
	target_url: Optional[str] = None
	is_read: bool = False
	created_at: datetime = Field(...)

	def to_model(self) -> Notification:
		return Notification(
			id=self.id,
			type=self.type,
			message=self.message,
			category=self.category,
			target_url=self.target_url,
			created_at=self.created_at,
			row_ids=(self.id,),
			unread_ids=frozenset() if self.is_read else frozenset({self.id}),
		)


def parse_notification(row: Mapping[str, Any]) -> Notification:
	return NotificationRow.model_validate(dict(row)).to_model()
