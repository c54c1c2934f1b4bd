"""Pydantic schemas for presence rows crossing the collaborator boundary."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from .models import PresenceRecord, PresenceStatus


class PresenceRow(BaseModel):
	model_config = ConfigDict(extra="ignore")

	user_id: str
	status: PresenceStatus = PresenceStatus.OFFLINE
	last_seen: Optional[datetime] = None
	is_available: bool = False

	def to_model(self) -> PresenceRecord:
		return PresenceRecord(
			user_id=self.user_id,
			status=self.status,
			last_seen=self.last_seen,
			is_available=self.is_available,
		)


def parse_presence(row: Mapping[str, Any]) -> PresenceRecord:
	return PresenceRow.model_validate(dict(row)).to_model()
