"""Domain models for user presence."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class PresenceStatus(str, enum.Enum):
	ONLINE = "online"
	AWAY = "away"
	BUSY = "busy"
	OFFLINE = "offline"


@dataclass(frozen=True, slots=True)
class PresenceRecord:
	user_id: str
	status: PresenceStatus
	last_seen: Optional[datetime]
	is_available: bool
