"""Foreground alert and push fan-out hooks for newly merged notifications."""

from __future__ import annotations

import logging
from typing import Any, Dict, Protocol

from .models import Notification

logger = logging.getLogger(__name__)


class Alerter(Protocol):
	def alert(self, notification: Notification) -> None:
		...


class LogAlerter:
	"""Alerter that only records the alert; useful for headless clients."""

	def __init__(self) -> None:
		self.count = 0

	def alert(self, notification: Notification) -> None:
		self.count += 1
		logger.info(
			"notifications.alert",
			extra={"notification_id": notification.id, "notification_type": notification.type},
		)


def build_push_body(user_id: str, notification: Notification) -> Dict[str, Any]:
	return {
		"user_id": user_id,
		"title": "New Message",
		"body": notification.message,
		"data": {
			"url": notification.target_url or "/",
			"type": notification.type,
		},
	}
