"""Notification domain exports."""

from .alerts import Alerter, LogAlerter
from .models import Notification, group_key
from .service import NotificationSync

__all__ = [
	"Alerter",
	"LogAlerter",
	"Notification",
	"NotificationSync",
	"group_key",
]
