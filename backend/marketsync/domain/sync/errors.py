"""Exceptions raised by the sync core."""

from __future__ import annotations


class SyncError(Exception):
	"""Base class for sync core errors."""

	detail: str = "sync_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail


class TransportError(SyncError):
	"""Raised when the record store or feed collaborator fails at the service boundary."""

	detail = "transport_error"


class ValidationError(SyncError):
	"""Raised for invalid caller input or server-side constraint violations."""

	detail = "validation_error"


class ControllerStateError(SyncError):
	"""Raised when a mutator runs on a controller that has no active scope."""

	detail = "controller_not_active"


class ReconciliationAnomaly(SyncError):
	"""A feed update referenced a key no local record carries.

	Never raised out of a controller: the event is merged as a fresh insert.
	"""

	detail = "reconciliation_anomaly"

	def __init__(self, controller: str, key: object) -> None:
		super().__init__()
		self.controller = controller
		self.key = key


__all__ = [
	"ControllerStateError",
	"ReconciliationAnomaly",
	"SyncError",
	"TransportError",
	"ValidationError",
]
