"""Generic real-time synchronization engine."""

from .context import ViewContext
from .controller import ControllerState, SyncController
from .errors import (
	ControllerStateError,
	ReconciliationAnomaly,
	SyncError,
	TransportError,
	ValidationError,
)
from .events import ChangeEvent, ChangeKind, FeedScope, build_payload, parse_change_event
from .feed import ChangeFeed
from .gateway import FeedTransport, PushDispatcher, RecordGateway, RecordQuery, RecordWriter
from .scheduler import TaskScheduler
from .store import RecordStore, UpsertResult

__all__ = [
	"ChangeEvent",
	"ChangeFeed",
	"ChangeKind",
	"ControllerState",
	"ControllerStateError",
	"FeedScope",
	"FeedTransport",
	"PushDispatcher",
	"ReconciliationAnomaly",
	"RecordGateway",
	"RecordQuery",
	"RecordStore",
	"RecordWriter",
	"SyncController",
	"SyncError",
	"TaskScheduler",
	"TransportError",
	"UpsertResult",
	"ValidationError",
	"ViewContext",
	"build_payload",
	"parse_change_event",
]
