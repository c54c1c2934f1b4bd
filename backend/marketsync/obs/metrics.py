"""Central registry for Prometheus metrics used by the sync controllers."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

_STATE_VALUES = {"idle": 0, "loading": 1, "active": 2, "suspended": 3}


FEED_EVENTS = Counter(
	"marketsync_feed_events_total",
	"Change feed events handled by a controller",
	["controller", "kind", "result"],
)

FEED_RECONNECTS = Counter(
	"marketsync_feed_reconnects_total",
	"Change feed reconnects that triggered a gap-closing resync",
	["controller"],
)

BULK_FETCHES = Counter(
	"marketsync_bulk_fetch_total",
	"Bulk fetches issued by controllers",
	["controller", "result"],
)

WRITE_RPCS = Counter(
	"marketsync_write_rpc_total",
	"Write RPCs issued to the record store collaborator",
	["controller", "op", "result"],
)

ROLLBACKS = Counter(
	"marketsync_optimistic_rollbacks_total",
	"Optimistic local mutations reverted after a failed RPC",
	["controller", "op"],
)

RECONCILIATION_ANOMALIES = Counter(
	"marketsync_reconciliation_anomalies_total",
	"Feed updates that referenced a key absent from the local store",
	["controller"],
)

CONTROLLER_STATE = Gauge(
	"marketsync_controller_state",
	"Controller lifecycle state (0 idle, 1 loading, 2 active, 3 suspended)",
	["controller"],
)

UNREAD_NOTIFICATIONS = Gauge(
	"marketsync_unread_notifications",
	"Unread notification groups in the most recently updated store",
)

READ_RECEIPTS = Counter(
	"marketsync_read_receipts_total",
	"Scheduled read receipt batches",
	["result"],
)

PRESENCE_TRANSITIONS = Counter(
	"marketsync_presence_transitions_total",
	"Local presence transitions",
	["status"],
)


def feed_event(controller: str, kind: str, result: str) -> None:
	FEED_EVENTS.labels(controller=controller, kind=kind, result=result).inc()


def feed_reconnect(controller: str) -> None:
	FEED_RECONNECTS.labels(controller=controller).inc()


def bulk_fetch(controller: str, result: str) -> None:
	BULK_FETCHES.labels(controller=controller, result=result).inc()


def write_rpc(controller: str, op: str, result: str) -> None:
	WRITE_RPCS.labels(controller=controller, op=op, result=result).inc()


def rollback(controller: str, op: str) -> None:
	ROLLBACKS.labels(controller=controller, op=op).inc()


def reconciliation_anomaly(controller: str) -> None:
	RECONCILIATION_ANOMALIES.labels(controller=controller).inc()


def controller_state(controller: str, state: str) -> None:
	CONTROLLER_STATE.labels(controller=controller).set(_STATE_VALUES.get(state, -1))


def unread_notifications(count: int) -> None:
	UNREAD_NOTIFICATIONS.set(count)


def read_receipt(result: str) -> None:
	READ_RECEIPTS.labels(result=result).inc()


def presence_transition(status: str) -> None:
	PRESENCE_TRANSITIONS.labels(status=status).inc()
