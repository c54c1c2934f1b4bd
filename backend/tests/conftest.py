import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from marketsync.domain.sync import FeedScope, TransportError
from marketsync.infra import postgres
from marketsync.infra.feed import InMemoryFeedTransport
from marketsync.infra.tables import memory_tables
from marketsync.settings import settings

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from marketsync.infra.redis import redis_client, set_redis_client
	original = redis_client._client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)
	postgres.set_pool(None)


@pytest.fixture(autouse=True)
def reset_memory_tables():
	memory_tables().reset()
	yield
	memory_tables().reset()


@pytest.fixture(autouse=True)
def force_test_settings(monkeypatch):
	"""Keep timers short so scheduled work completes inside a test."""
	monkeypatch.setattr(settings, "read_receipt_delay_seconds", 0.0)
	monkeypatch.setattr(settings, "feed_reconnect_backoff_seconds", 0.01)
	monkeypatch.setattr(settings, "feed_poll_interval_seconds", 0.01)


async def flush_loop(rounds: int = 5) -> None:
	for _ in range(rounds):
		await asyncio.sleep(0)


class FakeGateway:
	"""Record store collaborator with controllable latency and failures.

	``fetch`` snapshots matching rows before waiting on ``fetch_gate``, so a
	gated fetch returns data as it was when the request was issued.
	"""

	def __init__(self) -> None:
		self.rows: Dict[str, List[Dict[str, Any]]] = {}
		self.fetch_calls: List[Dict[str, Any]] = []
		self.inserts: List[Dict[str, Any]] = []
		self.updates: List[Dict[str, Any]] = []
		self.upserts: List[Dict[str, Any]] = []
		self.fetch_gate: Optional[asyncio.Event] = None
		self.fetch_error: Optional[Exception] = None
		self.write_error: Optional[Exception] = None
		self.before_write = None
		self._next_id = 0

	def seed(self, table: str, *rows: Dict[str, Any]) -> None:
		self.rows.setdefault(table, []).extend(dict(row) for row in rows)

	async def fetch(self, scope: FeedScope, *, order_by="created_at", descending=False, limit=None, filters=None):
		self.fetch_calls.append(
			{"scope": scope, "order_by": order_by, "descending": descending, "limit": limit, "filters": filters}
		)
		combined = {**scope.filters(), **dict(filters or {})}
		rows = [dict(row) for row in self.rows.get(scope.table, []) if _matches(row, combined)]
		if order_by:
			rows.sort(key=lambda row: row[order_by], reverse=descending)
		if limit is not None:
			rows = rows[:limit]
		if self.fetch_gate is not None:
			await self.fetch_gate.wait()
		if self.fetch_error is not None:
			raise self.fetch_error
		return rows

	async def insert(self, table: str, values):
		await self._before_write("insert", table, values)
		self.inserts.append({"table": table, "values": dict(values)})
		if self.write_error is not None:
			raise self.write_error
		self._next_id += 1
		row = {"id": f"srv-{self._next_id}", "created_at": BASE_TIME + timedelta(minutes=self._next_id), **dict(values)}
		self.rows.setdefault(table, []).append(row)
		return dict(row)

	async def update(self, table: str, filters, patch):
		await self._before_write("update", table, filters)
		self.updates.append({"table": table, "filters": dict(filters), "patch": dict(patch)})
		if self.write_error is not None:
			raise self.write_error
		count = 0
		for row in self.rows.get(table, []):
			if _matches(row, filters):
				row.update(patch)
				count += 1
		return count

	async def upsert(self, table: str, values, *, conflict: str):
		await self._before_write("upsert", table, values)
		self.upserts.append({"table": table, "values": dict(values), "conflict": conflict})
		if self.write_error is not None:
			raise self.write_error
		return dict(values)

	async def _before_write(self, op: str, table: str, values) -> None:
		if self.before_write is not None:
			self.before_write(op, table, values)


def _matches(row, filters) -> bool:
	for column, expected in filters.items():
		if isinstance(expected, (list, tuple, set, frozenset)):
			if row.get(column) not in expected:
				return False
		elif row.get(column) != expected:
			return False
	return True


class FakePush:
	def __init__(self) -> None:
		self.calls: List[tuple] = []

	async def invoke(self, function: str, body) -> None:
		self.calls.append((function, dict(body)))


class RecordingAlerter:
	def __init__(self) -> None:
		self.alerted: List[str] = []

	def alert(self, notification) -> None:
		self.alerted.append(notification.id)


@pytest.fixture
def gateway() -> FakeGateway:
	return FakeGateway()


@pytest.fixture
def transport() -> InMemoryFeedTransport:
	return InMemoryFeedTransport()


@pytest.fixture
def push() -> FakePush:
	return FakePush()


@pytest.fixture
def alerter() -> RecordingAlerter:
	return RecordingAlerter()


@pytest.fixture
def flush():
	return flush_loop


@pytest.fixture
def failure():
	return TransportError("network_down")


@pytest.fixture
def notification_row():
	def _make(row_id: str, *, minutes: int = 0, user_id: str = "u1", type_: str = "booking_confirmed", **fields):
		row = {
			"id": row_id,
			"user_id": user_id,
			"type": type_,
			"message": f"notification {row_id}",
			"category": "booking",
			"target_url": "/bookings/b1",
			"is_read": False,
			"created_at": BASE_TIME + timedelta(minutes=minutes),
		}
		row.update(fields)
		return row

	return _make


@pytest.fixture
def message_row():
	def _make(row_id: str, *, minutes: int = 0, booking_id: str = "b1", sender_id: str = "u2", receiver_id: str = "u1", **fields):
		row = {
			"id": row_id,
			"booking_id": booking_id,
			"sender_id": sender_id,
			"receiver_id": receiver_id,
			"content": f"hello {row_id}",
			"message_type": "text",
			"is_read": False,
			"created_at": BASE_TIME + timedelta(minutes=minutes),
		}
		row.update(fields)
		return row

	return _make
