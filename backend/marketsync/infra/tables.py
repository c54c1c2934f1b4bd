"""Record store collaborator backed by asyncpg with an in-memory fallback.

Every successful write is published to the change feed of each scope the
resulting row belongs to, standing in for the backend's row-change
triggers.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import UUID

import asyncpg
import ulid

from marketsync.domain.sync.errors import TransportError, ValidationError
from marketsync.domain.sync.events import ChangeKind, FeedScope
from marketsync.infra import postgres
from marketsync.infra.feed import FeedPublisher

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

# Column(s) a row is published under; ``None`` means the table-wide channel.
TABLE_SCOPES: Dict[str, Tuple[Optional[str], ...]] = {
	"notifications": ("user_id",),
	"messages": ("booking_id",),
	"user_presence": (None,),
}

TABLE_KEYS: Dict[str, str] = {
	"notifications": "id",
	"messages": "id",
	"user_presence": "user_id",
}

# Column defaults the database would otherwise fill in.
TABLE_DEFAULTS: Dict[str, Dict[str, Any]] = {
	"notifications": {"message": "", "category": None, "target_url": None, "is_read": False},
	"messages": {"message_type": "text", "is_read": False},
	"user_presence": {"status": "offline", "is_available": True, "last_seen": None},
}

_CREATED_AT_TABLES = frozenset({"notifications", "messages"})
_UPDATED_AT_TABLES = frozenset({"messages"})

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

_VALIDATION_ERRORS = (
	asyncpg.exceptions.IntegrityConstraintViolationError,
	asyncpg.exceptions.DataError,
)
_TRANSPORT_ERRORS = (
	asyncpg.PostgresError,
	asyncpg.InterfaceError,
	OSError,
	asyncio.TimeoutError,
)


def _ident(name: str) -> str:
	if not _IDENTIFIER_RE.match(name):
		raise ValidationError("invalid_identifier")
	return f'"{name}"'


def _now() -> datetime:
	return datetime.now(timezone.utc)


def _is_many(value: Any) -> bool:
	return isinstance(value, (list, tuple, set, frozenset))


def _matches(row: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
	for column, expected in filters.items():
		actual = row.get(column)
		if _is_many(expected):
			if actual not in expected:
				return False
		elif actual != expected:
			return False
	return True


def _where_clause(filters: Mapping[str, Any], params: List[Any]) -> str:
	clauses: List[str] = []
	for column, expected in filters.items():
		if expected is None:
			clauses.append(f"{_ident(column)} IS NULL")
			continue
		params.append(list(expected) if _is_many(expected) else expected)
		operator = "= ANY(${})" if _is_many(expected) else "= ${}"
		clauses.append(f"{_ident(column)} {operator.format(len(params))}")
	return " AND ".join(clauses) if clauses else "TRUE"


def _record_to_row(record: Mapping[str, Any]) -> Row:
	row: Row = {}
	for key, value in dict(record).items():
		row[key] = str(value) if isinstance(value, UUID) else value
	return row


def scopes_for(table: str, row: Mapping[str, Any]) -> List[FeedScope]:
	scopes: List[FeedScope] = []
	for column in TABLE_SCOPES.get(table, ()):
		if column is None:
			scopes.append(FeedScope(table))
		elif row.get(column) is not None:
			scopes.append(FeedScope(table, column, str(row[column])))
	return scopes


class _InMemoryTables:
	"""Fallback store used in tests and local runs when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._rows: Dict[str, List[Row]] = {}

	def reset(self) -> None:
		self._rows.clear()

	async def fetch(
		self,
		table: str,
		filters: Mapping[str, Any],
		*,
		order_by: Optional[str],
		descending: bool,
		limit: Optional[int],
	) -> List[Row]:
		async with self._lock:
			rows = [dict(row) for row in self._rows.get(table, []) if _matches(row, filters)]
		if order_by:
			rows.sort(key=lambda row: (row.get(order_by) is None, row.get(order_by)), reverse=descending)
		if limit is not None:
			rows = rows[:limit]
		return rows

	async def insert(self, table: str, values: Mapping[str, Any]) -> Row:
		async with self._lock:
			row = self._new_row(table, values)
			key = TABLE_KEYS.get(table, "id")
			rows = self._rows.setdefault(table, [])
			if any(existing.get(key) == row.get(key) for existing in rows):
				raise ValidationError("duplicate_key")
			rows.append(row)
			return dict(row)

	async def update(self, table: str, filters: Mapping[str, Any], patch: Mapping[str, Any]) -> List[Row]:
		async with self._lock:
			updated: List[Row] = []
			for row in self._rows.get(table, []):
				if not _matches(row, filters):
					continue
				row.update(patch)
				if table in _UPDATED_AT_TABLES:
					row["updated_at"] = _now()
				updated.append(dict(row))
			return updated

	async def upsert(self, table: str, values: Mapping[str, Any], *, conflict: str) -> Tuple[Row, bool]:
		async with self._lock:
			rows = self._rows.setdefault(table, [])
			for row in rows:
				if row.get(conflict) == values.get(conflict):
					row.update(values)
					if table in _UPDATED_AT_TABLES:
						row["updated_at"] = _now()
					return dict(row), False
			row = self._new_row(table, values)
			rows.append(row)
			return dict(row), True

	def seed(self, table: str, rows: Iterable[Mapping[str, Any]]) -> None:
		self._rows.setdefault(table, []).extend(dict(row) for row in rows)

	@staticmethod
	def _new_row(table: str, values: Mapping[str, Any]) -> Row:
		row: Row = dict(TABLE_DEFAULTS.get(table, {}))
		row.update(values)
		key = TABLE_KEYS.get(table, "id")
		if key == "id" and not row.get("id"):
			row["id"] = ulid.new().str
		now = _now()
		if table in _CREATED_AT_TABLES:
			row.setdefault("created_at", now)
		if table in _UPDATED_AT_TABLES:
			row.setdefault("updated_at", now)
		return row


_MEMORY_TABLES = _InMemoryTables()


def memory_tables() -> _InMemoryTables:
	return _MEMORY_TABLES


class TableGateway:
	"""Fetch and write rows, then publish the resulting changes."""

	def __init__(self, publisher: Optional[FeedPublisher] = None) -> None:
		self._publisher = publisher
		self._pool_checked = False
		self._pool = None

	async def _pool_or_none(self):
		if self._pool_checked:
			return self._pool
		self._pool_checked = True
		try:
			pool = await postgres.get_pool()
		except AssertionError:
			pool = None
		except Exception:
			logger.warning("tables.pool_unavailable", exc_info=True)
			pool = None
		self._pool = pool
		return pool

	async def fetch(
		self,
		scope: FeedScope,
		*,
		order_by: Optional[str] = "created_at",
		descending: bool = False,
		limit: Optional[int] = None,
		filters: Optional[Mapping[str, Any]] = None,
	) -> List[Row]:
		combined = {**scope.filters(), **dict(filters or {})}
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_TABLES.fetch(
				scope.table,
				combined,
				order_by=order_by,
				descending=descending,
				limit=limit,
			)
		params: List[Any] = []
		query = f"SELECT * FROM {_ident(scope.table)} WHERE {_where_clause(combined, params)}"
		if order_by:
			query += f" ORDER BY {_ident(order_by)} {'DESC' if descending else 'ASC'}"
		if limit is not None:
			params.append(int(limit))
			query += f" LIMIT ${len(params)}"
		try:
			async with pool.acquire() as conn:
				records = await conn.fetch(query, *params)
		except _TRANSPORT_ERRORS as exc:
			raise TransportError("fetch_failed") from exc
		return [_record_to_row(record) for record in records]

	async def insert(self, table: str, values: Mapping[str, Any]) -> Row:
		pool = await self._pool_or_none()
		if pool is None:
			row = await _MEMORY_TABLES.insert(table, values)
		else:
			columns = list(values.keys())
			placeholders = ", ".join(f"${idx}" for idx in range(1, len(columns) + 1))
			query = (
				f"INSERT INTO {_ident(table)} ({', '.join(_ident(column) for column in columns)}) "
				f"VALUES ({placeholders}) RETURNING *"
			)
			row = _record_to_row(await self._execute_one(pool, query, [values[column] for column in columns]))
		await self._publish(table, ChangeKind.INSERT, [row])
		return row

	async def update(self, table: str, filters: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
		if not patch:
			return 0
		pool = await self._pool_or_none()
		if pool is None:
			rows = await _MEMORY_TABLES.update(table, filters, patch)
		else:
			params: List[Any] = []
			assignments = []
			for column, value in patch.items():
				params.append(value)
				assignments.append(f"{_ident(column)} = ${len(params)}")
			if table in _UPDATED_AT_TABLES and "updated_at" not in patch:
				assignments.append('"updated_at" = now()')
			query = (
				f"UPDATE {_ident(table)} SET {', '.join(assignments)} "
				f"WHERE {_where_clause(filters, params)} RETURNING *"
			)
			try:
				async with pool.acquire() as conn:
					records = await conn.fetch(query, *params)
			except _VALIDATION_ERRORS as exc:
				raise ValidationError("constraint_violation") from exc
			except _TRANSPORT_ERRORS as exc:
				raise TransportError("update_failed") from exc
			rows = [_record_to_row(record) for record in records]
		await self._publish(table, ChangeKind.UPDATE, rows)
		return len(rows)

	async def upsert(self, table: str, values: Mapping[str, Any], *, conflict: str) -> Row:
		pool = await self._pool_or_none()
		if pool is None:
			row, created = await _MEMORY_TABLES.upsert(table, values, conflict=conflict)
		else:
			columns = list(values.keys())
			placeholders = ", ".join(f"${idx}" for idx in range(1, len(columns) + 1))
			updates = ", ".join(
				f"{_ident(column)} = EXCLUDED.{_ident(column)}" for column in columns if column != conflict
			)
			query = (
				f"INSERT INTO {_ident(table)} ({', '.join(_ident(column) for column in columns)}) "
				f"VALUES ({placeholders}) ON CONFLICT ({_ident(conflict)}) "
				f"DO UPDATE SET {updates or f'{_ident(conflict)} = EXCLUDED.{_ident(conflict)}'} "
				"RETURNING *, (xmax = 0) AS _inserted"
			)
			row = _record_to_row(await self._execute_one(pool, query, [values[column] for column in columns]))
			created = bool(row.pop("_inserted", False))
		await self._publish(table, ChangeKind.INSERT if created else ChangeKind.UPDATE, [row])
		return row

	async def _execute_one(self, pool, query: str, params: List[Any]):
		try:
			async with pool.acquire() as conn:
				record = await conn.fetchrow(query, *params)
		except _VALIDATION_ERRORS as exc:
			raise ValidationError("constraint_violation") from exc
		except _TRANSPORT_ERRORS as exc:
			raise TransportError("write_failed") from exc
		if record is None:
			raise TransportError("write_returned_nothing")
		return record

	async def _publish(self, table: str, kind: ChangeKind, rows: List[Row]) -> None:
		if self._publisher is None:
			return
		for row in rows:
			for scope in scopes_for(table, row):
				try:
					await self._publisher.publish(scope, kind, row)
				except TransportError:
					logger.warning(
						"tables.publish_failed",
						extra={"table": table, "channel": scope.channel},
						exc_info=True,
					)


__all__ = ["TABLE_SCOPES", "TableGateway", "memory_tables", "scopes_for"]
