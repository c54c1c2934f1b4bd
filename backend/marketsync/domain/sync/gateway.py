"""Collaborator interfaces consumed by the sync controllers."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from .events import FeedScope

Row = dict[str, Any]
PayloadHandler = Callable[[Mapping[str, Any]], None]
ReconnectHandler = Callable[[], None]
Unsubscribe = Callable[[], Awaitable[None]]


class RecordQuery(Protocol):
	async def fetch(
		self,
		scope: FeedScope,
		*,
		order_by: str = "created_at",
		descending: bool = False,
		limit: Optional[int] = None,
		filters: Optional[Mapping[str, Any]] = None,
	) -> list[Row]:
		...


class RecordWriter(Protocol):
	async def insert(self, table: str, values: Mapping[str, Any]) -> Row:
		...

	async def update(self, table: str, filters: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
		...

	async def upsert(self, table: str, values: Mapping[str, Any], *, conflict: str) -> Row:
		...


class FeedTransport(Protocol):
	async def subscribe(
		self,
		scope: FeedScope,
		on_payload: PayloadHandler,
		on_reconnect: Optional[ReconnectHandler] = None,
	) -> Unsubscribe:
		...


class RecordGateway(RecordQuery, RecordWriter, Protocol):
	"""A collaborator that can both read and write rows."""


class PushDispatcher(Protocol):
	async def invoke(self, function: str, body: Mapping[str, Any]) -> None:
		...
