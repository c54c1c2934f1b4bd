"""Generic fetch-then-follow synchronization engine."""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, Tuple, TypeVar

from marketsync.obs import logging as obs_logging
from marketsync.obs import metrics as obs_metrics

from .context import ViewContext
from .errors import ControllerStateError, ReconciliationAnomaly, TransportError
from .events import ChangeEvent, ChangeKind, FeedScope
from .feed import ChangeFeed
from .gateway import FeedTransport, RecordQuery
from .scheduler import TaskScheduler
from .store import RecordStore, UpsertResult

T = TypeVar("T")

logger = logging.getLogger(__name__)

_RESYNC_TASK = "resync"


class ControllerState(str, enum.Enum):
	IDLE = "idle"
	LOADING = "loading"
	ACTIVE = "active"
	SUSPENDED = "suspended"


class SyncController(Generic[T]):
	"""Keeps a :class:`RecordStore` consistent with a server table.

	``activate`` subscribes to the change feed first and only then issues the
	bulk fetch; events that arrive while the fetch is in flight are buffered
	and replayed after the fetch result has been merged, so a stale fetch can
	never overwrite a newer push. Every entry point runs on the event loop
	thread, which makes each merge atomic without locks.
	"""

	name = "sync"

	def __init__(
		self,
		*,
		query: RecordQuery,
		transport: FeedTransport,
		store: RecordStore[T],
		parser: Callable[[Mapping[str, Any]], T],
		user_id: Optional[str] = None,
		context: Optional[ViewContext] = None,
	) -> None:
		self._query = query
		self._store = store
		self._parser = parser
		self._feed: ChangeFeed[T] = ChangeFeed(transport, parser, name=self.name)
		self._scheduler = TaskScheduler(self.name)
		self._buffer: List[ChangeEvent[T]] = []
		self._generation = 0
		self.user_id = user_id
		self.context = context or ViewContext()
		self.scope: Optional[FeedScope] = None
		self.state = ControllerState.IDLE

	@property
	def is_loading(self) -> bool:
		return self.state is ControllerState.LOADING

	@property
	def is_active(self) -> bool:
		return self.state is ControllerState.ACTIVE

	def snapshot(self) -> Tuple[T, ...]:
		return self._store.snapshot()

	async def activate(self, scope: FeedScope) -> None:
		"""Attach the feed, run the bulk fetch and start merging events.

		Raises :class:`TransportError` when the fetch or subscription fails;
		the controller is left ``IDLE`` so the caller may retry.
		"""
		if self.state in (ControllerState.LOADING, ControllerState.ACTIVE):
			if scope == self.scope:
				return
			await self.deactivate()
		if scope != self.scope:
			self._store.clear()
		self.scope = scope
		self._generation += 1
		generation = self._generation
		self._buffer = []
		self._set_state(ControllerState.LOADING)
		tokens = obs_logging.bind_context(controller=self.name, scope=scope.channel, user_id=self.user_id)
		try:
			try:
				await self._feed.open(scope, self._handle_event, self._handle_reconnect)
			except TransportError:
				if generation == self._generation:
					self._buffer = []
					self._set_state(ControllerState.IDLE)
				logger.warning("sync.subscribe.failed", extra={"channel": scope.channel}, exc_info=True)
				raise
			if generation != self._generation:
				return
			await self._load(generation, initial=True)
		finally:
			obs_logging.reset_context(tokens)

	async def deactivate(self) -> None:
		"""Detach the feed and cancel scheduled work. Safe in any state."""
		if self.state is ControllerState.SUSPENDED and not self._feed.is_open:
			return
		self._generation += 1
		self._buffer = []
		await self._feed.close()
		await self._scheduler.cancel_all()
		self._set_state(ControllerState.SUSPENDED)

	async def refetch(self) -> None:
		"""Re-run the bulk fetch on an active controller and merge the result."""
		if self.state is not ControllerState.ACTIVE:
			raise ControllerStateError()
		self._set_state(ControllerState.LOADING)
		await self._load(self._generation, initial=False)

	def _require_scope(self) -> FeedScope:
		if self.scope is None or self.state not in (ControllerState.LOADING, ControllerState.ACTIVE):
			raise ControllerStateError()
		return self.scope

	async def _load(self, generation: int, *, initial: bool) -> None:
		assert self.scope is not None
		try:
			rows = await self._query.fetch(self.scope, **self._fetch_options())
		except TransportError:
			obs_metrics.bulk_fetch(self.name, "error")
			if generation != self._generation:
				return
			if initial:
				await self._feed.close()
				self._buffer = []
				self._set_state(ControllerState.IDLE)
			else:
				self._replay_buffer()
				self._set_state(ControllerState.ACTIVE)
			logger.warning(
				"sync.fetch.failed",
				extra={"controller": self.name, "channel": self.scope.channel, "initial": initial},
			)
			raise
		if generation != self._generation:
			obs_metrics.bulk_fetch(self.name, "discarded")
			logger.info("sync.fetch.discarded", extra={"controller": self.name})
			return
		records = self._parse_rows(rows)
		for record in records:
			self._store.upsert(record)
		self._replay_buffer()
		self._set_state(ControllerState.ACTIVE)
		obs_metrics.bulk_fetch(self.name, "success")
		logger.info(
			"sync.fetch.loaded",
			extra={"controller": self.name, "rows": len(records), "size": len(self._store)},
		)
		self._after_fetch(records)

	def _parse_rows(self, rows: List[Mapping[str, Any]]) -> List[T]:
		records: List[T] = []
		for row in rows:
			try:
				records.append(self._parser(row))
			except (ValueError, TypeError, KeyError):
				logger.warning("sync.fetch.row_dropped", extra={"controller": self.name}, exc_info=True)
		return records

	def _replay_buffer(self) -> None:
		buffered, self._buffer = self._buffer, []
		for event in buffered:
			self._merge(event)

	def _handle_event(self, event: ChangeEvent[T]) -> None:
		if self.state is ControllerState.LOADING:
			self._buffer.append(event)
			obs_metrics.feed_event(self.name, event.kind.value, "buffered")
			return
		if self.state is not ControllerState.ACTIVE:
			obs_metrics.feed_event(self.name, event.kind.value, "ignored")
			return
		self._merge(event)

	def _merge(self, event: ChangeEvent[T]) -> UpsertResult:
		record = self._prepare(event.record)
		if event.kind is ChangeKind.UPDATE and self._store.key_of(record) not in self._store:
			anomaly = ReconciliationAnomaly(self.name, self._store.key_of(record))
			obs_metrics.reconciliation_anomaly(self.name)
			logger.warning("sync.reconcile.unknown_key", extra={"controller": self.name, "key": repr(anomaly.key)})
		result = self._store.upsert(record)
		obs_metrics.feed_event(self.name, event.kind.value, result.value)
		self._on_merged(event, result)
		return result

	def _handle_reconnect(self) -> None:
		if self.state is not ControllerState.ACTIVE:
			return
		obs_metrics.feed_reconnect(self.name)
		self._scheduler.schedule(_RESYNC_TASK, 0, self._resync)

	async def _resync(self) -> None:
		if self.state is not ControllerState.ACTIVE:
			return
		logger.info("sync.resync.start", extra={"controller": self.name})
		self._set_state(ControllerState.LOADING)
		try:
			await self._load(self._generation, initial=False)
		except TransportError:
			logger.warning("sync.resync.failed", extra={"controller": self.name})

	def _set_state(self, state: ControllerState) -> None:
		self.state = state
		obs_metrics.controller_state(self.name, state.value)

	# Subclass hooks

	def _fetch_options(self) -> Dict[str, Any]:
		return {}

	def _prepare(self, record: T) -> T:
		return record

	def _on_merged(self, event: ChangeEvent[T], result: UpsertResult) -> None:
		return None

	def _after_fetch(self, records: List[T]) -> None:
		return None


__all__ = ["ControllerState", "SyncController"]
