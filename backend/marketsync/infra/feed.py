"""Change feed transports.

``RedisFeedTransport`` follows one Redis stream per scope and resumes from
the last delivered entry id, so events reach the subscriber in the order
they were appended. ``InMemoryFeedTransport`` is an in-process stand-in
that delivers through the running event loop.
"""

from __future__ import annotations

import asyncio
import copy
import enum
import json
import logging
from contextlib import suppress
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set, Tuple
from uuid import UUID

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from marketsync.domain.sync.errors import TransportError
from marketsync.domain.sync.events import ChangeKind, FeedScope, build_payload
from marketsync.domain.sync.gateway import PayloadHandler, ReconnectHandler, Unsubscribe
from marketsync.infra.redis import redis_client
from marketsync.settings import settings

logger = logging.getLogger(__name__)

_EVENT_FIELD = "event"


class FeedPublisher(Protocol):
	async def publish(self, scope: FeedScope, kind: ChangeKind, row: Mapping[str, Any]) -> Any:
		...


def stream_key(scope: FeedScope) -> str:
	return f"{settings.feed_key_prefix}:{scope.channel}"


def _json_default(value: Any) -> Any:
	if isinstance(value, (datetime, date)):
		return value.isoformat()
	if isinstance(value, UUID):
		return str(value)
	if isinstance(value, enum.Enum):
		return value.value
	if isinstance(value, (set, frozenset, tuple)):
		return list(value)
	raise TypeError(f"unserializable value of type {type(value).__name__}")


def encode_payload(kind: ChangeKind, row: Mapping[str, Any]) -> str:
	return json.dumps(build_payload(kind, row), default=_json_default, separators=(",", ":"))


class RedisFeedPublisher:
	"""Appends change events to the per-scope stream."""

	def __init__(self, client=None, *, maxlen: Optional[int] = None) -> None:
		self._client = client or redis_client
		self._maxlen = maxlen if maxlen is not None else settings.feed_stream_maxlen

	async def publish(self, scope: FeedScope, kind: ChangeKind, row: Mapping[str, Any]) -> str:
		try:
			return await self._client.xadd(
				stream_key(scope),
				{_EVENT_FIELD: encode_payload(kind, row)},
				maxlen=self._maxlen,
				approximate=True,
			)
		except (RedisError, OSError) as exc:
			raise TransportError("feed_publish_failed") from exc


class _StreamSubscription:
	def __init__(
		self,
		client,
		key: str,
		on_payload: PayloadHandler,
		on_reconnect: Optional[ReconnectHandler],
		last_id: str,
	) -> None:
		self._client = client
		self.key = key
		self._on_payload = on_payload
		self._on_reconnect = on_reconnect
		self.last_id = last_id
		self._running = False
		self._task: Optional[asyncio.Task] = None

	def start(self) -> None:
		self._running = True
		self._task = asyncio.create_task(self.run_forever(), name=f"feed:{self.key}")

	async def stop(self) -> None:
		self._running = False
		task, self._task = self._task, None
		if task is not None and not task.done():
			task.cancel()
			with suppress(asyncio.CancelledError):
				await task

	async def process_once(self, *, block_ms: Optional[int] = None) -> int:
		"""Read and deliver the next batch; returns number of events delivered."""
		response = await self._client.xread(
			streams={self.key: self.last_id},
			count=settings.feed_batch_size,
			block=block_ms,
		)
		delivered = 0
		for _stream, entries in response or []:
			for entry_id, fields in entries:
				self.last_id = entry_id
				raw = fields.get(_EVENT_FIELD)
				try:
					payload = json.loads(raw)
				except (TypeError, ValueError):
					logger.warning("feed.entry_undecodable", extra={"stream": self.key, "entry_id": entry_id})
					continue
				try:
					self._on_payload(payload)
				except Exception:
					logger.exception("feed.handler_failed", extra={"stream": self.key, "entry_id": entry_id})
				delivered += 1
		return delivered

	async def run_forever(self) -> None:
		base_backoff = max(0.01, settings.feed_reconnect_backoff_seconds)
		backoff = base_backoff
		disconnected = False
		block_ms = settings.feed_block_ms if settings.feed_block_ms > 0 else None
		while self._running:
			try:
				processed = await self.process_once(block_ms=block_ms)
			except (RedisConnectionError, RedisTimeoutError, OSError):
				if not disconnected:
					logger.warning("feed.disconnected", extra={"stream": self.key}, exc_info=True)
				disconnected = True
				await asyncio.sleep(backoff)
				backoff = min(backoff * 2, settings.feed_reconnect_max_backoff_seconds)
				continue
			if disconnected:
				disconnected = False
				backoff = base_backoff
				logger.info("feed.reconnected", extra={"stream": self.key})
				if self._on_reconnect is not None:
					self._on_reconnect()
			if processed == 0 and block_ms is None:
				await asyncio.sleep(settings.feed_poll_interval_seconds)


class RedisFeedTransport:
	"""Subscribes controllers to per-scope Redis streams."""

	def __init__(self, client=None, *, autostart: bool = True) -> None:
		self._client = client or redis_client
		self._autostart = autostart
		self._subscriptions: Set[_StreamSubscription] = set()

	@property
	def subscriptions(self) -> Tuple[_StreamSubscription, ...]:
		return tuple(self._subscriptions)

	async def subscribe(
		self,
		scope: FeedScope,
		on_payload: PayloadHandler,
		on_reconnect: Optional[ReconnectHandler] = None,
	) -> Unsubscribe:
		key = stream_key(scope)
		try:
			latest = await self._client.xrevrange(key, count=1)
		except (RedisError, OSError) as exc:
			raise TransportError("feed_subscribe_failed") from exc
		last_id = latest[0][0] if latest else "0-0"
		subscription = _StreamSubscription(self._client, key, on_payload, on_reconnect, last_id)
		self._subscriptions.add(subscription)
		if self._autostart:
			subscription.start()

		async def unsubscribe() -> None:
			self._subscriptions.discard(subscription)
			await subscription.stop()

		return unsubscribe

	async def shutdown(self) -> None:
		subscriptions = list(self._subscriptions)
		self._subscriptions.clear()
		for subscription in subscriptions:
			await subscription.stop()


class InMemoryFeedTransport:
	"""Publisher and transport in one process; delivery goes through ``call_soon``."""

	def __init__(self) -> None:
		self._subscribers: Dict[str, List[Tuple[PayloadHandler, Optional[ReconnectHandler]]]] = {}

	def subscriber_count(self, scope: FeedScope) -> int:
		return len(self._subscribers.get(scope.channel, ()))

	async def subscribe(
		self,
		scope: FeedScope,
		on_payload: PayloadHandler,
		on_reconnect: Optional[ReconnectHandler] = None,
	) -> Unsubscribe:
		entry = (on_payload, on_reconnect)
		self._subscribers.setdefault(scope.channel, []).append(entry)

		async def unsubscribe() -> None:
			entries = self._subscribers.get(scope.channel, [])
			if entry in entries:
				entries.remove(entry)
			if not entries:
				self._subscribers.pop(scope.channel, None)

		return unsubscribe

	async def publish(self, scope: FeedScope, kind: ChangeKind, row: Mapping[str, Any]) -> None:
		payload = build_payload(kind, row)
		loop = asyncio.get_running_loop()
		for entry in list(self._subscribers.get(scope.channel, ())):
			loop.call_soon(self._deliver, scope.channel, entry, copy.deepcopy(payload))

	def _deliver(self, channel: str, entry, payload: Dict[str, Any]) -> None:
		if entry not in self._subscribers.get(channel, ()):
			return
		entry[0](payload)

	def simulate_reconnect(self, scope: FeedScope) -> None:
		"""Signal every subscriber of ``scope`` that its connection was restored."""
		for _handler, on_reconnect in list(self._subscribers.get(scope.channel, ())):
			if on_reconnect is not None:
				on_reconnect()


__all__ = [
	"FeedPublisher",
	"InMemoryFeedTransport",
	"RedisFeedPublisher",
	"RedisFeedTransport",
	"encode_payload",
	"stream_key",
]
