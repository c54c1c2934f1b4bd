"""Typed wrapper around one push-channel subscription."""

from __future__ import annotations

import logging
from typing import Any, Callable, Generic, Mapping, Optional, TypeVar

from marketsync.obs import metrics as obs_metrics

from .errors import TransportError
from .events import ChangeEvent, FeedScope, parse_change_event
from .gateway import FeedTransport, ReconnectHandler, Unsubscribe

T = TypeVar("T")

logger = logging.getLogger(__name__)


class ChangeFeed(Generic[T]):
	"""Delivers parsed change events for one scope to a single callback.

	Raw payloads are narrowed at this boundary; anything that does not parse
	is logged and dropped so the store only ever sees typed records.
	"""

	def __init__(
		self,
		transport: FeedTransport,
		parser: Callable[[Mapping[str, Any]], T],
		*,
		name: str,
	) -> None:
		self._transport = transport
		self._parser = parser
		self.name = name
		self._unsubscribe: Optional[Unsubscribe] = None
		self._on_event: Optional[Callable[[ChangeEvent[T]], None]] = None
		self.scope: Optional[FeedScope] = None

	@property
	def is_open(self) -> bool:
		return self._unsubscribe is not None

	async def open(
		self,
		scope: FeedScope,
		on_event: Callable[[ChangeEvent[T]], None],
		on_reconnect: Optional[ReconnectHandler] = None,
	) -> None:
		if self._unsubscribe is not None:
			await self.close()
		self._on_event = on_event
		self.scope = scope
		try:
			self._unsubscribe = await self._transport.subscribe(scope, self._deliver, on_reconnect)
		except TransportError:
			self._on_event = None
			self.scope = None
			raise
		except (ConnectionError, OSError) as exc:
			self._on_event = None
			self.scope = None
			raise TransportError("feed_subscribe_failed") from exc

	async def close(self) -> None:
		unsubscribe = self._unsubscribe
		self._unsubscribe = None
		self._on_event = None
		if unsubscribe is None:
			return
		try:
			await unsubscribe()
		except Exception:
			logger.warning("feed.unsubscribe_failed", extra={"feed": self.name}, exc_info=True)

	def _deliver(self, raw: Mapping[str, Any]) -> None:
		callback = self._on_event
		if callback is None:
			return
		try:
			event = parse_change_event(raw, self._parser)
		except (ValueError, TypeError, KeyError):
			obs_metrics.feed_event(self.name, "unknown", "dropped")
			logger.warning(
				"feed.payload_dropped",
				extra={"feed": self.name, "channel": self.scope.channel if self.scope else None},
				exc_info=True,
			)
			return
		callback(event)


__all__ = ["ChangeFeed"]
