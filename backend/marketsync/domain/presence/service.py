"""Presence tracking: local lifecycle state machine plus remote feed merge."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from marketsync.domain.sync import (
	ControllerStateError,
	FeedScope,
	FeedTransport,
	RecordGateway,
	RecordStore,
	SyncController,
	TransportError,
	ValidationError,
	ViewContext,
)
from marketsync.obs import metrics as obs_metrics
from marketsync.settings import available_statuses

from .models import PresenceRecord, PresenceStatus
from .schemas import parse_presence

logger = logging.getLogger(__name__)

TABLE = "user_presence"


class PresenceSync(SyncController[PresenceRecord]):
	"""Tracks everyone's presence and authors the local user's own.

	Local transitions: session start -> online, tab hidden -> away, tab
	visible -> online, explicit busy, session end -> offline. Visibility
	changes never override a user-chosen ``busy``. Each transition updates
	the local store first and then issues a best-effort RPC; a failed RPC
	is logged and never reverts the local state.
	"""

	name = "presence"

	def __init__(
		self,
		*,
		gateway: RecordGateway,
		transport: FeedTransport,
		user_id: str,
		context: Optional[ViewContext] = None,
	) -> None:
		super().__init__(
			query=gateway,
			transport=transport,
			store=RecordStore(lambda record: record.user_id),
			parser=parse_presence,
			user_id=user_id,
			context=context,
		)
		self._writer = gateway
		self._my_status = PresenceStatus.OFFLINE

	@property
	def my_status(self) -> PresenceStatus:
		return self._my_status

	def default_scope(self) -> FeedScope:
		return FeedScope(TABLE)

	async def activate(self, scope: Optional[FeedScope] = None) -> None:
		await super().activate(scope or self.default_scope())
		if self.is_active and self._my_status is PresenceStatus.OFFLINE:
			await self._transition(PresenceStatus.ONLINE)

	async def deactivate(self) -> None:
		if self._my_status is not PresenceStatus.OFFLINE:
			await self._transition(PresenceStatus.OFFLINE)
		await super().deactivate()

	async def on_unload(self) -> None:
		await self.deactivate()

	async def on_visibility_change(self, hidden: bool) -> None:
		if self._my_status in (PresenceStatus.OFFLINE, PresenceStatus.BUSY):
			return
		target = PresenceStatus.AWAY if hidden else PresenceStatus.ONLINE
		if target is self._my_status:
			return
		await self._transition(target)

	async def set_status(self, status: PresenceStatus | str) -> None:
		"""Explicit user-chosen status, e.g. ``busy``."""
		try:
			target = PresenceStatus(status)
		except ValueError as exc:
			raise ValidationError("invalid_status") from exc
		if self._my_status is PresenceStatus.OFFLINE and target is not PresenceStatus.OFFLINE:
			raise ControllerStateError()
		await self._transition(target)

	def get_status(self, user_id: str) -> PresenceStatus:
		record = self._store.get(user_id)
		return record.status if record is not None else PresenceStatus.OFFLINE

	def is_available(self, user_id: str) -> bool:
		record = self._store.get(user_id)
		if record is None:
			return False
		return record.is_available and record.status.value in available_statuses()

	async def get_presence_for_users(self, user_ids: Iterable[str]) -> Dict[str, PresenceStatus]:
		"""Fetch and merge presence for specific users outside the feed."""
		wanted = sorted({str(user_id) for user_id in user_ids if user_id})
		if not wanted:
			return {}
		scope = self.scope or self.default_scope()
		rows = await self._query.fetch(scope, order_by=None, filters={"user_id": wanted})
		for record in self._parse_rows(rows):
			self._store.upsert(self._prepare(record))
		return {user_id: self.get_status(user_id) for user_id in wanted}

	async def _transition(self, status: PresenceStatus) -> None:
		previous = self._my_status
		self._my_status = status
		now = datetime.now(timezone.utc)
		existing = self._store.get(str(self.user_id))
		self._store.upsert(
			PresenceRecord(
				user_id=str(self.user_id),
				status=status,
				last_seen=now,
				is_available=existing.is_available if existing is not None else False,
			)
		)
		obs_metrics.presence_transition(status.value)
		logger.info("presence.transition", extra={"from_status": previous.value, "to_status": status.value})
		try:
			await self._writer.upsert(
				TABLE,
				{"user_id": str(self.user_id), "status": status.value, "last_seen": now},
				conflict="user_id",
			)
		except (TransportError, ValidationError):
			obs_metrics.write_rpc(self.name, "set_status", "error")
			logger.warning("presence.rpc.failed", extra={"to_status": status.value}, exc_info=True)
			return
		obs_metrics.write_rpc(self.name, "set_status", "success")

	def _fetch_options(self) -> Dict[str, Any]:
		return {"order_by": None}

	def _prepare(self, record: PresenceRecord) -> PresenceRecord:
		if record.user_id == str(self.user_id) and record.status is not self._my_status:
			return replace(record, status=self._my_status)
		return record


__all__ = ["PresenceSync", "TABLE"]
