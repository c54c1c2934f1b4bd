"""Notification feed synchronization with duplicate-row grouping."""

from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from marketsync.domain.sync import (
	ChangeEvent,
	ChangeKind,
	FeedScope,
	FeedTransport,
	PushDispatcher,
	RecordGateway,
	RecordStore,
	SyncController,
	TransportError,
	UpsertResult,
	ValidationError,
	ViewContext,
)
from marketsync.obs import metrics as obs_metrics
from marketsync.settings import settings

from .alerts import Alerter, LogAlerter, build_push_body
from .models import GroupKey, Notification, merge_rows
from .schemas import parse_notification

logger = logging.getLogger(__name__)

TABLE = "notifications"


class NotificationSync(SyncController[Notification]):
	"""Keeps the signed-in user's most recent notifications in sync.

	Unread state is always derived from the store, never counted
	separately, so duplicate rows from fan-out triggers cannot inflate it.
	"""

	name = "notifications"

	def __init__(
		self,
		*,
		gateway: RecordGateway,
		transport: FeedTransport,
		user_id: str,
		context: Optional[ViewContext] = None,
		alerter: Optional[Alerter] = None,
		push: Optional[PushDispatcher] = None,
	) -> None:
		super().__init__(
			query=gateway,
			transport=transport,
			store=RecordStore(lambda item: item.group_key, merge=merge_rows),
			parser=parse_notification,
			user_id=user_id,
			context=context,
		)
		self._writer = gateway
		self._alerter = alerter or LogAlerter()
		self._push = push

	def default_scope(self) -> FeedScope:
		return FeedScope(TABLE, "user_id", self.user_id)

	async def activate(self, scope: Optional[FeedScope] = None) -> None:
		await super().activate(scope or self.default_scope())
		obs_metrics.unread_notifications(self.unread_count)

	def snapshot(self) -> Tuple[Notification, ...]:
		"""Newest first, the order the notification center lists them in."""
		return tuple(sorted(self._store.snapshot(), key=lambda item: item.created_at, reverse=True))

	@property
	def unread_count(self) -> int:
		return sum(1 for item in self._store.snapshot() if not item.is_read)

	def get(self, notification_id: str) -> Optional[Notification]:
		return self._store.find(lambda item: item.has_row(notification_id))

	async def mark_read(self, notification_id: str) -> bool:
		"""Mark exactly one physical row read."""
		target = self.get(notification_id)
		if target is None:
			logger.debug("notifications.mark_read.unknown", extra={"notification_id": notification_id})
			return False
		if notification_id not in target.unread_ids:
			return True
		flipped = {target.group_key: frozenset({notification_id})}
		await self._flip_and_persist("mark_read", flipped, {"id": notification_id})
		return True

	async def mark_group_read(self, notification_id: str) -> bool:
		"""Mark every row sharing the target's group key read."""
		target = self.get(notification_id)
		if target is None:
			logger.debug("notifications.mark_group_read.unknown", extra={"notification_id": notification_id})
			return False
		if target.is_read:
			return True
		unread = target.unread_ids
		flipped = {target.group_key: unread}
		await self._flip_and_persist("mark_group_read", flipped, {"id": sorted(unread)})
		return True

	async def mark_all_read(self) -> int:
		"""Mark every unread notification read in one batched RPC.

		Returns the number of groups flipped.
		"""
		self._require_scope()
		flipped = {item.group_key: item.unread_ids for item in self._store.snapshot() if not item.is_read}
		if not flipped:
			return 0
		await self._flip_and_persist("mark_all_read", flipped, {"user_id": self.user_id, "is_read": False})
		return len(flipped)

	async def _flip_and_persist(
		self,
		op: str,
		flipped: Dict[GroupKey, FrozenSet[str]],
		filters: Mapping[str, Any],
	) -> None:
		self._apply(flipped, read=True)
		try:
			await self._writer.update(TABLE, filters, {"is_read": True})
		except (TransportError, ValidationError):
			self._apply(flipped, read=False)
			obs_metrics.write_rpc(self.name, op, "error")
			obs_metrics.rollback(self.name, op)
			obs_metrics.unread_notifications(self.unread_count)
			logger.warning(f"notifications.{op}.rollback", extra={"groups": len(flipped)}, exc_info=True)
			raise
		obs_metrics.write_rpc(self.name, op, "success")

	def _apply(self, flipped: Dict[GroupKey, FrozenSet[str]], *, read: bool) -> None:
		def patch(item: Notification) -> Notification:
			row_ids = flipped[item.group_key]
			return item.with_read(row_ids) if read else item.with_unread(row_ids)

		self._store.update_where(lambda item: item.group_key in flipped, patch)
		obs_metrics.unread_notifications(self.unread_count)

	def _fetch_options(self) -> Dict[str, Any]:
		return {"order_by": "created_at", "descending": True, "limit": settings.notification_fetch_limit}

	def _on_merged(self, event: ChangeEvent[Notification], result: UpsertResult) -> None:
		obs_metrics.unread_notifications(self.unread_count)
		if event.kind is not ChangeKind.INSERT or result is not UpsertResult.INSERTED:
			return
		notification = event.record
		if self.context.visible:
			self._alerter.alert(notification)
		if self._push is not None and notification.category == settings.push_message_category:
			self._scheduler.schedule(f"push:{notification.id}", 0, lambda: self._send_push(notification))

	async def _send_push(self, notification: Notification) -> None:
		assert self._push is not None
		body = build_push_body(str(self.user_id), notification)
		try:
			await self._push.invoke(settings.push_function_name, body)
		except TransportError:
			obs_metrics.write_rpc(self.name, "push", "error")
			logger.warning("notifications.push.failed", extra={"notification_id": notification.id})
			return
		obs_metrics.write_rpc(self.name, "push", "success")


__all__ = ["NotificationSync", "TABLE"]
