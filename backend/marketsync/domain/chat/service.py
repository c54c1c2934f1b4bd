"""Booking chat thread synchronization."""

from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import ValidationError as SchemaError

from marketsync.domain.sync import (
	ChangeEvent,
	ChangeKind,
	ControllerStateError,
	FeedScope,
	FeedTransport,
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

from .models import ChatMessage, MessageType
from .schemas import NewMessage, parse_message

logger = logging.getLogger(__name__)

TABLE = "messages"


def _read_task_name(sender_id: Optional[str]) -> str:
	return f"read:{sender_id or '*'}"


class MessageSync(SyncController[ChatMessage]):
	"""Keeps one booking thread in sync and sends messages into it.

	``send`` waits for the persist RPC and merges the canonical row it
	returns, keyed by the server id. When the feed later echoes the same
	row, the merge is an update of an existing member, never a second copy.
	"""

	name = "messages"

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
			store=RecordStore(lambda message: message.id),
			parser=parse_message,
			user_id=user_id,
			context=context,
		)
		self._writer = gateway
		self.is_sending = False

	@staticmethod
	def thread_scope(booking_id: str) -> FeedScope:
		return FeedScope(TABLE, "booking_id", booking_id)

	@property
	def booking_id(self) -> Optional[str]:
		return self.scope.value if self.scope is not None else None

	async def activate(self, booking_id: str) -> None:
		await super().activate(self.thread_scope(booking_id))

	def snapshot(self) -> Tuple[ChatMessage, ...]:
		"""Thread in ``created_at`` order; ties keep arrival order."""
		return tuple(sorted(self._store.snapshot(), key=lambda message: message.created_at))

	async def send(
		self,
		content: str,
		receiver_id: str,
		message_type: MessageType | str = MessageType.TEXT,
	) -> ChatMessage:
		text = (content or "").strip()
		if not text:
			raise ValidationError("empty_content")
		if self.booking_id is None or not (self.is_active or self.is_loading):
			raise ValidationError("missing_booking")
		if not receiver_id:
			raise ValidationError("missing_receiver")
		try:
			kind = MessageType(message_type)
		except ValueError as exc:
			raise ValidationError("invalid_message_type") from exc

		values = NewMessage(
			booking_id=self.booking_id,
			sender_id=str(self.user_id),
			receiver_id=receiver_id,
			content=text,
			message_type=kind,
		).model_dump(mode="json")
		self.is_sending = True
		try:
			row = await self._writer.insert(TABLE, values)
		except (TransportError, ValidationError):
			obs_metrics.write_rpc(self.name, "send", "error")
			logger.warning("messages.send.failed", extra={"booking_id": values["booking_id"]}, exc_info=True)
			raise
		finally:
			self.is_sending = False
		try:
			message = parse_message(row)
		except SchemaError as exc:
			obs_metrics.write_rpc(self.name, "send", "error")
			raise TransportError("invalid_insert_response") from exc
		obs_metrics.write_rpc(self.name, "send", "success")
		if message.booking_id == self.booking_id and (self.is_active or self.is_loading):
			self._store.upsert(message)
		return message

	async def mark_thread_read(self, sender_id: Optional[str] = None) -> int:
		"""Mark unread messages addressed to the local user as read.

		Limited to one sender when ``sender_id`` is given. Only the messages
		unread when the call starts are sent and flipped, and the local flip
		waits for the RPC to succeed.
		"""
		scope = self._require_scope()
		pending = self._unread_ids(sender_id)
		if not pending:
			return 0
		filters: Dict[str, Any] = {
			"booking_id": scope.value,
			"receiver_id": self.user_id,
			"is_read": False,
			"id": sorted(pending),
		}
		if sender_id:
			filters["sender_id"] = sender_id
		try:
			updated = await self._writer.update(TABLE, filters, {"is_read": True})
		except (TransportError, ValidationError):
			obs_metrics.write_rpc(self.name, "mark_read", "error")
			raise
		obs_metrics.write_rpc(self.name, "mark_read", "success")
		self._store.update_where(lambda message: message.id in pending, {"is_read": True})
		return updated

	def _unread_ids(self, sender_id: Optional[str]) -> FrozenSet[str]:
		user_id = str(self.user_id)
		return frozenset(
			message.id
			for message in self._store.snapshot()
			if message.is_unread_for(user_id) and (sender_id is None or message.sender_id == sender_id)
		)

	async def _send_read_receipt(self, sender_id: Optional[str]) -> None:
		# Messages merged while a batch is in flight cannot reschedule this
		# task name, so they are picked up by the next pass of the loop.
		while True:
			try:
				await self.mark_thread_read(sender_id)
			except (TransportError, ValidationError, ControllerStateError):
				obs_metrics.read_receipt("error")
				logger.warning("messages.read_receipt.failed", extra={"sender_id": sender_id})
				return
			obs_metrics.read_receipt("success")
			if not self.context.focused or not self._unread_ids(sender_id):
				return

	def _schedule_read_receipt(self, sender_id: Optional[str], delay: float) -> None:
		self._scheduler.schedule(
			_read_task_name(sender_id),
			delay,
			lambda: self._send_read_receipt(sender_id),
		)

	def _on_merged(self, event: ChangeEvent[ChatMessage], result: UpsertResult) -> None:
		if event.kind is not ChangeKind.INSERT:
			return
		message = event.record
		if message.is_unread_for(str(self.user_id)) and self.context.focused:
			self._schedule_read_receipt(message.sender_id, settings.read_receipt_delay_seconds)

	def _after_fetch(self, records: List[ChatMessage]) -> None:
		user_id = str(self.user_id)
		if any(message.is_unread_for(user_id) for message in records):
			self._schedule_read_receipt(None, 0)


__all__ = ["MessageSync", "TABLE"]
