"""Per-user composition of the notification, chat and presence controllers."""

from __future__ import annotations

import logging
from typing import Optional

from marketsync import obs
from marketsync.domain.chat import MessageSync
from marketsync.domain.notifications import Alerter, NotificationSync
from marketsync.domain.presence import PresenceSync
from marketsync.domain.sync import FeedTransport, PushDispatcher, RecordGateway, TransportError, ViewContext
from marketsync.infra import postgres
from marketsync.infra.feed import RedisFeedPublisher, RedisFeedTransport
from marketsync.infra.tables import TableGateway

logger = logging.getLogger(__name__)


class SyncSession:
	"""Owns one controller of each kind for the signed-in user.

	The UI layer reports visibility and focus here; controllers read the
	shared :class:`ViewContext`. Only one booking thread is open at a time.
	"""

	def __init__(
		self,
		user_id: str,
		*,
		gateway: RecordGateway,
		transport: FeedTransport,
		alerter: Optional[Alerter] = None,
		push: Optional[PushDispatcher] = None,
	) -> None:
		self.user_id = user_id
		self.transport = transport
		self.context = ViewContext()
		self.notifications = NotificationSync(
			gateway=gateway,
			transport=transport,
			user_id=user_id,
			context=self.context,
			alerter=alerter,
			push=push,
		)
		self.presence = PresenceSync(gateway=gateway, transport=transport, user_id=user_id, context=self.context)
		self.messages = MessageSync(gateway=gateway, transport=transport, user_id=user_id, context=self.context)

	async def start(self) -> None:
		await self.notifications.activate()
		try:
			await self.presence.activate()
		except TransportError:
			await self.notifications.deactivate()
			raise

	async def open_thread(self, booking_id: str) -> MessageSync:
		await self.messages.activate(booking_id)
		return self.messages

	async def close_thread(self) -> None:
		await self.messages.deactivate()

	async def set_visibility(self, hidden: bool) -> None:
		if hidden:
			self.context.hide()
		else:
			self.context.show()
		await self.presence.on_visibility_change(hidden)

	def set_focus(self, focused: bool) -> None:
		self.context.focused = focused

	async def close(self) -> None:
		await self.presence.on_unload()
		await self.messages.deactivate()
		await self.notifications.deactivate()
		logger.info("session.closed", extra={"session_user": self.user_id})


def build_session(user_id: str, *, alerter: Optional[Alerter] = None, push: Optional[PushDispatcher] = None) -> SyncSession:
	"""Wire a session to Postgres and the Redis stream feed."""
	obs.init()
	publisher = RedisFeedPublisher()
	return SyncSession(
		user_id,
		gateway=TableGateway(publisher=publisher),
		transport=RedisFeedTransport(),
		alerter=alerter,
		push=push,
	)


async def shutdown(session: SyncSession) -> None:
	"""Close the session, then release the feed transport and the Postgres pool."""
	await session.close()
	stop = getattr(session.transport, "shutdown", None)
	if stop is not None:
		await stop()
	await postgres.close_pool()


__all__ = ["SyncSession", "build_session", "shutdown"]
