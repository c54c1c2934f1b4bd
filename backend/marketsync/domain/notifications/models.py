"""Domain models for user notifications."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import FrozenSet, Optional, Tuple

GroupKey = Tuple[str, str, datetime]


@dataclass(frozen=True, slots=True)
class Notification:
	"""One logical notification, backed by one or more physical rows.

	Server-side fan-out triggers can write several rows for the same event;
	rows sharing ``(type, target_url, created_at)`` collapse into a single
	member. ``row_ids`` lists every physical row seen so far and
	``unread_ids`` the subset still unread. Visible fields come from the
	most recently merged row.
	"""

	id: str
	type: str
	message: str
	category: Optional[str]
	target_url: Optional[str]
	created_at: datetime
	row_ids: Tuple[str, ...]
	unread_ids: FrozenSet[str]

	@property
	def is_read(self) -> bool:
		return not self.unread_ids

	@property
	def group_key(self) -> GroupKey:
		return group_key(self.type, self.target_url, self.created_at)

	def has_row(self, row_id: str) -> bool:
		return row_id in self.row_ids

	def with_read(self, row_ids: FrozenSet[str]) -> "Notification":
		return replace(self, unread_ids=self.unread_ids - row_ids)

	def with_unread(self, row_ids: FrozenSet[str]) -> "Notification":
		restored = frozenset(row_id for row_id in row_ids if row_id in self.row_ids)
		return replace(self, unread_ids=self.unread_ids | restored)


def group_key(type_: str, target_url: Optional[str], created_at: datetime) -> GroupKey:
	return (type_, target_url or "", created_at)


def merge_rows(existing: Notification, incoming: Notification) -> Notification:
	"""Fold ``incoming`` into the group held by ``existing``."""
	row_ids = existing.row_ids + tuple(row_id for row_id in incoming.row_ids if row_id not in existing.row_ids)
	unread_ids = (existing.unread_ids - frozenset(incoming.row_ids)) | incoming.unread_ids
	return replace(
		incoming,
		id=existing.id,
		row_ids=row_ids,
		unread_ids=unread_ids,
	)
