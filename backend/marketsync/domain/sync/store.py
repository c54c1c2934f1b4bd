"""In-memory ordered record store keyed by a caller-supplied dedupe key."""

from __future__ import annotations

import enum
from dataclasses import replace
from typing import Any, Callable, Dict, Generic, Hashable, List, Mapping, Optional, Tuple, TypeVar

T = TypeVar("T")

KeyFn = Callable[[T], Hashable]
MergeFn = Callable[[T, T], T]
Patch = Mapping[str, Any] | Callable[[T], T]


class UpsertResult(str, enum.Enum):
	INSERTED = "inserted"
	UPDATED = "updated"


def _replace_merge(existing: T, incoming: T) -> T:
	return incoming


class RecordStore(Generic[T]):
	"""Append-ordered collection where every dedupe key maps to one member.

	Members are expected to be immutable (frozen dataclasses); mutation
	happens by swapping the member at its original position. A second
	insert for a key already present is always treated as an update.
	"""

	def __init__(self, key: KeyFn, *, merge: Optional[MergeFn] = None) -> None:
		self._key = key
		self._merge: MergeFn = merge or _replace_merge
		self._records: List[T] = []
		self._index: Dict[Hashable, int] = {}

	def key_of(self, record: T) -> Hashable:
		return self._key(record)

	def upsert(self, record: T) -> UpsertResult:
		key = self._key(record)
		position = self._index.get(key)
		if position is None:
			self._index[key] = len(self._records)
			self._records.append(record)
			return UpsertResult.INSERTED
		self._records[position] = self._merge(self._records[position], record)
		return UpsertResult.UPDATED

	def update_where(self, predicate: Callable[[T], bool], patch: Patch) -> List[T]:
		"""Apply ``patch`` to every member matching ``predicate``.

		Runs without yielding to the event loop, so no feed event can be
		merged halfway through. Returns the members as they were before the
		patch, which is what a rollback needs.
		"""
		previous: List[T] = []
		for position, record in enumerate(self._records):
			if not predicate(record):
				continue
			previous.append(record)
			if callable(patch):
				updated = patch(record)
			else:
				updated = replace(record, **dict(patch))
			self._records[position] = updated
		return previous

	def get(self, key: Hashable) -> Optional[T]:
		position = self._index.get(key)
		if position is None:
			return None
		return self._records[position]

	def find(self, predicate: Callable[[T], bool]) -> Optional[T]:
		for record in self._records:
			if predicate(record):
				return record
		return None

	def snapshot(self) -> Tuple[T, ...]:
		return tuple(self._records)

	def clear(self) -> None:
		self._records.clear()
		self._index.clear()

	def __len__(self) -> int:
		return len(self._records)

	def __contains__(self, key: object) -> bool:
		return key in self._index


__all__ = ["RecordStore", "UpsertResult"]
