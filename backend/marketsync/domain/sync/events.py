"""Change feed event model and payload narrowing."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable, Generic, Mapping, Optional, TypeVar

T = TypeVar("T")


class ChangeKind(str, enum.Enum):
	INSERT = "insert"
	UPDATE = "update"


@dataclass(frozen=True, slots=True)
class FeedScope:
	"""A table plus an optional equality filter.

	Used both as the bulk fetch filter and as the push channel scope, so the
	two can never disagree about what a controller is looking at.
	"""

	table: str
	column: Optional[str] = None
	value: Optional[str] = None

	@property
	def channel(self) -> str:
		if self.column is None:
			return f"{self.table}:*"
		return f"{self.table}:{self.column}={self.value}"

	def filters(self) -> dict[str, Any]:
		if self.column is None:
			return {}
		return {self.column: self.value}

	def matches(self, row: Mapping[str, Any]) -> bool:
		if self.column is None:
			return True
		return str(row.get(self.column)) == str(self.value)


@dataclass(frozen=True, slots=True)
class ChangeEvent(Generic[T]):
	kind: ChangeKind
	record: T


_KIND_KEYS = ("kind", "eventType", "event_type", "type")
_RECORD_KEYS = ("record", "new", "data")


def _extract_kind(raw: Mapping[str, Any]) -> ChangeKind:
	for key in _KIND_KEYS:
		value = raw.get(key)
		if isinstance(value, ChangeKind):
			return value
		if isinstance(value, str):
			try:
				return ChangeKind(value.strip().lower())
			except ValueError:
				continue
	raise ValueError("change event has no insert/update kind")


def _extract_record(raw: Mapping[str, Any]) -> Mapping[str, Any]:
	for key in _RECORD_KEYS:
		value = raw.get(key)
		if isinstance(value, Mapping):
			return value
	raise ValueError("change event has no record payload")


def parse_change_event(raw: Mapping[str, Any], parser: Callable[[Mapping[str, Any]], T]) -> ChangeEvent[T]:
	"""Narrow a duck-typed push payload into a typed :class:`ChangeEvent`.

	Raises ``ValueError`` (or the parser's own validation error) when the
	payload cannot be interpreted.
	"""
	if not isinstance(raw, Mapping):
		raise ValueError("change event must be a mapping")
	kind = _extract_kind(raw)
	record = parser(_extract_record(raw))
	return ChangeEvent(kind=kind, record=record)


def build_payload(kind: ChangeKind | str, row: Mapping[str, Any]) -> dict[str, Any]:
	kind_value = kind.value if isinstance(kind, ChangeKind) else ChangeKind(kind).value
	return {"kind": kind_value, "record": dict(row)}


__all__ = [
	"ChangeEvent",
	"ChangeKind",
	"FeedScope",
	"build_payload",
	"parse_change_event",
]
