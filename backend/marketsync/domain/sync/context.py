"""Viewing context flags shared between the UI layer and controllers."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class ViewContext:
	"""Whether the hosting tab is visible and whether it has input focus.

	Owned by the UI layer; controllers only read it.
	"""

	visible: bool = True
	focused: bool = True

	def hide(self) -> None:
		self.visible = False
		self.focused = False

	def show(self, *, focused: bool = True) -> None:
		self.visible = True
		self.focused = focused
