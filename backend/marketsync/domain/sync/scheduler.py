"""Named, cancellable delayed tasks owned by a controller."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable, Dict

logger = logging.getLogger(__name__)

CoroFactory = Callable[[], Awaitable[None]]


class TaskScheduler:
	"""Runs coroutines after a delay; one pending task per name."""

	def __init__(self, owner: str) -> None:
		self.owner = owner
		self._tasks: Dict[str, asyncio.Task] = {}

	def pending(self, name: str) -> bool:
		task = self._tasks.get(name)
		return task is not None and not task.done()

	def schedule(self, name: str, delay: float, factory: CoroFactory) -> bool:
		"""Schedule ``factory()`` to run after ``delay`` seconds.

		Returns ``False`` when a task with the same name is already pending.
		"""
		if self.pending(name):
			return False
		task = asyncio.create_task(self._run(name, delay, factory), name=f"{self.owner}:{name}")
		self._tasks[name] = task
		return True

	async def _run(self, name: str, delay: float, factory: CoroFactory) -> None:
		try:
			if delay > 0:
				await asyncio.sleep(delay)
			await factory()
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("scheduler.task_failed", extra={"owner": self.owner, "task": name})
		finally:
			current = self._tasks.get(name)
			if current is asyncio.current_task():
				self._tasks.pop(name, None)

	def cancel(self, name: str) -> None:
		task = self._tasks.pop(name, None)
		if task and not task.done():
			task.cancel()

	async def cancel_all(self) -> None:
		tasks = list(self._tasks.values())
		self._tasks.clear()
		for task in tasks:
			if not task.done():
				task.cancel()
		for task in tasks:
			with suppress(asyncio.CancelledError):
				await task

	async def drain(self) -> None:
		"""Wait for every pending task to finish (used on shutdown and in tests)."""
		while self._tasks:
			tasks = list(self._tasks.values())
			await asyncio.gather(*tasks, return_exceptions=True)
			for name, task in list(self._tasks.items()):
				if task.done():
					self._tasks.pop(name, None)

	def __len__(self) -> int:
		return sum(1 for task in self._tasks.values() if not task.done())
