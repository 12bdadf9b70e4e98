"""Fire-and-forget task dispatch for side effects that must not block callers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from placetalk.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_pending: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
	_pending.discard(task)
	if task.cancelled():
		return
	exc = task.exception()
	if exc is not None:
		obs_metrics.inc_background_task_failure(task.get_name().split(":", 1)[0])
		logger.error(
			"background task failed: %s",
			task.get_name(),
			exc_info=(type(exc), exc, exc.__traceback__),
		)


def spawn(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
	"""Schedule ``coro`` without awaiting it; failures are logged and counted."""
	task = asyncio.create_task(coro, name=name)
	_pending.add(task)
	task.add_done_callback(_on_done)
	return task


def pending() -> int:
	return len(_pending)


async def drain(timeout: float | None = None) -> None:
	"""Wait for in-flight side effects (shutdown and tests)."""
	while _pending:
		batch = list(_pending)
		done, _ = await asyncio.wait(batch, timeout=timeout)
		if timeout is not None and len(done) < len(batch):
			break


async def shutdown() -> None:
	for task in list(_pending):
		task.cancel()
	if _pending:
		await asyncio.gather(*list(_pending), return_exceptions=True)
	_pending.clear()
