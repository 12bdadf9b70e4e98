"""Pin lifecycle events consumed by the diary and community collaborators.

Events are delivered fire-and-forget: each subscriber and the Redis stream
append run as background tasks, so a slow or failing consumer never delays
the operation that produced the event.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Type, Union

from placetalk.domain.pins.models import RemovalReason
from placetalk.infra import tasks
from placetalk.infra.redis import RedisProxy
from placetalk.obs import metrics as obs_metrics


@dataclass(slots=True, frozen=True)
class PinRemoved:
	pin_id: str
	owner_id: str
	reason: RemovalReason
	at: datetime

	stream = "x:pins.removed"
	name = "pin_removed"

	def fields(self) -> dict[str, str]:
		return {
			"pin_id": self.pin_id,
			"owner_id": self.owner_id,
			"reason": self.reason.value,
			"at": self.at.isoformat(),
		}


@dataclass(slots=True, frozen=True)
class PinFirstDiscovered:
	user_id: str
	pin_id: str
	distance_m: int
	at: datetime

	stream = "x:discovery.first"
	name = "pin_first_discovered"

	def fields(self) -> dict[str, str]:
		return {
			"user_id": self.user_id,
			"pin_id": self.pin_id,
			"distance_m": str(self.distance_m),
			"at": self.at.isoformat(),
		}


PinEvent = Union[PinRemoved, PinFirstDiscovered]
Handler = Callable[[PinEvent], Awaitable[None]]


class PinEventBus:
	"""In-process subscribers plus an optional Redis stream sink."""

	def __init__(self, redis: RedisProxy | None = None) -> None:
		self._redis = redis
		self._handlers: Dict[Type, List[Handler]] = {}

	def subscribe(self, event_type: Type, handler: Handler) -> None:
		self._handlers.setdefault(event_type, []).append(handler)

	def unsubscribe(self, event_type: Type, handler: Handler) -> None:
		handlers = self._handlers.get(event_type, [])
		if handler in handlers:
			handlers.remove(handler)

	def publish(self, event: PinEvent) -> None:
		obs_metrics.inc_event(event.name)
		for handler in list(self._handlers.get(type(event), ())):
			tasks.spawn(handler(event), name=f"{event.name}:{getattr(handler, '__name__', 'handler')}")
		if self._redis is not None:
			tasks.spawn(self._append(event), name=f"{event.name}:stream")

	async def _append(self, event: PinEvent) -> None:
		if self._redis is None:
			return
		await self._redis.xadd(event.stream, event.fields())
