"""Exception taxonomy shared by the pin lifecycle and discovery modules."""

from __future__ import annotations


class PinError(Exception):
	"""Base class for errors raised by the proximity core."""

	code = "pin_error"


class InvalidCoordinate(PinError, ValueError):
	"""Latitude/longitude outside of the WGS84 range."""

	code = "invalid_coordinate"

	def __init__(self, lat: object, lon: object, message: str | None = None) -> None:
		self.lat = lat
		self.lon = lon
		super().__init__(message or f"coordinate out of range: lat={lat} lon={lon}")


class StoreUnavailable(PinError):
	"""The durable pin store could not be reached; callers may retry."""

	code = "store_unavailable"


class NotFound(PinError, LookupError):
	"""The pin does not exist, is deleted, or has expired."""

	code = "not_found"

	def __init__(self, pin_id: str) -> None:
		self.pin_id = pin_id
		super().__init__(f"pin {pin_id} not found")


class AlreadyRecorded(PinError):
	"""The interaction is already in the requested state."""

	code = "already_recorded"


class CacheUnavailable(PinError):
	"""Raised inside the cache layer only; never propagated to callers."""

	code = "cache_unavailable"


__all__ = [
	"AlreadyRecorded",
	"CacheUnavailable",
	"InvalidCoordinate",
	"NotFound",
	"PinError",
	"StoreUnavailable",
]
