"""Geohash bucket keys and great-circle distance helpers.

Bucket keys are plain geohash strings produced by ``pygeohash``. Neighbours
are derived from the exact cell bounds rather than from a lookup table so that
all eight adjacent cells are returned for every precision, including cells on
the antimeridian. At the poles the northern/southern neighbours collapse onto
the cell itself, so fewer than nine distinct keys may come back there.
"""

from __future__ import annotations

import math
from typing import List

import pygeohash as pgh

from placetalk.domain.errors import InvalidCoordinate

EARTH_RADIUS_M = 6_371_000
MIN_PRECISION = 1
MAX_PRECISION = 12

# Approximate cell size per precision, (width, height) in meters.
# Precision 7 is ~153m x 153m, matched to a 50m discovery radius.
PRECISION_CELL_SIZE_M = {
	1: (5_000_000, 5_000_000),
	2: (1_250_000, 625_000),
	3: (156_000, 156_000),
	4: (39_100, 19_500),
	5: (4_890, 4_890),
	6: (1_220, 610),
	7: (153, 153),
	8: (38.2, 19.1),
	9: (4.77, 4.77),
	10: (1.19, 0.596),
	11: (0.149, 0.149),
	12: (0.0372, 0.0186),
}


def validate_coordinate(lat: float, lon: float) -> None:
	try:
		lat_f = float(lat)
		lon_f = float(lon)
	except (TypeError, ValueError):
		raise InvalidCoordinate(lat, lon) from None
	if math.isnan(lat_f) or math.isnan(lon_f):
		raise InvalidCoordinate(lat, lon)
	if lat_f < -90.0 or lat_f > 90.0:
		raise InvalidCoordinate(lat, lon, "latitude must be between -90 and 90")
	if lon_f < -180.0 or lon_f > 180.0:
		raise InvalidCoordinate(lat, lon, "longitude must be between -180 and 180")


def _check_precision(precision: int) -> None:
	if precision < MIN_PRECISION or precision > MAX_PRECISION:
		raise ValueError(f"precision must be between {MIN_PRECISION} and {MAX_PRECISION}")


def encode(lat: float, lon: float, precision: int = 7) -> str:
	"""Return the geohash bucket key for a coordinate."""
	validate_coordinate(lat, lon)
	_check_precision(precision)
	return pgh.encode(float(lat), float(lon), precision=precision)


def _wrap_lon(lon: float) -> float:
	if lon > 180.0:
		return lon - 360.0
	if lon < -180.0:
		return lon + 360.0
	return lon


def _clamp_lat(lat: float) -> float:
	return max(-90.0, min(90.0, lat))


def neighbors(bucket_key: str) -> List[str]:
	"""Return the center key followed by its eight neighbours (N, NE, E, SE, S, SW, W, NW)."""
	if not bucket_key:
		raise ValueError("empty geohash")
	precision = len(bucket_key)
	_check_precision(precision)
	lat, lon, lat_err, lon_err = pgh.decode_exactly(bucket_key)
	dlat = 2 * lat_err
	dlon = 2 * lon_err
	offsets = (
		(1, 0),
		(1, 1),
		(0, 1),
		(-1, 1),
		(-1, 0),
		(-1, -1),
		(0, -1),
		(1, -1),
	)
	keys = [bucket_key]
	for row, col in offsets:
		n_lat = _clamp_lat(lat + row * dlat)
		n_lon = _wrap_lon(lon + col * dlon)
		keys.append(pgh.encode(n_lat, n_lon, precision=precision))
	return keys


def covering_buckets(lat: float, lon: float, precision: int = 7) -> List[str]:
	"""Return the distinct bucket keys (center first) that cover a coordinate's surroundings."""
	seen: list[str] = []
	for key in neighbors(encode(lat, lon, precision)):
		if key not in seen:
			seen.append(key)
	return seen


def cell_bounds(bucket_key: str) -> tuple[float, float, float, float]:
	"""Return (min_lat, max_lat, min_lon, max_lon) of a bucket's cell."""
	lat, lon, lat_err, lon_err = pgh.decode_exactly(bucket_key)
	return lat - lat_err, lat + lat_err, lon - lon_err, lon + lon_err


def cell_center(bucket_key: str) -> tuple[float, float]:
	lat, lon, _, _ = pgh.decode_exactly(bucket_key)
	return lat, lon


def distance_to_cell(lat: float, lon: float, bucket_key: str) -> float:
	"""Meters from a point to the nearest point of a bucket's cell (0 inside it)."""
	min_lat, max_lat, min_lon, max_lon = cell_bounds(bucket_key)
	# Compare longitudes on the same side of the antimeridian as the point.
	center_lon = (min_lon + max_lon) / 2
	shift = 0.0
	if center_lon - lon > 180.0:
		shift = -360.0
	elif lon - center_lon > 180.0:
		shift = 360.0
	near_lat = max(min_lat, min(max_lat, lat))
	near_lon = max(min_lon + shift, min(max_lon + shift, lon))
	return haversine(lat, lon, near_lat, near_lon)


def reachable_buckets(lat: float, lon: float, radius_m: float, precision: int = 7) -> List[str]:
	"""Buckets of the 3x3 block whose cell comes closer than ``radius_m`` to the point."""
	return [key for key in covering_buckets(lat, lon, precision) if distance_to_cell(lat, lon, key) < radius_m]


def block_covers(lat: float, lon: float, radius_m: float, precision: int = 7) -> bool:
	"""True when a circle of ``radius_m`` around the point lies inside its 3x3 bucket block."""
	min_lat, max_lat, min_lon, max_lon = cell_bounds(encode(lat, lon, precision))
	cell_lat = max_lat - min_lat
	cell_lon = max_lon - min_lon
	meters_per_deg_lat = math.radians(1) * EARTH_RADIUS_M
	meters_per_deg_lon = meters_per_deg_lat * math.cos(math.radians(lat))
	margins = (
		(max_lat + cell_lat - lat) * meters_per_deg_lat,
		(lat - (min_lat - cell_lat)) * meters_per_deg_lat,
		(max_lon + cell_lon - lon) * meters_per_deg_lon,
		(lon - (min_lon - cell_lon)) * meters_per_deg_lon,
	)
	return min(margins) >= radius_m


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
	"""Return the great-circle distance between two points in meters."""

	phi1, phi2 = math.radians(lat1), math.radians(lat2)
	dphi = math.radians(lat2 - lat1)
	dlambda = math.radians(lon2 - lon1)
	a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
	return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bounding_box(lat: float, lon: float, radius_m: float) -> tuple[float, float, float, float]:
	"""Return (min_lat, max_lat, min_lon, max_lon) enclosing a circle; used as an index prefilter."""
	dlat = math.degrees(radius_m / EARTH_RADIUS_M)
	cos_lat = math.cos(math.radians(lat))
	if cos_lat < 1e-9:
		return _clamp_lat(lat - dlat), _clamp_lat(lat + dlat), -180.0, 180.0
	dlon = math.degrees(radius_m / (EARTH_RADIUS_M * cos_lat))
	min_lon = lon - dlon
	max_lon = lon + dlon
	if min_lon < -180.0 or max_lon > 180.0:
		min_lon, max_lon = -180.0, 180.0
	return _clamp_lat(lat - dlat), _clamp_lat(lat + dlat), min_lon, max_lon
