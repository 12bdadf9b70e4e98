import pytest

from placetalk.domain.errors import StoreUnavailable
from placetalk.domain.pins import container
from placetalk.domain.pins.repository import InMemoryPinRepository
from placetalk.settings import settings

TOKYO = {"lat": 35.6762, "lon": 139.6503}
WALKER = {"X-User-Id": "walker-1"}


class _UnavailableRepository(InMemoryPinRepository):
	async def nearby_recent(self, *args, **kwargs):
		raise StoreUnavailable("pins.nearby_recent: ConnectionDoesNotExistError")


@pytest.mark.asyncio
async def test_heartbeat_discovers_pin_once(api_client):
	created = await api_client.post("/pins", json={**TOKYO, "title": "Shrine"}, headers={"X-User-Id": "owner-1"})
	pin_id = created.json()["id"]

	response = await api_client.post("/discovery/heartbeat", json=TOKYO, headers=WALKER)
	assert response.status_code == 200
	body = response.json()
	assert body["count"] == 1
	found = body["pins"][0]
	assert found["id"] == pin_id
	assert found["distance_m"] == 0
	assert found["first_discovery"] is True
	assert found["should_notify"] is True
	assert found["deprioritized"] is False

	again = await api_client.post("/discovery/heartbeat", json=TOKYO, headers=WALKER)
	assert again.json()["pins"][0]["first_discovery"] is False


@pytest.mark.asyncio
async def test_heartbeat_far_away_is_empty(api_client):
	await api_client.post("/pins", json=TOKYO, headers={"X-User-Id": "owner-1"})
	response = await api_client.post(
		"/discovery/heartbeat", json={"lat": TOKYO["lat"] + 200 / 111_195, "lon": TOKYO["lon"]}, headers=WALKER
	)
	assert response.status_code == 200
	assert response.json()["count"] == 0


@pytest.mark.asyncio
async def test_heartbeat_invalid_coordinate(api_client):
	response = await api_client.post("/discovery/heartbeat", json={"lat": 0.0, "lon": -190.0}, headers=WALKER)
	assert response.status_code == 400
	assert response.json()["detail"] == "invalid_coordinate"


@pytest.mark.asyncio
async def test_heartbeat_store_outage_is_retryable(api_client):
	settings.cache_enabled = False
	container.configure(repository=_UnavailableRepository())
	response = await api_client.post("/discovery/heartbeat", json=TOKYO, headers=WALKER)
	assert response.status_code == 503
	assert response.headers["Retry-After"] == "2"
	assert response.json()["detail"] == "store_unavailable"


@pytest.mark.asyncio
async def test_request_id_is_echoed(api_client):
	response = await api_client.post(
		"/discovery/heartbeat", json=TOKYO, headers={**WALKER, "X-Request-Id": "req-123"}
	)
	assert response.headers["X-Request-Id"] == "req-123"
