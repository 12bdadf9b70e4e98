import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from placetalk.domain.pins import container
from placetalk.infra import postgres, tasks
from placetalk.infra.redis import redis_client, set_redis_client
from placetalk.main import app
from placetalk.settings import settings


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Pin the settings every test relies on, whatever the local .env says."""
	overrides = {
		"environment": "dev",
		"store_backend": "memory",
		"cache_enabled": True,
		"discovery_radius_m": 50.0,
		"geohash_precision": 7,
		"fallback_query_limit": 200,
		"like_threshold": 3,
		"report_threshold": 3,
		"extension_hours": 24.0,
		"visibility_timezone": "UTC",
		"notify_cooldown_days": 7,
		"pin_ttl_hours_normal": 72.0,
		"pin_ttl_hours_private": 72.0,
		"pin_ttl_hours_community": None,
		"lifecycle_worker_enabled": False,
		"obs_metrics_public": True,
	}
	original = {key: getattr(settings, key) for key in overrides}
	for key, value in overrides.items():
		setattr(settings, key, value)
	try:
		yield
	finally:
		for key, value in original.items():
			setattr(settings, key, value)


@pytest_asyncio.fixture(autouse=True)
async def fake_redis(force_test_settings):
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	container.configure_memory()
	try:
		yield client
	finally:
		await tasks.drain(timeout=1.0)
		await tasks.shutdown()
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
