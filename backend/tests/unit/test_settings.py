import pytest
from pydantic import ValidationError

from placetalk.settings import Settings


def test_defaults(monkeypatch):
    for name in ("DISCOVERY_RADIUS_METERS", "GEOHASH_PRECISION", "LIKE_THRESHOLD", "COMMUNITY_PIN_TTL_HOURS"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(_env_file=None)
    assert settings.discovery_radius_m == 50.0
    assert settings.geohash_precision == 7
    assert settings.like_threshold == 3
    assert settings.report_threshold == 3
    assert settings.extension_hours == 24.0
    assert settings.lifecycle_interval_seconds == 60
    assert settings.pin_ttl_hours_normal == 72.0
    assert settings.pin_ttl_hours_community is None


def test_env_aliases(monkeypatch):
    monkeypatch.setenv("DISLIKE_THRESHOLD", "5")
    monkeypatch.setenv("DATABASE_URL", "postgresql://db/placetalk")
    monkeypatch.delenv("POSTGRES_URL", raising=False)
    settings = Settings(_env_file=None)
    assert settings.report_threshold == 5
    assert settings.postgres_url == "postgresql://db/placetalk"


@pytest.mark.parametrize("raw", ["", "none", "0", "-1"])
def test_blank_or_non_positive_ttl_means_never(monkeypatch, raw):
    monkeypatch.setenv("DEFAULT_PIN_TTL_HOURS", raw)
    assert Settings(_env_file=None).pin_ttl_hours_normal is None


def test_geohash_precision_is_bounded(monkeypatch):
    monkeypatch.setenv("GEOHASH_PRECISION", "13")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_backend_helpers(monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("ENV", "dev")
    settings = Settings(_env_file=None)
    assert settings.uses_postgres() is False
    assert settings.is_dev() is True
