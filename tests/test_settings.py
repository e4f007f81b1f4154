from __future__ import annotations

import pytest
from pydantic import ValidationError

from uplink_relay.common.settings import TelemetryProxySettings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "UPLINK_RELAY_TTN_APP_ID",
        "UPLINK_RELAY_SECRET_STORE_REGION",
        "UPLINK_RELAY_UPSTREAM_VARIANT",
        "UPLINK_RELAY_UPSTREAM_AUTH_SCHEME",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_match_public_cloud():
    settings = TelemetryProxySettings(upstream_app_id="soil-sensors")

    assert settings.upstream_variant == "storage"
    assert settings.auth_scheme == "bearer"
    assert settings.upstream_cluster == "eu1"
    assert settings.secret_name == "ttn-app-key"
    assert settings.secret_ttl_seconds == 60.0
    assert settings.response_cache_ttl == 30.0
    assert settings.port == 3000
    assert settings.secret_store_configured is False


def test_app_id_is_required():
    with pytest.raises(ValidationError):
        TelemetryProxySettings()


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("UPLINK_RELAY_TTN_APP_ID", " soil-sensors ")
    monkeypatch.setenv("UPLINK_RELAY_UPSTREAM_VARIANT", "Query")
    monkeypatch.setenv("UPLINK_RELAY_SECRET_STORE_REGION", "  ")

    settings = TelemetryProxySettings()

    assert settings.upstream_app_id == "soil-sensors"
    assert settings.upstream_variant == "query"
    assert settings.auth_scheme == "key"
    assert settings.secret_store_region is None


def test_explicit_auth_scheme_wins_over_variant_default():
    settings = TelemetryProxySettings(upstream_app_id="a", upstream_variant="query", upstream_auth_scheme="BEARER")
    assert settings.auth_scheme == "bearer"


def test_disabled_cache_has_zero_ttl():
    settings = TelemetryProxySettings(upstream_app_id="a", response_cache_enabled=False)
    assert settings.response_cache_ttl == 0.0


@pytest.mark.parametrize("field", ["secret_ttl_seconds", "upstream_timeout_seconds"])
def test_non_positive_durations_rejected(field):
    with pytest.raises(ValidationError):
        TelemetryProxySettings(upstream_app_id="a", **{field: 0})


def test_unknown_variant_rejected():
    with pytest.raises(ValidationError):
        TelemetryProxySettings(upstream_app_id="a", upstream_variant="mqtt")
