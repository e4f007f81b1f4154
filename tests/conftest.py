from __future__ import annotations

import pytest

from uplink_relay.common.settings import TelemetryProxySettings
from tests.utils.fakes import FakeClock, FakeSecretStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def secret_store() -> FakeSecretStore:
    return FakeSecretStore()


@pytest.fixture
def settings() -> TelemetryProxySettings:
    return TelemetryProxySettings(
        upstream_app_id="soil-sensors",
        upstream_cluster="eu1",
        secret_store_region="eu-west-1",
        secret_name="ttn-app-key",
        secret_ttl_seconds=60,
        response_cache_ttl_seconds=30,
        response_cache_sweep_seconds=0,
    )
