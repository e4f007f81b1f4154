"""Application configuration models shared by services."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


UpstreamVariant = Literal["storage", "query"]
AuthScheme = Literal["bearer", "key"]

DEFAULT_AUTH_SCHEMES: dict[str, AuthScheme] = {
    "storage": "bearer",
    "query": "key",
}


class TelemetryProxySettings(BaseSettings):
    """Runtime settings for the telemetry proxy service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    secret_store_region: Optional[str] = env_field(None, "UPLINK_RELAY_SECRET_STORE_REGION")
    secret_store_endpoint: Optional[str] = env_field(None, "UPLINK_RELAY_SECRET_STORE_ENDPOINT")
    secret_name: str = env_field("ttn-app-key", "UPLINK_RELAY_SECRET_NAME")
    secret_ttl_seconds: float = env_field(60.0, "UPLINK_RELAY_SECRET_TTL")
    strict_secret_store: bool = env_field(False, "UPLINK_RELAY_STRICT_SECRET_STORE")

    upstream_variant: UpstreamVariant = env_field("storage", "UPLINK_RELAY_UPSTREAM_VARIANT")
    upstream_auth_scheme: Optional[AuthScheme] = env_field(None, "UPLINK_RELAY_UPSTREAM_AUTH_SCHEME")
    upstream_cluster: str = env_field("eu1", "UPLINK_RELAY_TTN_CLUSTER")
    upstream_domain: str = env_field("cloud.thethings.network", "UPLINK_RELAY_TTN_DOMAIN")
    upstream_app_id: str = env_field(..., "UPLINK_RELAY_TTN_APP_ID")
    upstream_timeout_seconds: float = env_field(30.0, "UPLINK_RELAY_UPSTREAM_TIMEOUT")
    default_last: str = env_field("1h", "UPLINK_RELAY_DEFAULT_LAST")
    default_field_mask: str = env_field("up.uplink_message", "UPLINK_RELAY_DEFAULT_FIELD_MASK")

    response_cache_enabled: bool = env_field(True, "UPLINK_RELAY_RESPONSE_CACHE_ENABLE")
    response_cache_ttl_seconds: float = env_field(30.0, "UPLINK_RELAY_RESPONSE_CACHE_TTL")
    response_cache_sweep_seconds: float = env_field(60.0, "UPLINK_RELAY_RESPONSE_CACHE_SWEEP")

    host: str = env_field("0.0.0.0", "UPLINK_RELAY_HOST")
    port: int = env_field(3000, "UPLINK_RELAY_PORT")
    metrics_token: Optional[SecretStr] = env_field(None, "UPLINK_RELAY_METRICS_TOKEN")
    log_level: str = env_field("INFO", "UPLINK_RELAY_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "UPLINK_RELAY_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "UPLINK_RELAY_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "UPLINK_RELAY_OTEL_SAMPLER_RATIO")

    @field_validator("secret_store_region", "secret_store_endpoint", "upstream_auth_scheme", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
        return value

    @field_validator("upstream_variant", "upstream_auth_scheme", mode="before")
    @classmethod
    def _lowercase_choice(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("upstream_cluster", "upstream_domain", "upstream_app_id", mode="before")
    @classmethod
    def _strip_host_parts(cls, value):
        if isinstance(value, str):
            return value.strip().strip(".").strip("/")
        return value

    @model_validator(mode="after")
    def _check_ttls(self):
        if self.secret_ttl_seconds <= 0:
            raise ValueError("secret TTL must be positive")
        if self.upstream_timeout_seconds <= 0:
            raise ValueError("upstream timeout must be positive")
        return self

    @property
    def secret_store_configured(self) -> bool:
        return self.secret_store_region is not None

    @property
    def auth_scheme(self) -> AuthScheme:
        return self.upstream_auth_scheme or DEFAULT_AUTH_SCHEMES[self.upstream_variant]

    @property
    def response_cache_ttl(self) -> float:
        if not self.response_cache_enabled:
            return 0.0
        return max(0.0, self.response_cache_ttl_seconds)
