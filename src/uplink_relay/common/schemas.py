"""Response models shared by the proxy and its operator CLI."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class ErrorEnvelope(BaseModel):
    """Body returned on every failed ``/api/data`` request."""

    error: str
    status: int
    details: Optional[Any] = None
    relayed: bool = Field(default=False, exclude=True)

    def to_payload(self) -> dict[str, Any]:
        """Relayed upstream failures echo their status; proxy-side ones do not."""
        if self.relayed:
            return self.model_dump()
        return self.model_dump(exclude={"status"})


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0


class CacheHealth(BaseModel):
    keys: int
    stats: CacheStats


class SecretHealth(BaseModel):
    configured: bool
    cached: bool
    age_seconds: Optional[float] = None
    refreshes: int = 0
    failures: int = 0


class HealthStatus(BaseModel):
    status: Literal["ok"] = "ok"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    upstream_variant: str
    cache: CacheHealth
    secret: SecretHealth
