"""Access guard for operator-only endpoints."""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Optional

from fastapi import HTTPException, Request, status
from pydantic import SecretStr


def _is_loopback(host: Optional[str]) -> bool:
    if not host:
        return False
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return host == "localhost"


def require_metrics_access(request: Request, token: Optional[SecretStr]) -> None:
    """Allow a matching bearer token, or loopback clients when no token is configured."""
    if token is not None:
        expected = f"Bearer {token.get_secret_value()}"
        provided = request.headers.get("authorization") or ""
        if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client_host = request.client.host if request.client else None
    if not _is_loopback(client_host):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")
