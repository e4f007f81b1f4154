"""Failure kinds raised below the proxy boundary."""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for every failure the proxy knows how to report."""


class SecretUnavailable(RelayError):
    """The secret store is unreachable, misconfigured or has no such secret."""


class NetworkError(RelayError):
    """The upstream could not be reached (DNS, refused connection, timeout)."""


class UpstreamError(RelayError):
    """The upstream answered with a non-200 status."""

    def __init__(self, status_code: int, body: str, content_type: Optional[str] = None) -> None:
        super().__init__(f"upstream returned HTTP {status_code}")
        self.status_code = status_code
        self.body = body
        self.content_type = content_type


class MalformedLine(RelayError):
    """A single event-stream line was not valid JSON. Never leaves the parser."""

    def __init__(self, line_number: int, reason: str) -> None:
        super().__init__(f"line {line_number}: {reason}")
        self.line_number = line_number
        self.reason = reason
