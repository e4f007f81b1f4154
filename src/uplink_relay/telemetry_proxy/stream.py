"""Newline-delimited JSON parsing for upstream event-stream bodies."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Iterator, Union

import structlog

from ..common.errors import MalformedLine
from ..common.metrics import GLOBAL_REGISTRY, Counter


LOGGER = structlog.get_logger("uplink_relay.stream")

SKIPPED_LINES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("uplink_relay_stream_lines_skipped_total", "Event-stream lines dropped because they were not JSON")
)


@dataclass(frozen=True)
class Parsed:
    line_number: int
    value: Any


@dataclass(frozen=True)
class Skipped:
    line_number: int
    reason: MalformedLine


LineResult = Union[Parsed, Skipped]


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} is not valid JSON")


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"number {text} is out of range")
    return value


def loads_strict(text: str) -> Any:
    """``json.loads`` without the NaN/Infinity extensions.

    Records must survive re-encoding by ``JSONResponse``, which refuses
    non-finite floats.
    """
    return json.loads(text, parse_constant=_reject_constant, parse_float=_finite_float)


class StreamParser:
    """Turns an event-stream body into the ordered list of its JSON records."""

    def classify(self, raw_body: str) -> Iterator[LineResult]:
        for line_number, line in enumerate(raw_body.split("\n"), start=1):
            text = line.strip()
            if not text:
                continue
            try:
                yield Parsed(line_number, loads_strict(text))
            except (ValueError, RecursionError) as exc:
                yield Skipped(line_number, MalformedLine(line_number, str(exc)))

    def parse(self, raw_body: str) -> list[Any]:
        records: list[Any] = []
        skipped = 0
        for result in self.classify(raw_body):
            if isinstance(result, Parsed):
                records.append(result.value)
                continue
            skipped += 1
            LOGGER.debug("Skipping malformed line", line=result.line_number, reason=result.reason.reason)
        if skipped:
            SKIPPED_LINES_COUNTER.inc(skipped)
            LOGGER.warning("Dropped malformed event-stream lines", skipped=skipped, parsed=len(records))
        return records

    def parse_document(self, raw_body: str) -> list[Any]:
        """Parse a plain ``application/json`` body.

        An array is returned as-is and an object becomes a one-element list.
        Bodies that are not a single JSON document fall back to :meth:`parse`.
        """
        text = raw_body.strip()
        if not text:
            return []
        try:
            document = loads_strict(text)
        except (ValueError, RecursionError):
            return self.parse(raw_body)
        if document is None:
            return []
        if isinstance(document, list):
            return document
        return [document]
