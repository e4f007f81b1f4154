"""Property-based tests for event-stream parsing."""

from __future__ import annotations

import json

from hypothesis import given, strategies as st

from uplink_relay.telemetry_proxy.stream import StreamParser


json_values = st.recursive(
    st.none() | st.booleans() | st.integers() | st.text(max_size=20),
    lambda children: st.lists(children, max_size=4) | st.dictionaries(st.text(max_size=8), children, max_size=4),
    max_leaves=10,
)
malformed_lines = st.sampled_from(["garbage", "{", '{"a":', "[1,", "}{", "nul", "'single'", "{'a': 1}"])


@given(st.lists(st.one_of(json_values.map(lambda v: ("ok", v)), malformed_lines.map(lambda v: ("bad", v))), max_size=30))
def test_parse_keeps_exactly_the_valid_lines_in_order(lines) -> None:
    body = "\n".join(json.dumps(value) if kind == "ok" else value for kind, value in lines)
    expected = [value for kind, value in lines if kind == "ok"]

    assert StreamParser().parse(body) == expected


@given(st.text(max_size=200))
def test_parse_never_raises(body: str) -> None:
    result = StreamParser().parse(body)
    assert isinstance(result, list)
