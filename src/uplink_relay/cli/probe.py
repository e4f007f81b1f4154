"""Operator CLI for checking a running telemetry proxy."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections import Counter
from typing import Any

import httpx


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Probe an uplink-relay telemetry proxy")
    subparsers = parser.add_subparsers(dest="command", required=True)

    health_parser = subparsers.add_parser("health", help="Show proxy cache and secret diagnostics")
    health_parser.add_argument("--base-url", required=True, help="Proxy base URL")
    health_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    data_parser = subparsers.add_parser("data", help="Fetch telemetry and summarize it per device")
    data_parser.add_argument("--base-url", required=True, help="Proxy base URL")
    data_parser.add_argument("--last", default="1h", help="Relative time window, e.g. 1h or 24h")
    data_parser.add_argument("--field-mask", default="up.uplink_message", help="Upstream field mask")
    data_parser.add_argument("--device-id", help="Device filter (legacy query API only)")
    data_parser.add_argument("--json", action="store_true", help="Output raw JSON")
    return parser.parse_args()


async def fetch_health(base_url: str) -> dict[str, Any]:
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.get(f"{base_url.rstrip('/')}/health")
        response.raise_for_status()
        return response.json()


async def fetch_data(base_url: str, params: dict[str, str]) -> list[Any]:
    async with httpx.AsyncClient(timeout=60.0) as client:
        response = await client.get(f"{base_url.rstrip('/')}/api/data", params=params)
        response.raise_for_status()
        return response.json()


def _device_id(record: Any) -> str:
    if not isinstance(record, dict):
        return "-"
    message = record.get("result", record)
    if isinstance(message, dict):
        ids = message.get("end_device_ids") or {}
        if isinstance(ids, dict) and ids.get("device_id"):
            return str(ids["device_id"])
        if message.get("device_id"):
            return str(message["device_id"])
    return "-"


def _received_at(record: Any) -> str | None:
    if not isinstance(record, dict):
        return None
    message = record.get("result", record)
    if not isinstance(message, dict):
        return None
    received = message.get("received_at") or message.get("time")
    return str(received) if received else None


def summarize_records(records: list[Any]) -> dict[str, Any]:
    per_device = Counter(_device_id(record) for record in records)
    timestamps = sorted(ts for ts in (_received_at(record) for record in records) if ts)
    return {
        "records": len(records),
        "devices": dict(per_device.most_common()),
        "first_received_at": timestamps[0] if timestamps else None,
        "last_received_at": timestamps[-1] if timestamps else None,
    }


def print_health(payload: dict[str, Any]) -> None:
    cache = payload.get("cache", {})
    stats = cache.get("stats", {})
    secret = payload.get("secret", {})
    print(f"Status: {payload.get('status', '-')} at {payload.get('timestamp', '-')}")
    print(f"Upstream variant: {payload.get('upstream_variant', '-')}")
    print(
        "Response cache: "
        f"{cache.get('keys', 0)} keys, {stats.get('hits', 0)} hits, "
        f"{stats.get('misses', 0)} misses, {stats.get('evictions', 0)} evictions"
    )
    age = secret.get("age_seconds")
    print(
        "Secret: "
        f"configured={secret.get('configured')} cached={secret.get('cached')} "
        f"age={'-' if age is None else f'{age:.0f}s'} failures={secret.get('failures', 0)}"
    )


def print_summary(summary: dict[str, Any]) -> None:
    if not summary["records"]:
        print("No uplinks in the requested window")
        return
    print(f"Records: {summary['records']}")
    print(f"Window: {summary['first_received_at'] or '-'} .. {summary['last_received_at'] or '-'}")
    for device, count in summary["devices"].items():
        print(f"  {device}: {count}")


async def run() -> None:
    args = parse_args()
    if args.command == "health":
        payload = await fetch_health(args.base_url)
        if args.json:
            print(json.dumps(payload, indent=2))
            return
        print_health(payload)
        return

    params = {"last": args.last, "field_mask": args.field_mask}
    if args.device_id:
        params["device_id"] = args.device_id
    records = await fetch_data(args.base_url, params)
    summary = summarize_records(records)
    if args.json:
        print(json.dumps(summary, indent=2))
        return
    print_summary(summary)


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
