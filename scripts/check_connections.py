#!/usr/bin/env python3
"""Check that each registered NHS connection can obtain a bearer token."""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from typing import Any

import httpx


@dataclass
class CheckResult:
    connection_id: str
    ok: bool
    status: str
    details: str
    refresh_count: int


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Call /connections/{connection_id}/token for each connection id given."
    )
    parser.add_argument(
        "connection_ids",
        nargs="+",
        help="Connection ids to check.",
    )
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000/api/v1",
        help="Backend API base URL (default: http://localhost:8000/api/v1)",
    )
    parser.add_argument(
        "--api-key",
        default=os.getenv("NHS_INTEROP_API_KEY") or os.getenv("API_KEY"),
        help="Operator API key (or set NHS_INTEROP_API_KEY / API_KEY env var).",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=30,
        help="Request timeout seconds (default: 30).",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Disable TLS certificate verification.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print full JSON output.",
    )
    return parser.parse_args()


def _headers(api_key: str | None) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["X-API-Key"] = api_key
    return headers


def _check_connection(client: httpx.Client, *, base_url: str, connection_id: str) -> CheckResult:
    url = f"{base_url.rstrip('/')}/connections/{connection_id}/token"
    response = client.post(url)
    try:
        payload: Any = response.json()
    except ValueError:
        payload = None

    if response.status_code >= 400:
        error = payload.get("error") if isinstance(payload, dict) else None
        message = (
            str(error.get("message"))
            if isinstance(error, dict)
            else response.text.strip().replace("\n", " ")[:400]
        )
        return CheckResult(
            connection_id=connection_id,
            ok=False,
            status=f"http_{response.status_code}",
            details=message,
            refresh_count=0,
        )
    if not isinstance(payload, dict):
        raise RuntimeError(f"Non-JSON response from {url}")
    return CheckResult(
        connection_id=connection_id,
        ok=payload.get("status") == "active",
        status=str(payload.get("status") or ""),
        details=str(payload.get("last_error") or ""),
        refresh_count=int(payload.get("refresh_count") or 0),
    )


def main() -> int:
    args = _parse_args()
    results: list[CheckResult] = []
    has_failure = False

    with httpx.Client(
        headers=_headers(args.api_key),
        timeout=args.timeout,
        verify=not args.insecure,
    ) as client:
        for connection_id in args.connection_ids:
            try:
                result = _check_connection(
                    client,
                    base_url=args.base_url,
                    connection_id=connection_id,
                )
            except (httpx.HTTPError, RuntimeError) as exc:
                result = CheckResult(
                    connection_id=connection_id,
                    ok=False,
                    status="error",
                    details=str(exc),
                    refresh_count=0,
                )
            results.append(result)
            has_failure = has_failure or not result.ok

    if args.json:
        output = [
            {
                "connection_id": result.connection_id,
                "ok": result.ok,
                "status": result.status,
                "refresh_count": result.refresh_count,
                "details": result.details,
            }
            for result in results
        ]
        print(json.dumps(output, indent=2))
    else:
        for result in results:
            status = "PASS" if result.ok else "FAIL"
            print(
                f"[{status}] conn={result.connection_id} status={result.status} "
                f"refreshes={result.refresh_count}"
            )
            if result.details:
                print(f"  details: {result.details}")

    return 1 if has_failure else 0


if __name__ == "__main__":
    raise SystemExit(main())
