#!/usr/bin/env python3
"""
Inspect and manage the API response cache from the command line.

Wraps the administrative performance endpoints so operators can read cache
statistics, flush every namespace, or reset the performance counters without
going through the admin UI.
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict

import httpx

ACTIONS = {
    "stats": ("GET", "/cache"),
    "report": ("GET", "/metrics"),
    "flush": ("POST", "/cache/flush"),
    "reset": ("POST", "/reset"),
    "health": ("GET", "/health"),
}


async def run_action(*, base_url: str, prefix: str, api_key: str, action: str, timeout: float) -> Dict[str, Any]:
    """Call one admin endpoint and return its JSON body."""
    method, path = ACTIONS[action]
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        response = await client.request(
            method,
            f"{prefix.rstrip('/')}{path}",
            headers={"X-API-Key": api_key} if api_key else {},
        )
        response.raise_for_status()
        return response.json()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage the API response cache.")
    parser.add_argument("action", choices=sorted(ACTIONS), help="Operation to perform")
    parser.add_argument("--base-url", default=os.getenv("ACCESS_API_URL", "http://localhost:8000"), help="API service URL")
    parser.add_argument("--prefix", default=os.getenv("ACCESS_PERFORMANCE_PREFIX", "/api/performance"), help="Admin route prefix")
    parser.add_argument("--api-key", default=os.getenv("ACCESS_ADMIN_API_KEY", ""), help="Admin API key")
    parser.add_argument("--timeout", type=float, default=10.0, help="Request timeout in seconds")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write the JSON result")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    try:
        result = asyncio.run(
            run_action(
                base_url=args.base_url,
                prefix=args.prefix,
                api_key=args.api_key,
                action=args.action,
                timeout=args.timeout,
            )
        )
    except KeyboardInterrupt:
        return 130
    except httpx.HTTPStatusError as exc:
        print(f"[cache-admin] {args.action} failed: HTTP {exc.response.status_code}", file=sys.stderr)
        return 1
    except httpx.HTTPError as exc:  # pragma: no cover - CLI surface
        print(f"[cache-admin] {args.action} failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))

    if args.output:
        args.output.write_text(json.dumps(result, indent=2))

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
