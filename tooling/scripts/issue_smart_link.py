"""Issue a smart link for a member through the public API.

Useful for QA sessions that need a fresh invite link without the web client:

    python tooling/scripts/issue_smart_link.py --user-id <uuid> --loop buddy_challenge \
        --param challenge_id=ch-42

Omit `--loop` to let the orchestrator choose one.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from typing import Any

import httpx
from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Issue a smart link via HTTP")
    parser.add_argument("--user-id", type=str, required=True, help="Member id sent as X-Session-User.")
    parser.add_argument("--loop", type=str, default=None, help="Viral loop name; omitted means orchestrator choice.")
    parser.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Loop parameter embedded in the link (repeatable).",
    )
    parser.add_argument(
        "--api-base-url",
        type=str,
        default=None,
        help="Override API base URL. Defaults to $API_BASE_URL or http://localhost:8000.",
    )
    return parser.parse_args()


def _parse_params(raw: list[str]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for item in raw:
        key, separator, value = item.partition("=")
        if not separator or not key:
            raise ValueError(f"Invalid --param value: {item!r} (expected KEY=VALUE)")
        params[key] = value
    return params


async def _issue(*, api_base_url: str, user_id: str, loop: str | None, params: dict[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {"params": params or None}
    if loop:
        body["loop"] = loop

    endpoint = f"{api_base_url.rstrip('/')}/api/v1/smart-links"
    async with httpx.AsyncClient(timeout=30) as client:
        response = await client.post(
            endpoint,
            json=body,
            headers={"Accept": "application/json", "X-Session-User": user_id},
        )
        response.raise_for_status()
    return response.json()


async def _run() -> int:
    args = parse_args()
    api_base_url = args.api_base_url or os.environ.get("API_BASE_URL") or "http://localhost:8000"
    try:
        params = _parse_params(args.param)
    except ValueError as exc:
        logger.error("Rejected smart link parameters", error=str(exc))
        return 2

    try:
        payload = await _issue(api_base_url=api_base_url, user_id=args.user_id, loop=args.loop, params=params)
    except httpx.HTTPStatusError as exc:
        logger.error(
            "Smart link request failed",
            status_code=exc.response.status_code,
            body=exc.response.text[:500],
        )
        return 1

    print(json.dumps(payload, indent=2))
    logger.info("Issued smart link", code=payload.get("code"), loop=payload.get("loop"))
    return 0


def main() -> int:
    return asyncio.run(_run())


if __name__ == "__main__":
    raise SystemExit(main())
