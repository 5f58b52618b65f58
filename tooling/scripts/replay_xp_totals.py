#!/usr/bin/env python3
"""Recompute a user's XP totals by replaying their event log.

Compares the replayed totals against the aggregate the API serves, which makes
it a quick consistency probe after manual data fixes.

Example:
    python tooling/scripts/replay_xp_totals.py --user-id <uuid> --persona student
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from uuid import UUID

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay XP events for a user")
    parser.add_argument("--user-id", type=UUID, required=True, help="User whose events are replayed.")
    parser.add_argument(
        "--persona",
        choices=("student", "parent", "tutor"),
        default=None,
        help="Restrict the replay to one persona.",
    )
    return parser.parse_args()


async def _run(user_id: UUID, persona: str | None) -> bool:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from sqlalchemy import select

    from kfactor_api.db.session import async_session  # type: ignore import-position
    from kfactor_api.models import XpEvent  # type: ignore import-position
    from kfactor_api.services.xp import XpLedger, totals_from_events  # type: ignore import-position

    async with async_session() as session:
        stmt = select(XpEvent.raw_xp).where(XpEvent.user_id == user_id)
        if persona:
            stmt = stmt.where(XpEvent.persona_type == persona)
        replayed = totals_from_events((await session.execute(stmt)).scalars().all())
        served = await XpLedger(session).totals(user_id, persona)

    logger.info(
        "Replayed XP totals",
        user_id=str(user_id),
        persona=persona,
        xp=replayed.xp,
        level=replayed.level,
        progress=round(replayed.progress, 4),
    )
    if replayed != served:
        logger.error("Replayed totals differ from served totals", replayed=replayed.xp, served=served.xp)
        return False
    return True


def main() -> int:
    args = parse_args()
    consistent = asyncio.run(_run(args.user_id, args.persona))
    if consistent:
        logger.success("XP totals consistent", user_id=str(args.user_id))
        return 0
    return 1


if __name__ == "__main__":
    sys.exit(main())
