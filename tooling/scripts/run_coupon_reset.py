#!/usr/bin/env python3
"""Run the coupon reset sweep once for cron/CI workflows."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reset coupon usages whose billing cycle has ended")
    parser.add_argument("--limit", type=int, default=None, help="Maximum usages to process.")
    parser.add_argument(
        "--fail-on-expired",
        action="store_true",
        help="Exit with status 1 when any usage had to be expired instead of reset.",
    )
    return parser.parse_args()


async def _run_once(limit: int | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    src = repo_root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))

    from rewards_engine.db.session import async_session  # type: ignore import-position
    from rewards_engine.jobs.coupons import run_coupon_reset  # type: ignore import-position

    summary = await run_coupon_reset(session_factory=async_session, limit=limit)
    logger.info("Coupon reset run complete", **summary)
    return summary


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run_once(args.limit))
    if args.fail_on_expired and summary.get("expired"):
        logger.error("Coupon usages were expired during the reset run", expired=summary["expired"])
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
