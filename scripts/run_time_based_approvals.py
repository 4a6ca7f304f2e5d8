#!/usr/bin/env python3
"""Time-based auto-approval sweep — approve every overdue delayed workflow step.

Run it from cron (or a systemd timer) every few minutes. Each run claims a
request by clearing its schedule, so overlapping runs never approve the
same step twice.

Usage:
    python -m scripts.run_time_based_approvals                  # one sweep, all orgs
    python -m scripts.run_time_based_approvals --org-id 60      # one organization
    python -m scripts.run_time_based_approvals --loop 300       # sweep every 5 minutes
    python -m scripts.run_time_based_approvals --json           # machine-readable summary

Requires in .env (project root):
    DATABASE_URL

Exit codes:
    0 = sweep completed without per-request errors
    1 = one or more requests failed to advance
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# ── Path setup ────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

env_path = PROJECT_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)

from leave_engine.common.log_config import configure_logging  # noqa: E402
from leave_engine.config import Settings  # noqa: E402
from leave_engine.database import build_engine, build_session_factory  # noqa: E402
from leave_engine.workflow.engine import WorkflowEngine  # noqa: E402
from leave_engine.workflow.schemas import SweepResult  # noqa: E402

logger = logging.getLogger("time_based_sweep")


async def sweep_once(settings: Settings, org_id: Optional[int]) -> SweepResult:
    """One sweep in its own transaction."""
    engine = build_engine(settings)
    session_factory = build_session_factory(engine)
    try:
        async with session_factory() as session:
            async with session.begin():
                return await WorkflowEngine.process_pending_time_based_approvals(
                    session, org_id=org_id, batch_size=settings.SWEEP_BATCH_SIZE,
                )
    finally:
        await engine.dispose()


async def run(args: argparse.Namespace) -> int:
    settings = Settings()
    configure_logging(settings)

    while True:
        result = await sweep_once(settings, args.org_id)
        if args.json:
            print(json.dumps(result.model_dump(mode="json"), indent=2))
        else:
            logger.info(
                "Sweep done: %d processed, %d errors", result.processed, len(result.errors),
            )
            for error in result.errors:
                logger.error("  %s %s: %s", error.kind.value, error.request_id, error.error)

        if not args.loop:
            return 1 if result.errors else 0
        await asyncio.sleep(args.loop)


def main():
    parser = argparse.ArgumentParser(
        description="Approve overdue time-delayed workflow steps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--org-id", type=int, default=None,
                        help="Only sweep this organization (default: all)")
    parser.add_argument("--loop", type=int, default=0, metavar="SECONDS",
                        help="Keep sweeping every SECONDS (default: run once)")
    parser.add_argument("--json", action="store_true",
                        help="Print the sweep summary as JSON")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
