"""
Script to drive queued sync jobs from cron or a shell.

    python scripts/run_pending.py                # one runner pass
    python scripts/run_pending.py --drain        # passes until nothing is eligible
    python scripts/run_pending.py --requeue-stale
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import async_session_maker, engine
from core.logging import setup_logging
from ingestion.job_store import JobStore
from ingestion.runner import JobRunner

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run pending sync jobs")
    parser.add_argument("--drain", action="store_true", help="Keep running passes until no job is eligible")
    parser.add_argument("--max-passes", type=int, default=100, help="Upper bound on passes with --drain")
    parser.add_argument(
        "--requeue-stale",
        action="store_true",
        help=f"Requeue jobs running for more than {settings.STALE_JOB_SECONDS}s before the pass"
    )
    return parser.parse_args(argv)


async def run_pending(args) -> int:
    runner = JobRunner(session_maker=async_session_maker)
    total = 0

    try:
        if args.requeue_stale:
            async with async_session_maker() as session:
                await JobStore(session).requeue_stale(settings.STALE_JOB_SECONDS)

        passes = args.max_passes if args.drain else 1
        for number in range(1, passes + 1):
            advanced = await runner.run_pending()
            total += advanced
            logger.info(f"Pass {number}: advanced {advanced} job(s)")
            if advanced == 0:
                break
    finally:
        await runner.embedder.aclose()
        await engine.dispose()

    logger.info(f"Done: {total} job advance(s)")
    return total


if __name__ == "__main__":
    setup_logging()
    asyncio.run(run_pending(parse_args()))
