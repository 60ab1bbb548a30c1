"""
Run one scheduling pass.

Exit status reflects whether enumeration completed, not whether every
work item succeeded; per-item outcomes live in the fetch log.

    0  every due profile was enqueued (or already had its work item)
    1  the deadline cut enumeration short, or the bus / watermark store failed
"""

import argparse
import asyncio
import sys
import os
import logging
from datetime import datetime, timedelta

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import build_engine, build_session_factory
from core.exceptions import InfrastructureError
from core.logging import setup_logging
from ingestion.runtime import build_pipeline

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Enqueue work items for every profile due for refresh")
    parser.add_argument(
        "--now",
        type=datetime.fromisoformat,
        default=None,
        help="Cycle time as naive UTC ISO-8601 (default: current time)"
    )
    parser.add_argument(
        "--deadline-minutes",
        type=float,
        default=settings.CYCLE_DEADLINE_MINUTES,
        help="Abandon enumeration after this many minutes"
    )
    return parser


async def run_cycle(now=None, deadline_minutes=None) -> int:
    """Run the cycle and return the process exit code"""
    engine = build_engine()
    session_factory = build_session_factory(engine)

    try:
        pipeline = build_pipeline(session_factory)
        if deadline_minutes is not None:
            pipeline.scheduler.deadline = timedelta(minutes=deadline_minutes)

        await pipeline.bus.ensure_subscriptions()
        result = await pipeline.scheduler.run_cycle(now=now)
    except InfrastructureError as e:
        logger.error(f"Cycle halted: {str(e)}")
        return 1
    finally:
        await engine.dispose()

    if not result.completed:
        logger.warning(
            f"Cycle {result.run_id} abandoned at its deadline: "
            f"{result.items_enqueued} enqueued before stopping"
        )
        return 1
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    return asyncio.run(run_cycle(args.now, args.deadline_minutes))


if __name__ == "__main__":
    sys.exit(main())
