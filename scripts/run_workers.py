"""
Run the ingestion worker pool.

By default workers poll until interrupted; --drain stops them once every
source queue has no visible work left (deliveries waiting out a retry
backoff are left for a later run).
"""

import argparse
import asyncio
import signal
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

import httpx
from core.config import settings
from core.database import build_engine, build_session_factory
from core.exceptions import InfrastructureError
from core.logging import setup_logging
from ingestion.runtime import build_worker_pool

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Drain ingest-requests with per-source worker pools")
    parser.add_argument("--drain", action="store_true", help="Exit once the queues are empty")
    parser.add_argument(
        "--source",
        action="append",
        dest="sources",
        default=None,
        help="Only run workers for this source (repeatable)"
    )
    return parser


async def run_workers(drain: bool = False, sources=None) -> int:
    engine = build_engine()
    session_factory = build_session_factory(engine)

    try:
        async with httpx.AsyncClient(timeout=settings.FETCH_TIMEOUT_SECONDS) as client:
            pool = await build_worker_pool(session_factory, client, sources)
            if not pool.sources:
                logger.error("No sources to run workers for; run scripts/init_db.py first")
                return 1

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, pool.stop)
                except NotImplementedError:
                    # Signal handlers are unavailable on some platforms (Windows)
                    pass

            stats = await pool.run(drain=drain)
    except InfrastructureError as e:
        logger.error(f"Worker pool halted: {str(e)}")
        return 1
    finally:
        await engine.dispose()

    logger.info(f"Workers stopped after {stats.processed} work items")
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    return asyncio.run(run_workers(args.drain, args.sources))


if __name__ == "__main__":
    sys.exit(main())
