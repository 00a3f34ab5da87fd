"""
One-shot flagging run for an external scheduler, e.g. every 30 minutes from cron:

    */30 * * * * cd /srv/medflag && python -m medflag.run_pass --purge
"""
import argparse
import asyncio
import sys
from datetime import datetime

from medflag.config import get_settings
from medflag.core.logging import setup_logging
from medflag.engine import build_sql_engine
from medflag.exceptions import StoreUnavailableError
from medflag.schemas import ensure_utc


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run one non-response flagging pass.")
    parser.add_argument("--now", type=datetime.fromisoformat, default=None,
                        help="ISO-8601 instant to evaluate against (default: current time)")
    parser.add_argument("--purge", action="store_true",
                        help="also delete flags past their retention expiry")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    logger = setup_logging(settings)
    engine = build_sql_engine(settings)
    now = ensure_utc(args.now)

    try:
        result = asyncio.run(engine.run_flagging_pass(now))
    except StoreUnavailableError as e:
        logger.error("flagging_pass_aborted", error=str(e))
        return 2

    if args.purge:
        purged = engine.purge_expired_flags(now)
        logger.info("retention_purge_completed", purged=purged)

    for error in result.errors:
        logger.warning("flagging_pass_error", detail=error)
    return 1 if result.errors else 0


if __name__ == "__main__":
    sys.exit(main())
