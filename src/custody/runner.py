"""Periodic job runner.

Usage:
    python -m custody.runner deposits --interval 60
    python -m custody.runner sweep --once
    python -m custody.runner withdrawals
    python -m custody.runner reconcile --once

Settings come from the environment / .env (see custody.config). Exit codes
for --once: 0 on success, 1 when reconcile finds discrepancies or a sweep
reports errors.
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from custody.config import Settings, get_settings
from custody.context import CustodyContext
from custody.errors import CustodyError

logger = logging.getLogger(__name__)

JOBS = ("deposits", "sweep", "withdrawals", "reconcile")


async def run_job(ctx: CustodyContext, job: str) -> bool:
    """Run one cycle of a job. Returns False when the cycle reported problems."""
    if job == "deposits":
        summary = await ctx.deposit_monitor.run_once()
        return summary.errors == 0

    if job == "sweep":
        report = await ctx.sweeper.sweep_all()
        for result in report.errors:
            logger.warning(f"  {result.network} {result.address}: {result.error}")
        return not report.errors

    if job == "withdrawals":
        processed = await ctx.withdrawals.process_approved()
        logger.info(f"Processed {len(processed)} approved withdrawals")
        return True

    if job == "reconcile":
        discrepancies = await ctx.ledger.verify_consistency()
        for d in discrepancies:
            logger.error(
                f"  user {d.user_id}: balance {d.balance}, ledger {d.ledger_total} "
                f"(difference {d.difference})"
            )
        if not discrepancies:
            logger.info("Ledger is consistent")
        return not discrepancies

    raise ValueError(f"Unknown job: {job}")


async def run(job: str, once: bool, interval: int, settings: Optional[Settings] = None) -> int:
    """Run a job once or in a loop until cancelled."""
    settings = settings or get_settings()

    async with CustodyContext(settings) as ctx:
        if once:
            return 0 if await run_job(ctx, job) else 1

        logger.info(f"Starting {job} runner (interval: {interval}s)")
        while True:
            try:
                await run_job(ctx, job)
            except CustodyError as e:
                logger.error(f"{job} cycle failed: {e}")
            await asyncio.sleep(interval)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run custody background jobs")
    parser.add_argument("job", choices=JOBS, help="Job to run")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between cycles (default: SCAN_INTERVAL)",
    )
    return parser


def cli(argv: Optional[list[str]] = None) -> None:
    """Console entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(f"Settings: {settings.get_safe_dict()}")

    interval = args.interval or settings.scan_interval
    try:
        code = asyncio.run(run(args.job, args.once, interval, settings))
    except KeyboardInterrupt:
        logger.info("Runner stopped")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    cli()
