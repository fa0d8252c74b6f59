"""Standalone retry sweep worker.

Usage:
    courier-sweep            # sweep every COURIER_SWEEP_INTERVAL_SECONDS
    courier-sweep --once     # one sweep, for cron-style schedulers

Or as a module:
    python -m courier.worker
"""

from __future__ import annotations

import argparse
import asyncio
import signal

from courier.config import Settings
from courier.logging import configure_logging, get_logger
from courier.service import CourierService

logger = get_logger(__name__)


async def run(settings: Settings, once: bool = False) -> int:
    """Run the sweep until SIGINT/SIGTERM, or a single time with ``once``.

    Returns:
        Entries processed by the single run, or 0 in loop mode.
    """
    async with CourierService.create(settings) as service:
        runner = service.sweep_runner()

        if once:
            processed = await runner.run_once()
            logger.info("Sweep finished", processed=processed)
            return processed

        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        runner.start()
        logger.info("Sweep worker running", interval_seconds=settings.sweep_interval_seconds)
        await stop.wait()
        logger.info("Shutting down sweep worker")
        await runner.stop()
        return 0


def main(argv: list[str] | None = None) -> None:
    """Entry point of the ``courier-sweep`` console script."""
    parser = argparse.ArgumentParser(description="Run the Courier retry sweep.")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    args = parser.parse_args(argv)

    settings = Settings()
    configure_logging(level=settings.log_level, format=settings.log_format)
    asyncio.run(run(settings, once=args.once))


if __name__ == "__main__":
    main()
