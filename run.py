"""
Entry point: run the post scheduler until a shutdown signal arrives.

Usage::

    python run.py
    python run.py --schedule content/schedule.json --log-level DEBUG

Exit code is 0 after a clean shutdown (including one that abandoned
jobs at the drain deadline) and 1 when startup fails.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("run")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Facebook / Instagram post scheduler")
    parser.add_argument("--schedule", help="Schedule document (JSON or YAML)")
    parser.add_argument("--settings", help="Settings YAML (default: config/settings.yaml)")
    parser.add_argument("--log-level", help="Override the configured log level")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    from postscheduler.app import SchedulerApp
    from postscheduler.config import Settings
    from postscheduler.exceptions import ConfigurationError, ScheduleValidationError

    args = parse_args(argv)

    try:
        settings = Settings.from_yaml(Path(args.settings) if args.settings else None)
    except ConfigurationError as exc:
        logging.basicConfig(level=logging.INFO)
        logger.error("Invalid settings: %s", exc)
        return 1

    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    app = SchedulerApp(settings=settings, schedule_path=args.schedule)
    try:
        report = await app.run()
    except ScheduleValidationError as exc:
        for error in exc.errors:
            logger.error("Schedule error: %s", error)
        logger.error("Startup aborted")
        return 1
    except ConfigurationError as exc:
        logger.error("Startup aborted: %s", exc)
        return 1

    if report.abandoned:
        logger.warning("Abandoned jobs: %s", ", ".join(report.abandoned))
    logger.info("Shutdown complete (%s)", report.reason)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
