#!/usr/bin/env python3
"""
Refresh the GeoLite2 databases on disk.

Meant to be run by an external scheduler, e.g. weekly from cron:

    0 3 * * 3  iplookup-refresh

A running API server picks the new files up through its disk watcher.
Exit status: 0 every database updated, 2 some failed, 1 all failed.
"""

import sys
import argparse
import logging
from pathlib import Path

from . import config
from .geo.refresh import RefreshPipeline
from .geo.types import ALL_TYPES, DatabaseType
from .logging_config import setup_logging

logger = logging.getLogger("cli.refresh")

EXIT_CODES = {"ok": 0, "failed": 1, "degraded": 2}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="iplookup-refresh", description="Download and install GeoLite2 databases")
    parser.add_argument("--types", nargs="+", default=[t.value for t in ALL_TYPES],
                        help="database types to refresh (country, city, network)")
    parser.add_argument("--data-dir", type=Path, default=config.DATA_DIR,
                        help="directory holding the installed databases")
    parser.add_argument("--timeout", type=int, default=config.DOWNLOAD_TIMEOUT_SEC,
                        help="download timeout in seconds")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    try:
        types = DatabaseType.parse(args.types)
    except ValueError as e:
        logger.error(f"Unknown database type: {e}")
        return 1

    pipeline = RefreshPipeline(data_dir=args.data_dir, timeout=args.timeout)
    report = pipeline.refresh(types)
    for job in report.jobs:
        if job.ok:
            logger.info(f"{job.db_type.value}: updated ({job.path})")
        else:
            logger.error(f"{job.db_type.value}: failed ({job.reason})")
    return EXIT_CODES[report.status]


if __name__ == "__main__":
    sys.exit(main())
