#!/usr/bin/env python3
"""
Seed listings and price history from the Funda / Pararius mirror databases.

Examples:
  mirrorseed --dry-run
  mirrorseed --source funda --city Eindhoven
  mirrorseed --source both --batch-size 2000 --log-file logs/mirrorseed.log
"""

from __future__ import annotations

import argparse
import json
import signal
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from loguru import logger

from mirrorseed.batch_writer import DEFAULT_BATCH_SIZE
from mirrorseed.errors import SeedSetupError
from mirrorseed.logging_config import configure_logger
from mirrorseed.mirror import DEFAULT_FETCH_SIZE
from mirrorseed.orchestrator import MirrorSeeder
from mirrorseed.orchestrator import SeedSettings
from mirrorseed.property_index import DEFAULT_INDEX_PAGE_SIZE
from mirrorseed.spatial import DEFAULT_RADIUS_M


EXIT_OK = 0
EXIT_SETUP_FAILED = 1
EXIT_CANCELLED = 130


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {value}")
    return number


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Seed listings and price history from the Funda/Pararius mirrors"
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Match and count without writing anything"
    )
    parser.add_argument("--source", choices=("funda", "pararius", "both"), default="both")
    parser.add_argument("--city", help="Only import mirror rows for this city")

    parser.add_argument("--db-url", help="Destination DSN override (DATABASE_URL)")
    parser.add_argument("--funda-url", help="Funda mirror DSN override (FUNDA_MIRROR_URL)")
    parser.add_argument(
        "--pararius-url", help="Pararius mirror DSN override (PARARIUS_MIRROR_URL)"
    )

    parser.add_argument("--batch-size", type=_positive_int, default=DEFAULT_BATCH_SIZE)
    parser.add_argument("--fetch-size", type=_positive_int, default=DEFAULT_FETCH_SIZE)
    parser.add_argument(
        "--index-page-size", type=_positive_int, default=DEFAULT_INDEX_PAGE_SIZE
    )
    parser.add_argument(
        "--spatial-radius-m",
        type=_positive_float,
        default=DEFAULT_RADIUS_M,
        help="Max distance for the nearest-property fallback",
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"),
    )
    parser.add_argument("--log-file", help="Also write logs to this rotating file")
    return parser


def parse_args(argv: Sequence[str] | None = None) -> SeedSettings:
    args = _build_parser().parse_args(argv)
    return SeedSettings(
        dry_run=bool(args.dry_run),
        source=args.source,
        city=args.city.strip() if args.city and args.city.strip() else None,
        db_url=args.db_url,
        funda_url=args.funda_url,
        pararius_url=args.pararius_url,
        batch_size=args.batch_size,
        fetch_size=args.fetch_size,
        index_page_size=args.index_page_size,
        spatial_radius_m=args.spatial_radius_m,
        log_level=args.log_level,
        log_file=Path(args.log_file) if args.log_file else None,
    )


def _install_signal_handlers(cancel_event: threading.Event) -> dict[int, Any]:
    def _request_stop(signum: int, _frame: Any) -> None:
        if not cancel_event.is_set():
            logger.warning(
                f"Received {signal.Signals(signum).name}, stopping at the next batch boundary"
            )
        cancel_event.set()

    previous: dict[int, Any] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _request_stop)
    return previous


def _restore_signal_handlers(previous: dict[int, Any]) -> None:
    for signum, handler in previous.items():
        # None means the handler was not installed from Python.
        if handler is not None:
            signal.signal(signum, handler)


def main(argv: Sequence[str] | None = None) -> int:
    settings = parse_args(argv)
    configure_logger(settings.log_level, settings.log_file)

    cancel_event = threading.Event()
    previous = _install_signal_handlers(cancel_event)
    try:
        summary = MirrorSeeder(settings, cancel_event=cancel_event).run()
    except SeedSetupError as exc:
        logger.error(f"Seeding aborted before any write: {exc}")
        return EXIT_SETUP_FAILED
    finally:
        _restore_signal_handlers(previous)

    print(json.dumps(summary, indent=2, default=str))
    return EXIT_CANCELLED if summary["cancelled"] else EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
