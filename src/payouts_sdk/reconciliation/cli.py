#!/usr/bin/env python3
"""Command-line interface for payout import and reconciliation.

Usage:
    python -m payouts_sdk.reconciliation.cli import --church-id CHURCH --limit 50
    python -m payouts_sdk.reconciliation.cli reconcile --payout-id po_123
    python -m payouts_sdk.reconciliation.cli reconcile-all --church-id CHURCH --output batch.json
    python -m payouts_sdk.reconciliation.cli stats --church-id CHURCH

Exit codes: 0 on success, 1 when the run completed but needs attention
(flagged or failed payouts, rejected records, bad arguments), 2 when the
command could not run.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from ..database import DatabaseManager
from ..errors import NotConnected, PayoutNotFound, PayoutsError, ProcessorUnavailable
from ..processor import get_processor_client
from .importer import ImportService
from .models import ReconciliationOutcome
from .service import ReconciliationService
from .stats import StatisticsAggregator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def parse_datetime(dt_string: str) -> datetime:
    """Parse datetime string in various formats.

    Raises:
        ValueError: If the string cannot be parsed.
    """
    formats = [
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%dT%H:%M:%S.%f",
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%d",
    ]

    for fmt in formats:
        try:
            return datetime.strptime(dt_string, fmt)
        except ValueError:
            continue

    raise ValueError(
        f"Unable to parse datetime: {dt_string}. "
        f"Expected formats: YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS"
    )


def _date_range(start: Optional[str], end: Optional[str]) -> Tuple[Optional[datetime], Optional[datetime]]:
    start_time = parse_datetime(start) if start else None
    end_time = parse_datetime(end) if end else None
    # A bare end date covers the whole day
    if end_time and "T" not in end and " " not in end:
        end_time = end_time + timedelta(days=1) - timedelta(seconds=1)
    if start_time and end_time and start_time > end_time:
        raise ValueError("--start must not be after --end")
    return start_time, end_time


async def _execute(args: argparse.Namespace, session_factory, processor) -> Tuple[int, Dict[str, Any]]:
    if args.command == "stats":
        stats = await StatisticsAggregator(session_factory).stats(args.church_id)
        return 0, stats.model_dump()

    if args.command == "import":
        start, end = _date_range(args.start, args.end)
        importer = ImportService(session_factory, processor)
        result = await importer.import_historical(
            args.church_id, limit=args.limit, start=start, end=end, timeout=args.timeout
        )
        return (1 if result.errors else 0), result.model_dump()

    service = ReconciliationService(session_factory, processor, timeout=args.timeout)

    if args.command == "reconcile":
        result = await service.reconcile(args.payout_id, church_id=args.church_id)
        output = result.model_dump(mode="json")
        output["message"] = result.describe()
        if result.outcome == ReconciliationOutcome.FAILED:
            return 2, output
        return (1 if result.needs_review else 0), output

    batch = await service.reconcile_all(args.church_id)
    output = batch.to_summary_dict()
    if args.details:
        output["results"] = [r.model_dump(mode="json") for r in batch.results]
    return (1 if batch.failed or batch.flagged else 0), output


async def run_command_async(args: argparse.Namespace) -> int:
    """Run one CLI command against the configured database.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    db_manager = DatabaseManager()
    await db_manager.initialize()
    session_factory = db_manager.session_factory

    try:
        processor = None
        if args.command != "stats":
            try:
                processor = get_processor_client(args.provider)
            except ValueError as e:
                logger.error(str(e))
                return 2

        try:
            exit_code, output = await _execute(args, session_factory, processor)
        except (NotConnected, PayoutNotFound) as e:
            logger.error(str(e))
            return 2
        except ProcessorUnavailable as e:
            logger.error(f"Payment processor unavailable: {e}")
            output = {"error": str(e)}
            if e.partial_result is not None:
                output.update(e.partial_result.model_dump())
            _write_output(output, args.output)
            return 2
        except PayoutsError as e:
            logger.error(str(e))
            return 2

        _write_output(output, args.output)
        return exit_code
    finally:
        await db_manager.shutdown()


def _write_output(output: Dict[str, Any], output_file: Optional[str]) -> None:
    text = json.dumps(output, indent=2, default=str)
    if output_file:
        with open(output_file, 'w') as f:
            f.write(text)
        logger.info(f"Output written to {output_file}")
    else:
        print(text)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="payouts",
        description="Payout import and reconciliation tools.",
    )
    parser.add_argument(
        "--provider", "-p",
        default=os.getenv("PAYMENT_PROCESSOR", "stripe"),
        help="Payment processor (default: PAYMENT_PROCESSOR or stripe)",
    )
    parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Deadline in seconds for each processor-bound operation",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    import_parser = subparsers.add_parser("import", help="Import historical payouts")
    import_parser.add_argument("--church-id", required=True)
    import_parser.add_argument("--limit", type=int, default=10, help="Payouts to import (1-100)")
    import_parser.add_argument("--start", "-s", help="Created on or after (YYYY-MM-DD)")
    import_parser.add_argument("--end", "-e", help="Created on or before (YYYY-MM-DD)")

    reconcile_parser = subparsers.add_parser("reconcile", help="Reconcile one payout")
    reconcile_parser.add_argument(
        "--payout-id",
        required=True,
        help="Internal payout id or processor payout reference",
    )
    reconcile_parser.add_argument(
        "--church-id",
        help="Owning church, for payouts not imported yet",
    )

    all_parser = subparsers.add_parser(
        "reconcile-all",
        help="Reconcile every paid, unreconciled payout of a church",
    )
    all_parser.add_argument("--church-id", required=True)
    all_parser.add_argument(
        "--details",
        action="store_true",
        help="Include per-payout results in the output",
    )

    stats_parser = subparsers.add_parser("stats", help="Show payout statistics")
    stats_parser.add_argument("--church-id", required=True)

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == "import":
        try:
            _date_range(parsed_args.start, parsed_args.end)
        except ValueError as e:
            logger.error(str(e))
            return 1

    return asyncio.run(run_command_async(parsed_args))


if __name__ == "__main__":
    sys.exit(main())
