#!/usr/bin/env python3
"""Command-line interface for shift reconciliation.

Runs reconciliation jobs for an operator's work sessions against the idex
and bybit transaction tables of DATABASE_URL, and previews the query windows
a cabinet window configuration produces.

Usage:
    shift-recon reconcile --operator 7 --start 2024-01-01 --end 2024-01-31
    shift-recon reconcile --windows-file windows.json -s 2024-01-01 -e 2024-01-02 -f text
    shift-recon windows --config windows.json --start 2024-01-01T12:00+03:00

Exit codes: 0 everything matched, 1 leftovers or failed cabinets (or bad
arguments), 2 the run itself failed.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta
from typing import Optional

from ..config import get_settings
from ..database import create_async_engine, get_async_session_factory
from .fetcher import SqlWorkSessionSource, get_record_fetchers
from .models import ReconciliationReport, ReconciliationRequest, ReconciliationStatus, to_naive_utc
from .service import ReconciliationService
from .windows import WindowBuilder

logger = logging.getLogger(__name__)

REPORT_FORMATS = ["json", "csv", "text", "detailed_text"]


def parse_datetime(dt_string: str) -> datetime:
    """Parse an ISO 8601 date or datetime given on the command line.

    Offsets such as +03:00 are honoured and converted to naive UTC, the
    form timestamps are stored in.

    Args:
        dt_string: Date (YYYY-MM-DD) or datetime (YYYY-MM-DDTHH:MM[:SS][+HH:MM]).

    Returns:
        Naive UTC datetime.

    Raises:
        ValueError: If the string cannot be parsed.
    """
    try:
        return to_naive_utc(datetime.fromisoformat(dt_string.strip()))
    except ValueError:
        raise ValueError(
            f"Unable to parse datetime: {dt_string}. "
            f"Expected YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS, optionally with an offset"
        ) from None


def parse_period_end(dt_string: str) -> datetime:
    """Parse a period end; a bare date covers the whole day."""
    end_time = parse_datetime(dt_string)
    if len(dt_string.strip()) == len("YYYY-MM-DD"):
        end_time += timedelta(days=1) - timedelta(seconds=1)
    return end_time


def exit_code_for(report: ReconciliationReport) -> int:
    """Map a report to the CLI exit code."""
    if report.status == ReconciliationStatus.FAILED:
        logger.error(f"Reconciliation failed: {report.error_message}")
        return 2
    if report.partial_failure or report.unmatched_a or report.unmatched_b:
        logger.warning(
            f"Reconciliation left {len(report.unmatched_a)} idex and "
            f"{len(report.unmatched_b)} bybit records unmatched; "
            f"{len(report.failed_cabinets)} cabinets failed"
        )
        return 1
    return 0


def _emit(output: str, output_file: Optional[str]) -> None:
    if not output_file:
        print(output)
        return
    with open(output_file, "w") as f:
        f.write(output)
    logger.info(f"Report written to {output_file}")


async def run_reconciliation_async(
    start_time: datetime,
    end_time: datetime,
    operator_id: Optional[int] = None,
    cabinet_windows: Optional[str] = None,
    output_file: Optional[str] = None,
    output_format: str = "json",
    include_details: bool = True,
) -> int:
    """Reconcile a period against the database named by DATABASE_URL.

    Args:
        start_time: Start of the reporting period.
        end_time: End of the reporting period.
        operator_id: Operator whose stored work sessions are reconciled.
        cabinet_windows: Cabinet window configuration used instead of stored sessions.
        output_file: Write the report here instead of stdout.
        output_format: One of REPORT_FORMATS.
        include_details: Include matched and unmatched records.

    Returns:
        Exit code.
    """
    engine = create_async_engine()
    session_factory = get_async_session_factory(engine)
    service = ReconciliationService(
        fetchers=get_record_fetchers(session_factory),
        session_source=SqlWorkSessionSource(session_factory),
        settings=get_settings(),
    )

    try:
        report = await service.run_reconciliation(ReconciliationRequest(
            operator_id=operator_id,
            period_start=start_time,
            period_end=end_time,
            cabinet_windows=cabinet_windows,
            include_details=include_details,
        ))
    finally:
        await engine.dispose()

    _emit(service.generate_report(report, format=output_format, include_details=include_details), output_file)
    return exit_code_for(report)


def show_windows(
    config_text: str,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
) -> int:
    """Print the query windows built from a cabinet window configuration.

    Returns:
        Exit code (1 when no window could be built).
    """
    builder = WindowBuilder(get_settings().clock_skew)
    windows = builder.parse_windows(config_text, period_start=start_time, period_end=end_time)
    print(json.dumps(windows.model_dump(mode="json"), indent=2))

    if windows.rejected_entries:
        logger.warning(f"{windows.rejected_entries} configuration entries were rejected")
    return 1 if windows.is_empty else 0


def _read_text(path: str) -> Optional[str]:
    try:
        with open(path) as f:
            return f.read()
    except OSError as e:
        logger.error(f"Cannot read {path}: {e}")
        return None


def _cmd_windows(args: argparse.Namespace, start_time, end_time) -> int:
    config_text = _read_text(args.config)
    if config_text is None:
        return 1
    return show_windows(config_text, start_time, end_time)


def _cmd_reconcile(args: argparse.Namespace, start_time, end_time) -> int:
    cabinet_windows = None
    if args.windows_file:
        cabinet_windows = _read_text(args.windows_file)
        if cabinet_windows is None:
            return 1
    elif args.operator is None:
        logger.error("Either --operator or --windows-file is required")
        return 1

    return asyncio.run(run_reconciliation_async(
        start_time=start_time,
        end_time=end_time,
        operator_id=args.operator,
        cabinet_windows=cabinet_windows,
        output_file=args.output,
        output_format=args.format,
        include_details=not args.summary_only,
    ))


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="shift-recon",
        description="Reconcile idex and bybit transactions against operator work sessions.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at debug level")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    reconcile = subparsers.add_parser("reconcile", help="Reconcile a period and print the report")
    source = reconcile.add_mutually_exclusive_group()
    source.add_argument("--operator", type=int, help="Operator whose stored work sessions are used")
    source.add_argument("--windows-file", help="Cabinet window JSON used instead of stored work sessions")
    reconcile.add_argument("--start", "-s", required=True, help="Period start (ISO 8601 date or datetime)")
    reconcile.add_argument("--end", "-e", required=True, help="Period end; a bare date includes the whole day")
    reconcile.add_argument("--output", "-o", help="Write the report to this file instead of stdout")
    reconcile.add_argument("--format", "-f", choices=REPORT_FORMATS, default="json",
                           help="Report format (default: json)")
    reconcile.add_argument("--summary-only", action="store_true",
                           help="Leave matched and unmatched records out of the report")
    reconcile.set_defaults(handler=_cmd_reconcile)

    windows = subparsers.add_parser("windows", help="Preview the query windows of a cabinet window file")
    windows.add_argument("--config", "-c", required=True, help="Cabinet window JSON file")
    windows.add_argument("--start", "-s", help="Clip windows to start no earlier than this")
    windows.add_argument("--end", "-e", help="Clip windows to end no later than this")
    windows.set_defaults(handler=_cmd_windows)

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

    logging.basicConfig(
        level=logging.DEBUG if parsed_args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if not parsed_args.command:
        parser.print_help()
        return 1

    try:
        start_time = parse_datetime(parsed_args.start) if parsed_args.start else None
        end_time = parse_period_end(parsed_args.end) if parsed_args.end else None
        if start_time and end_time and start_time > end_time:
            raise ValueError("--start must not be after --end")
        get_settings()
    except ValueError as e:
        logger.error(str(e))
        return 1

    return parsed_args.handler(parsed_args, start_time, end_time)


if __name__ == "__main__":
    sys.exit(main())
