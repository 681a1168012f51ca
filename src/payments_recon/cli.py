#!/usr/bin/env python3
"""Command-line interface for reconciliation and recovery.

Usage:
    payments-recon reconcile statement.xlsx --format text
    payments-recon ingest statement.csv
    payments-recon diagnose
    payments-recon soft-cancel --start 2024-01-01 --end 2024-01-31 --status pending
    payments-recon soft-cancel --start 2024-01-01 --end 2024-01-31 --execute --confirm-large
    payments-recon resync --start 2024-01-01 --execute
    payments-recon recover --uid 6f1c2a8e-3b4d-4e5f-8a9b-0c1d2e3f4a5b --execute

Recovery commands preview by default and change nothing unless ``--execute``
is given. Exit codes: 0 clean, 1 findings or usage error, 2 failure.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from .config import RecoverySettings
from .database import create_all_tables, create_async_engine, get_async_session_factory, get_database_url
from .errors import ReconciliationError, ValidationError
from .ingestion.service import IngestionService
from .reconciliation.models import ReconciliationStatus
from .reconciliation.report import diagnostics_to_text
from .reconciliation.service import ReconciliationService
from .recovery.models import DateRange, RecoveryAction, RecoveryPlanView, RecoveryResult
from .recovery.provider_client import get_provider_client
from .recovery.service import RecoveryService

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FINDINGS = 1
EXIT_FAILURE = 2


def parse_datetime(dt_string: str) -> datetime:
    """Parse datetime string in various formats.

    Args:
        dt_string: Datetime string in ISO format or date format.

    Returns:
        Parsed datetime object.

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


def parse_range(start: Optional[str], end: Optional[str]) -> DateRange:
    """Build a DateRange; a bare end date covers the whole day."""
    start_time = parse_datetime(start) if start else None
    end_time = parse_datetime(end) if end else None
    if end_time is not None and "T" not in end and " " not in end:
        end_time = end_time + timedelta(days=1) - timedelta(seconds=1)
    return DateRange(start=start_time, end=end_time)


def _emit(output: str, output_file: Optional[str]) -> None:
    if output_file:
        Path(output_file).write_text(output, encoding="utf-8")
        logger.info(f"Report written to {output_file}")
    else:
        print(output)


def _dump(model) -> str:
    return json.dumps(model.model_dump(mode="json"), indent=2, ensure_ascii=False)


class _Runtime:
    """Engine and session factory for one CLI invocation."""

    def __init__(self):
        self.engine = create_async_engine(database_url=get_database_url())
        self.session_factory = get_async_session_factory(self.engine)
        self.settings = RecoverySettings.from_env()

    async def __aenter__(self):
        await create_all_tables(self.engine)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.engine.dispose()


async def cmd_reconcile(args: argparse.Namespace) -> int:
    window = parse_range(args.start, args.end)
    content = Path(args.file).read_bytes()
    async with _Runtime() as rt:
        async with rt.session_factory() as session:
            service = ReconciliationService(session, rt.settings)
            report = await service.reconcile_file(content, Path(args.file).name, window.start, window.end)
            _emit(
                service.generate_report(report, format=args.format, include_details=not args.summary_only),
                args.output,
            )

    if report.status != ReconciliationStatus.COMPLETED:
        logger.error(f"Reconciliation failed: {report.error_message}")
        return EXIT_FAILURE
    if report.has_findings:
        logger.warning(
            f"Reconciliation completed with issues: "
            f"{report.missing_in_ledger_count} missing in ledger, "
            f"{report.extra_in_ledger_count} extra in ledger, "
            f"{report.status_mismatch_count + report.amount_mismatch_count + report.type_mismatch_count} mismatches"
        )
        return EXIT_FINDINGS
    return EXIT_OK


async def cmd_ingest(args: argparse.Namespace) -> int:
    content = Path(args.file).read_bytes()
    async with _Runtime() as rt:
        async with rt.session_factory() as session:
            result = await IngestionService(session, rt.settings).ingest_statement(content, Path(args.file).name)
            await session.commit()
    _emit(_dump(result), args.output)
    return EXIT_FINDINGS if result.invalid_rows else EXIT_OK


async def cmd_diagnose(args: argparse.Namespace) -> int:
    async with _Runtime() as rt:
        async with rt.session_factory() as session:
            report = await ReconciliationService(session, rt.settings).run_diagnostics()
    output = diagnostics_to_text(report) if args.format == "text" else _dump(report)
    _emit(output, args.output)
    return EXIT_FINDINGS if report.records else EXIT_OK


def _plan_exit(view: RecoveryPlanView) -> Optional[int]:
    """Exit code when a preview cannot proceed, else None."""
    if view.stop_reason:
        logger.warning(f"Preview stopped: {view.stop_reason}")
        return EXIT_FINDINGS
    if not view.executable:
        logger.warning(f"Plan {view.plan_id} is not executable ({view.action.value if view.action else view.state.value})")
        return EXIT_FINDINGS
    return None


def _result_exit(result: RecoveryResult) -> int:
    if result.errors or result.count(RecoveryAction.CONFLICT):
        return EXIT_FINDINGS
    return EXIT_OK


async def _run_recovery(args: argparse.Namespace, preview, execute) -> int:
    async with _Runtime() as rt:
        async with get_provider_client(rt.settings) as client:
            async with rt.session_factory() as session:
                service = RecoveryService(session, client=client, settings=rt.settings)
                view = await preview(service)
                await session.commit()
                print(_dump(view))

                blocked = _plan_exit(view)
                if not args.execute:
                    return blocked if blocked is not None else EXIT_OK
                if blocked is not None:
                    return blocked

                result = await execute(service, view.plan_id)
                await session.commit()
                print(_dump(result))
                return _result_exit(result)


async def cmd_soft_cancel(args: argparse.Namespace) -> int:
    window = parse_range(args.start, args.end)
    return await _run_recovery(
        args,
        lambda s: s.preview_soft_cancel(
            window,
            statuses=args.status or None,
            source_channels=args.channel or None,
            confirm_large=args.confirm_large,
        ),
        lambda s, plan_id: s.execute_soft_cancel(plan_id),
    )


async def cmd_resync(args: argparse.Namespace) -> int:
    window = parse_range(args.start, args.end)
    return await _run_recovery(
        args,
        lambda s: s.preview_bulk_resync(window, confirm_large=args.confirm_large),
        lambda s, plan_id: s.execute_bulk_resync(plan_id),
    )


async def cmd_recover(args: argparse.Namespace) -> int:
    return await _run_recovery(
        args,
        lambda s: s.preview_recovery(uid=args.uid, tracking_id=args.tracking_id),
        lambda s, plan_id: s.execute_recovery(plan_id),
    )


COMMANDS = {
    "reconcile": cmd_reconcile,
    "ingest": cmd_ingest,
    "diagnose": cmd_diagnose,
    "soft-cancel": cmd_soft_cancel,
    "resync": cmd_resync,
    "recover": cmd_recover,
}


def _add_window(parser: argparse.ArgumentParser, required: bool = False) -> None:
    parser.add_argument(
        "--start", "-s",
        required=required,
        help="Start date/time (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)",
    )
    parser.add_argument(
        "--end", "-e",
        help="End date/time (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)",
    )


def _add_execute(parser: argparse.ArgumentParser, bulk: bool = True) -> None:
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Execute the plan after previewing it (default: preview only)",
    )
    if bulk:
        parser.add_argument(
            "--confirm-large",
            action="store_true",
            help="Proceed even when the candidate count exceeds the safety threshold",
        )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="payments-recon",
        description="Reconcile provider statements with the ledger and recover lost transactions.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    reconcile_parser = subparsers.add_parser("reconcile", help="Diff a statement file against the ledger")
    reconcile_parser.add_argument("file", help="CSV or XLSX statement export")
    _add_window(reconcile_parser)
    reconcile_parser.add_argument("--output", "-o", help="Output file path (default: stdout)")
    reconcile_parser.add_argument(
        "--format", "-f",
        choices=["json", "csv", "text", "detailed_text"],
        default="json",
        help="Output format (default: json)",
    )
    reconcile_parser.add_argument(
        "--summary-only",
        action="store_true",
        help="Only include summary statistics, not sample records",
    )

    ingest_parser = subparsers.add_parser("ingest", help="Import a statement file into the transaction store")
    ingest_parser.add_argument("file", help="CSV or XLSX statement export")
    ingest_parser.add_argument("--output", "-o", help="Output file path (default: stdout)")

    diagnose_parser = subparsers.add_parser("diagnose", help="Scan paid orders for ledger anomalies")
    diagnose_parser.add_argument("--format", "-f", choices=["json", "text"], default="text")
    diagnose_parser.add_argument("--output", "-o", help="Output file path (default: stdout)")

    cancel_parser = subparsers.add_parser("soft-cancel", help="Soft-cancel stored records by status and date")
    _add_window(cancel_parser)
    cancel_parser.add_argument(
        "--status",
        action="append",
        help="Normalized status to cancel; repeatable (default: pending)",
    )
    cancel_parser.add_argument(
        "--channel",
        action="append",
        help="Only records first seen on this source channel; repeatable",
    )
    _add_execute(cancel_parser)

    resync_parser = subparsers.add_parser("resync", help="Re-fetch incomplete stored records from the provider")
    _add_window(resync_parser)
    _add_execute(resync_parser)

    recover_parser = subparsers.add_parser("recover", help="Recover one transaction from the provider")
    recover_parser.add_argument("--uid", help="Provider transaction UID")
    recover_parser.add_argument("--tracking-id", help="Merchant tracking id")
    _add_execute(recover_parser, bulk=False)

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
        return EXIT_FINDINGS

    if parsed_args.command == "recover" and not (parsed_args.uid or parsed_args.tracking_id):
        logger.error("recover needs --uid or --tracking-id")
        return EXIT_FINDINGS

    try:
        return asyncio.run(COMMANDS[parsed_args.command](parsed_args))
    except (ValueError, ValidationError) as e:
        logger.error(str(e))
        return EXIT_FINDINGS
    except (ReconciliationError, OSError) as e:
        logger.error(f"{parsed_args.command} failed: {e}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
