#!/usr/bin/env python3
"""Command-line interface for payroll reconciliation.

This CLI runs the check catalogue against a pay run's latest imports and
prints the run report. Import storage URIs are read as local CSV files.

Usage:
    python -m payroll_recon.reconciliation.cli reconcile --firm-id F --pay-run-id P
    python -m payroll_recon.reconciliation.cli reconcile --firm-id F --pay-run-id P --format text --output report.txt

Exit codes:
    0: run completed with no open exceptions
    1: run completed with open exceptions
    2: the run could not be completed
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from ..audit import LoggingAuditRecorder
from ..config import get_settings
from ..database import (
    Base,
    create_async_engine,
    get_async_session_factory,
)
from ..errors import ReconciliationError
from ..permissions import Role
from .file_reader import FileReaderBase, get_file_reader
from .models import Actor
from .service import ReconciliationService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_OPEN_EXCEPTIONS = 1
EXIT_ERROR = 2


async def run_reconciliation_async(
    firm_id: str,
    pay_run_id: str,
    role: str = Role.PREPARER.value,
    user_id: str = "cli",
    output_file: Optional[str] = None,
    output_format: str = "json",
    include_details: bool = True,
    base_dir: Optional[str] = None,
    file_reader: Optional[FileReaderBase] = None,
) -> int:
    """Run reconciliation asynchronously.

    Args:
        firm_id: Caller's firm.
        pay_run_id: Pay run to reconcile.
        role: Caller's role.
        user_id: Recorded as the run's executor.
        output_file: Optional output file path.
        output_format: Output format ('json', 'csv', 'text').
        include_details: Include check results and exceptions in JSON output.
        base_dir: Directory relative storage URIs are resolved against.
        file_reader: Reader override; defaults to local CSV files.

    Returns:
        Exit code.
    """
    settings = get_settings()
    engine = create_async_engine(database_url=settings.database_url)

    # Create tables if they don't exist
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = get_async_session_factory(engine)
    actor = Actor(firm_id=firm_id, user_id=user_id, role=Role(role))

    try:
        service = ReconciliationService(
            session_factory,
            file_reader=file_reader or get_file_reader("csv", base_dir=base_dir),
            audit=LoggingAuditRecorder(firm_id=firm_id, actor_id=user_id),
            settings=settings,
        )

        logger.info(f"Starting reconciliation for pay run {pay_run_id}")
        try:
            outcome = await service.run_reconciliation(actor, pay_run_id)
            report = await service.get_run_report(actor, outcome.run_id)
        except ReconciliationError as e:
            logger.error(f"Reconciliation failed: {e.code} {e.message}")
            return EXIT_ERROR

        output = service.generate_report(
            report=report,
            format=output_format,
            include_details=include_details,
        )

        if output_file:
            with open(output_file, 'w') as f:
                f.write(output)
            logger.info(f"Report written to {output_file}")
        else:
            print(output)

        open_exceptions = report.open_exception_count()
        if open_exceptions > 0:
            logger.warning(f"Reconciliation completed with {open_exceptions} open exception(s)")
            return EXIT_OPEN_EXCEPTIONS
        return EXIT_OK

    finally:
        await engine.dispose()


def run_reconciliation(
    firm_id: str,
    pay_run_id: str,
    role: str = Role.PREPARER.value,
    user_id: str = "cli",
    output_file: Optional[str] = None,
    output_format: str = "json",
    include_details: bool = True,
    base_dir: Optional[str] = None,
) -> int:
    """Run reconciliation (sync wrapper).

    Returns:
        Exit code.
    """
    return asyncio.run(run_reconciliation_async(
        firm_id=firm_id,
        pay_run_id=pay_run_id,
        role=role,
        user_id=user_id,
        output_file=output_file,
        output_format=output_format,
        include_details=include_details,
        base_dir=base_dir,
    ))


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="payroll-recon",
        description="Payroll reconciliation: register, bank, journal and statutory tie-outs.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Reconcile command
    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Run reconciliation for a pay run",
    )
    reconcile_parser.add_argument(
        "--firm-id",
        required=True,
        help="Firm the pay run belongs to",
    )
    reconcile_parser.add_argument(
        "--pay-run-id",
        required=True,
        help="Pay run to reconcile",
    )
    reconcile_parser.add_argument(
        "--role",
        choices=[Role.ADMIN.value, Role.PREPARER.value, Role.REVIEWER.value],
        default=Role.PREPARER.value,
        help="Role to run as (default: PREPARER)",
    )
    reconcile_parser.add_argument(
        "--user-id",
        default="cli",
        help="User recorded as the run's executor (default: cli)",
    )
    reconcile_parser.add_argument(
        "--base-dir",
        help="Directory relative import storage URIs are resolved against",
    )
    reconcile_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )
    reconcile_parser.add_argument(
        "--format", "-f",
        choices=["json", "csv", "text"],
        default="json",
        help="Output format (default: json)",
    )
    reconcile_parser.add_argument(
        "--summary-only",
        action="store_true",
        help="Only include summary statistics, not check results",
    )

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
        return EXIT_ERROR

    if parsed_args.command == "reconcile":
        return run_reconciliation(
            firm_id=parsed_args.firm_id,
            pay_run_id=parsed_args.pay_run_id,
            role=parsed_args.role,
            user_id=parsed_args.user_id,
            output_file=parsed_args.output,
            output_format=parsed_args.format,
            include_details=not parsed_args.summary_only,
            base_dir=parsed_args.base_dir,
        )

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
