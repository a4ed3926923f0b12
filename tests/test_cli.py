"""Tests for the reconciliation CLI."""

import json
import os
from unittest.mock import patch

import pytest

from payroll_recon.database import Base, create_async_engine, get_async_session_factory
from payroll_recon.reconciliation import InMemoryFileReader
from payroll_recon.reconciliation.cli import (
    EXIT_ERROR,
    EXIT_OK,
    EXIT_OPEN_EXCEPTIONS,
    create_parser,
    main,
    run_reconciliation_async,
)

from sample_files import SOURCE_FIXTURES, storage_uri_for

SHORT_BANK_CSV = (
    "Payee,Amount,Reference\n"
    "Ann Smith,150.00,SAL JAN\n"
    "Bob Jones,100.00,SAL JAN\n"
)


@pytest.fixture
async def cli_database(tmp_path, seed_pay_run):
    """Seed a file-backed database and point DATABASE_URL at it."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    engine = create_async_engine(database_url=url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    seeded = await seed_pay_run(get_async_session_factory(engine))
    await engine.dispose()

    with patch.dict(os.environ, {"DATABASE_URL": url}):
        yield seeded


def reader_with(**overrides):
    files = {
        storage_uri_for(source_type): contents
        for source_type, (contents, _) in SOURCE_FIXTURES.items()
    }
    for source_type, contents in overrides.items():
        files[storage_uri_for(source_type)] = contents
    return InMemoryFileReader(files)


class TestParser:
    """Tests for argument parsing."""

    def test_reconcile_defaults(self):
        """Test default options for the reconcile command."""
        args = create_parser().parse_args(["reconcile", "--firm-id", "f1", "--pay-run-id", "p1"])
        assert args.role == "PREPARER"
        assert args.user_id == "cli"
        assert args.format == "json"
        assert args.summary_only is False
        assert args.output is None

    def test_system_role_not_offered(self):
        """Test that SYSTEM cannot be chosen on the command line."""
        with pytest.raises(SystemExit):
            create_parser().parse_args(["reconcile", "--firm-id", "f1", "--pay-run-id", "p1", "--role", "SYSTEM"])

    def test_no_command(self):
        """Test that running without a command prints help and fails."""
        assert main([]) == EXIT_ERROR

    def test_main_passes_options(self):
        """Test that parsed options reach the runner."""
        with patch("payroll_recon.reconciliation.cli.run_reconciliation", return_value=EXIT_OK) as runner:
            code = main([
                "reconcile", "--firm-id", "f1", "--pay-run-id", "p1",
                "--role", "REVIEWER", "--format", "text", "--summary-only", "-o", "out.txt",
            ])
        assert code == EXIT_OK
        runner.assert_called_once_with(
            firm_id="f1",
            pay_run_id="p1",
            role="REVIEWER",
            user_id="cli",
            output_file="out.txt",
            output_format="text",
            include_details=False,
            base_dir=None,
        )


class TestRunReconciliationAsync:
    """Tests for the CLI runner against a seeded database."""

    async def test_clean_run(self, cli_database, tmp_path):
        """Test a balanced pay run exits 0 and writes the report."""
        output = tmp_path / "report.json"
        code = await run_reconciliation_async(
            firm_id=cli_database.firm.id,
            pay_run_id=cli_database.pay_run.id,
            output_file=str(output),
            file_reader=reader_with(),
        )
        assert code == EXIT_OK
        report = json.loads(output.read_text())
        assert report["run_number"] == 1
        assert report["statistics"]["failed"] == 0

    async def test_open_exceptions(self, cli_database, capsys):
        """Test that open exceptions exit 1 and print to stdout."""
        code = await run_reconciliation_async(
            firm_id=cli_database.firm.id,
            pay_run_id=cli_database.pay_run.id,
            output_format="text",
            file_reader=reader_with(BANK=SHORT_BANK_CSV),
        )
        assert code == EXIT_OPEN_EXCEPTIONS
        out = capsys.readouterr().out
        assert "[FAIL] CHK_REGISTER_NET_TO_BANK_TOTAL" in out

    async def test_engine_error(self, cli_database):
        """Test that engine errors exit 2."""
        code = await run_reconciliation_async(
            firm_id=cli_database.firm.id,
            pay_run_id="missing-pay-run",
            file_reader=reader_with(),
        )
        assert code == EXIT_ERROR
