"""Integration tests for reconciliation runs."""

import json
from unittest.mock import patch

import pytest

from payroll_recon.audit import InMemoryAuditRecorder

from payroll_recon.config import Settings
from payroll_recon.database import (
    CheckStatus,
    ExceptionRepository,
    ReconciliationRunRepository,
    PayRunRepository,
    PayRunStatus,
    RunStatus,
    transaction,
)
from payroll_recon.errors import NotFoundError, PermissionDeniedError, ValidationError
from payroll_recon.permissions import Role
from payroll_recon.reconciliation import ExpectedVarianceService
from payroll_recon.reconciliation.service import ReconciliationService
from payroll_recon.services import ImportService, PayRunService

from sample_files import storage_uri_for

SHORT_BANK_CSV = (
    "Payee,Amount,Reference\n"
    "Ann Smith,150.00,SAL JAN\n"
    "Bob Jones,100.00,SAL JAN\n"
)

DUPLICATE_BANK_CSV = (
    "Payee,Amount,Reference\n"
    "Ann Smith,150.00,SAL JAN\n"
    "Ann Smith,150.00,SAL JAN\n"
)


@pytest.fixture
def recon_service(session_factory, file_reader, audit):
    """ReconciliationService over the test database and in-memory files."""
    return ReconciliationService(
        session_factory,
        file_reader=file_reader,
        audit=audit,
        settings=Settings(file_read_attempts=1, file_read_delay_ms=0),
    )


async def load_pay_run(session_factory, seeded):
    async with transaction(session_factory) as session:
        return await PayRunRepository(session).get_for_firm(seeded.firm.id, seeded.pay_run.id)


def statuses(report):
    return {result.check_type: result.status for result in report.check_results}


class SinkDownError(RuntimeError):
    pass


class BrokenAuditRecorder(InMemoryAuditRecorder):
    """Buffers events like InMemoryAuditRecorder but raises on ``failing_action``."""

    def __init__(self, failing_action):
        super().__init__()
        self.failing_action = failing_action

    async def record(self, action, entity_type, entity_id, metadata=None):
        await super().record(action, entity_type, entity_id, metadata)
        if action == self.failing_action:
            raise SinkDownError(f"{action} {metadata}")


def service_with(session_factory, file_reader, audit):
    return ReconciliationService(
        session_factory,
        file_reader=file_reader,
        audit=audit,
        settings=Settings(file_read_attempts=1, file_read_delay_ms=0),
    )


class TestRunReconciliation:
    """Tests for executing the check catalogue."""

    async def test_balanced_pay_run(self, session_factory, seed_pay_run, recon_service, audit):
        """Test a clean run over register, bank and GL."""
        seeded = await seed_pay_run(session_factory)

        outcome = await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)

        assert outcome.run_number == 1
        assert outcome.check_count == 12
        assert outcome.exception_count == 0

        report = await recon_service.get_run_report(seeded.actor, outcome.run_id)
        assert report.status == RunStatus.SUCCESS.value
        assert report.bundle_id == "BUNDLE_UK"
        assert report.executed_by == "preparer-1"
        assert report.check_results[0].check_type == "CHK_REGISTER_NET_TO_BANK_TOTAL"
        counts = report.count_by_status()
        assert counts == {"PASS": 10, "WARN": 2, "FAIL": 0}
        assert statuses(report)["CHK_REGISTER_DEDUCTIONS_TO_STATUTORY_TOTALS"] == CheckStatus.WARN
        assert set(report.input_summary) == {"REGISTER", "BANK", "GL"}
        assert report.input_summary["BANK"]["template_id"] == seeded.templates["BANK"].template_id

        pay_run = await load_pay_run(session_factory, seeded)
        assert pay_run.status == PayRunStatus.RECONCILED.value
        assert pay_run.last_run_number == 1

        assert "RECONCILIATION_STARTED" in audit.actions()
        completed = audit.by_action("RECONCILIATION_COMPLETED")
        assert completed[0].metadata == {"status": "SUCCESS", "run_number": 1, "exceptions": 0}
        assert audit.by_action("PAY_RUN_STATE_CHANGED")[-1].metadata == {"from": "RECONCILING", "to": "RECONCILED"}

    async def test_all_sources_pass(self, session_factory, seed_pay_run, recon_service):
        """Test that optional statutory and pension imports are used when mapped."""
        seeded = await seed_pay_run(
            session_factory, sources=["REGISTER", "BANK", "GL", "STATUTORY", "PENSION_SCHEDULE"],
        )
        outcome = await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)
        report = await recon_service.get_run_report(seeded.actor, outcome.run_id)
        assert report.count_by_status()["PASS"] == 12
        assert "STATUTORY" in report.input_summary

    async def test_bank_shortfall_opens_exception(self, session_factory, seed_pay_run, recon_service, file_reader, audit):
        """Test that a 50.00 bank shortfall raises one critical bank exception."""
        seeded = await seed_pay_run(session_factory)
        file_reader.put(storage_uri_for("BANK"), SHORT_BANK_CSV)

        outcome = await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)
        report = await recon_service.get_run_report(seeded.actor, outcome.run_id)

        assert outcome.exception_count == 1
        net = report.check_results[0]
        assert net.status == CheckStatus.FAIL
        assert net.details["delta_value"] == 50.0
        assert net.evidence[1]["import_id"] == seeded.imports["BANK"].id
        exception = report.exceptions[0]
        assert exception.category == "BANK_MISMATCH"
        assert exception.severity == "CRITICAL"
        assert exception.status == "OPEN"
        assert audit.by_action("EXCEPTION_CREATED")[0].entity_id == exception.id

    async def test_expected_variance_downgrades_failure(self, session_factory, seed_pay_run, recon_service, file_reader, audit):
        """Test that a matching expected variance turns the failure into a warning."""
        seeded = await seed_pay_run(session_factory)
        file_reader.put(storage_uri_for("BANK"), SHORT_BANK_CSV)
        reviewer = seeded.actor.model_copy(update={"role": Role.REVIEWER, "user_id": "reviewer-1"})
        async with transaction(session_factory) as session:
            variance = await ExpectedVarianceService(session, audit).create(
                reviewer,
                seeded.client.id,
                "DIRECTORS_SEPARATE",
                effect={"downgradeTo": "WARN", "requiresNote": True},
                condition={"amountBounds": {"max": 60}},
                check_type="CHK_REGISTER_NET_TO_BANK_TOTAL",
            )

        outcome = await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)
        report = await recon_service.get_run_report(seeded.actor, outcome.run_id)

        assert outcome.exception_count == 0
        net = report.check_results[0]
        assert net.status == CheckStatus.WARN
        assert net.severity.value == "LOW"
        assert net.summary.endswith("Expected variance applied.")
        assert net.details["expected_variance"]["id"] == variance.id

    async def test_duplicate_bank_payments(self, session_factory, seed_pay_run, recon_service, file_reader):
        """Test that duplicate bank rows open a data quality exception."""
        seeded = await seed_pay_run(session_factory)
        file_reader.put(storage_uri_for("BANK"), DUPLICATE_BANK_CSV)

        outcome = await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)
        report = await recon_service.get_run_report(seeded.actor, outcome.run_id)

        assert [e.category for e in report.exceptions] == ["BANK_DATA_QUALITY"]
        assert report.exceptions[0].check_type == "CHK_BANK_DUPLICATE_PAYMENTS"
        assert statuses(report)["CHK_REGISTER_NET_TO_BANK_TOTAL"] == CheckStatus.PASS

    async def test_rerun_supersedes_previous_run(self, session_factory, seed_pay_run, recon_service, file_reader, audit):
        """Test that a new run supersedes the previous run and its open exceptions."""
        seeded = await seed_pay_run(session_factory)
        file_reader.put(storage_uri_for("BANK"), SHORT_BANK_CSV)
        first = await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)

        file_reader.put(storage_uri_for("BANK"), SHORT_BANK_CSV.replace("100.00", "150.00"))
        second = await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)

        assert second.run_number == 2
        first_report = await recon_service.get_run_report(seeded.actor, first.run_id)
        second_report = await recon_service.get_run_report(seeded.actor, second.run_id)
        assert first_report.superseded_by_run_id == second.run_id
        assert first_report.superseded_at == second_report.created_at
        assert second_report.superseded_at is None

        runs = await recon_service.list_runs(seeded.actor, seeded.pay_run.id)
        assert [run.run_number for run in runs] == [2, 1]

        async with transaction(session_factory) as session:
            exception_repo = ExceptionRepository(session)
            current = await exception_repo.list_for_pay_run(seeded.pay_run.id)
            everything = await exception_repo.list_for_pay_run(seeded.pay_run.id, include_superseded=True)
        assert current == []
        assert len(everything) == 1
        assert everything[0].superseded_by_run_id == second.run_id

        latest = await recon_service.latest_run_report(seeded.actor, seeded.pay_run.id)
        assert latest.run_id == second.run_id


class TestRunFailures:
    """Tests for failures once a run has started."""

    async def test_failure_after_run_row_marks_run_failed(self, session_factory, seed_pay_run, file_reader):
        """Test that a failure after persisting marks the run FAILED and re-raises the cause."""
        seeded = await seed_pay_run(session_factory)
        file_reader.put(storage_uri_for("BANK"), SHORT_BANK_CSV)
        audit = BrokenAuditRecorder("EXCEPTION_CREATED")
        service = service_with(session_factory, file_reader, audit)

        with pytest.raises(SinkDownError, match="EXCEPTION_CREATED"):
            await service.run_reconciliation(seeded.actor, seeded.pay_run.id)

        async with transaction(session_factory) as session:
            runs = await ReconciliationRunRepository(session).list_runs(seeded.pay_run.id)
        assert [(run.run_number, run.status) for run in runs] == [(1, RunStatus.FAILED.value)]
        completed = audit.by_action("RECONCILIATION_COMPLETED")
        assert [event.metadata["status"] for event in completed] == ["SUCCESS", "FAILED"]
        assert completed[-1].entity_id == runs[0].id

    async def test_failing_audit_sink_keeps_original_error(self, session_factory, seed_pay_run, file_reader):
        """Test that a failing FAILED-completion audit does not replace the original error."""
        seeded = await seed_pay_run(session_factory)
        audit = BrokenAuditRecorder("RECONCILIATION_COMPLETED")
        service = service_with(session_factory, file_reader, audit)

        with pytest.raises(SinkDownError) as exc_info:
            await service.run_reconciliation(seeded.actor, seeded.pay_run.id)

        assert "SUCCESS" in str(exc_info.value)
        async with transaction(session_factory) as session:
            runs = await ReconciliationRunRepository(session).list_runs(seeded.pay_run.id)
        assert runs[0].status == RunStatus.FAILED.value
        assert [event.metadata["status"] for event in audit.by_action("RECONCILIATION_COMPLETED")] == [
            "SUCCESS",
            "FAILED",
        ]

    async def test_persist_failure_leaves_pay_run_reconciling(self, session_factory, seed_pay_run, recon_service, audit):
        """Test that a failed persist writes no run and blocks reruns until the status is repaired."""
        seeded = await seed_pay_run(session_factory)

        with patch.object(ReconciliationRunRepository, "create_run", side_effect=RuntimeError("connection reset")):
            with pytest.raises(RuntimeError, match="connection reset"):
                await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)

        pay_run = await load_pay_run(session_factory, seeded)
        assert pay_run.status == PayRunStatus.RECONCILING.value
        assert pay_run.last_run_number == 0
        assert await recon_service.list_runs(seeded.actor, seeded.pay_run.id) == []
        assert "RECONCILIATION_COMPLETED" not in audit.actions()

        with pytest.raises(ValidationError, match="from RECONCILING to RECONCILING for PREPARER"):
            await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)


class TestRunPreconditions:
    """Tests for runs that are refused before any row is written."""

    async def test_missing_required_source(self, session_factory, seed_pay_run, recon_service):
        """Test that every required source must have an import."""
        seeded = await seed_pay_run(session_factory, sources=["REGISTER", "BANK"])
        with pytest.raises(ValidationError, match="Missing GL import for reconciliation."):
            await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)
        assert await recon_service.list_runs(seeded.actor, seeded.pay_run.id) == []

    async def test_unmapped_source(self, session_factory, seed_pay_run, recon_service, audit):
        """Test that the latest import of each required source must be mapped."""
        seeded = await seed_pay_run(session_factory)
        async with transaction(session_factory) as session:
            await ImportService(session, audit).register_version(
                seeded.actor, seeded.pay_run.id, "BANK", "memory://bank-v2.csv", "hash-bank-v2",
            )
        with pytest.raises(ValidationError, match="Mapping required for bank import."):
            await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)

    async def test_statutory_required_by_firm(self, session_factory, seed_pay_run, recon_service):
        """Test that firm defaults can require a statutory import."""
        seeded = await seed_pay_run(session_factory, firm_defaults={"requiredSources": {"statutory": True}})
        with pytest.raises(ValidationError, match="Missing statutory import for reconciliation."):
            await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)

    async def test_locked_pay_run(self, session_factory, seed_pay_run, recon_service, audit):
        """Test that locked pay runs cannot be reconciled."""
        seeded = await seed_pay_run(session_factory)
        await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)

        admin = seeded.actor.model_copy(update={"role": Role.ADMIN})
        async with transaction(session_factory) as session:
            pay_runs = PayRunService(session, audit)
            for status in ("READY_FOR_REVIEW", "APPROVED", "PACKED", "LOCKED"):
                await pay_runs.transition(admin, seeded.pay_run.id, status)

        with pytest.raises(ValidationError, match="Locked pay runs cannot be reconciled."):
            await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)

    async def test_unknown_pay_run(self, session_factory, seed_pay_run, recon_service):
        """Test that pay runs from another firm are not found."""
        seeded = await seed_pay_run(session_factory)
        outsider = seeded.actor.model_copy(update={"firm_id": "other-firm"})
        with pytest.raises(NotFoundError, match="Pay run not found."):
            await recon_service.run_reconciliation(outsider, seeded.pay_run.id)

    async def test_system_actor_cannot_run(self, session_factory, seed_pay_run, recon_service):
        """Test that SYSTEM holds no run permission."""
        seeded = await seed_pay_run(session_factory)
        system = seeded.actor.model_copy(update={"role": Role.SYSTEM})
        with pytest.raises(PermissionDeniedError):
            await recon_service.run_reconciliation(system, seeded.pay_run.id)

    async def test_unreadable_file_writes_nothing(self, session_factory, seed_pay_run, recon_service, file_reader, audit):
        """Test that a file read failure leaves no run and the pay run untouched."""
        seeded = await seed_pay_run(session_factory)
        del file_reader.files[storage_uri_for("BANK")]

        with pytest.raises(NotFoundError, match="Import file not found."):
            await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)

        assert await recon_service.list_runs(seeded.actor, seeded.pay_run.id) == []
        assert (await load_pay_run(session_factory, seeded)).status == PayRunStatus.MAPPED.value
        assert "RECONCILIATION_STARTED" not in audit.actions()

    async def test_malformed_file(self, session_factory, seed_pay_run, recon_service, file_reader):
        """Test that a file without its mapped columns is a validation error."""
        seeded = await seed_pay_run(session_factory)
        file_reader.put(storage_uri_for("BANK"), "Payee,Value\nAnn Smith,150.00\n")
        with pytest.raises(ValidationError, match='Mapped column "Amount" is missing from the latest import.'):
            await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)


class TestReports:
    """Tests for report lookup and formatting."""

    async def test_report_formats(self, session_factory, seed_pay_run, recon_service, file_reader):
        """Test JSON, CSV and text rendering of a run."""
        seeded = await seed_pay_run(session_factory)
        file_reader.put(storage_uri_for("BANK"), SHORT_BANK_CSV)
        outcome = await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)
        report = await recon_service.get_run_report(seeded.actor, outcome.run_id)

        data = json.loads(recon_service.generate_report(report, "json"))
        assert data["statistics"]["failed"] == 1
        assert data["statistics"]["open_exceptions"] == 1
        assert len(data["check_results"]) == 12

        summary = json.loads(recon_service.generate_report(report, "json", include_details=False))
        assert "check_results" not in summary

        lines = recon_service.generate_report(report, "csv").strip().splitlines()
        assert lines[0] == "run_number,check_type,status,severity,left_value,right_value,delta_value,delta_percent,summary"
        assert lines[1].startswith("1,CHK_REGISTER_NET_TO_BANK_TOTAL,FAIL,CRITICAL,300.0,250.0,50.0,16.6667,")

        text = recon_service.generate_report(report, "text")
        assert "PAYROLL RECONCILIATION REPORT" in text
        assert "EXCEPTIONS" in text

        with pytest.raises(ValueError, match="Unsupported report format: xml"):
            recon_service.generate_report(report, "xml")

    async def test_report_scoped_to_firm(self, session_factory, seed_pay_run, recon_service):
        """Test that runs are invisible outside their firm."""
        seeded = await seed_pay_run(session_factory)
        outcome = await recon_service.run_reconciliation(seeded.actor, seeded.pay_run.id)
        outsider = seeded.actor.model_copy(update={"firm_id": "other-firm"})
        with pytest.raises(NotFoundError, match="Reconciliation run not found."):
            await recon_service.get_run_report(outsider, outcome.run_id)

    async def test_no_runs_yet(self, session_factory, seed_pay_run, recon_service):
        """Test the latest report before any run."""
        seeded = await seed_pay_run(session_factory)
        with pytest.raises(NotFoundError, match="No reconciliation runs for this pay run."):
            await recon_service.latest_run_report(seeded.actor, seeded.pay_run.id)
