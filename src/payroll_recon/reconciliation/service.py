"""Service layer for reconciliation runs."""

import logging
from datetime import datetime
from typing import Dict, List, NamedTuple, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..audit import AuditRecorderBase, LoggingAuditRecorder
from ..config import Settings, get_settings
from ..database import (
    AccountClass,
    AccountClassificationRepository,
    CheckResult,
    ExpectedVariance,
    ExpectedVarianceRepository,
    FirmRepository,
    Import,
    ImportRepository,
    MappingTemplate,
    MappingTemplateRepository,
    PayRunRepository,
    PayRunStatus,
    ReconciliationException,
    ReconciliationRun,
    ReconciliationRunRepository,
    RunStatus,
    SourceType,
    transaction,
)
from ..errors import NotFoundError, ValidationError
from ..logging_utils import start_span
from ..permissions import Permission, Role, require_permission
from ..retry import with_retry
from ..services import PayRunService
from .amounts import ParsedImport
from .checks import catalogue_position, evaluate_catalogue
from .extraction import LoadedImport, build_check_inputs, normalize_account_code
from .file_reader import FileReaderBase, get_file_reader
from .mapping import NormalizationRules
from .models import (
    Actor,
    CheckEvaluation,
    CheckResultRecord,
    ExceptionRecord,
    RunOutcome,
    RunReport,
)
from .report import ReportGenerator
from .state import assert_pay_run_transition, is_import_errored, is_pay_run_locked
from .tolerances import ReconciliationConfig, resolve_config
from .variances import apply_expected_variances

logger = logging.getLogger(__name__)

SYSTEM_USER_ID = "system"

SOURCE_LABELS: Dict[SourceType, str] = {
    SourceType.REGISTER: "register",
    SourceType.BANK: "bank",
    SourceType.GL: "GL",
    SourceType.STATUTORY: "statutory",
    SourceType.PENSION_SCHEDULE: "pension schedule",
}

OPTIONAL_SOURCES = (SourceType.STATUTORY, SourceType.PENSION_SCHEDULE)


class SourceSnapshot(NamedTuple):
    """An import chosen for a run and the template it is read with."""
    source_type: SourceType
    record: Import
    template: MappingTemplate


class PreparedRun(NamedTuple):
    """Everything read from the database before any file is opened."""
    firm_id: str
    client_id: str
    pay_run_id: str
    config: ReconciliationConfig
    sources: Dict[SourceType, SourceSnapshot]
    classifications: Dict[str, AccountClass]
    variances: List[ExpectedVariance]

    def input_summary(self) -> Dict[str, Dict[str, object]]:
        return {
            source.value: {
                "import_id": snapshot.record.id,
                "version": snapshot.record.version,
                "template_id": snapshot.template.id,
                "template_version": snapshot.template.version,
            }
            for source, snapshot in self.sources.items()
        }


def system_actor(firm_id: str) -> Actor:
    """Actor used for transitions the engine performs itself."""
    return Actor(firm_id=firm_id, user_id=SYSTEM_USER_ID, role=Role.SYSTEM)


def build_run_report(
    run: ReconciliationRun,
    check_results: List[CheckResult],
    exceptions: List[ReconciliationException],
) -> RunReport:
    """Assemble a RunReport from persisted rows, check results in catalogue order."""
    ordered = sorted(check_results, key=lambda result: catalogue_position(result.check_type))
    return RunReport(
        run_id=run.id,
        pay_run_id=run.pay_run_id,
        run_number=run.run_number,
        status=run.status,
        bundle_id=run.bundle_id,
        bundle_version=run.bundle_version,
        executed_by=run.executed_by,
        created_at=run.created_at,
        completed_at=run.completed_at,
        superseded_at=run.superseded_at,
        superseded_by_run_id=run.superseded_by_run_id,
        input_summary=run.input_summary or {},
        check_results=[
            CheckResultRecord(
                id=result.id,
                check_type=result.check_type,
                check_version=result.check_version,
                status=result.status,
                severity=result.severity,
                summary=result.summary,
                details=result.details or {},
                evidence=result.evidence,
            )
            for result in ordered
        ],
        exceptions=[
            ExceptionRecord(
                id=exception.id,
                check_type=exception.check_type,
                category=exception.category,
                severity=exception.severity,
                status=exception.status,
                title=exception.title,
                description=exception.description,
                evidence=exception.evidence,
                superseded_by_run_id=exception.superseded_by_run_id,
            )
            for exception in sorted(exceptions, key=lambda item: catalogue_position(item.check_type))
        ],
    )


class ReconciliationService:
    """Service for executing and reporting reconciliation runs.

    The service opens its own units of work from ``session_factory``; runs
    never share a session with the caller.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        file_reader: Optional[FileReaderBase] = None,
        audit: Optional[AuditRecorderBase] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize the reconciliation service.

        Args:
            session_factory: Factory for the sessions each unit of work uses.
            file_reader: Reader for stored imports. Defaults to local CSV files.
            audit: Audit recorder. Defaults to logging.
            settings: Runtime settings. Defaults to the environment.
        """
        self.session_factory = session_factory
        self.file_reader = file_reader or get_file_reader("csv")
        self.audit = audit or LoggingAuditRecorder()
        self.settings = settings or get_settings()

    async def run_reconciliation(self, actor: Actor, pay_run_id: str) -> RunOutcome:
        """Execute the check catalogue against a pay run's latest imports.

        Args:
            actor: Calling actor.
            pay_run_id: Pay run to reconcile.

        Returns:
            RunOutcome with the run id, run number and counts.

        Raises:
            PermissionDeniedError: If the role cannot run reconciliations.
            NotFoundError: If the pay run is not in the actor's firm.
            ValidationError: If the pay run is locked, a required import is
                missing, unmapped or errored, or a file is malformed.
        """
        require_permission(actor.role, Permission.RECONCILIATION_RUN)
        span = start_span(
            "RECONCILIATION_RUN",
            log=logger,
            firm_id=actor.firm_id,
            user_id=actor.user_id,
            pay_run_id=pay_run_id,
        )
        run: Optional[ReconciliationRun] = None

        try:
            prepared = await self._prepare(actor, pay_run_id)
            loaded = await self._load_imports(prepared)
            inputs = build_check_inputs(
                register=loaded[SourceType.REGISTER],
                bank=loaded[SourceType.BANK],
                gl=loaded[SourceType.GL],
                classifications=prepared.classifications,
                statutory=loaded.get(SourceType.STATUTORY),
                pension=loaded.get(SourceType.PENSION_SCHEDULE),
            )

            await self._start(actor, prepared)

            evaluations = [
                apply_expected_variances(evaluation, prepared.variances, inputs.bank_payments)
                for evaluation in evaluate_catalogue(inputs, prepared.config.tolerances)
            ]
            run, exceptions = await self._persist_run(actor, prepared, evaluations)
            await self._complete(actor, prepared, run, exceptions)
        except Exception as e:
            span.fail(e, run_id=run.id if run else None)
            if run is not None:
                await self._mark_failed(run)
            raise

        span.end(run_id=run.id, run_number=run.run_number, status=RunStatus.SUCCESS.value)
        return RunOutcome(
            run_id=run.id,
            run_number=run.run_number,
            check_count=len(evaluations),
            exception_count=len(exceptions),
        )

    async def _prepare(self, actor: Actor, pay_run_id: str) -> PreparedRun:
        async with transaction(self.session_factory) as session:
            pay_run = await PayRunRepository(session).get_for_firm(actor.firm_id, pay_run_id)
            if pay_run is None:
                raise NotFoundError("Pay run not found.")
            if is_pay_run_locked(pay_run.status):
                raise ValidationError("Locked pay runs cannot be reconciled.")
            assert_pay_run_transition(pay_run.status, PayRunStatus.RECONCILING, actor.role)

            firm_repo = FirmRepository(session)
            firm = await firm_repo.get_firm(actor.firm_id)
            client = await firm_repo.get_client(actor.firm_id, pay_run.client_id)
            if firm is None or client is None:
                raise NotFoundError("Pay run not found.")

            config = resolve_config(firm.region, firm.defaults, client.settings, pay_run.settings)
            latest = await ImportRepository(session).latest_by_source(pay_run.id)

            chosen: Dict[SourceType, Import] = {}
            for source in config.required_sources:
                record = latest.get(source.value)
                label = SOURCE_LABELS[source]
                if record is None:
                    raise ValidationError(f"Missing {label} import for reconciliation.")
                if is_import_errored(record.parse_status):
                    raise ValidationError(f"The latest {label} import is in an error state.")
                if not record.mapping_template_id:
                    raise ValidationError(f"Mapping required for {label} import.")
                chosen[source] = record

            for source in OPTIONAL_SOURCES:
                record = latest.get(source.value)
                if source in chosen or record is None:
                    continue
                if is_import_errored(record.parse_status) or not record.mapping_template_id:
                    logger.info(f"Skipping unusable {source.value} import {record.id} for pay run {pay_run.id}")
                    continue
                chosen[source] = record

            templates = await MappingTemplateRepository(session).get_many(
                [record.mapping_template_id for record in chosen.values()]
            )
            sources: Dict[SourceType, SourceSnapshot] = {}
            for source, record in chosen.items():
                template = templates.get(record.mapping_template_id)
                if template is None:
                    raise ValidationError(f"Mapping required for {SOURCE_LABELS[source]} import.")
                sources[source] = SourceSnapshot(source, record, template)

            classifications = {
                normalize_account_code(item.account_code): AccountClass(item.classification)
                for item in await AccountClassificationRepository(session).list_for_client(
                    actor.firm_id, client.id,
                )
            }
            variances = await ExpectedVarianceRepository(session).list_active(actor.firm_id, client.id)

        return PreparedRun(
            firm_id=actor.firm_id,
            client_id=client.id,
            pay_run_id=pay_run.id,
            config=config,
            sources=sources,
            classifications=classifications,
            variances=variances,
        )

    async def _load_imports(self, prepared: PreparedRun) -> Dict[SourceType, LoadedImport]:
        loaded: Dict[SourceType, LoadedImport] = {}
        for source, snapshot in prepared.sources.items():
            record, template = snapshot.record, snapshot.template
            context = {
                "firm_id": prepared.firm_id,
                "pay_run_id": prepared.pay_run_id,
                "import_id": record.id,
                "source_type": source.value,
            }

            async def read(uri: str = record.storage_uri, sheet: Optional[str] = template.sheet_name):
                return await self.file_reader.read(uri, sheet_name=sheet, max_rows=self.settings.max_rows)

            data = await with_retry(
                read,
                "IMPORT_READ",
                attempts=self.settings.file_read_attempts,
                delay_ms=self.settings.file_read_delay_ms,
                context=context,
            )
            loaded[source] = LoadedImport(
                import_id=record.id,
                parsed=ParsedImport(data.rows, template.header_row_index),
                column_map=template.column_map,
                normalization_rules=NormalizationRules.from_raw(template.normalization_rules),
            )
        return loaded

    async def _start(self, actor: Actor, prepared: PreparedRun) -> None:
        async with transaction(self.session_factory) as session:
            await PayRunService(session, self.audit).transition(
                actor, prepared.pay_run_id, PayRunStatus.RECONCILING,
            )
        await self.audit.record(
            "RECONCILIATION_STARTED",
            "PayRun",
            prepared.pay_run_id,
            {"bundle_id": prepared.config.bundle_id, "bundle_version": prepared.config.bundle_version},
        )

    async def _persist_run(
        self,
        actor: Actor,
        prepared: PreparedRun,
        evaluations: List[CheckEvaluation],
    ) -> Tuple[ReconciliationRun, List[ReconciliationException]]:
        """Allocate the run number and write the run, its results and exceptions atomically."""
        now = datetime.utcnow()
        exceptions: List[ReconciliationException] = []

        async with transaction(self.session_factory) as session:
            pay_run = await PayRunRepository(session).lock(prepared.pay_run_id)
            pay_run.last_run_number += 1
            run_number = pay_run.last_run_number
            await session.flush()

            run_repo = ReconciliationRunRepository(session)
            run = await run_repo.create_run(
                firm_id=prepared.firm_id,
                pay_run_id=prepared.pay_run_id,
                run_number=run_number,
                bundle_id=prepared.config.bundle_id,
                bundle_version=prepared.config.bundle_version,
                status=RunStatus.SUCCESS.value,
                input_summary=prepared.input_summary(),
                executed_by=actor.user_id,
                created_at=now,
            )
            await run_repo.supersede_previous(prepared.pay_run_id, run.id, now)

            for evaluation in evaluations:
                result = await run_repo.add_check_result(
                    run_id=run.id,
                    check_type=evaluation.check_type.value,
                    check_version=evaluation.check_version,
                    status=evaluation.status.value,
                    severity=evaluation.severity.value,
                    summary=evaluation.summary,
                    details=evaluation.details_dict(),
                    evidence=evaluation.evidence_list(),
                    created_at=now,
                )
                if evaluation.exception is None:
                    continue
                draft = evaluation.exception
                exceptions.append(await run_repo.add_exception(
                    firm_id=prepared.firm_id,
                    pay_run_id=prepared.pay_run_id,
                    run_id=run.id,
                    check_result_id=result.id,
                    check_type=evaluation.check_type.value,
                    category=draft.category.value,
                    severity=evaluation.severity.value,
                    title=draft.title,
                    description=draft.description,
                    evidence=(
                        [pointer.model_dump(mode="json", exclude_none=True) for pointer in draft.evidence]
                        if draft.evidence is not None
                        else None
                    ),
                    created_at=now,
                ))

        logger.info(
            f"Persisted run {run.id} #{run.run_number} for pay run {prepared.pay_run_id}: "
            f"{len(evaluations)} checks, {len(exceptions)} exceptions"
        )
        return run, exceptions

    async def _complete(
        self,
        actor: Actor,
        prepared: PreparedRun,
        run: ReconciliationRun,
        exceptions: List[ReconciliationException],
    ) -> None:
        async with transaction(self.session_factory) as session:
            await PayRunService(session, self.audit).transition(
                system_actor(actor.firm_id), prepared.pay_run_id, PayRunStatus.RECONCILED,
            )
        await self.audit.record(
            "RECONCILIATION_COMPLETED",
            "ReconciliationRun",
            run.id,
            {"status": RunStatus.SUCCESS.value, "run_number": run.run_number, "exceptions": len(exceptions)},
        )
        for exception in exceptions:
            await self.audit.record(
                "EXCEPTION_CREATED",
                "Exception",
                exception.id,
                {"check_type": exception.check_type, "severity": exception.severity, "run_id": run.id},
            )

    async def _mark_failed(self, run: ReconciliationRun) -> None:
        """Best-effort: failures here are logged and never replace the original error."""
        try:
            async with transaction(self.session_factory) as session:
                await ReconciliationRunRepository(session).mark_failed(run.id)
        except Exception as e:
            logger.error(f"Could not mark reconciliation run {run.id} FAILED: {type(e).__name__}")
        try:
            await self.audit.record(
                "RECONCILIATION_COMPLETED",
                "ReconciliationRun",
                run.id,
                {"status": RunStatus.FAILED.value, "run_number": run.run_number},
            )
        except Exception as e:
            logger.error(f"Could not audit failure of reconciliation run {run.id}: {type(e).__name__}")

    async def list_runs(self, actor: Actor, pay_run_id: str) -> List[ReconciliationRun]:
        """List a pay run's runs, newest first."""
        async with transaction(self.session_factory) as session:
            pay_run = await PayRunRepository(session).get_for_firm(actor.firm_id, pay_run_id)
            if pay_run is None:
                raise NotFoundError("Pay run not found.")
            return await ReconciliationRunRepository(session).list_runs(pay_run.id)

    async def get_run_report(self, actor: Actor, run_id: str) -> RunReport:
        """Load a run with its check results and exceptions.

        Raises:
            NotFoundError: If the run is not in the actor's firm.
        """
        async with transaction(self.session_factory) as session:
            run_repo = ReconciliationRunRepository(session)
            run = await run_repo.get_run(run_id)
            if run is None or run.firm_id != actor.firm_id:
                raise NotFoundError("Reconciliation run not found.")
            check_results = await run_repo.list_check_results(run.id)
            exceptions = await run_repo.list_exceptions(run.id)
        return build_run_report(run, check_results, exceptions)

    async def latest_run_report(self, actor: Actor, pay_run_id: str) -> RunReport:
        """Report for the newest run of a pay run.

        Raises:
            NotFoundError: If the pay run has no runs.
        """
        runs = await self.list_runs(actor, pay_run_id)
        if not runs:
            raise NotFoundError("No reconciliation runs for this pay run.")
        return await self.get_run_report(actor, runs[0].id)

    def generate_report(self, report: RunReport, format: str = "json", include_details: bool = True) -> str:
        """Render a run report.

        Args:
            report: RunReport to format.
            format: Output format ('json', 'csv', 'text').
            include_details: Include check results and exceptions (JSON only).

        Returns:
            Formatted report string.
        """
        generator = ReportGenerator(report)

        if format == "json":
            return generator.to_json(include_details=include_details)
        elif format == "csv":
            return generator.to_csv()
        elif format == "text":
            return generator.to_text()
        else:
            raise ValueError(f"Unsupported report format: {format}")
