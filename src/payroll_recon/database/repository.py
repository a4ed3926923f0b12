"""Repository layer for reconciliation persistence operations."""

import logging
from datetime import datetime, date
from typing import Optional, Dict, Any, List

from sqlalchemy import select, update, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Firm,
    Client,
    PayRun,
    Import,
    MappingTemplate,
    AccountClassification,
    ExpectedVariance,
    ReconciliationRun,
    CheckResult,
    ReconciliationException,
    PayRunStatus,
    ImportStatus,
    TemplateStatus,
    RunStatus,
    ExceptionStatus,
    Region,
)

logger = logging.getLogger(__name__)


class FirmRepository:
    """Repository for Firm and Client rows."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create_firm(
        self,
        name: str,
        region: str = Region.UK.value,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> Firm:
        """Create a firm.

        Args:
            name: Display name.
            region: UK or IE.
            defaults: Firm defaults (requiredSources, tolerances).

        Returns:
            Created Firm instance.
        """
        firm = Firm(name=name, region=Region(region).value)
        firm.defaults = defaults
        self.session.add(firm)
        await self.session.flush()
        logger.info(f"Created firm {firm.id} in region {firm.region}")
        return firm

    async def get_firm(self, firm_id: str) -> Optional[Firm]:
        result = await self.session.execute(select(Firm).where(Firm.id == firm_id))
        return result.scalar_one_or_none()

    async def create_client(
        self,
        firm_id: str,
        name: str,
        settings: Optional[Dict[str, Any]] = None,
    ) -> Client:
        """Create a client under a firm."""
        client = Client(firm_id=firm_id, name=name)
        client.settings = settings
        self.session.add(client)
        await self.session.flush()
        logger.info(f"Created client {client.id} for firm {firm_id}")
        return client

    async def get_client(self, firm_id: str, client_id: str) -> Optional[Client]:
        """Get a client visible to ``firm_id``."""
        result = await self.session.execute(
            select(Client).where(and_(Client.id == client_id, Client.firm_id == firm_id))
        )
        return result.scalar_one_or_none()

    async def lock_template_owner(self, firm_id: str, client_id: Optional[str] = None) -> None:
        """Select the client row, or the firm row for firm-wide templates, FOR UPDATE.

        Serializes version allocation and publishing per template owner,
        including firm-wide identities whose NULL client_id escapes the
        unique constraint.
        """
        if client_id is not None:
            stmt = select(Client.id).where(and_(Client.id == client_id, Client.firm_id == firm_id))
        else:
            stmt = select(Firm.id).where(Firm.id == firm_id)
        await self.session.execute(stmt.with_for_update())


class PayRunRepository:
    """Repository for PayRun operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        firm_id: str,
        client_id: str,
        period_start: date,
        period_end: date,
        period_label: Optional[str] = None,
        revision: int = 1,
        settings: Optional[Dict[str, Any]] = None,
        created_by: Optional[str] = None,
    ) -> PayRun:
        """Create a pay run in DRAFT.

        Raises:
            sqlalchemy.exc.IntegrityError: If the period/revision already exists.
        """
        pay_run = PayRun(
            firm_id=firm_id,
            client_id=client_id,
            period_start=period_start,
            period_end=period_end,
            period_label=period_label,
            revision=revision,
            status=PayRunStatus.DRAFT.value,
            created_by=created_by,
        )
        pay_run.settings = settings
        self.session.add(pay_run)
        await self.session.flush()
        logger.info(f"Created pay run {pay_run.id} revision {revision}")
        return pay_run

    async def get_for_firm(self, firm_id: str, pay_run_id: str) -> Optional[PayRun]:
        """Get a pay run visible to ``firm_id``.

        Args:
            firm_id: Caller's firm.
            pay_run_id: Pay run ID.

        Returns:
            PayRun if found within the firm, None otherwise.
        """
        result = await self.session.execute(
            select(PayRun).where(and_(PayRun.id == pay_run_id, PayRun.firm_id == firm_id))
        )
        return result.scalar_one_or_none()

    async def lock(self, pay_run_id: str) -> PayRun:
        """Select the pay run row FOR UPDATE and refresh it from the database.

        Serializes run-number allocation per pay run. SQLite ignores the
        clause and serializes writers at the database level instead.
        """
        result = await self.session.execute(
            select(PayRun)
            .where(PayRun.id == pay_run_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def latest_revision(self, client_id: str, period_start: date, period_end: date) -> int:
        """Return the highest revision for a client period, 0 if none."""
        result = await self.session.execute(
            select(func.max(PayRun.revision)).where(and_(
                PayRun.client_id == client_id,
                PayRun.period_start == period_start,
                PayRun.period_end == period_end,
            ))
        )
        return result.scalar_one_or_none() or 0

    async def update_status(self, pay_run: PayRun, new_status: str) -> PayRun:
        """Persist a new status. Callers validate the transition first."""
        previous = pay_run.status
        pay_run.status = new_status
        pay_run.updated_at = datetime.utcnow()
        await self.session.flush()
        logger.info(f"Updated pay run {pay_run.id} status {previous} -> {new_status}")
        return pay_run


class ImportRepository:
    """Repository for Import operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_for_firm(self, firm_id: str, import_id: str) -> Optional[Import]:
        result = await self.session.execute(
            select(Import).where(and_(Import.id == import_id, Import.firm_id == firm_id))
        )
        return result.scalar_one_or_none()

    async def find_by_hash(self, pay_run_id: str, source_type: str, file_hash: str) -> Optional[Import]:
        """Find an existing import of identical bytes for the same pay run and source."""
        result = await self.session.execute(
            select(Import).where(and_(
                Import.pay_run_id == pay_run_id,
                Import.source_type == source_type,
                Import.file_hash == file_hash,
            ))
        )
        return result.scalar_one_or_none()

    async def next_version(self, pay_run_id: str, source_type: str) -> int:
        result = await self.session.execute(
            select(func.max(Import.version)).where(and_(
                Import.pay_run_id == pay_run_id,
                Import.source_type == source_type,
            ))
        )
        return (result.scalar_one_or_none() or 0) + 1

    async def create(
        self,
        firm_id: str,
        client_id: str,
        pay_run_id: str,
        source_type: str,
        version: int,
        storage_uri: str,
        file_hash: str,
        original_filename: Optional[str] = None,
        uploaded_by: Optional[str] = None,
    ) -> Import:
        """Create an import version in UPLOADED status."""
        record = Import(
            firm_id=firm_id,
            client_id=client_id,
            pay_run_id=pay_run_id,
            source_type=source_type,
            version=version,
            storage_uri=storage_uri,
            file_hash=file_hash,
            original_filename=original_filename,
            uploaded_by=uploaded_by,
            parse_status=ImportStatus.UPLOADED.value,
        )
        self.session.add(record)
        await self.session.flush()
        logger.info(f"Created import {record.id} {source_type} v{version} for pay run {pay_run_id}")
        return record

    async def latest_by_source(self, pay_run_id: str) -> Dict[str, Import]:
        """Return the highest-version import per source type for a pay run."""
        result = await self.session.execute(
            select(Import)
            .where(Import.pay_run_id == pay_run_id)
            .order_by(Import.source_type, Import.version.desc())
        )
        latest: Dict[str, Import] = {}
        for record in result.scalars().all():
            latest.setdefault(record.source_type, record)
        return latest

    async def update_status(self, record: Import, new_status: str) -> Import:
        record.parse_status = new_status
        record.updated_at = datetime.utcnow()
        await self.session.flush()
        logger.info(f"Updated import {record.id} status to {new_status}")
        return record

    async def set_template(self, record: Import, template_id: str) -> Import:
        record.mapping_template_id = template_id
        record.updated_at = datetime.utcnow()
        await self.session.flush()
        return record


def _identity_clause(firm_id: str, client_id: Optional[str], source_type: str, name: str):
    client_clause = (
        MappingTemplate.client_id.is_(None)
        if client_id is None
        else MappingTemplate.client_id == client_id
    )
    return and_(
        MappingTemplate.firm_id == firm_id,
        client_clause,
        MappingTemplate.source_type == source_type,
        MappingTemplate.name == name,
    )


class MappingTemplateRepository:
    """Repository for versioned mapping templates."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_for_firm(self, firm_id: str, template_id: str) -> Optional[MappingTemplate]:
        result = await self.session.execute(
            select(MappingTemplate).where(and_(
                MappingTemplate.id == template_id,
                MappingTemplate.firm_id == firm_id,
            ))
        )
        return result.scalar_one_or_none()

    async def get_many(self, template_ids: List[str]) -> Dict[str, MappingTemplate]:
        if not template_ids:
            return {}
        result = await self.session.execute(
            select(MappingTemplate).where(MappingTemplate.id.in_(template_ids))
        )
        return {template.id: template for template in result.scalars().all()}

    async def latest_version(
        self,
        firm_id: str,
        client_id: Optional[str],
        source_type: str,
        name: str,
    ) -> int:
        """Return the highest version under an identity key, 0 if none."""
        result = await self.session.execute(
            select(func.max(MappingTemplate.version)).where(
                _identity_clause(firm_id, client_id, source_type, name)
            )
        )
        return result.scalar_one_or_none() or 0

    async def create(
        self,
        firm_id: str,
        client_id: Optional[str],
        source_type: str,
        name: str,
        version: int,
        status: str,
        source_columns: List[str],
        column_map: Dict[str, str],
        normalization_rules: Optional[Dict[str, Any]] = None,
        header_row_index: int = 0,
        sheet_name: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> MappingTemplate:
        """Create a template version."""
        template = MappingTemplate(
            firm_id=firm_id,
            client_id=client_id,
            source_type=source_type,
            name=name,
            version=version,
            status=status,
            header_row_index=header_row_index,
            sheet_name=sheet_name,
            created_by=created_by,
        )
        template.source_columns = source_columns
        template.column_map = column_map
        template.normalization_rules = normalization_rules
        self.session.add(template)
        await self.session.flush()
        logger.info(f"Created mapping template {template.id} '{name}' v{version} ({status})")
        return template

    async def lock_active_siblings(self, template: MappingTemplate) -> List[MappingTemplate]:
        """Select, FOR UPDATE, every other ACTIVE version sharing the identity key."""
        result = await self.session.execute(
            select(MappingTemplate)
            .where(and_(
                _identity_clause(template.firm_id, template.client_id, template.source_type, template.name),
                MappingTemplate.status == TemplateStatus.ACTIVE.value,
                MappingTemplate.id != template.id,
            ))
            .with_for_update()
        )
        return list(result.scalars().all())

    async def update_status(self, template: MappingTemplate, new_status: str) -> MappingTemplate:
        template.status = new_status
        template.updated_at = datetime.utcnow()
        await self.session.flush()
        logger.info(f"Updated mapping template {template.id} status to {new_status}")
        return template


class AccountClassificationRepository:
    """Repository for GL account classifications."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_for_client(self, firm_id: str, client_id: str) -> List[AccountClassification]:
        result = await self.session.execute(
            select(AccountClassification)
            .where(and_(
                AccountClassification.firm_id == firm_id,
                AccountClassification.client_id == client_id,
            ))
            .order_by(AccountClassification.account_code)
        )
        return list(result.scalars().all())

    async def get_by_code(self, firm_id: str, client_id: str, account_code: str) -> Optional[AccountClassification]:
        result = await self.session.execute(
            select(AccountClassification).where(and_(
                AccountClassification.firm_id == firm_id,
                AccountClassification.client_id == client_id,
                AccountClassification.account_code == account_code,
            ))
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        firm_id: str,
        client_id: str,
        account_code: str,
        classification: str,
        account_name: Optional[str] = None,
    ) -> AccountClassification:
        """Create or update the classification for an account code."""
        record = await self.get_by_code(firm_id, client_id, account_code)
        if record is None:
            record = AccountClassification(
                firm_id=firm_id,
                client_id=client_id,
                account_code=account_code,
            )
            self.session.add(record)
        record.classification = classification
        record.account_name = account_name
        record.updated_at = datetime.utcnow()
        await self.session.flush()
        logger.info(f"Classified account {account_code} as {classification} for client {client_id}")
        return record

    async def delete(self, record: AccountClassification) -> None:
        await self.session.delete(record)
        await self.session.flush()


class ExpectedVarianceRepository:
    """Repository for expected variance rules."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        firm_id: str,
        client_id: str,
        variance_type: str,
        condition: Optional[Dict[str, Any]],
        effect: Dict[str, Any],
        check_type: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> ExpectedVariance:
        variance = ExpectedVariance(
            firm_id=firm_id,
            client_id=client_id,
            check_type=check_type,
            variance_type=variance_type,
            active=True,
            created_by=created_by,
        )
        variance.condition = condition
        variance.effect = effect
        self.session.add(variance)
        await self.session.flush()
        logger.info(f"Created expected variance {variance.id} for client {client_id}")
        return variance

    async def get_for_firm(self, firm_id: str, variance_id: str) -> Optional[ExpectedVariance]:
        result = await self.session.execute(
            select(ExpectedVariance).where(and_(
                ExpectedVariance.id == variance_id,
                ExpectedVariance.firm_id == firm_id,
            ))
        )
        return result.scalar_one_or_none()

    async def list_active(self, firm_id: str, client_id: str) -> List[ExpectedVariance]:
        """Active, unarchived variances in creation order."""
        result = await self.session.execute(
            select(ExpectedVariance)
            .where(and_(
                ExpectedVariance.firm_id == firm_id,
                ExpectedVariance.client_id == client_id,
                ExpectedVariance.active.is_(True),
                ExpectedVariance.archived_at.is_(None),
            ))
            .order_by(ExpectedVariance.created_at)
        )
        return list(result.scalars().all())

    async def archive(self, variance: ExpectedVariance) -> ExpectedVariance:
        variance.active = False
        variance.archived_at = datetime.utcnow()
        await self.session.flush()
        logger.info(f"Archived expected variance {variance.id}")
        return variance


class ReconciliationRunRepository:
    """Repository for runs, check results and exceptions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_run(
        self,
        firm_id: str,
        pay_run_id: str,
        run_number: int,
        bundle_id: str,
        bundle_version: str,
        status: str,
        input_summary: Dict[str, Any],
        executed_by: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> ReconciliationRun:
        """Create a run row.

        Args:
            firm_id: Owning firm.
            pay_run_id: Pay run being reconciled.
            run_number: Allocated run number.
            bundle_id: Check bundle identifier.
            bundle_version: Check bundle version.
            status: Initial run status.
            input_summary: Imports and templates consumed per source.
            executed_by: Actor user id.
            created_at: Timestamp shared with the supersession writes.

        Returns:
            Created ReconciliationRun instance.
        """
        now = created_at or datetime.utcnow()
        run = ReconciliationRun(
            firm_id=firm_id,
            pay_run_id=pay_run_id,
            run_number=run_number,
            bundle_id=bundle_id,
            bundle_version=bundle_version,
            status=status,
            executed_by=executed_by,
            created_at=now,
            completed_at=now if status == RunStatus.SUCCESS.value else None,
        )
        run.input_summary = input_summary
        self.session.add(run)
        await self.session.flush()
        logger.info(f"Created reconciliation run {run.id} #{run_number} for pay run {pay_run_id}")
        return run

    async def get_run(self, run_id: str) -> Optional[ReconciliationRun]:
        result = await self.session.execute(
            select(ReconciliationRun).where(ReconciliationRun.id == run_id)
        )
        return result.scalar_one_or_none()

    async def list_runs(self, pay_run_id: str) -> List[ReconciliationRun]:
        """All runs for a pay run, newest first."""
        result = await self.session.execute(
            select(ReconciliationRun)
            .where(ReconciliationRun.pay_run_id == pay_run_id)
            .order_by(ReconciliationRun.run_number.desc())
        )
        return list(result.scalars().all())

    async def supersede_previous(self, pay_run_id: str, new_run_id: str, superseded_at: datetime) -> int:
        """Supersede every non-superseded run and its OPEN exceptions.

        Returns:
            Number of runs superseded.
        """
        runs = await self.session.execute(
            update(ReconciliationRun)
            .where(and_(
                ReconciliationRun.pay_run_id == pay_run_id,
                ReconciliationRun.id != new_run_id,
                ReconciliationRun.superseded_at.is_(None),
            ))
            .values(superseded_at=superseded_at, superseded_by_run_id=new_run_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            update(ReconciliationException)
            .where(and_(
                ReconciliationException.pay_run_id == pay_run_id,
                ReconciliationException.run_id != new_run_id,
                ReconciliationException.status == ExceptionStatus.OPEN.value,
                ReconciliationException.superseded_at.is_(None),
            ))
            .values(superseded_at=superseded_at, superseded_by_run_id=new_run_id)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Superseded {runs.rowcount} run(s) for pay run {pay_run_id}")
        return runs.rowcount

    async def mark_failed(self, run_id: str) -> None:
        await self.session.execute(
            update(ReconciliationRun)
            .where(ReconciliationRun.id == run_id)
            .values(status=RunStatus.FAILED.value, completed_at=datetime.utcnow())
        )
        logger.info(f"Marked reconciliation run {run_id} FAILED")

    async def add_check_result(
        self,
        run_id: str,
        check_type: str,
        check_version: str,
        status: str,
        severity: str,
        summary: str,
        details: Dict[str, Any],
        evidence: Optional[List[Dict[str, Any]]],
        created_at: Optional[datetime] = None,
    ) -> CheckResult:
        result = CheckResult(
            run_id=run_id,
            check_type=check_type,
            check_version=check_version,
            status=status,
            severity=severity,
            summary=summary,
            created_at=created_at or datetime.utcnow(),
        )
        result.details = details
        result.evidence = evidence
        self.session.add(result)
        await self.session.flush()
        return result

    async def add_exception(
        self,
        firm_id: str,
        pay_run_id: str,
        run_id: str,
        check_result_id: str,
        check_type: str,
        category: str,
        severity: str,
        title: str,
        description: str,
        evidence: Optional[List[Dict[str, Any]]],
        created_at: Optional[datetime] = None,
    ) -> ReconciliationException:
        exception = ReconciliationException(
            firm_id=firm_id,
            pay_run_id=pay_run_id,
            run_id=run_id,
            check_result_id=check_result_id,
            check_type=check_type,
            category=category,
            severity=severity,
            title=title,
            description=description,
            status=ExceptionStatus.OPEN.value,
            created_at=created_at or datetime.utcnow(),
        )
        exception.evidence = evidence
        self.session.add(exception)
        await self.session.flush()
        return exception

    async def list_check_results(self, run_id: str) -> List[CheckResult]:
        result = await self.session.execute(
            select(CheckResult).where(CheckResult.run_id == run_id).order_by(CheckResult.created_at, CheckResult.id)
        )
        return list(result.scalars().all())

    async def list_exceptions(self, run_id: str) -> List[ReconciliationException]:
        result = await self.session.execute(
            select(ReconciliationException)
            .where(ReconciliationException.run_id == run_id)
            .order_by(ReconciliationException.created_at, ReconciliationException.id)
        )
        return list(result.scalars().all())


class ExceptionRepository:
    """Repository for exception review operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_for_firm(self, firm_id: str, exception_id: str) -> Optional[ReconciliationException]:
        result = await self.session.execute(
            select(ReconciliationException).where(and_(
                ReconciliationException.id == exception_id,
                ReconciliationException.firm_id == firm_id,
            ))
        )
        return result.scalar_one_or_none()

    async def list_for_pay_run(
        self,
        pay_run_id: str,
        include_superseded: bool = False,
    ) -> List[ReconciliationException]:
        query = select(ReconciliationException).where(ReconciliationException.pay_run_id == pay_run_id)
        if not include_superseded:
            query = query.where(ReconciliationException.superseded_at.is_(None))
        result = await self.session.execute(query.order_by(ReconciliationException.created_at))
        return list(result.scalars().all())

    async def save(self, exception: ReconciliationException) -> ReconciliationException:
        exception.updated_at = datetime.utcnow()
        await self.session.flush()
        return exception
