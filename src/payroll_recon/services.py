"""Service layer for pay runs, imports, account classifications and exception review.

Each service works inside the caller's session; the caller commits (see
``database.get_db`` and ``database.transaction``).
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import AuditRecorderBase
from .database import (
    AccountClass,
    AccountClassification,
    AccountClassificationRepository,
    ExceptionRepository,
    ExceptionStatus,
    FirmRepository,
    Import,
    ImportRepository,
    PayRun,
    PayRunRepository,
    PayRunStatus,
    ReconciliationException,
    SourceType,
)
from .errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from .permissions import Permission, Role, require_permission
from .reconciliation.models import Actor
from .reconciliation.state import (
    assert_import_transition,
    assert_pay_run_transition,
    is_pay_run_locked,
)

logger = logging.getLogger(__name__)

MIN_NOTE_LENGTH = 2


def format_period_label(period_start: date, period_end: date) -> str:
    return f"{period_start.strftime('%d %b %Y')} - {period_end.strftime('%d %b %Y')}"


class PayRunService:
    """Service class for pay run creation and lifecycle transitions."""

    def __init__(self, session: AsyncSession, audit: AuditRecorderBase):
        """Initialize the service with a database session.

        Args:
            session: AsyncSession instance for database operations.
            audit: Audit recorder for lifecycle events.
        """
        self.session = session
        self.audit = audit
        self.pay_run_repo = PayRunRepository(session)
        self.firm_repo = FirmRepository(session)

    async def get(self, actor: Actor, pay_run_id: str) -> PayRun:
        pay_run = await self.pay_run_repo.get_for_firm(actor.firm_id, pay_run_id)
        if pay_run is None:
            raise NotFoundError("Pay run not found.")
        return pay_run

    async def create(
        self,
        actor: Actor,
        client_id: str,
        period_start: date,
        period_end: date,
        settings: Optional[Dict[str, Any]] = None,
    ) -> PayRun:
        """Create revision 1 of a pay run period in DRAFT.

        Raises:
            ValidationError: If the period is inverted.
            NotFoundError: If the client is not in the actor's firm.
            ConflictError: If the period already has a pay run.
        """
        require_permission(actor.role, Permission.PAY_RUN_CREATE)
        if period_start > period_end:
            raise ValidationError("Period start must be before period end.")

        client = await self.firm_repo.get_client(actor.firm_id, client_id)
        if client is None:
            raise NotFoundError("Client not found.")

        if await self.pay_run_repo.latest_revision(client.id, period_start, period_end):
            raise ConflictError("A pay run already exists for that period.")

        try:
            pay_run = await self.pay_run_repo.create(
                firm_id=actor.firm_id,
                client_id=client.id,
                period_start=period_start,
                period_end=period_end,
                period_label=format_period_label(period_start, period_end),
                settings=settings,
                created_by=actor.user_id,
            )
        except IntegrityError as e:
            raise ConflictError("A pay run already exists for that period.") from e

        await self.audit.record(
            "PAY_RUN_CREATED",
            "PayRun",
            pay_run.id,
            {"client_id": client.id, "revision": pay_run.revision},
        )
        return pay_run

    async def create_revision(self, actor: Actor, pay_run_id: str) -> PayRun:
        """Re-open a LOCKED pay run as a new DRAFT revision of the same period.

        Raises:
            ValidationError: If the pay run is not the latest revision or not LOCKED.
        """
        require_permission(actor.role, Permission.PAY_RUN_CREATE)
        pay_run = await self.get(actor, pay_run_id)

        latest = await self.pay_run_repo.latest_revision(
            pay_run.client_id, pay_run.period_start, pay_run.period_end,
        )
        if latest != pay_run.revision:
            raise ValidationError("Only the latest revision can be revised.")
        if PayRunStatus(pay_run.status) != PayRunStatus.LOCKED:
            raise ValidationError("Only locked pay runs can be revised.")

        try:
            revision = await self.pay_run_repo.create(
                firm_id=actor.firm_id,
                client_id=pay_run.client_id,
                period_start=pay_run.period_start,
                period_end=pay_run.period_end,
                period_label=pay_run.period_label,
                revision=pay_run.revision + 1,
                settings=pay_run.settings,
                created_by=actor.user_id,
            )
        except IntegrityError as e:
            raise ConflictError("A newer revision already exists for that period.") from e

        await self.audit.record(
            "PAY_RUN_REVISION_CREATED",
            "PayRun",
            revision.id,
            {"previous_pay_run_id": pay_run.id, "revision": revision.revision},
        )
        return revision

    async def transition(self, actor: Actor, pay_run_id: str, to_status: str) -> PayRun:
        """Move a pay run through the state machine and audit the change.

        Args:
            actor: Caller; SYSTEM is used for engine-emitted transitions.
            pay_run_id: Pay run ID.
            to_status: Target PayRunStatus.

        Returns:
            Updated PayRun.

        Raises:
            NotFoundError: If the pay run is not in the actor's firm.
            ValidationError: If the transition is not allowed for the role.
        """
        pay_run = await self.get(actor, pay_run_id)
        previous = pay_run.status
        target = PayRunStatus(to_status)
        assert_pay_run_transition(previous, target, actor.role)

        latest = await self.pay_run_repo.latest_revision(
            pay_run.client_id, pay_run.period_start, pay_run.period_end,
        )
        if target != PayRunStatus.ARCHIVED and latest != pay_run.revision:
            raise ValidationError("Only the latest revision of a pay run can change status.")

        pay_run = await self.pay_run_repo.update_status(pay_run, target.value)
        await self.audit.record(
            "PAY_RUN_STATE_CHANGED",
            "PayRun",
            pay_run.id,
            {"from": previous, "to": target.value},
        )
        return pay_run


class ImportService:
    """Service class for import version registration and status changes."""

    def __init__(self, session: AsyncSession, audit: AuditRecorderBase):
        self.session = session
        self.audit = audit
        self.import_repo = ImportRepository(session)
        self.pay_runs = PayRunService(session, audit)

    async def register_version(
        self,
        actor: Actor,
        pay_run_id: str,
        source_type: str,
        storage_uri: str,
        file_hash: str,
        original_filename: Optional[str] = None,
    ) -> Tuple[Import, bool]:
        """Register an uploaded file as the next import version for its source.

        Uploading identical bytes (same hash) for the same pay run and source
        returns the existing version instead of creating one.

        Args:
            actor: Uploading actor.
            pay_run_id: Pay run the file belongs to.
            source_type: SourceType of the file.
            storage_uri: Where the bytes are stored.
            file_hash: SHA-256 of the bytes.
            original_filename: Name the file was uploaded with.

        Returns:
            Tuple of (Import, created).

        Raises:
            ValidationError: If the pay run is locked, or a reviewer uploads
                to a DRAFT pay run.
            ConflictError: If a concurrent upload took the version.
        """
        require_permission(actor.role, Permission.IMPORT_UPLOAD)
        source = SourceType(source_type)
        pay_run = await self.pay_runs.get(actor, pay_run_id)

        if is_pay_run_locked(pay_run.status):
            raise ValidationError("Locked pay runs cannot accept new imports.")
        if PayRunStatus(pay_run.status) == PayRunStatus.DRAFT and Role(actor.role) == Role.REVIEWER:
            raise ValidationError("Reviewers cannot start imports on draft pay runs.")

        existing = await self.import_repo.find_by_hash(pay_run.id, source.value, file_hash)
        if existing is not None:
            logger.info(f"Import {existing.id} already holds this file for {source.value}")
            return existing, False

        version = await self.import_repo.next_version(pay_run.id, source.value)
        try:
            record = await self.import_repo.create(
                firm_id=actor.firm_id,
                client_id=pay_run.client_id,
                pay_run_id=pay_run.id,
                source_type=source.value,
                version=version,
                storage_uri=storage_uri,
                file_hash=file_hash,
                original_filename=original_filename,
                uploaded_by=actor.user_id,
            )
        except IntegrityError as e:
            raise ConflictError("An import already exists for this file.") from e

        if PayRunStatus(pay_run.status) == PayRunStatus.DRAFT:
            await self.pay_runs.transition(actor, pay_run.id, PayRunStatus.IMPORTED)

        await self.audit.record(
            "IMPORT_UPLOADED" if version == 1 else "IMPORT_REPLACED",
            "Import",
            record.id,
            {"pay_run_id": pay_run.id, "source_type": source.value, "version": version},
        )
        return record, True

    async def transition_status(self, actor: Actor, import_id: str, to_status: str) -> Import:
        """Move an import through the import state machine."""
        record = await self.import_repo.get_for_firm(actor.firm_id, import_id)
        if record is None:
            raise NotFoundError("Import not found.")
        assert_import_transition(record.parse_status, to_status)
        if record.parse_status == to_status:
            return record
        return await self.import_repo.update_status(record, to_status)


class AccountClassificationService:
    """Service class for per-client GL account classifications."""

    def __init__(self, session: AsyncSession, audit: AuditRecorderBase):
        self.session = session
        self.audit = audit
        self.repo = AccountClassificationRepository(session)
        self.firm_repo = FirmRepository(session)

    async def _require_client(self, actor: Actor, client_id: str) -> None:
        if await self.firm_repo.get_client(actor.firm_id, client_id) is None:
            raise NotFoundError("Client not found.")

    async def list_for_client(self, actor: Actor, client_id: str) -> List[AccountClassification]:
        await self._require_client(actor, client_id)
        return await self.repo.list_for_client(actor.firm_id, client_id)

    async def upsert(
        self,
        actor: Actor,
        client_id: str,
        account_code: str,
        classification: str,
        account_name: Optional[str] = None,
    ) -> AccountClassification:
        """Create or update the classification of one account code.

        Raises:
            ValidationError: If the code is blank or the class is unknown.
        """
        require_permission(actor.role, Permission.CLIENT_WRITE)
        await self._require_client(actor, client_id)

        code = account_code.strip()
        if not code:
            raise ValidationError("Account code is required.")
        try:
            account_class = AccountClass(classification)
        except ValueError as e:
            raise ValidationError(f"Unknown account classification: {classification}.") from e

        record = await self.repo.upsert(
            firm_id=actor.firm_id,
            client_id=client_id,
            account_code=code,
            classification=account_class.value,
            account_name=(account_name or "").strip() or None,
        )
        await self.audit.record(
            "ACCOUNT_CLASSIFIED",
            "Client",
            client_id,
            {"account_code": code, "classification": account_class.value},
        )
        return record

    async def delete(self, actor: Actor, client_id: str, account_code: str) -> None:
        require_permission(actor.role, Permission.CLIENT_WRITE)
        record = await self.repo.get_by_code(actor.firm_id, client_id, account_code.strip())
        if record is None:
            raise NotFoundError("Account classification not found.")
        await self.repo.delete(record)
        await self.audit.record(
            "ACCOUNT_CLASSIFICATION_DELETED",
            "Client",
            client_id,
            {"account_code": record.account_code},
        )


class ExceptionService:
    """Service class for exception review: assign, resolve, dismiss, override."""

    def __init__(self, session: AsyncSession, audit: AuditRecorderBase):
        self.session = session
        self.audit = audit
        self.exception_repo = ExceptionRepository(session)
        self.pay_run_repo = PayRunRepository(session)

    async def _load(self, actor: Actor, exception_id: str) -> ReconciliationException:
        require_permission(actor.role, Permission.EXCEPTION_REVIEW)
        exception = await self.exception_repo.get_for_firm(actor.firm_id, exception_id)
        if exception is None:
            raise NotFoundError("Exception not found.")
        if exception.superseded_at is not None:
            raise ValidationError("This exception has been superseded.")

        pay_run = await self.pay_run_repo.get_for_firm(actor.firm_id, exception.pay_run_id)
        if pay_run is None or is_pay_run_locked(pay_run.status):
            raise ValidationError("Locked pay runs cannot update exceptions.")
        return exception

    async def list_for_pay_run(
        self,
        actor: Actor,
        pay_run_id: str,
        include_superseded: bool = False,
    ) -> List[ReconciliationException]:
        if await self.pay_run_repo.get_for_firm(actor.firm_id, pay_run_id) is None:
            raise NotFoundError("Pay run not found.")
        return await self.exception_repo.list_for_pay_run(pay_run_id, include_superseded)

    async def assign(self, actor: Actor, exception_id: str, assignee: Optional[str]) -> ReconciliationException:
        exception = await self._load(actor, exception_id)
        exception.assigned_to = assignee
        exception = await self.exception_repo.save(exception)
        await self.audit.record(
            "EXCEPTION_ASSIGNED",
            "Exception",
            exception.id,
            {"pay_run_id": exception.pay_run_id, "assigned_to": assignee},
        )
        return exception

    async def _close(
        self,
        actor: Actor,
        exception_id: str,
        note: str,
        status: ExceptionStatus,
        noun: str,
        action: str,
    ) -> ReconciliationException:
        exception = await self._load(actor, exception_id)
        if ExceptionStatus(exception.status) == status:
            raise ValidationError(f"Exception is already {status.value.lower()}.")
        cleaned = (note or "").strip()
        if len(cleaned) < MIN_NOTE_LENGTH:
            raise ValidationError(f"{noun} note is required.")

        exception.status = status.value
        exception.resolution_note = cleaned
        exception.resolved_by = actor.user_id
        exception.resolved_at = datetime.utcnow()
        exception = await self.exception_repo.save(exception)
        await self.audit.record(action, "Exception", exception.id, {"pay_run_id": exception.pay_run_id})
        logger.info(f"Exception {exception.id} {status.value} by {actor.user_id}")
        return exception

    async def resolve(self, actor: Actor, exception_id: str, note: str) -> ReconciliationException:
        return await self._close(
            actor, exception_id, note, ExceptionStatus.RESOLVED, "Resolution", "EXCEPTION_RESOLVED",
        )

    async def dismiss(self, actor: Actor, exception_id: str, note: str) -> ReconciliationException:
        return await self._close(
            actor, exception_id, note, ExceptionStatus.DISMISSED, "Dismissal", "EXCEPTION_DISMISSED",
        )

    async def override(self, actor: Actor, exception_id: str, note: str) -> ReconciliationException:
        """Override an exception. Limited to ADMIN and REVIEWER."""
        if Role(actor.role) not in (Role.ADMIN, Role.REVIEWER):
            raise PermissionDeniedError(
                "Permission denied",
                details={"role": Role(actor.role).value, "action": "exception:override"},
            )
        return await self._close(
            actor, exception_id, note, ExceptionStatus.OVERRIDDEN, "Override", "EXCEPTION_OVERRIDDEN",
        )
