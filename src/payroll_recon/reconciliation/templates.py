"""Versioned mapping templates and their application to imports."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..audit import AuditRecorderBase
from ..database import (
    FirmRepository,
    Import,
    ImportRepository,
    ImportStatus,
    MappingTemplate,
    MappingTemplateRepository,
    PayRunRepository,
    PayRunStatus,
    SourceType,
    TemplateStatus,
)
from ..errors import ConflictError, NotFoundError, ValidationError
from ..permissions import Permission, Role, require_permission
from ..services import PayRunService
from .mapping import (
    NormalizationRules,
    are_column_maps_equivalent,
    detect_column_drift,
    sanitize_column_map,
    sanitize_columns,
    validate_column_map,
)
from .models import Actor, ApplyTemplateInput, ApplyTemplateResult, ColumnDrift
from .state import assert_import_transition, is_import_errored, is_pay_run_locked
from .tolerances import resolve_required_sources

logger = logging.getLogger(__name__)


def _rules_dict(rules: NormalizationRules) -> Optional[Dict[str, Any]]:
    if not rules.category_map:
        return None
    return rules.model_dump()


class MappingTemplateService:
    """Apply, version and publish mapping templates."""

    def __init__(self, session: AsyncSession, audit: AuditRecorderBase):
        """Initialize the service with a database session.

        Args:
            session: AsyncSession instance; the caller commits.
            audit: Audit recorder for template and pay run events.
        """
        self.session = session
        self.audit = audit
        self.template_repo = MappingTemplateRepository(session)
        self.import_repo = ImportRepository(session)
        self.pay_run_repo = PayRunRepository(session)
        self.firm_repo = FirmRepository(session)
        self.pay_runs = PayRunService(session, audit)

    async def _load_import(self, actor: Actor, import_id: str) -> Import:
        record = await self.import_repo.get_for_firm(actor.firm_id, import_id)
        if record is None:
            raise NotFoundError("Import not found.")

        pay_run = await self.pay_run_repo.get_for_firm(actor.firm_id, record.pay_run_id)
        if pay_run is None:
            raise NotFoundError("Pay run not found.")
        if is_pay_run_locked(pay_run.status):
            raise ValidationError("Locked pay runs cannot accept template changes.")
        if is_import_errored(record.parse_status):
            raise ValidationError("Imports in an error state cannot be mapped.")
        return record

    async def apply_mapping_template(self, actor: Actor, request: ApplyTemplateInput) -> ApplyTemplateResult:
        """Map an import's columns, reusing or versioning a template.

        Args:
            actor: Calling actor.
            request: Columns, column map and optional template to apply.

        Returns:
            ApplyTemplateResult naming the template version now linked to
            the import and any drift against the base template.

        Raises:
            NotFoundError: If the import or template is not visible.
            ValidationError: If the map is invalid, the import cannot be
                mapped, or drift is detected without ``create_new_version``.
        """
        require_permission(actor.role, Permission.TEMPLATE_WRITE)
        record = await self._load_import(actor, request.import_id)
        source_type = SourceType(record.source_type)
        if SourceType(request.source_type) != source_type:
            raise ValidationError("Template source type does not match the import.")

        source_columns = sanitize_columns(request.source_columns)
        column_map = sanitize_column_map(source_type, request.column_map)
        errors = validate_column_map(source_type, column_map, source_columns)
        if errors:
            raise ValidationError(" ".join(errors), details={"errors": errors})
        assert_import_transition(record.parse_status, ImportStatus.MAPPED)

        if request.template_id:
            template = await self.template_repo.get_for_firm(actor.firm_id, request.template_id)
            if template is None:
                raise NotFoundError("Template not found.")
            if template.client_id and template.client_id != record.client_id:
                raise NotFoundError("Template not available for this client.")
            if SourceType(template.source_type) != source_type:
                raise ValidationError("Template source type does not match the import.")

            rules = NormalizationRules.from_raw(
                request.normalization_rules
                if request.normalization_rules is not None
                else template.normalization_rules
            )
            drift = detect_column_drift(template.source_columns, source_columns)
            mapping_changed = not are_column_maps_equivalent(column_map, template.column_map)
            rules_changed = rules != NormalizationRules.from_raw(template.normalization_rules)
            changed = drift.drifted or mapping_changed or rules_changed

            if changed and not request.create_new_version:
                raise ValidationError(
                    "Template drift detected. Create a new version to continue.",
                    details={"missing": drift.missing, "added": drift.added},
                )

            if not changed and not request.create_new_version:
                await self._link(actor, record, template)
                return ApplyTemplateResult(
                    template_id=template.id,
                    version=template.version,
                    applied_existing=True,
                    drift=drift,
                )

            created = await self._create_version(
                actor,
                client_id=template.client_id,
                source_type=source_type,
                name=template.name,
                source_columns=source_columns,
                column_map=column_map,
                rules=rules,
                header_row_index=request.header_row_index,
                sheet_name=request.sheet_name,
                publish=request.publish,
                base_template_id=template.id,
            )
            await self._link(actor, record, created)
            return ApplyTemplateResult(
                template_id=created.id,
                version=created.version,
                applied_existing=False,
                drift=drift,
            )

        name = (request.template_name or "").strip()
        if not name:
            raise ValidationError("Template name is required.")

        created = await self._create_version(
            actor,
            client_id=record.client_id if request.client_scoped else None,
            source_type=source_type,
            name=name,
            source_columns=source_columns,
            column_map=column_map,
            rules=NormalizationRules.from_raw(request.normalization_rules),
            header_row_index=request.header_row_index,
            sheet_name=request.sheet_name,
            publish=request.publish,
        )
        await self._link(actor, record, created)
        return ApplyTemplateResult(
            template_id=created.id,
            version=created.version,
            applied_existing=False,
            drift=ColumnDrift(),
        )

    async def _create_version(
        self,
        actor: Actor,
        client_id: Optional[str],
        source_type: SourceType,
        name: str,
        source_columns: List[str],
        column_map: Dict[str, str],
        rules: NormalizationRules,
        header_row_index: int,
        sheet_name: Optional[str],
        publish: bool,
        base_template_id: Optional[str] = None,
    ) -> MappingTemplate:
        await self.firm_repo.lock_template_owner(actor.firm_id, client_id)
        latest = await self.template_repo.latest_version(actor.firm_id, client_id, source_type.value, name)
        status = TemplateStatus.ACTIVE if publish else TemplateStatus.DRAFT
        try:
            template = await self.template_repo.create(
                firm_id=actor.firm_id,
                client_id=client_id,
                source_type=source_type.value,
                name=name,
                version=latest + 1,
                status=status.value,
                source_columns=source_columns,
                column_map=column_map,
                normalization_rules=_rules_dict(rules),
                header_row_index=header_row_index,
                sheet_name=sheet_name,
                created_by=actor.user_id,
            )
        except IntegrityError as e:
            raise ConflictError(
                f"Template \"{name}\" version {latest + 1} already exists. Retry the request."
            ) from e
        await self.audit.record(
            "TEMPLATE_VERSION_CREATED" if latest else "TEMPLATE_CREATED",
            "MappingTemplate",
            template.id,
            {
                "source_type": source_type.value,
                "version": template.version,
                "client_id": client_id,
                "base_template_id": base_template_id,
            },
        )
        if status == TemplateStatus.ACTIVE:
            await self._deprecate_siblings(template)
            await self._audit_status(template, TemplateStatus.ACTIVE)
        return template

    async def _deprecate_siblings(self, template: MappingTemplate) -> List[MappingTemplate]:
        siblings = await self.template_repo.lock_active_siblings(template)
        for sibling in siblings:
            await self.template_repo.update_status(sibling, TemplateStatus.DEPRECATED.value)
            await self._audit_status(sibling, TemplateStatus.DEPRECATED)
        return siblings

    async def _audit_status(self, template: MappingTemplate, status: TemplateStatus) -> None:
        action = {
            TemplateStatus.ACTIVE: "TEMPLATE_PUBLISHED",
            TemplateStatus.DEPRECATED: "TEMPLATE_DEPRECATED",
        }.get(status)
        if action is None:
            return
        await self.audit.record(
            action,
            "MappingTemplate",
            template.id,
            {"source_type": template.source_type, "version": template.version, "client_id": template.client_id},
        )

    async def _link(self, actor: Actor, record: Import, template: MappingTemplate) -> None:
        await self.import_repo.set_template(record, template.id)
        if record.parse_status != ImportStatus.MAPPED.value:
            await self.import_repo.update_status(record, ImportStatus.MAPPED.value)
        logger.info(f"Linked import {record.id} to mapping template {template.id} v{template.version}")
        await self.audit.record(
            "IMPORT_MAPPED",
            "Import",
            record.id,
            {"template_id": template.id, "version": template.version},
        )
        await self.maybe_transition_to_mapped(actor, record.pay_run_id)

    async def maybe_transition_to_mapped(self, actor: Actor, pay_run_id: str) -> bool:
        """Move an IMPORTED pay run to MAPPED once every required source is mapped.

        Reviewers never trigger the transition.

        Returns:
            True if the pay run moved to MAPPED.
        """
        if Role(actor.role) == Role.REVIEWER:
            return False

        pay_run = await self.pay_run_repo.get_for_firm(actor.firm_id, pay_run_id)
        if pay_run is None or PayRunStatus(pay_run.status) != PayRunStatus.IMPORTED:
            return False

        firm = await self.firm_repo.get_firm(actor.firm_id)
        required = resolve_required_sources(firm.defaults if firm else None)
        latest = await self.import_repo.latest_by_source(pay_run.id)
        if not all(
            source.value in latest and latest[source.value].mapping_template_id
            for source in required
        ):
            return False

        await self.pay_runs.transition(actor, pay_run.id, PayRunStatus.MAPPED)
        return True

    async def update_template_status(self, actor: Actor, template_id: str, status: str) -> MappingTemplate:
        """Publish, deprecate or return a template version to draft.

        Publishing deprecates every other ACTIVE version under the same
        identity key in the caller's transaction.
        """
        require_permission(actor.role, Permission.TEMPLATE_WRITE)
        target = TemplateStatus(status)
        template = await self.template_repo.get_for_firm(actor.firm_id, template_id)
        if template is None:
            raise NotFoundError("Template not found.")
        if TemplateStatus(template.status) == target:
            return template

        if target == TemplateStatus.ACTIVE:
            await self.firm_repo.lock_template_owner(template.firm_id, template.client_id)
            await self._deprecate_siblings(template)
        template = await self.template_repo.update_status(template, target.value)
        await self._audit_status(template, target)
        return template
