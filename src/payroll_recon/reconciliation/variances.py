"""Expected variances: pre-approved discrepancies that downgrade failing checks."""

import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..audit import AuditRecorderBase
from ..database.models import (
    CheckSeverity,
    CheckStatus,
    CheckType,
    ExpectedVariance,
    VarianceType,
)
from ..database.repository import ExpectedVarianceRepository, FirmRepository
from ..errors import NotFoundError, ValidationError
from ..permissions import Permission, require_permission
from .models import Actor, BankPayment, CheckEvaluation, ExpectedVarianceRecord

logger = logging.getLogger(__name__)

DOWNGRADE_TARGETS = (CheckStatus.PASS, CheckStatus.WARN)


class Bounds(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None

    def contains(self, value: float) -> bool:
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        return True


class VarianceCondition(BaseModel):
    amount_bounds: Optional[Bounds] = None
    pct_bounds: Optional[Bounds] = None
    payee_contains: Optional[str] = None
    reference_contains: Optional[str] = None


class VarianceEffect(BaseModel):
    downgrade_to: CheckStatus
    requires_note: bool = False
    requires_attachment: bool = False
    requires_reviewer_ack: bool = False


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _parse_bounds(value: Any) -> Optional[Bounds]:
    if not isinstance(value, Mapping):
        return None
    return Bounds(min=_number(value.get("min")), max=_number(value.get("max")))


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value.strip() else None


def parse_condition(raw: Any) -> VarianceCondition:
    """Lenient parse: unknown or malformed parts are treated as absent."""
    if not isinstance(raw, Mapping):
        return VarianceCondition()
    return VarianceCondition(
        amount_bounds=_parse_bounds(raw.get("amountBounds")),
        pct_bounds=_parse_bounds(raw.get("pctBounds")),
        payee_contains=_text(raw.get("payeeContains")),
        reference_contains=_text(raw.get("referenceContains")),
    )


def parse_effect(raw: Any) -> Optional[VarianceEffect]:
    """Return None unless ``downgradeTo`` is PASS or WARN."""
    if not isinstance(raw, Mapping):
        return None
    target = raw.get("downgradeTo")
    if target not in [status.value for status in DOWNGRADE_TARGETS]:
        return None
    return VarianceEffect(
        downgrade_to=CheckStatus(target),
        requires_note=raw.get("requiresNote") is True,
        requires_attachment=raw.get("requiresAttachment") is True,
        requires_reviewer_ack=raw.get("requiresReviewerAck") is True,
    )


def _contains(values: Sequence[str], needle: Optional[str]) -> bool:
    if not needle:
        return True
    target = needle.strip().lower()
    return any(target in value.strip().lower() for value in values)


def severity_for_status(status: CheckStatus) -> CheckSeverity:
    if status == CheckStatus.PASS:
        return CheckSeverity.INFO
    if status == CheckStatus.WARN:
        return CheckSeverity.LOW
    return CheckSeverity.HIGH


def variance_matches(
    condition: VarianceCondition,
    evaluation: CheckEvaluation,
    bank_payments: Sequence[BankPayment],
) -> bool:
    """Every sub-condition present on ``condition`` must hold."""
    delta_value = abs(evaluation.details.delta_value)
    delta_percent = abs(evaluation.details.delta_percent)
    if condition.amount_bounds and not condition.amount_bounds.contains(delta_value):
        return False
    if condition.pct_bounds and not condition.pct_bounds.contains(delta_percent):
        return False
    if not _contains([p.payee_key for p in bank_payments], condition.payee_contains):
        return False
    if not _contains([p.reference for p in bank_payments], condition.reference_contains):
        return False
    return True


def apply_expected_variances(
    evaluation: CheckEvaluation,
    variances: Sequence[ExpectedVariance],
    bank_payments: Sequence[BankPayment] = (),
) -> CheckEvaluation:
    """Downgrade a FAIL evaluation by the first matching expected variance.

    Args:
        evaluation: Catalogue evaluation.
        variances: Candidate variances in creation order.
        bank_payments: Bank payments for payee/reference conditions.

    Returns:
        The evaluation unchanged, or a downgraded copy with its exception
        cleared and ``details.expected_variance`` set.
    """
    if evaluation.status != CheckStatus.FAIL:
        return evaluation

    for variance in variances:
        if not variance.active or variance.archived_at is not None:
            continue
        if variance.check_type and variance.check_type != evaluation.check_type.value:
            continue
        effect = parse_effect(variance.effect)
        if effect is None:
            continue
        if not variance_matches(parse_condition(variance.condition), evaluation, bank_payments):
            continue

        details = evaluation.details.model_copy(update={
            "expected_variance": ExpectedVarianceRecord(
                id=variance.id,
                variance_type=variance.variance_type,
                downgrade_to=effect.downgrade_to,
                requires_note=effect.requires_note,
                requires_attachment=effect.requires_attachment,
                requires_reviewer_ack=effect.requires_reviewer_ack,
            ),
        })
        logger.info(f"Expected variance {variance.id} downgraded {evaluation.check_type.value} to {effect.downgrade_to.value}")
        return evaluation.model_copy(update={
            "status": effect.downgrade_to,
            "severity": severity_for_status(effect.downgrade_to),
            "summary": f"{evaluation.summary} Expected variance applied.",
            "details": details,
            "exception": None,
        })

    return evaluation


def validate_variance_definition(condition: Optional[Mapping[str, Any]], effect: Mapping[str, Any]) -> List[str]:
    """Strict validation used when a variance is created."""
    errors: List[str] = []
    if parse_effect(effect) is None:
        errors.append("Effect downgradeTo must be PASS or WARN.")

    if condition is None:
        return errors
    if not isinstance(condition, Mapping):
        return errors + ["Condition must be an object."]

    for key, label in (("amountBounds", "Amount bounds"), ("pctBounds", "Percent bounds")):
        if key not in condition:
            continue
        bounds = condition[key]
        if not isinstance(bounds, Mapping):
            errors.append(f"{label} must be an object with min and/or max.")
            continue
        values: Dict[str, float] = {}
        for side in ("min", "max"):
            if side not in bounds or bounds[side] is None:
                continue
            number = _number(bounds[side])
            if number is None or number < 0:
                errors.append(f"{label} {side} must be a non-negative number.")
            else:
                values[side] = number
        if "min" in values and "max" in values and values["min"] > values["max"]:
            errors.append(f"{label} min cannot exceed max.")

    for key in ("payeeContains", "referenceContains"):
        if key in condition and condition[key] is not None and not isinstance(condition[key], str):
            errors.append(f"{key} must be text.")
    return errors


class ExpectedVarianceService:
    """Create and archive expected variances for a client."""

    def __init__(self, session: AsyncSession, audit: AuditRecorderBase):
        self.session = session
        self.audit = audit
        self.variance_repo = ExpectedVarianceRepository(session)
        self.firm_repo = FirmRepository(session)

    async def create(
        self,
        actor: Actor,
        client_id: str,
        variance_type: str,
        effect: Dict[str, Any],
        condition: Optional[Dict[str, Any]] = None,
        check_type: Optional[str] = None,
    ) -> ExpectedVariance:
        """Create an active expected variance.

        Raises:
            PermissionDeniedError: If the actor cannot write variances.
            NotFoundError: If the client is not in the actor's firm.
            ValidationError: If the condition or effect is malformed.
        """
        require_permission(actor.role, Permission.VARIANCE_WRITE)
        client = await self.firm_repo.get_client(actor.firm_id, client_id)
        if client is None:
            raise NotFoundError("Client not found.")

        errors = validate_variance_definition(condition, effect)
        try:
            variance_type = VarianceType(variance_type).value
        except ValueError:
            errors.append(f"Unknown variance type: {variance_type}.")
        if check_type is not None:
            try:
                check_type = CheckType(check_type).value
            except ValueError:
                errors.append(f"Unknown check type: {check_type}.")
        if errors:
            raise ValidationError("Expected variance is invalid.", details={"errors": errors})

        variance = await self.variance_repo.create(
            firm_id=actor.firm_id,
            client_id=client.id,
            variance_type=variance_type,
            condition=condition,
            effect=effect,
            check_type=check_type,
            created_by=actor.user_id,
        )
        await self.audit.record(
            "EXPECTED_VARIANCE_CREATED",
            "Client",
            client.id,
            {"variance_id": variance.id, "check_type": check_type or "ALL", "variance_type": variance_type},
        )
        return variance

    async def archive(self, actor: Actor, variance_id: str) -> ExpectedVariance:
        require_permission(actor.role, Permission.VARIANCE_WRITE)
        variance = await self.variance_repo.get_for_firm(actor.firm_id, variance_id)
        if variance is None:
            raise NotFoundError("Expected variance not found.")

        variance = await self.variance_repo.archive(variance)
        await self.audit.record(
            "EXPECTED_VARIANCE_ARCHIVED",
            "Client",
            variance.client_id,
            {
                "variance_id": variance.id,
                "check_type": variance.check_type or "ALL",
                "variance_type": variance.variance_type,
            },
        )
        return variance
