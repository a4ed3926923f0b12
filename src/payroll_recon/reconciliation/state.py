"""Pay run and import lifecycle state machines."""

from typing import Dict, FrozenSet, List, Tuple

from ..database.models import PayRunStatus, ImportStatus
from ..errors import ValidationError
from ..permissions import Role

_A, _P, _R, _S = Role.ADMIN, Role.PREPARER, Role.REVIEWER, Role.SYSTEM

PAY_RUN_TRANSITIONS: Dict[Tuple[PayRunStatus, PayRunStatus], FrozenSet[Role]] = {
    (PayRunStatus.DRAFT, PayRunStatus.IMPORTED): frozenset([_A, _P]),
    (PayRunStatus.IMPORTED, PayRunStatus.MAPPED): frozenset([_A, _P]),
    (PayRunStatus.IMPORTED, PayRunStatus.RECONCILING): frozenset([_A, _P]),
    (PayRunStatus.MAPPED, PayRunStatus.RECONCILING): frozenset([_A, _P]),
    (PayRunStatus.RECONCILED, PayRunStatus.RECONCILING): frozenset([_A, _P]),
    (PayRunStatus.RECONCILING, PayRunStatus.RECONCILED): frozenset([_S]),
    (PayRunStatus.RECONCILED, PayRunStatus.READY_FOR_REVIEW): frozenset([_A, _P]),
    (PayRunStatus.READY_FOR_REVIEW, PayRunStatus.APPROVED): frozenset([_A, _R]),
    (PayRunStatus.READY_FOR_REVIEW, PayRunStatus.RECONCILED): frozenset([_A, _R]),
    (PayRunStatus.APPROVED, PayRunStatus.PACKED): frozenset([_A, _P, _R]),
    (PayRunStatus.PACKED, PayRunStatus.LOCKED): frozenset([_A, _R]),
    (PayRunStatus.LOCKED, PayRunStatus.ARCHIVED): frozenset([_A]),
}

LOCKED_PAY_RUN_STATUSES = frozenset([PayRunStatus.LOCKED, PayRunStatus.ARCHIVED])


def can_transition_pay_run(from_status: str, to_status: str, role: str) -> bool:
    allowed = PAY_RUN_TRANSITIONS.get((PayRunStatus(from_status), PayRunStatus(to_status)))
    return allowed is not None and Role(role) in allowed


def assert_pay_run_transition(from_status: str, to_status: str, role: str) -> None:
    """Raise ValidationError naming the (from, to, role) triple if illegal."""
    if not can_transition_pay_run(from_status, to_status, role):
        raise ValidationError(
            f"Illegal pay run transition from {PayRunStatus(from_status).value} "
            f"to {PayRunStatus(to_status).value} for {Role(role).value}."
        )


def allowed_pay_run_transitions(from_status: str, role: str) -> List[PayRunStatus]:
    """Statuses ``role`` may move a pay run to from ``from_status``."""
    current = PayRunStatus(from_status)
    return [
        to_status
        for (source, to_status), roles in PAY_RUN_TRANSITIONS.items()
        if source == current and Role(role) in roles
    ]


def is_pay_run_locked(status: str) -> bool:
    return PayRunStatus(status) in LOCKED_PAY_RUN_STATUSES


IMPORT_ERROR_STATUSES = frozenset([ImportStatus.ERROR_FILE_INVALID, ImportStatus.ERROR_PARSE_FAILED])

IMPORT_TRANSITIONS: Dict[ImportStatus, FrozenSet[ImportStatus]] = {
    ImportStatus.UPLOADED: frozenset([
        ImportStatus.PARSING,
        ImportStatus.ERROR_FILE_INVALID,
        ImportStatus.ERROR_PARSE_FAILED,
    ]),
    ImportStatus.PARSING: frozenset([
        ImportStatus.PARSED,
        ImportStatus.MAPPING_REQUIRED,
        ImportStatus.MAPPED,
        ImportStatus.ERROR_FILE_INVALID,
        ImportStatus.ERROR_PARSE_FAILED,
    ]),
    ImportStatus.PARSED: frozenset([
        ImportStatus.MAPPING_REQUIRED,
        ImportStatus.MAPPED,
        ImportStatus.READY,
        ImportStatus.ERROR_PARSE_FAILED,
    ]),
    ImportStatus.MAPPING_REQUIRED: frozenset([
        ImportStatus.MAPPED,
        ImportStatus.READY,
        ImportStatus.ERROR_PARSE_FAILED,
    ]),
    ImportStatus.MAPPED: frozenset([ImportStatus.READY]),
    ImportStatus.READY: frozenset([ImportStatus.MAPPED]),
    ImportStatus.ERROR_FILE_INVALID: frozenset(),
    ImportStatus.ERROR_PARSE_FAILED: frozenset(),
}


def can_transition_import(from_status: str, to_status: str) -> bool:
    current, target = ImportStatus(from_status), ImportStatus(to_status)
    if current == target:
        return True
    return target in IMPORT_TRANSITIONS[current]


def assert_import_transition(from_status: str, to_status: str) -> None:
    """Raise ValidationError unless the import may move; same-state is a no-op."""
    if not can_transition_import(from_status, to_status):
        raise ValidationError(
            f"Import cannot move from {ImportStatus(from_status).value} "
            f"to {ImportStatus(to_status).value}."
        )


def is_import_errored(status: str) -> bool:
    return ImportStatus(status) in IMPORT_ERROR_STATUSES


def is_import_mapped(status: str) -> bool:
    return ImportStatus(status) in (ImportStatus.MAPPED, ImportStatus.READY)
