"""Role to capability table consulted at service entry points."""

import enum
from typing import Dict, FrozenSet

from .errors import PermissionDeniedError


class Role(str, enum.Enum):
    """Actor roles. SYSTEM is reserved for transitions the engine emits itself."""
    ADMIN = "ADMIN"
    PREPARER = "PREPARER"
    REVIEWER = "REVIEWER"
    SYSTEM = "SYSTEM"


class Permission(str, enum.Enum):
    """Capabilities checked by the services."""
    CLIENT_WRITE = "client:write"
    PAY_RUN_CREATE = "pay-run:create"
    PAY_RUN_TRANSITION = "pay-run:transition"
    IMPORT_UPLOAD = "import:upload"
    TEMPLATE_WRITE = "template:write"
    RECONCILIATION_RUN = "reconciliation:run"
    VARIANCE_WRITE = "variance:write"
    EXCEPTION_REVIEW = "exception:review"


_SHARED = frozenset([
    Permission.CLIENT_WRITE,
    Permission.PAY_RUN_CREATE,
    Permission.PAY_RUN_TRANSITION,
    Permission.IMPORT_UPLOAD,
    Permission.TEMPLATE_WRITE,
    Permission.RECONCILIATION_RUN,
    Permission.EXCEPTION_REVIEW,
])

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.ADMIN: _SHARED | {Permission.VARIANCE_WRITE},
    Role.PREPARER: _SHARED,
    Role.REVIEWER: _SHARED | {Permission.VARIANCE_WRITE},
    Role.SYSTEM: frozenset(),
}


def can(role: Role, permission: Permission) -> bool:
    """Return True if ``role`` holds ``permission``."""
    return permission in ROLE_PERMISSIONS.get(Role(role), frozenset())


def require_permission(role: Role, permission: Permission) -> None:
    """Raise PermissionDeniedError unless ``role`` holds ``permission``."""
    if not can(role, permission):
        raise PermissionDeniedError(
            "Permission denied",
            details={"role": Role(role).value, "permission": Permission(permission).value},
        )
