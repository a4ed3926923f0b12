# payroll_recon package
__version__ = "0.1.0"

from .database import (
    Firm,
    Client,
    PayRun,
    Import,
    MappingTemplate,
    ReconciliationRun,
    CheckResult,
    ReconciliationException,
    PayRunStatus,
    ImportStatus,
    SourceType,
    CheckType,
    CheckStatus,
    init_db,
    close_db,
    get_db,
    transaction,
)
from .errors import (
    ReconciliationError,
    NotFoundError,
    ConflictError,
    ValidationError,
    PermissionDeniedError,
)
from .permissions import Role, Permission
from .audit import AuditRecorderBase, LoggingAuditRecorder, InMemoryAuditRecorder
from .services import (
    PayRunService,
    ImportService,
    AccountClassificationService,
    ExceptionService,
)

# Reconciliation exports
from .reconciliation import (
    Actor,
    RunOutcome,
    RunReport,
    ApplyTemplateInput,
    ApplyTemplateResult,
    ExpectedVarianceService,
    ReportGenerator,
    get_file_reader,
)
from .reconciliation.templates import MappingTemplateService
from .reconciliation.service import ReconciliationService
