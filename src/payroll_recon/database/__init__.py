"""Database module for reconciliation persistence."""

from .models import (
    Base,
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
    Region,
    PayRunStatus,
    SourceType,
    ImportStatus,
    TemplateStatus,
    AccountClass,
    VarianceType,
    RunStatus,
    CheckType,
    CheckStatus,
    CheckSeverity,
    ExceptionCategory,
    ExceptionStatus,
)
from .session import (
    get_db,
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    make_session_factory,
    get_async_session_factory,
    get_session_factory_dependency,
    transaction,
)
from .repository import (
    FirmRepository,
    PayRunRepository,
    ImportRepository,
    MappingTemplateRepository,
    AccountClassificationRepository,
    ExpectedVarianceRepository,
    ReconciliationRunRepository,
    ExceptionRepository,
)

__all__ = [
    # Models
    "Base",
    "Firm",
    "Client",
    "PayRun",
    "Import",
    "MappingTemplate",
    "AccountClassification",
    "ExpectedVariance",
    "ReconciliationRun",
    "CheckResult",
    "ReconciliationException",
    # Enums
    "Region",
    "PayRunStatus",
    "SourceType",
    "ImportStatus",
    "TemplateStatus",
    "AccountClass",
    "VarianceType",
    "RunStatus",
    "CheckType",
    "CheckStatus",
    "CheckSeverity",
    "ExceptionCategory",
    "ExceptionStatus",
    # Session management
    "get_db",
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "make_session_factory",
    "get_async_session_factory",
    "get_session_factory_dependency",
    "transaction",
    # Repositories
    "FirmRepository",
    "PayRunRepository",
    "ImportRepository",
    "MappingTemplateRepository",
    "AccountClassificationRepository",
    "ExpectedVarianceRepository",
    "ReconciliationRunRepository",
    "ExceptionRepository",
]
