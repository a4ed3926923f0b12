"""SQLAlchemy models for reconciliation persistence."""

import uuid
import json
import enum
from datetime import datetime, date
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


def _loads(value: Optional[str]) -> Any:
    if value:
        return json.loads(value)
    return None


def _dumps(value: Any) -> Optional[str]:
    if value is not None:
        return json.dumps(value, sort_keys=True)
    return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Region(str, enum.Enum):
    """Firm regions; each selects a check bundle."""
    UK = "UK"
    IE = "IE"


class PayRunStatus(str, enum.Enum):
    """Pay run lifecycle statuses."""
    DRAFT = "DRAFT"
    IMPORTED = "IMPORTED"
    MAPPED = "MAPPED"
    RECONCILING = "RECONCILING"
    RECONCILED = "RECONCILED"
    READY_FOR_REVIEW = "READY_FOR_REVIEW"
    APPROVED = "APPROVED"
    PACKED = "PACKED"
    LOCKED = "LOCKED"
    ARCHIVED = "ARCHIVED"


class SourceType(str, enum.Enum):
    """Kinds of uploaded source files."""
    REGISTER = "REGISTER"
    BANK = "BANK"
    GL = "GL"
    STATUTORY = "STATUTORY"
    PENSION_SCHEDULE = "PENSION_SCHEDULE"


class ImportStatus(str, enum.Enum):
    """Import lifecycle statuses."""
    UPLOADED = "UPLOADED"
    PARSING = "PARSING"
    PARSED = "PARSED"
    MAPPING_REQUIRED = "MAPPING_REQUIRED"
    MAPPED = "MAPPED"
    READY = "READY"
    ERROR_FILE_INVALID = "ERROR_FILE_INVALID"
    ERROR_PARSE_FAILED = "ERROR_PARSE_FAILED"


class TemplateStatus(str, enum.Enum):
    """Mapping template version statuses."""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    DEPRECATED = "DEPRECATED"


class AccountClass(str, enum.Enum):
    """General-ledger account classifications."""
    EXPENSE = "EXPENSE"
    NET_PAYABLE = "NET_PAYABLE"
    TAX_PAYABLE = "TAX_PAYABLE"
    NI_PRSI_PAYABLE = "NI_PRSI_PAYABLE"
    PENSION_PAYABLE = "PENSION_PAYABLE"
    CASH = "CASH"
    OTHER = "OTHER"


class VarianceType(str, enum.Enum):
    """Why a variance is expected."""
    DIRECTORS_SEPARATE = "DIRECTORS_SEPARATE"
    PENSION_SEPARATE = "PENSION_SEPARATE"
    ROUNDING = "ROUNDING"
    OTHER = "OTHER"


class RunStatus(str, enum.Enum):
    """Reconciliation run statuses."""
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class CheckType(str, enum.Enum):
    """The fixed check catalogue."""
    CHK_REGISTER_NET_TO_BANK_TOTAL = "CHK_REGISTER_NET_TO_BANK_TOTAL"
    CHK_JOURNAL_DEBITS_EQUAL_CREDITS = "CHK_JOURNAL_DEBITS_EQUAL_CREDITS"
    CHK_REGISTER_DEDUCTIONS_TO_STATUTORY_TOTALS = "CHK_REGISTER_DEDUCTIONS_TO_STATUTORY_TOTALS"
    CHK_REGISTER_PENSION_TO_PENSION_SCHEDULE = "CHK_REGISTER_PENSION_TO_PENSION_SCHEDULE"
    CHK_REGISTER_GROSS_TO_JOURNAL_EXPENSE = "CHK_REGISTER_GROSS_TO_JOURNAL_EXPENSE"
    CHK_REGISTER_EMPLOYER_COSTS_TO_JOURNAL = "CHK_REGISTER_EMPLOYER_COSTS_TO_JOURNAL"
    CHK_REGISTER_NET_TO_JOURNAL_LIABILITY = "CHK_REGISTER_NET_TO_JOURNAL_LIABILITY"
    CHK_REGISTER_TAX_TO_JOURNAL_LIABILITY = "CHK_REGISTER_TAX_TO_JOURNAL_LIABILITY"
    CHK_REGISTER_PENSION_TO_JOURNAL_LIABILITY = "CHK_REGISTER_PENSION_TO_JOURNAL_LIABILITY"
    CHK_BANK_DUPLICATE_PAYMENTS = "CHK_BANK_DUPLICATE_PAYMENTS"
    CHK_BANK_NEGATIVE_PAYMENTS = "CHK_BANK_NEGATIVE_PAYMENTS"
    CHK_BANK_PAYMENT_COUNT_MISMATCH = "CHK_BANK_PAYMENT_COUNT_MISMATCH"


class CheckStatus(str, enum.Enum):
    """Outcome of one check."""
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


class CheckSeverity(str, enum.Enum):
    """Severity of a check outcome."""
    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ExceptionCategory(str, enum.Enum):
    """Exception categories surfaced to reviewers."""
    BANK_MISMATCH = "BANK_MISMATCH"
    JOURNAL_MISMATCH = "JOURNAL_MISMATCH"
    STATUTORY_MISMATCH = "STATUTORY_MISMATCH"
    BANK_DATA_QUALITY = "BANK_DATA_QUALITY"
    SANITY = "SANITY"


class ExceptionStatus(str, enum.Enum):
    """Review status of an exception."""
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"
    OVERRIDDEN = "OVERRIDDEN"


class Firm(Base):
    """Accounting firm. ``defaults`` holds requiredSources and tolerances."""
    __tablename__ = "firms"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    region: Mapped[str] = mapped_column(String(10), nullable=False, default=Region.UK.value)
    defaults_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    @property
    def defaults(self) -> Optional[Dict[str, Any]]:
        """Get firm defaults as dictionary."""
        return _loads(self.defaults_json)

    @defaults.setter
    def defaults(self, value: Optional[Dict[str, Any]]) -> None:
        """Set firm defaults from dictionary."""
        self.defaults_json = _dumps(value)


class Client(Base):
    """Payroll client of a firm. ``settings`` holds tolerance overrides."""
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    firm_id: Mapped[str] = mapped_column(String(36), ForeignKey("firms.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    settings_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    @property
    def settings(self) -> Optional[Dict[str, Any]]:
        """Get client settings as dictionary."""
        return _loads(self.settings_json)

    @settings.setter
    def settings(self, value: Optional[Dict[str, Any]]) -> None:
        """Set client settings from dictionary."""
        self.settings_json = _dumps(value)


class PayRun(Base):
    """One payroll period (and revision) for a client.

    ``last_run_number`` is the reconciliation run counter; it is only
    incremented while the row is locked.
    """
    __tablename__ = "pay_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    firm_id: Mapped[str] = mapped_column(String(36), ForeignKey("firms.id"), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    period_label: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=PayRunStatus.DRAFT.value)
    settings_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_run_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("client_id", "period_start", "period_end", "revision", name="uq_pay_runs_period_revision"),
        Index("ix_pay_runs_status", "status"),
    )

    @property
    def settings(self) -> Optional[Dict[str, Any]]:
        """Get pay run settings as dictionary."""
        return _loads(self.settings_json)

    @settings.setter
    def settings(self, value: Optional[Dict[str, Any]]) -> None:
        """Set pay run settings from dictionary."""
        self.settings_json = _dumps(value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert pay run to dictionary representation."""
        return {
            "id": self.id,
            "firm_id": self.firm_id,
            "client_id": self.client_id,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "period_label": self.period_label,
            "revision": self.revision,
            "status": self.status,
            "settings": self.settings,
            "created_at": _iso(self.created_at),
        }


class Import(Base):
    """One uploaded version of a source file for a pay run."""
    __tablename__ = "imports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    firm_id: Mapped[str] = mapped_column(String(36), ForeignKey("firms.id"), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False)
    pay_run_id: Mapped[str] = mapped_column(String(36), ForeignKey("pay_runs.id"), nullable=False, index=True)
    source_type: Mapped[str] = mapped_column(String(50), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_uri: Mapped[str] = mapped_column(String(1024), nullable=False)
    original_filename: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    parse_status: Mapped[str] = mapped_column(String(50), nullable=False, default=ImportStatus.UPLOADED.value)
    mapping_template_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("mapping_templates.id"), nullable=True)
    uploaded_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("pay_run_id", "source_type", "version", name="uq_imports_source_version"),
        UniqueConstraint("pay_run_id", "source_type", "file_hash", name="uq_imports_source_hash"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert import to dictionary representation."""
        return {
            "id": self.id,
            "pay_run_id": self.pay_run_id,
            "source_type": self.source_type,
            "version": self.version,
            "storage_uri": self.storage_uri,
            "original_filename": self.original_filename,
            "parse_status": self.parse_status,
            "mapping_template_id": self.mapping_template_id,
            "created_at": _iso(self.created_at),
        }


class MappingTemplate(Base):
    """One version of a column mapping under (firm, client-or-null, source type, name)."""
    __tablename__ = "mapping_templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    firm_id: Mapped[str] = mapped_column(String(36), ForeignKey("firms.id"), nullable=False)
    client_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("clients.id"), nullable=True)
    source_type: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=TemplateStatus.DRAFT.value)
    source_columns_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    column_map_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    normalization_rules_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    header_row_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sheet_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("firm_id", "client_id", "source_type", "name", "version", name="uq_mapping_templates_version"),
        Index("ix_mapping_templates_identity", "firm_id", "client_id", "source_type", "name"),
    )

    @property
    def source_columns(self) -> List[str]:
        """Get source columns as list."""
        return _loads(self.source_columns_json) or []

    @source_columns.setter
    def source_columns(self, value: List[str]) -> None:
        """Set source columns from list."""
        self.source_columns_json = json.dumps(list(value))

    @property
    def column_map(self) -> Dict[str, str]:
        """Get column map as dictionary."""
        return _loads(self.column_map_json) or {}

    @column_map.setter
    def column_map(self, value: Dict[str, str]) -> None:
        """Set column map from dictionary."""
        self.column_map_json = json.dumps(dict(value), sort_keys=True)

    @property
    def normalization_rules(self) -> Optional[Dict[str, Any]]:
        """Get normalization rules as dictionary."""
        return _loads(self.normalization_rules_json)

    @normalization_rules.setter
    def normalization_rules(self, value: Optional[Dict[str, Any]]) -> None:
        """Set normalization rules from dictionary."""
        self.normalization_rules_json = _dumps(value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert template to dictionary representation."""
        return {
            "id": self.id,
            "firm_id": self.firm_id,
            "client_id": self.client_id,
            "source_type": self.source_type,
            "name": self.name,
            "version": self.version,
            "status": self.status,
            "source_columns": self.source_columns,
            "column_map": self.column_map,
            "normalization_rules": self.normalization_rules,
            "header_row_index": self.header_row_index,
            "sheet_name": self.sheet_name,
            "created_at": _iso(self.created_at),
        }


class AccountClassification(Base):
    """Maps a client's GL account code to an account class."""
    __tablename__ = "account_classifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    firm_id: Mapped[str] = mapped_column(String(36), ForeignKey("firms.id"), nullable=False)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False)
    account_code: Mapped[str] = mapped_column(String(100), nullable=False)
    account_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    classification: Mapped[str] = mapped_column(String(50), nullable=False, default=AccountClass.OTHER.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("firm_id", "client_id", "account_code", name="uq_account_classifications_code"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert classification to dictionary representation."""
        return {
            "id": self.id,
            "client_id": self.client_id,
            "account_code": self.account_code,
            "account_name": self.account_name,
            "classification": self.classification,
        }


class ExpectedVariance(Base):
    """Client rule that downgrades a failing check when its condition matches."""
    __tablename__ = "expected_variances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    firm_id: Mapped[str] = mapped_column(String(36), ForeignKey("firms.id"), nullable=False)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    check_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    variance_type: Mapped[str] = mapped_column(String(50), nullable=False, default=VarianceType.OTHER.value)
    condition_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    effect_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    @property
    def condition(self) -> Optional[Dict[str, Any]]:
        """Get condition as dictionary."""
        return _loads(self.condition_json)

    @condition.setter
    def condition(self, value: Optional[Dict[str, Any]]) -> None:
        """Set condition from dictionary."""
        self.condition_json = _dumps(value)

    @property
    def effect(self) -> Optional[Dict[str, Any]]:
        """Get effect as dictionary."""
        return _loads(self.effect_json)

    @effect.setter
    def effect(self, value: Optional[Dict[str, Any]]) -> None:
        """Set effect from dictionary."""
        self.effect_json = _dumps(value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert variance to dictionary representation."""
        return {
            "id": self.id,
            "client_id": self.client_id,
            "check_type": self.check_type,
            "variance_type": self.variance_type,
            "condition": self.condition,
            "effect": self.effect,
            "active": self.active,
            "archived_at": _iso(self.archived_at),
            "created_at": _iso(self.created_at),
        }


class ReconciliationRun(Base):
    """One execution of the check catalogue against a pay run's imports."""
    __tablename__ = "reconciliation_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    firm_id: Mapped[str] = mapped_column(String(36), ForeignKey("firms.id"), nullable=False)
    pay_run_id: Mapped[str] = mapped_column(String(36), ForeignKey("pay_runs.id"), nullable=False, index=True)
    run_number: Mapped[int] = mapped_column(Integer, nullable=False)
    bundle_id: Mapped[str] = mapped_column(String(50), nullable=False)
    bundle_version: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=RunStatus.RUNNING.value)
    input_summary_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    executed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    superseded_by_run_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("pay_run_id", "run_number", name="uq_reconciliation_runs_number"),
    )

    @property
    def input_summary(self) -> Optional[Dict[str, Any]]:
        """Get input summary as dictionary."""
        return _loads(self.input_summary_json)

    @input_summary.setter
    def input_summary(self, value: Optional[Dict[str, Any]]) -> None:
        """Set input summary from dictionary."""
        self.input_summary_json = _dumps(value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert run to dictionary representation."""
        return {
            "id": self.id,
            "pay_run_id": self.pay_run_id,
            "run_number": self.run_number,
            "bundle_id": self.bundle_id,
            "bundle_version": self.bundle_version,
            "status": self.status,
            "input_summary": self.input_summary,
            "executed_by": self.executed_by,
            "superseded_at": _iso(self.superseded_at),
            "superseded_by_run_id": self.superseded_by_run_id,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }


class CheckResult(Base):
    """Persisted outcome of one check within a run."""
    __tablename__ = "check_results"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    run_id: Mapped[str] = mapped_column(String(36), ForeignKey("reconciliation_runs.id"), nullable=False, index=True)
    check_type: Mapped[str] = mapped_column(String(100), nullable=False)
    check_version: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    details_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evidence_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    @property
    def details(self) -> Optional[Dict[str, Any]]:
        """Get details as dictionary."""
        return _loads(self.details_json)

    @details.setter
    def details(self, value: Optional[Dict[str, Any]]) -> None:
        """Set details from dictionary."""
        self.details_json = _dumps(value)

    @property
    def evidence(self) -> Optional[List[Dict[str, Any]]]:
        """Get evidence pointers as list."""
        return _loads(self.evidence_json)

    @evidence.setter
    def evidence(self, value: Optional[List[Dict[str, Any]]]) -> None:
        """Set evidence pointers from list."""
        self.evidence_json = _dumps(value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert check result to dictionary representation."""
        return {
            "id": self.id,
            "run_id": self.run_id,
            "check_type": self.check_type,
            "check_version": self.check_version,
            "status": self.status,
            "severity": self.severity,
            "summary": self.summary,
            "details": self.details,
            "evidence": self.evidence,
        }


class ReconciliationException(Base):
    """Reviewable exception raised from a failing check result."""
    __tablename__ = "exceptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    firm_id: Mapped[str] = mapped_column(String(36), ForeignKey("firms.id"), nullable=False)
    pay_run_id: Mapped[str] = mapped_column(String(36), ForeignKey("pay_runs.id"), nullable=False, index=True)
    run_id: Mapped[str] = mapped_column(String(36), ForeignKey("reconciliation_runs.id"), nullable=False, index=True)
    check_result_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("check_results.id"), nullable=True)
    check_type: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ExceptionStatus.OPEN.value)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evidence_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    resolution_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    superseded_by_run_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_exceptions_status", "status"),
    )

    @property
    def evidence(self) -> Optional[List[Dict[str, Any]]]:
        """Get evidence pointers as list."""
        return _loads(self.evidence_json)

    @evidence.setter
    def evidence(self, value: Optional[List[Dict[str, Any]]]) -> None:
        """Set evidence pointers from list."""
        self.evidence_json = _dumps(value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary representation."""
        return {
            "id": self.id,
            "pay_run_id": self.pay_run_id,
            "run_id": self.run_id,
            "check_type": self.check_type,
            "category": self.category,
            "severity": self.severity,
            "status": self.status,
            "title": self.title,
            "description": self.description,
            "evidence": self.evidence,
            "assigned_to": self.assigned_to,
            "resolution_note": self.resolution_note,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "superseded_at": _iso(self.superseded_at),
            "superseded_by_run_id": self.superseded_by_run_id,
        }
