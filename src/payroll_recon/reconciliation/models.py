"""Value models for payroll reconciliation."""

import enum
from datetime import datetime
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field

from ..database.models import (
    CheckType,
    CheckStatus,
    CheckSeverity,
    ExceptionCategory,
    SourceType,
)
from ..permissions import Role


class StatutoryCategory(str, enum.Enum):
    """Deduction categories compared against statutory filings."""
    TAX_PRIMARY = "TAX_PRIMARY"
    TAX_SECONDARY = "TAX_SECONDARY"
    TAX_OTHER = "TAX_OTHER"
    PENSION_EMPLOYEE = "PENSION_EMPLOYEE"
    PENSION_EMPLOYER = "PENSION_EMPLOYER"
    OTHER_DEDUCTIONS = "OTHER_DEDUCTIONS"


STATUTORY_CATEGORY_LABELS: Dict[StatutoryCategory, str] = {
    StatutoryCategory.TAX_PRIMARY: "Tax (PAYE/USC)",
    StatutoryCategory.TAX_SECONDARY: "Tax 2 (NI/PRSI)",
    StatutoryCategory.TAX_OTHER: "Tax 3 (Other)",
    StatutoryCategory.PENSION_EMPLOYEE: "Pension employee",
    StatutoryCategory.PENSION_EMPLOYER: "Pension employer",
    StatutoryCategory.OTHER_DEDUCTIONS: "Other deductions",
}

# Register column feeding each statutory category.
REGISTER_CATEGORY_FIELDS: Dict[StatutoryCategory, str] = {
    StatutoryCategory.TAX_PRIMARY: "tax1",
    StatutoryCategory.TAX_SECONDARY: "tax2",
    StatutoryCategory.TAX_OTHER: "tax3",
    StatutoryCategory.PENSION_EMPLOYEE: "pension_employee",
    StatutoryCategory.PENSION_EMPLOYER: "pension_employer",
    StatutoryCategory.OTHER_DEDUCTIONS: "other_deductions",
}


class Actor(BaseModel):
    """The caller of a service operation."""
    firm_id: str = Field(..., description="Caller's firm; every lookup is scoped to it")
    user_id: str = Field(..., description="Caller's user ID")
    role: Role = Field(..., description="Caller's role")


class ToleranceConfig(BaseModel):
    """Absolute-or-percent tolerance for a totals comparison."""
    absolute_cents: int = Field(default=0, ge=0)
    percent: float = Field(default=0.0, ge=0)


class ToleranceSettings(BaseModel):
    """Resolved tolerances for every tolerance-driven check."""
    register_net_to_bank: ToleranceConfig
    journal_balance: ToleranceConfig
    statutory_totals: ToleranceConfig
    journal_tie_out: ToleranceConfig
    bank_count_mismatch_percent: float = Field(default=0.0, ge=0)


class AmountRow(BaseModel):
    """A contributing row: 1-based grid row number and its amount in cents."""
    row_number: int
    amount_cents: int


class TotalWithRows(BaseModel):
    """Signed total in cents plus every contributing row."""
    total_cents: int = 0
    rows: List[AmountRow] = Field(default_factory=list)


class EvidencePointer(BaseModel):
    """Rows of an import a reviewer should look at."""
    import_id: Optional[str] = None
    row_numbers: List[int] = Field(default_factory=list)
    note: Optional[str] = None


class ToleranceApplied(BaseModel):
    """Tolerance inputs and the effective tolerance, in display units."""
    absolute: float = 0.0
    percent: float = 0.0
    applied: float = 0.0


class CategoryBreakdown(BaseModel):
    """Per-category statutory comparison."""
    category: str
    register_total: float
    statutory_total: float
    delta: float
    within_tolerance: bool


class ExpectedVarianceRecord(BaseModel):
    """Which expected variance downgraded a result."""
    id: str
    variance_type: str
    downgrade_to: CheckStatus
    requires_note: bool = False
    requires_attachment: bool = False
    requires_reviewer_ack: bool = False


class CheckDetails(BaseModel):
    """Structured comparison details persisted with each check result."""
    left_label: str
    right_label: str
    left_value: float = 0.0
    right_value: float = 0.0
    delta_value: float = 0.0
    delta_percent: float = 0.0
    formula: str = ""
    tolerance_applied: ToleranceApplied = Field(default_factory=ToleranceApplied)
    category_breakdown: Optional[List[CategoryBreakdown]] = None
    unmapped_categories: Optional[List[str]] = None
    unmapped_accounts: Optional[List[str]] = None
    expected_variance: Optional[ExpectedVarianceRecord] = None


class ExceptionDraft(BaseModel):
    """Exception to open if the evaluation is still FAIL after variances."""
    category: ExceptionCategory
    title: str
    description: str
    evidence: Optional[List[EvidencePointer]] = None


class CheckEvaluation(BaseModel):
    """Result of evaluating one catalogue entry."""
    check_type: CheckType
    check_version: str
    status: CheckStatus
    severity: CheckSeverity
    summary: str
    details: CheckDetails
    evidence: Optional[List[EvidencePointer]] = None
    exception: Optional[ExceptionDraft] = None

    def details_dict(self) -> Dict[str, Any]:
        return self.details.model_dump(mode="json", exclude_none=True)

    def evidence_list(self) -> Optional[List[Dict[str, Any]]]:
        if self.evidence is None:
            return None
        return [pointer.model_dump(mode="json", exclude_none=True) for pointer in self.evidence]


class BankPayment(BaseModel):
    """One bank row, with payee and reference normalized for matching."""
    row_number: int
    payee_key: str = ""
    amount_cents: int
    reference: str = ""


class JournalComparison(BaseModel):
    """Register total against the journal total for one account class."""
    left_label: str
    right_label: str
    register_total: TotalWithRows = Field(default_factory=TotalWithRows)
    journal_total: TotalWithRows = Field(default_factory=TotalWithRows)
    missing_reason: Optional[str] = None


class CheckInputs(BaseModel):
    """Every extracted total the check catalogue reads."""
    register_import_id: str
    bank_import_id: str
    gl_import_id: str
    statutory_import_id: Optional[str] = None
    pension_import_id: Optional[str] = None

    register_net: TotalWithRows = Field(default_factory=TotalWithRows)
    register_paid_count: int = 0

    bank_total: TotalWithRows = Field(default_factory=TotalWithRows)
    bank_payments: List[BankPayment] = Field(default_factory=list)
    bank_paid_count: int = 0
    duplicate_rows: List[AmountRow] = Field(default_factory=list)
    negative_rows: List[AmountRow] = Field(default_factory=list)

    journal_debits: TotalWithRows = Field(default_factory=TotalWithRows)
    journal_credits: TotalWithRows = Field(default_factory=TotalWithRows)
    journal_comparisons: Dict[CheckType, JournalComparison] = Field(default_factory=dict)
    unmapped_accounts: List[str] = Field(default_factory=list)

    register_by_category: Dict[StatutoryCategory, TotalWithRows] = Field(default_factory=dict)
    statutory_by_category: Dict[StatutoryCategory, TotalWithRows] = Field(default_factory=dict)
    unmapped_categories: List[str] = Field(default_factory=list)

    register_pension: TotalWithRows = Field(default_factory=TotalWithRows)
    pension_schedule: TotalWithRows = Field(default_factory=TotalWithRows)
    pension_missing_reason: Optional[str] = None


class ImportFileData(BaseModel):
    """Normalized row grid returned by a file reader."""
    rows: List[List[str]] = Field(default_factory=list)
    sheet_names: List[str] = Field(default_factory=list)
    sheet_name: Optional[str] = None


class RunOutcome(BaseModel):
    """Summary returned by a reconciliation run."""
    run_id: str
    run_number: int
    check_count: int
    exception_count: int


class ApplyTemplateInput(BaseModel):
    """Request to map an import's columns, optionally via an existing template."""
    import_id: str
    source_type: SourceType
    source_columns: List[str]
    column_map: Dict[str, str]
    header_row_index: int = Field(default=0, ge=0)
    sheet_name: Optional[str] = None
    template_id: Optional[str] = None
    template_name: Optional[str] = None
    client_scoped: bool = Field(default=True, description="False saves the template firm-wide")
    create_new_version: bool = False
    publish: bool = True
    normalization_rules: Optional[Dict[str, Any]] = None


class ColumnDrift(BaseModel):
    """Difference between a template's expected columns and a file's columns."""
    drifted: bool = False
    missing: List[str] = Field(default_factory=list)
    added: List[str] = Field(default_factory=list)


class ApplyTemplateResult(BaseModel):
    """Outcome of applying a mapping template to an import."""
    template_id: str
    version: int
    applied_existing: bool
    drift: ColumnDrift


class CheckResultRecord(BaseModel):
    """A persisted check result as shown in run reports."""
    id: str
    check_type: str
    check_version: str
    status: CheckStatus
    severity: CheckSeverity
    summary: str
    details: Dict[str, Any] = Field(default_factory=dict)
    evidence: Optional[List[Dict[str, Any]]] = None


class ExceptionRecord(BaseModel):
    """A persisted exception as shown in run reports."""
    id: str
    check_type: str
    category: str
    severity: str
    status: str
    title: str
    description: Optional[str] = None
    evidence: Optional[List[Dict[str, Any]]] = None
    superseded_by_run_id: Optional[str] = None


class RunReport(BaseModel):
    """A reconciliation run with its check results and exceptions."""
    run_id: str = Field(..., description="Reconciliation run ID")
    pay_run_id: str
    run_number: int
    status: str
    bundle_id: str
    bundle_version: str
    executed_by: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None
    superseded_by_run_id: Optional[str] = None
    input_summary: Dict[str, Any] = Field(default_factory=dict)

    check_results: List[CheckResultRecord] = Field(default_factory=list)
    exceptions: List[ExceptionRecord] = Field(default_factory=list)

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in CheckStatus}
        for result in self.check_results:
            counts[result.status.value] += 1
        return counts

    def open_exception_count(self) -> int:
        return sum(1 for exception in self.exceptions if exception.status == "OPEN")

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return a summary of the run without check details."""
        counts = self.count_by_status()
        return {
            "run_id": self.run_id,
            "pay_run_id": self.pay_run_id,
            "run_number": self.run_number,
            "status": self.status,
            "bundle_id": self.bundle_id,
            "bundle_version": self.bundle_version,
            "executed_by": self.executed_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "superseded_by_run_id": self.superseded_by_run_id,
            "statistics": {
                "total_checks": len(self.check_results),
                "passed": counts[CheckStatus.PASS.value],
                "warnings": counts[CheckStatus.WARN.value],
                "failed": counts[CheckStatus.FAIL.value],
                "exceptions": len(self.exceptions),
                "open_exceptions": self.open_exception_count(),
            },
        }

    def to_full_dict(self) -> Dict[str, Any]:
        """Return the complete report including check results and exceptions."""
        result = self.to_summary_dict()
        result["input_summary"] = self.input_summary
        result["check_results"] = [r.model_dump(mode="json") for r in self.check_results]
        result["exceptions"] = [e.model_dump(mode="json") for e in self.exceptions]
        return result
