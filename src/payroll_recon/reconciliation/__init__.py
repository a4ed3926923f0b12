"""Reconciliation engine for payroll pay runs.

This module cross-checks a pay run's payroll register, bank payment file,
general-ledger journal and optional statutory and pension schedules.

Features:
- Amount parsing and header-resolved column totals
- Versioned mapping templates with column drift detection
- A fixed, versioned catalogue of checks with layered tolerances
- Expected variances that downgrade pre-approved failures
- Pay run and import state machines

The orchestrator (``reconciliation.service``), template service
(``reconciliation.templates``), HTTP router and CLI depend on the service
layer and are imported from their own modules.
"""

from .models import (
    Actor,
    AmountRow,
    ApplyTemplateInput,
    ApplyTemplateResult,
    BankPayment,
    CheckDetails,
    CheckEvaluation,
    CheckInputs,
    CheckResultRecord,
    ColumnDrift,
    EvidencePointer,
    ExceptionDraft,
    ExceptionRecord,
    ImportFileData,
    RunOutcome,
    RunReport,
    StatutoryCategory,
    ToleranceConfig,
    ToleranceSettings,
    TotalWithRows,
)
from .amounts import (
    ParsedImport,
    parse_amount,
    parse_cents,
    normalize_column_name,
    combine_totals,
)
from .mapping import (
    MAPPING_FIELD_CONFIGS,
    NormalizationRules,
    sanitize_columns,
    sanitize_column_map,
    detect_column_drift,
    validate_column_map,
    are_column_maps_equivalent,
)
from .state import (
    assert_pay_run_transition,
    assert_import_transition,
    can_transition_pay_run,
    can_transition_import,
    is_pay_run_locked,
)
from .tolerances import (
    ReconciliationConfig,
    resolve_config,
    resolve_tolerances,
    resolve_required_sources,
)
from .checks import (
    CATALOGUE,
    CHECK_VERSION,
    calc_tolerance_cents,
    compare_totals,
    evaluate_catalogue,
)
from .extraction import LoadedImport, build_check_inputs
from .variances import (
    ExpectedVarianceService,
    apply_expected_variances,
    validate_variance_definition,
)
from .file_reader import (
    FileReaderBase,
    CsvFileReader,
    InMemoryFileReader,
    get_file_reader,
)
from .report import ReportGenerator

__all__ = [
    # Models
    "Actor",
    "AmountRow",
    "ApplyTemplateInput",
    "ApplyTemplateResult",
    "BankPayment",
    "CheckDetails",
    "CheckEvaluation",
    "CheckInputs",
    "CheckResultRecord",
    "ColumnDrift",
    "EvidencePointer",
    "ExceptionDraft",
    "ExceptionRecord",
    "ImportFileData",
    "RunOutcome",
    "RunReport",
    "StatutoryCategory",
    "ToleranceConfig",
    "ToleranceSettings",
    "TotalWithRows",
    # Amounts
    "ParsedImport",
    "parse_amount",
    "parse_cents",
    "normalize_column_name",
    "combine_totals",
    # Mapping
    "MAPPING_FIELD_CONFIGS",
    "NormalizationRules",
    "sanitize_columns",
    "sanitize_column_map",
    "detect_column_drift",
    "validate_column_map",
    "are_column_maps_equivalent",
    # State machines
    "assert_pay_run_transition",
    "assert_import_transition",
    "can_transition_pay_run",
    "can_transition_import",
    "is_pay_run_locked",
    # Configuration
    "ReconciliationConfig",
    "resolve_config",
    "resolve_tolerances",
    "resolve_required_sources",
    # Checks
    "CATALOGUE",
    "CHECK_VERSION",
    "calc_tolerance_cents",
    "compare_totals",
    "evaluate_catalogue",
    "LoadedImport",
    "build_check_inputs",
    # Expected variances
    "ExpectedVarianceService",
    "apply_expected_variances",
    "validate_variance_definition",
    # File readers
    "FileReaderBase",
    "CsvFileReader",
    "InMemoryFileReader",
    "get_file_reader",
    "ReportGenerator",
]
