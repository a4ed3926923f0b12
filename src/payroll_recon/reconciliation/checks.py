"""The fixed, versioned check catalogue.

Each check is a pure function of extracted totals and tolerances returning a
``CheckEvaluation``. ``CATALOGUE`` lists them in evaluation order; adding a
check means adding an entry here.
"""

from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

from ..database.models import (
    CheckType,
    CheckStatus,
    CheckSeverity,
    ExceptionCategory,
)
from .amounts import cents_to_amount, select_evidence_rows
from .models import (
    AmountRow,
    CategoryBreakdown,
    CheckDetails,
    CheckEvaluation,
    CheckInputs,
    EvidencePointer,
    ExceptionDraft,
    JournalComparison,
    STATUTORY_CATEGORY_LABELS,
    ToleranceApplied,
    ToleranceConfig,
    ToleranceSettings,
    TotalWithRows,
)

CHECK_VERSION = "v1"


def calc_tolerance_cents(absolute_cents: int, percent: float, base_cents: int) -> int:
    """``max(absolute, round(|base| * percent / 100))``; just ``absolute`` when base is 0."""
    if base_cents == 0:
        return absolute_cents
    percent_cents = int(round(abs(base_cents) * (percent / 100)))
    return max(absolute_cents, percent_cents)


def delta_percent(delta: float, base: float) -> float:
    if base == 0:
        return 0.0
    return round(abs(delta) / abs(base) * 100, 4)


def build_evidence(import_id: Optional[str], rows: Sequence[AmountRow], note: str) -> EvidencePointer:
    return EvidencePointer(import_id=import_id, row_numbers=select_evidence_rows(rows), note=note)


class TotalsComparison(NamedTuple):
    details: CheckDetails
    delta_cents: int
    tolerance_cents: int

    @property
    def within_tolerance(self) -> bool:
        return abs(self.delta_cents) <= self.tolerance_cents


def compare_totals(
    left_label: str,
    right_label: str,
    left_cents: int,
    right_cents: int,
    tolerance: ToleranceConfig,
) -> TotalsComparison:
    """Compare two totals; the left total is the tolerance base.

    Args:
        left_label: Display label of the left (base) total.
        right_label: Display label of the right total.
        left_cents: Left total in cents.
        right_cents: Right total in cents.
        tolerance: Absolute/percent tolerance.

    Returns:
        TotalsComparison with display details, signed delta and tolerance.
    """
    delta_cents = left_cents - right_cents
    tolerance_cents = calc_tolerance_cents(tolerance.absolute_cents, tolerance.percent, left_cents)
    details = CheckDetails(
        left_label=left_label,
        right_label=right_label,
        left_value=cents_to_amount(left_cents),
        right_value=cents_to_amount(right_cents),
        delta_value=cents_to_amount(delta_cents),
        delta_percent=delta_percent(delta_cents, left_cents),
        formula=f"{left_label} - {right_label}",
        tolerance_applied=ToleranceApplied(
            absolute=cents_to_amount(tolerance.absolute_cents),
            percent=tolerance.percent,
            applied=cents_to_amount(tolerance_cents),
        ),
    )
    return TotalsComparison(details, delta_cents, tolerance_cents)


def skipped_details(left_label: str, right_label: str, reason: str) -> CheckDetails:
    return CheckDetails(left_label=left_label, right_label=right_label, formula=reason)


def count_details(
    left_label: str,
    right_label: str,
    left_value: int,
    right_value: int,
    absolute: float = 0,
    percent: float = 0,
) -> Tuple[CheckDetails, int, float]:
    """Details for a count comparison; counts are not converted from cents."""
    delta = left_value - right_value
    if left_value == 0:
        applied = float(absolute)
    else:
        applied = max(float(absolute), abs(left_value) * (percent / 100))
    details = CheckDetails(
        left_label=left_label,
        right_label=right_label,
        left_value=left_value,
        right_value=right_value,
        delta_value=delta,
        delta_percent=delta_percent(delta, left_value),
        formula=f"{left_label} - {right_label}",
        tolerance_applied=ToleranceApplied(absolute=absolute, percent=percent, applied=round(applied, 2)),
    )
    return details, delta, applied


def _warn(check_type: CheckType, summary: str, details: CheckDetails) -> CheckEvaluation:
    return CheckEvaluation(
        check_type=check_type,
        check_version=CHECK_VERSION,
        status=CheckStatus.WARN,
        severity=CheckSeverity.LOW,
        summary=summary,
        details=details,
    )


def _pass_or_fail(
    check_type: CheckType,
    passed: bool,
    fail_severity: CheckSeverity,
    summary: str,
    details: CheckDetails,
    evidence: Optional[List[EvidencePointer]],
    exception: ExceptionDraft,
) -> CheckEvaluation:
    return CheckEvaluation(
        check_type=check_type,
        check_version=CHECK_VERSION,
        status=CheckStatus.PASS if passed else CheckStatus.FAIL,
        severity=CheckSeverity.INFO if passed else fail_severity,
        summary=summary,
        details=details,
        evidence=evidence,
        exception=None if passed else exception,
    )


def evaluate_register_net_to_bank_total(
    register: TotalWithRows,
    bank: TotalWithRows,
    register_import_id: str,
    bank_import_id: str,
    tolerance: ToleranceConfig,
) -> CheckEvaluation:
    comparison = compare_totals(
        "Register net total", "Bank total", register.total_cents, bank.total_cents, tolerance,
    )
    passed = comparison.within_tolerance
    evidence = [
        build_evidence(register_import_id, register.rows, "Top register net rows"),
        build_evidence(bank_import_id, bank.rows, "Top bank payment rows"),
    ]
    return _pass_or_fail(
        CheckType.CHK_REGISTER_NET_TO_BANK_TOTAL,
        passed,
        CheckSeverity.CRITICAL,
        "Register net total matches bank total within tolerance."
        if passed else "Register net total differs from bank total beyond tolerance.",
        comparison.details,
        evidence,
        ExceptionDraft(
            category=ExceptionCategory.BANK_MISMATCH,
            title="Register net total does not match bank total",
            description="Net pay totals differ between the register and bank sources.",
            evidence=evidence,
        ),
    )


def evaluate_journal_debits_equal_credits(
    debits: TotalWithRows,
    credits: TotalWithRows,
    gl_import_id: str,
    tolerance: ToleranceConfig,
) -> CheckEvaluation:
    comparison = compare_totals(
        "Journal debits total", "Journal credits total", debits.total_cents, credits.total_cents, tolerance,
    )
    passed = comparison.within_tolerance
    evidence = [
        build_evidence(gl_import_id, debits.rows, "Top debit rows"),
        build_evidence(gl_import_id, credits.rows, "Top credit rows"),
    ]
    return _pass_or_fail(
        CheckType.CHK_JOURNAL_DEBITS_EQUAL_CREDITS,
        passed,
        CheckSeverity.HIGH,
        "Journal debits and credits balance within tolerance."
        if passed else "Journal debits and credits are out of balance.",
        comparison.details,
        evidence,
        ExceptionDraft(
            category=ExceptionCategory.JOURNAL_MISMATCH,
            title="Journal debits do not equal credits",
            description="The journal debits and credits are not balanced within tolerance.",
            evidence=evidence,
        ),
    )


def evaluate_register_deductions_to_statutory_totals(inputs: CheckInputs, tolerance: ToleranceConfig) -> CheckEvaluation:
    """Each mapped register deduction category is compared on its own."""
    check_type = CheckType.CHK_REGISTER_DEDUCTIONS_TO_STATUTORY_TOTALS
    left_label, right_label = "Register deductions total", "Statutory totals"

    if not inputs.statutory_import_id:
        return _warn(
            check_type,
            "Statutory totals import is missing; statutory checks skipped.",
            skipped_details(left_label, right_label, "Statutory import missing"),
        )
    if not inputs.register_by_category:
        return _warn(
            check_type,
            "No register deductions are mapped for statutory comparison.",
            skipped_details(left_label, right_label, "Register deductions missing"),
        )

    breakdown: List[CategoryBreakdown] = []
    register_rows: List[AmountRow] = []
    statutory_rows: List[AmountRow] = []
    total_register = 0
    total_statutory = 0

    for category, register_total in inputs.register_by_category.items():
        statutory_total = inputs.statutory_by_category.get(category, TotalWithRows())
        total_register += register_total.total_cents
        total_statutory += statutory_total.total_cents
        delta = register_total.total_cents - statutory_total.total_cents
        tolerance_cents = calc_tolerance_cents(
            tolerance.absolute_cents, tolerance.percent, register_total.total_cents,
        )
        within = abs(delta) <= tolerance_cents
        if not within:
            register_rows.extend(register_total.rows)
            statutory_rows.extend(statutory_total.rows)
        breakdown.append(CategoryBreakdown(
            category=STATUTORY_CATEGORY_LABELS.get(category, str(category)),
            register_total=cents_to_amount(register_total.total_cents),
            statutory_total=cents_to_amount(statutory_total.total_cents),
            delta=cents_to_amount(delta),
            within_tolerance=within,
        ))

    mismatch = any(not item.within_tolerance for item in breakdown)
    details = compare_totals(left_label, right_label, total_register, total_statutory, tolerance).details
    details.category_breakdown = breakdown
    details.unmapped_categories = inputs.unmapped_categories or None

    evidence = None
    if mismatch:
        evidence = [
            build_evidence(inputs.register_import_id, register_rows, "Register deduction rows"),
            build_evidence(inputs.statutory_import_id, statutory_rows, "Statutory category rows"),
        ]
    return _pass_or_fail(
        check_type,
        not mismatch,
        CheckSeverity.HIGH,
        "Register deductions match statutory totals within tolerance."
        if not mismatch else "Register deductions differ from statutory totals beyond tolerance.",
        details,
        evidence,
        ExceptionDraft(
            category=ExceptionCategory.STATUTORY_MISMATCH,
            title="Register deductions do not match statutory totals",
            description="Statutory categories are out of tolerance.",
            evidence=evidence,
        ),
    )


def evaluate_register_pension_to_schedule(inputs: CheckInputs, tolerance: ToleranceConfig) -> CheckEvaluation:
    check_type = CheckType.CHK_REGISTER_PENSION_TO_PENSION_SCHEDULE
    left_label, right_label = "Register pension total", "Pension schedule total"

    if not inputs.pension_import_id:
        return _warn(
            check_type,
            "Pension schedule import is missing; pension schedule check skipped.",
            skipped_details(left_label, right_label, "Pension schedule missing"),
        )
    if inputs.pension_missing_reason:
        return _warn(
            check_type,
            inputs.pension_missing_reason,
            skipped_details(left_label, right_label, inputs.pension_missing_reason),
        )

    comparison = compare_totals(
        left_label,
        right_label,
        inputs.register_pension.total_cents,
        inputs.pension_schedule.total_cents,
        tolerance,
    )
    passed = comparison.within_tolerance
    evidence = [
        build_evidence(inputs.register_import_id, inputs.register_pension.rows, "Register pension rows"),
        build_evidence(inputs.pension_import_id, inputs.pension_schedule.rows, "Pension schedule rows"),
    ]
    return _pass_or_fail(
        check_type,
        passed,
        CheckSeverity.HIGH,
        "Register pension total matches pension schedule within tolerance."
        if passed else "Register pension total differs from pension schedule beyond tolerance.",
        comparison.details,
        evidence,
        ExceptionDraft(
            category=ExceptionCategory.SANITY,
            title="Register pension total does not match pension schedule",
            description="Pension schedule totals differ from the register totals.",
            evidence=evidence,
        ),
    )


def evaluate_register_to_journal(
    check_type: CheckType,
    comparison_input: Optional[JournalComparison],
    inputs: CheckInputs,
    tolerance: ToleranceConfig,
) -> CheckEvaluation:
    """Shared body of the five register-to-journal tie-out checks."""
    if comparison_input is None:
        return _warn(
            check_type,
            "Journal tie-out inputs are unavailable; check skipped.",
            skipped_details("Register total", "Journal total", "Journal tie-out inputs missing"),
        )

    left_label, right_label = comparison_input.left_label, comparison_input.right_label
    if comparison_input.missing_reason:
        details = skipped_details(left_label, right_label, comparison_input.missing_reason)
        details.unmapped_accounts = inputs.unmapped_accounts or None
        return _warn(check_type, comparison_input.missing_reason, details)

    comparison = compare_totals(
        left_label,
        right_label,
        comparison_input.register_total.total_cents,
        comparison_input.journal_total.total_cents,
        tolerance,
    )
    comparison.details.unmapped_accounts = inputs.unmapped_accounts or None
    passed = comparison.within_tolerance
    evidence = [
        build_evidence(inputs.register_import_id, comparison_input.register_total.rows, "Register rows"),
        build_evidence(inputs.gl_import_id, comparison_input.journal_total.rows, "Journal rows"),
    ]
    return _pass_or_fail(
        check_type,
        passed,
        CheckSeverity.HIGH,
        f"{left_label} matches {right_label} within tolerance."
        if passed else f"{left_label} differs from {right_label} beyond tolerance.",
        comparison.details,
        evidence,
        ExceptionDraft(
            category=ExceptionCategory.JOURNAL_MISMATCH,
            title="Register totals do not match journal totals",
            description="Journal allocations differ from the register totals.",
            evidence=evidence,
        ),
    )


def evaluate_bank_duplicate_payments(duplicate_rows: Sequence[AmountRow], bank_import_id: str) -> CheckEvaluation:
    found = len(duplicate_rows) > 0
    details, _, _ = count_details("Duplicate payment rows", "Expected duplicates", len(duplicate_rows), 0)
    evidence = [build_evidence(bank_import_id, duplicate_rows, "Duplicate payment rows")] if found else None
    return _pass_or_fail(
        CheckType.CHK_BANK_DUPLICATE_PAYMENTS,
        not found,
        CheckSeverity.HIGH,
        "Duplicate bank payments detected." if found else "No duplicate bank payments detected.",
        details,
        evidence,
        ExceptionDraft(
            category=ExceptionCategory.BANK_DATA_QUALITY,
            title="Duplicate bank payments detected",
            description="Multiple payments share the same payee, amount and reference.",
            evidence=evidence,
        ),
    )


def evaluate_bank_negative_payments(negative_rows: Sequence[AmountRow], bank_import_id: str) -> CheckEvaluation:
    found = len(negative_rows) > 0
    details, _, _ = count_details("Zero or negative payments", "Expected zero", len(negative_rows), 0)
    evidence = [build_evidence(bank_import_id, negative_rows, "Zero/negative payments")] if found else None
    return _pass_or_fail(
        CheckType.CHK_BANK_NEGATIVE_PAYMENTS,
        not found,
        CheckSeverity.HIGH,
        "Zero or negative bank payments detected." if found else "No zero or negative bank payments detected.",
        details,
        evidence,
        ExceptionDraft(
            category=ExceptionCategory.BANK_DATA_QUALITY,
            title="Zero or negative bank payments detected",
            description="Bank payments include zero or negative values.",
            evidence=evidence,
        ),
    )


def evaluate_bank_payment_count(register_count: int, bank_count: int, tolerance_percent: float) -> CheckEvaluation:
    """Advisory: a count mismatch is WARN/LOW and never opens an exception."""
    details, delta, applied = count_details(
        "Register paid employees",
        "Bank payment count",
        register_count,
        bank_count,
        absolute=1,
        percent=tolerance_percent,
    )
    within = abs(delta) <= applied
    return CheckEvaluation(
        check_type=CheckType.CHK_BANK_PAYMENT_COUNT_MISMATCH,
        check_version=CHECK_VERSION,
        status=CheckStatus.PASS if within else CheckStatus.WARN,
        severity=CheckSeverity.INFO if within else CheckSeverity.LOW,
        summary="Bank payment count aligns with register."
        if within else "Bank payment count differs from register beyond tolerance.",
        details=details,
    )


class CatalogueEntry(NamedTuple):
    """One check: its type, the tolerance it reads, and its evaluation."""
    check_type: CheckType
    tolerance_key: str
    evaluate: Callable[[CheckInputs, ToleranceSettings], CheckEvaluation]


def _journal_entry(check_type: CheckType) -> CatalogueEntry:
    return CatalogueEntry(
        check_type,
        "journal_tie_out",
        lambda inputs, tolerances: evaluate_register_to_journal(
            check_type,
            inputs.journal_comparisons.get(check_type),
            inputs,
            tolerances.journal_tie_out,
        ),
    )


CATALOGUE: Tuple[CatalogueEntry, ...] = (
    CatalogueEntry(
        CheckType.CHK_REGISTER_NET_TO_BANK_TOTAL,
        "register_net_to_bank",
        lambda inputs, tolerances: evaluate_register_net_to_bank_total(
            inputs.register_net,
            inputs.bank_total,
            inputs.register_import_id,
            inputs.bank_import_id,
            tolerances.register_net_to_bank,
        ),
    ),
    CatalogueEntry(
        CheckType.CHK_JOURNAL_DEBITS_EQUAL_CREDITS,
        "journal_balance",
        lambda inputs, tolerances: evaluate_journal_debits_equal_credits(
            inputs.journal_debits,
            inputs.journal_credits,
            inputs.gl_import_id,
            tolerances.journal_balance,
        ),
    ),
    CatalogueEntry(
        CheckType.CHK_REGISTER_DEDUCTIONS_TO_STATUTORY_TOTALS,
        "statutory_totals",
        lambda inputs, tolerances: evaluate_register_deductions_to_statutory_totals(
            inputs, tolerances.statutory_totals,
        ),
    ),
    CatalogueEntry(
        CheckType.CHK_REGISTER_PENSION_TO_PENSION_SCHEDULE,
        "statutory_totals",
        lambda inputs, tolerances: evaluate_register_pension_to_schedule(
            inputs, tolerances.statutory_totals,
        ),
    ),
    _journal_entry(CheckType.CHK_REGISTER_GROSS_TO_JOURNAL_EXPENSE),
    _journal_entry(CheckType.CHK_REGISTER_EMPLOYER_COSTS_TO_JOURNAL),
    _journal_entry(CheckType.CHK_REGISTER_NET_TO_JOURNAL_LIABILITY),
    _journal_entry(CheckType.CHK_REGISTER_TAX_TO_JOURNAL_LIABILITY),
    _journal_entry(CheckType.CHK_REGISTER_PENSION_TO_JOURNAL_LIABILITY),
    CatalogueEntry(
        CheckType.CHK_BANK_DUPLICATE_PAYMENTS,
        "",
        lambda inputs, tolerances: evaluate_bank_duplicate_payments(
            inputs.duplicate_rows, inputs.bank_import_id,
        ),
    ),
    CatalogueEntry(
        CheckType.CHK_BANK_NEGATIVE_PAYMENTS,
        "",
        lambda inputs, tolerances: evaluate_bank_negative_payments(
            inputs.negative_rows, inputs.bank_import_id,
        ),
    ),
    CatalogueEntry(
        CheckType.CHK_BANK_PAYMENT_COUNT_MISMATCH,
        "bank_count_mismatch_percent",
        lambda inputs, tolerances: evaluate_bank_payment_count(
            inputs.register_paid_count,
            inputs.bank_paid_count,
            tolerances.bank_count_mismatch_percent,
        ),
    ),
)


def evaluate_catalogue(inputs: CheckInputs, tolerances: ToleranceSettings) -> List[CheckEvaluation]:
    """Evaluate every catalogue entry in order."""
    return [entry.evaluate(inputs, tolerances) for entry in CATALOGUE]


CATALOGUE_ORDER: Dict[str, int] = {entry.check_type.value: index for index, entry in enumerate(CATALOGUE)}


def catalogue_position(check_type: str) -> int:
    """Sort key placing check results in catalogue order."""
    return CATALOGUE_ORDER.get(check_type, len(CATALOGUE))
