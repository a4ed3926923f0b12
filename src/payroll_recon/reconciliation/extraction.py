"""Total extraction from mapped imports.

Each ``extract_*`` function reads one parsed import through its column map
and returns signed cent totals with their contributing rows.
``build_check_inputs`` assembles them into the ``CheckInputs`` the check
catalogue evaluates.
"""

import logging
from typing import Dict, List, Mapping, NamedTuple, Optional, Tuple

from pydantic import BaseModel, Field

from ..database.models import AccountClass, CheckType
from .amounts import ParsedImport, combine_totals, normalize_column_name, parse_cents
from .mapping import NormalizationRules
from .models import (
    AmountRow,
    BankPayment,
    CheckInputs,
    JournalComparison,
    REGISTER_CATEGORY_FIELDS,
    StatutoryCategory,
    TotalWithRows,
)

logger = logging.getLogger(__name__)


class LoadedImport(NamedTuple):
    """A usable import: its parsed grid and the template it was mapped with."""
    import_id: str
    parsed: ParsedImport
    column_map: Dict[str, str]
    normalization_rules: NormalizationRules = NormalizationRules()


class RegisterTotals(BaseModel):
    net: TotalWithRows
    paid_count: int = 0
    fields: Dict[str, TotalWithRows] = Field(default_factory=dict)


class BankTotals(BaseModel):
    total: TotalWithRows
    payments: List[BankPayment] = Field(default_factory=list)
    paid_count: int = 0
    duplicate_rows: List[AmountRow] = Field(default_factory=list)
    negative_rows: List[AmountRow] = Field(default_factory=list)


class JournalTotals(BaseModel):
    debits: TotalWithRows
    credits: TotalWithRows
    class_rows: Dict[AccountClass, TotalWithRows] = Field(default_factory=dict)
    unmapped_accounts: List[str] = Field(default_factory=list)


class StatutoryTotals(BaseModel):
    by_category: Dict[StatutoryCategory, TotalWithRows] = Field(default_factory=dict)
    unmapped_categories: List[str] = Field(default_factory=list)


# Optional register amount fields read when mapped.
REGISTER_AMOUNT_FIELDS = (
    "gross_pay",
    "tax1",
    "tax2",
    "tax3",
    "employer_ni",
    "pension_employee",
    "pension_employer",
    "other_deductions",
)


def _positive_count(total: TotalWithRows) -> int:
    return sum(1 for row in total.rows if row.amount_cents > 0)


def extract_register(parsed: ParsedImport, column_map: Mapping[str, str]) -> RegisterTotals:
    """Net pay total, paid-employee count and every mapped amount column.

    Raises:
        ValidationError: If net pay is unmapped or a mapped column is absent.
    """
    net = parsed.column_total(column_map.get("net_pay"))
    fields = {
        key: parsed.column_total(column_map[key])
        for key in REGISTER_AMOUNT_FIELDS
        if column_map.get(key)
    }
    return RegisterTotals(net=net, paid_count=_positive_count(net), fields=fields)


def _normalize_key(value: str) -> str:
    return value.strip().lower()


def extract_bank(parsed: ParsedImport, column_map: Mapping[str, str]) -> BankTotals:
    """Bank payments plus duplicate and zero/negative payment rows.

    Payments are keyed by payee id when mapped and present on the row,
    otherwise payee name. Duplicates share (payee, amount, reference).
    """
    amount_index = parsed.resolve_column_index(column_map.get("amount"))
    payee_id_index = parsed.resolve_column_index(column_map["payee_id"]) if column_map.get("payee_id") else None
    payee_name_index = parsed.resolve_column_index(column_map["payee_name"]) if column_map.get("payee_name") else None
    reference_index = parsed.resolve_column_index(column_map["reference"]) if column_map.get("reference") else None

    payments: List[BankPayment] = []
    for row_number, row in parsed.data_rows():
        cents = parse_cents(parsed.cell(row, amount_index))
        if cents is None:
            continue
        payee_key = ""
        if payee_id_index is not None:
            payee_key = _normalize_key(parsed.cell(row, payee_id_index))
        if not payee_key and payee_name_index is not None:
            payee_key = _normalize_key(parsed.cell(row, payee_name_index))
        reference = _normalize_key(parsed.cell(row, reference_index)) if reference_index is not None else ""
        payments.append(BankPayment(
            row_number=row_number,
            payee_key=payee_key,
            amount_cents=cents,
            reference=reference,
        ))

    rows = [AmountRow(row_number=p.row_number, amount_cents=p.amount_cents) for p in payments]
    total = TotalWithRows(total_cents=sum(p.amount_cents for p in payments), rows=rows)

    groups: Dict[Tuple[str, int, str], List[BankPayment]] = {}
    for payment in payments:
        groups.setdefault((payment.payee_key, payment.amount_cents, payment.reference), []).append(payment)
    duplicate_rows = [
        AmountRow(row_number=p.row_number, amount_cents=p.amount_cents)
        for group in groups.values()
        if len(group) > 1
        for p in group
    ]
    negative_rows = [row for row in rows if row.amount_cents <= 0]

    return BankTotals(
        total=total,
        payments=payments,
        paid_count=_positive_count(total),
        duplicate_rows=sorted(duplicate_rows, key=lambda row: row.row_number),
        negative_rows=negative_rows,
    )


def normalize_account_code(code: str) -> str:
    return normalize_column_name(code)


def extract_journal(
    parsed: ParsedImport,
    column_map: Mapping[str, str],
    classifications: Mapping[str, AccountClass],
) -> JournalTotals:
    """Debit and credit totals plus signed totals per account class.

    Args:
        parsed: Parsed GL import.
        column_map: GL column map; either ``signed_amount`` or ``debit`` and ``credit``.
        classifications: Normalized account code to account class.

    Returns:
        JournalTotals. Debit and credit totals hold positive amounts; class
        totals are signed (debit positive). Accounts without a
        classification count as OTHER and are listed in ``unmapped_accounts``.
    """
    account_index = parsed.resolve_column_index(column_map.get("account"))
    signed_mode = bool(column_map.get("signed_amount"))
    if signed_mode:
        signed_index = parsed.resolve_column_index(column_map["signed_amount"])
    else:
        debit_index = parsed.resolve_column_index(column_map.get("debit"))
        credit_index = parsed.resolve_column_index(column_map.get("credit"))

    debit_rows: List[AmountRow] = []
    credit_rows: List[AmountRow] = []
    class_rows: Dict[AccountClass, List[AmountRow]] = {}
    unmapped: Dict[str, str] = {}

    for row_number, row in parsed.data_rows():
        if signed_mode:
            signed = parse_cents(parsed.cell(row, signed_index))
            if signed is None:
                continue
            if signed > 0:
                debit_rows.append(AmountRow(row_number=row_number, amount_cents=signed))
            elif signed < 0:
                credit_rows.append(AmountRow(row_number=row_number, amount_cents=abs(signed)))
        else:
            debit = parse_cents(parsed.cell(row, debit_index))
            credit = parse_cents(parsed.cell(row, credit_index))
            if debit is None and credit is None:
                continue
            if debit:
                debit_rows.append(AmountRow(row_number=row_number, amount_cents=abs(debit)))
            if credit:
                credit_rows.append(AmountRow(row_number=row_number, amount_cents=abs(credit)))
            signed = abs(debit or 0) - abs(credit or 0)

        account = parsed.cell(row, account_index).strip()
        account_class = classifications.get(normalize_account_code(account))
        if account_class is None:
            account_class = AccountClass.OTHER
            if account:
                unmapped.setdefault(normalize_account_code(account), account)
        class_rows.setdefault(account_class, []).append(AmountRow(row_number=row_number, amount_cents=signed))

    return JournalTotals(
        debits=TotalWithRows(total_cents=sum(r.amount_cents for r in debit_rows), rows=debit_rows),
        credits=TotalWithRows(total_cents=sum(r.amount_cents for r in credit_rows), rows=credit_rows),
        class_rows={
            account_class: TotalWithRows(total_cents=sum(r.amount_cents for r in rows), rows=rows)
            for account_class, rows in class_rows.items()
        },
        unmapped_accounts=list(unmapped.values()),
    )


def resolve_statutory_category(label: str, rules: NormalizationRules) -> Optional[StatutoryCategory]:
    """Resolve a statutory row label through the template's category map,
    then by canonical category name."""
    key = normalize_column_name(label)
    if not key:
        return None
    mapped = rules.category_map.get(key)
    candidate = mapped if mapped else key.upper().replace(" ", "_")
    try:
        return StatutoryCategory(candidate)
    except ValueError:
        return None


def extract_statutory(
    parsed: ParsedImport,
    column_map: Mapping[str, str],
    rules: NormalizationRules,
) -> StatutoryTotals:
    """Sum statutory rows per category; unresolvable labels are reported and skipped."""
    category_index = parsed.resolve_column_index(column_map.get("category"))
    amount_index = parsed.resolve_column_index(column_map.get("amount"))

    rows: Dict[StatutoryCategory, List[AmountRow]] = {}
    unmapped: List[str] = []
    for row_number, row in parsed.data_rows():
        cents = parse_cents(parsed.cell(row, amount_index))
        if cents is None:
            continue
        label = parsed.cell(row, category_index).strip()
        category = resolve_statutory_category(label, rules)
        if category is None:
            if label and label not in unmapped:
                unmapped.append(label)
            continue
        rows.setdefault(category, []).append(AmountRow(row_number=row_number, amount_cents=cents))

    return StatutoryTotals(
        by_category={
            category: TotalWithRows(total_cents=sum(r.amount_cents for r in category_rows), rows=category_rows)
            for category, category_rows in rows.items()
        },
        unmapped_categories=unmapped,
    )


def extract_pension_schedule(parsed: ParsedImport, column_map: Mapping[str, str]) -> TotalWithRows:
    return parsed.column_total(column_map.get("amount"))


ACCOUNT_CLASS_LABELS: Dict[AccountClass, str] = {
    AccountClass.EXPENSE: "expense",
    AccountClass.NET_PAYABLE: "net payable",
    AccountClass.TAX_PAYABLE: "tax payable",
    AccountClass.NI_PRSI_PAYABLE: "NI/PRSI payable",
    AccountClass.PENSION_PAYABLE: "pension payable",
}

REGISTER_FIELD_LABELS: Dict[str, str] = {
    "gross_pay": "gross pay",
    "net_pay": "net pay",
    "tax1": "tax",
    "tax2": "NI/PRSI",
    "employer_ni": "NI/PRSI",
    "pension_employee": "pension",
    "pension_employer": "pension",
}


class _TieOut(NamedTuple):
    check_type: CheckType
    account_class: AccountClass
    left_label: str
    right_label: str
    required_any: Tuple[str, ...]
    register_fields: Tuple[str, ...]


def _tie_outs(has_ni_accounts: bool) -> Tuple[_TieOut, ...]:
    tax_fields: Tuple[str, ...] = ("tax1", "tax3")
    if not has_ni_accounts:
        tax_fields = tax_fields + ("tax2", "employer_ni")
    return (
        _TieOut(
            CheckType.CHK_REGISTER_GROSS_TO_JOURNAL_EXPENSE,
            AccountClass.EXPENSE,
            "Register gross + employer costs",
            "Journal expense total",
            ("gross_pay",),
            ("gross_pay", "employer_ni", "pension_employer"),
        ),
        _TieOut(
            CheckType.CHK_REGISTER_EMPLOYER_COSTS_TO_JOURNAL,
            AccountClass.NI_PRSI_PAYABLE,
            "Register NI/PRSI total",
            "Journal NI/PRSI payable total",
            ("tax2", "employer_ni"),
            ("tax2", "employer_ni"),
        ),
        _TieOut(
            CheckType.CHK_REGISTER_NET_TO_JOURNAL_LIABILITY,
            AccountClass.NET_PAYABLE,
            "Register net total",
            "Journal net payable total",
            ("net_pay",),
            ("net_pay",),
        ),
        _TieOut(
            CheckType.CHK_REGISTER_TAX_TO_JOURNAL_LIABILITY,
            AccountClass.TAX_PAYABLE,
            "Register tax total",
            "Journal tax payable total",
            ("tax1",),
            tax_fields,
        ),
        _TieOut(
            CheckType.CHK_REGISTER_PENSION_TO_JOURNAL_LIABILITY,
            AccountClass.PENSION_PAYABLE,
            "Register pension total",
            "Journal pension payable total",
            ("pension_employee", "pension_employer"),
            ("pension_employee", "pension_employer"),
        ),
    )


def build_journal_comparisons(
    register: RegisterTotals,
    journal: JournalTotals,
    configured_classes: Optional[set] = None,
) -> Dict[CheckType, JournalComparison]:
    """Register-versus-journal inputs for the five tie-out checks.

    Args:
        register: Register totals.
        journal: Journal totals.
        configured_classes: Account classes with at least one classified
            account for the client. Empty or None skips every tie-out.
    """
    configured_classes = configured_classes or set()
    register_values: Dict[str, TotalWithRows] = {**register.fields, "net_pay": register.net}
    comparisons: Dict[CheckType, JournalComparison] = {}

    for tie_out in _tie_outs(AccountClass.NI_PRSI_PAYABLE in configured_classes):
        comparison = JournalComparison(left_label=tie_out.left_label, right_label=tie_out.right_label)
        comparisons[tie_out.check_type] = comparison

        if not configured_classes:
            comparison.missing_reason = "No account classifications are configured; journal tie-out skipped."
            continue
        if not any(key in register_values for key in tie_out.required_any):
            label = REGISTER_FIELD_LABELS.get(tie_out.required_any[0], tie_out.required_any[0])
            comparison.missing_reason = f"Register {label} is not mapped; check skipped."
            continue
        if tie_out.account_class not in configured_classes:
            label = ACCOUNT_CLASS_LABELS[tie_out.account_class]
            comparison.missing_reason = f"No {label} accounts are classified; check skipped."
            continue

        comparison.register_total = combine_totals(
            *[register_values[key] for key in tie_out.register_fields if key in register_values]
        )
        class_total = journal.class_rows.get(tie_out.account_class, TotalWithRows())
        comparison.journal_total = TotalWithRows(
            total_cents=abs(class_total.total_cents),
            rows=class_total.rows,
        )

    return comparisons


def build_check_inputs(
    register: LoadedImport,
    bank: LoadedImport,
    gl: LoadedImport,
    classifications: Mapping[str, AccountClass],
    statutory: Optional[LoadedImport] = None,
    pension: Optional[LoadedImport] = None,
) -> CheckInputs:
    """Extract every total the catalogue needs.

    Args:
        register: Loaded register import.
        bank: Loaded bank import.
        gl: Loaded GL import.
        classifications: Normalized account code to account class for the client.
        statutory: Optional statutory totals import.
        pension: Optional pension schedule import.

    Returns:
        CheckInputs ready for ``evaluate_catalogue``.

    Raises:
        ValidationError: If a mapped column is missing from its import.
    """
    register_totals = extract_register(register.parsed, register.column_map)
    bank_totals = extract_bank(bank.parsed, bank.column_map)
    journal_totals = extract_journal(gl.parsed, gl.column_map, classifications)

    inputs = CheckInputs(
        register_import_id=register.import_id,
        bank_import_id=bank.import_id,
        gl_import_id=gl.import_id,
        register_net=register_totals.net,
        register_paid_count=register_totals.paid_count,
        bank_total=bank_totals.total,
        bank_payments=bank_totals.payments,
        bank_paid_count=bank_totals.paid_count,
        duplicate_rows=bank_totals.duplicate_rows,
        negative_rows=bank_totals.negative_rows,
        journal_debits=journal_totals.debits,
        journal_credits=journal_totals.credits,
        journal_comparisons=build_journal_comparisons(
            register_totals, journal_totals, set(classifications.values()),
        ),
        unmapped_accounts=journal_totals.unmapped_accounts,
        register_by_category={
            category: register_totals.fields[field]
            for category, field in REGISTER_CATEGORY_FIELDS.items()
            if field in register_totals.fields
        },
    )

    if statutory is not None:
        statutory_totals = extract_statutory(statutory.parsed, statutory.column_map, statutory.normalization_rules)
        inputs.statutory_import_id = statutory.import_id
        inputs.statutory_by_category = statutory_totals.by_category
        inputs.unmapped_categories = statutory_totals.unmapped_categories

    if pension is not None:
        inputs.pension_import_id = pension.import_id
        pension_fields = [
            register_totals.fields[key]
            for key in ("pension_employee", "pension_employer")
            if key in register_totals.fields
        ]
        if pension_fields:
            inputs.register_pension = combine_totals(*pension_fields)
            inputs.pension_schedule = extract_pension_schedule(pension.parsed, pension.column_map)
        else:
            inputs.pension_missing_reason = (
                "Register pension columns are not mapped; pension schedule check skipped."
            )

    logger.info(
        f"Extracted check inputs: register={register.import_id} bank={bank.import_id} "
        f"gl={gl.import_id} statutory={inputs.statutory_import_id} pension={inputs.pension_import_id}"
    )
    return inputs
