"""Column mapping rules: per-source field catalogue, validation and drift."""

from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from ..database.models import SourceType
from .amounts import normalize_column_name
from .models import ColumnDrift

ColumnMap = Dict[str, str]


class MappingField(BaseModel):
    key: str
    label: str
    kind: str = "number"
    required: bool = False


class MappingFieldGroup(BaseModel):
    id: str
    label: str
    fields: Tuple[str, ...]


class MappingFieldConfig(BaseModel):
    fields: Tuple[MappingField, ...]
    required_groups: Tuple[MappingFieldGroup, ...] = ()

    @property
    def keys(self) -> List[str]:
        return [field.key for field in self.fields]

    @property
    def required_fields(self) -> List[MappingField]:
        return [field for field in self.fields if field.required]


MAPPING_FIELD_CONFIGS: Dict[SourceType, MappingFieldConfig] = {
    SourceType.REGISTER: MappingFieldConfig(
        fields=(
            MappingField(key="employee_id", label="Employee ID", kind="string"),
            MappingField(key="employee_name", label="Employee name", kind="string"),
            MappingField(key="net_pay", label="Net pay", required=True),
            MappingField(key="gross_pay", label="Gross pay"),
            MappingField(key="tax1", label="Tax (PAYE/USC)", required=True),
            MappingField(key="tax2", label="Tax 2 (NI/PRSI)"),
            MappingField(key="tax3", label="Tax 3 (Other)"),
            MappingField(key="employer_ni", label="Employer NI/PRSI"),
            MappingField(key="pension_employee", label="Pension employee"),
            MappingField(key="pension_employer", label="Pension employer"),
            MappingField(key="other_deductions", label="Other deductions"),
        ),
        required_groups=(
            MappingFieldGroup(
                id="employee",
                label="Employee identifier",
                fields=("employee_id", "employee_name"),
            ),
        ),
    ),
    SourceType.BANK: MappingFieldConfig(
        fields=(
            MappingField(key="payee_id", label="Payee ID", kind="string"),
            MappingField(key="payee_name", label="Payee name", kind="string"),
            MappingField(key="amount", label="Payment amount", required=True),
            MappingField(key="reference", label="Payment reference", kind="string"),
        ),
        required_groups=(
            MappingFieldGroup(
                id="payee",
                label="Payee identifier",
                fields=("payee_id", "payee_name"),
            ),
        ),
    ),
    SourceType.GL: MappingFieldConfig(
        fields=(
            MappingField(key="account", label="Account code/name", kind="string", required=True),
            MappingField(key="description", label="Description", kind="string"),
            MappingField(key="cost_centre", label="Cost centre/department", kind="string"),
            MappingField(key="signed_amount", label="Signed amount"),
            MappingField(key="debit", label="Debit amount"),
            MappingField(key="credit", label="Credit amount"),
        ),
    ),
    SourceType.STATUTORY: MappingFieldConfig(
        fields=(
            MappingField(key="category", label="Category", kind="string", required=True),
            MappingField(key="amount", label="Amount", required=True),
        ),
    ),
    SourceType.PENSION_SCHEDULE: MappingFieldConfig(
        fields=(
            MappingField(key="employee_id", label="Employee ID", kind="string"),
            MappingField(key="employee_name", label="Employee name", kind="string"),
            MappingField(key="amount", label="Contribution amount", required=True),
        ),
    ),
}


def sanitize_columns(columns: Iterable[object]) -> List[str]:
    """Trim columns and drop blanks and normalized duplicates, keeping first spelling."""
    seen = set()
    result: List[str] = []
    for column in columns:
        text = str(column).strip()
        normalized = normalize_column_name(text)
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        result.append(text)
    return result


def sanitize_column_map(source_type: SourceType, column_map: Mapping[str, Optional[str]]) -> ColumnMap:
    """Keep only known logical keys with non-blank values."""
    allowed = set(MAPPING_FIELD_CONFIGS[SourceType(source_type)].keys)
    return {
        key: str(value).strip()
        for key, value in column_map.items()
        if key in allowed and value is not None and str(value).strip()
    }


def detect_column_drift(expected: Iterable[object], actual: Iterable[object]) -> ColumnDrift:
    """Compare expected and actual columns, case and whitespace insensitively.

    ``missing`` and ``added`` report columns in their original spelling.
    """
    expected_map: Dict[str, str] = {}
    actual_map: Dict[str, str] = {}
    for column in expected:
        normalized = normalize_column_name(column)
        if normalized:
            expected_map[normalized] = str(column)
    for column in actual:
        normalized = normalize_column_name(column)
        if normalized:
            actual_map[normalized] = str(column)

    missing = [original for key, original in expected_map.items() if key not in actual_map]
    added = [original for key, original in actual_map.items() if key not in expected_map]
    return ColumnDrift(drifted=bool(missing or added), missing=missing, added=added)


def validate_column_map(
    source_type: SourceType,
    column_map: Mapping[str, Optional[str]],
    source_columns: Iterable[object],
) -> List[str]:
    """Return every problem with ``column_map``; an empty list means valid."""
    config = MAPPING_FIELD_CONFIGS[SourceType(source_type)]
    normalized_columns = {normalize_column_name(column) for column in source_columns}
    normalized_columns.discard("")

    if not normalized_columns:
        return ["No columns were detected for this file."]

    def has_mapping(key: str) -> bool:
        value = column_map.get(key)
        return bool(value) and normalize_column_name(value) in normalized_columns

    errors: List[str] = []
    for key, value in column_map.items():
        if not value:
            continue
        if normalize_column_name(value) not in normalized_columns:
            errors.append(f'Mapped column "{value}" for {key} does not exist.')

    for field in config.required_fields:
        if not has_mapping(field.key):
            errors.append(f"Missing required field: {field.label}.")

    for group in config.required_groups:
        if not any(has_mapping(key) for key in group.fields):
            errors.append(f"Map at least one field for {group.label}.")

    if SourceType(source_type) == SourceType.GL:
        signed_amount = has_mapping("signed_amount")
        debit = has_mapping("debit")
        credit = has_mapping("credit")
        if not signed_amount and not (debit and credit):
            errors.append("Map a signed amount or both debit and credit columns.")
        if debit != credit:
            errors.append("Debit and credit must be mapped together.")

    return errors


def are_column_maps_equivalent(left: Mapping[str, Optional[str]], right: Mapping[str, Optional[str]]) -> bool:
    """Same populated keys, each mapped to the same normalized column."""
    left_entries = {key: normalize_column_name(value) for key, value in left.items() if value}
    right_entries = {key: normalize_column_name(value) for key, value in right.items() if value}
    return left_entries == right_entries


class NormalizationRules(BaseModel):
    """Per-template value normalization. ``category_map`` maps statutory labels to categories."""
    category_map: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, object]]) -> "NormalizationRules":
        """Accepts ``category_map`` or ``categoryMap``; anything else yields empty rules."""
        raw_map = None
        if raw:
            raw_map = raw.get("category_map", raw.get("categoryMap"))
        if not isinstance(raw_map, Mapping):
            return cls()
        category_map = {
            normalize_column_name(key): str(value).strip().upper()
            for key, value in raw_map.items()
            if str(key).strip() and value
        }
        return cls(category_map=category_map)
