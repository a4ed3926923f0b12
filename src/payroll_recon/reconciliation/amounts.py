"""Amount parsing, header resolution and column totals over a row grid."""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from ..errors import ValidationError
from .models import AmountRow, TotalWithRows

MAX_EVIDENCE_ROWS = 5

_NON_NUMERIC = re.compile(r"[^0-9.\-]")
_WHITESPACE = re.compile(r"\s+")


def parse_amount(value: Optional[object]) -> Optional[Decimal]:
    """Parse a display-formatted amount.

    ``"(300)"`` is negative; currency symbols, thousands separators and
    other non-numeric characters are dropped.

    Returns:
        The amount, or None if no number remains after stripping.
    """
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    is_paren_negative = raw.startswith("(") and raw.endswith(")")
    cleaned = _NON_NUMERIC.sub("", raw)
    if not cleaned:
        return None
    try:
        parsed = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not parsed.is_finite():
        return None
    return -abs(parsed) if is_paren_negative else parsed


def to_cents(amount: Decimal) -> int:
    """Convert an amount to integer cents, rounding half away from zero."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_cents(value: Optional[object]) -> Optional[int]:
    amount = parse_amount(value)
    return None if amount is None else to_cents(amount)


def cents_to_amount(cents: float) -> float:
    """Display value: cents / 100 rounded to 2 places."""
    return round(cents / 100, 2)


def normalize_column_name(name: object) -> str:
    """Trim, collapse internal whitespace and lower-case a header."""
    return _WHITESPACE.sub(" ", str(name).strip()).lower()


def is_blank_row(row: Sequence[object]) -> bool:
    return all(str(cell).strip() == "" for cell in row)


def select_evidence_rows(rows: Sequence[AmountRow], limit: int = MAX_EVIDENCE_ROWS) -> List[int]:
    """Row numbers of the largest contributors.

    Sorted by descending absolute amount, ties broken by ascending row
    number, truncated to ``limit``.
    """
    ordered = sorted(rows, key=lambda row: (-abs(row.amount_cents), row.row_number))
    return [row.row_number for row in ordered[:limit]]


class ParsedImport:
    """A row grid with its header row resolved.

    Args:
        rows: Row grid as returned by the file reader.
        header_row_index: 0-based index of the header row.

    Raises:
        ValidationError: If the header row is outside the grid or has no columns.
    """

    def __init__(self, rows: List[List[str]], header_row_index: int = 0):
        if not rows or header_row_index < 0 or header_row_index >= len(rows):
            raise ValidationError("Unable to locate the header row for this import.")

        self.rows = rows
        self.header_row_index = header_row_index
        self.column_index: Dict[str, int] = {}
        for index, column in enumerate(rows[header_row_index]):
            normalized = normalize_column_name(column)
            if normalized:
                self.column_index[normalized] = index

        if not self.column_index:
            raise ValidationError("No columns were detected for this import.")

    @property
    def header(self) -> List[str]:
        return [str(column) for column in self.rows[self.header_row_index]]

    def has_column(self, column_name: Optional[str]) -> bool:
        return bool(column_name) and normalize_column_name(column_name) in self.column_index

    def resolve_column_index(self, column_name: Optional[str]) -> int:
        """Resolve a mapped physical column name to its index.

        Raises:
            ValidationError: If the field is not mapped, or the mapped column
                is absent from this file's header row.
        """
        if not column_name:
            raise ValidationError("Required mapping column is missing.")
        index = self.column_index.get(normalize_column_name(column_name))
        if index is None:
            raise ValidationError(
                f'Mapped column "{column_name}" is missing from the latest import.'
            )
        return index

    def data_rows(self) -> Iterator[Tuple[int, List[str]]]:
        """Yield ``(row_number, row)`` for non-blank rows below the header.

        Row numbers are 1-based positions in the grid.
        """
        for index in range(self.header_row_index + 1, len(self.rows)):
            row = self.rows[index]
            if is_blank_row(row):
                continue
            yield index + 1, row

    def cell(self, row: List[str], column_index: int) -> str:
        if column_index >= len(row):
            return ""
        return str(row[column_index])

    def column_total(self, column_name: Optional[str]) -> TotalWithRows:
        """Sum a mapped column, skipping rows whose cell has no amount."""
        column_index = self.resolve_column_index(column_name)
        total = 0
        rows: List[AmountRow] = []
        for row_number, row in self.data_rows():
            cents = parse_cents(self.cell(row, column_index))
            if cents is None:
                continue
            total += cents
            rows.append(AmountRow(row_number=row_number, amount_cents=cents))
        return TotalWithRows(total_cents=total, rows=rows)


def combine_totals(*totals: TotalWithRows) -> TotalWithRows:
    """Sum several totals, merging contributing rows by row number."""
    by_row: Dict[int, int] = {}
    total = 0
    for item in totals:
        total += item.total_cents
        for row in item.rows:
            by_row[row.row_number] = by_row.get(row.row_number, 0) + row.amount_cents
    rows = [AmountRow(row_number=number, amount_cents=cents) for number, cents in sorted(by_row.items())]
    return TotalWithRows(total_cents=total, rows=rows)
