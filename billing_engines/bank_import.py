"""
Bank Statement CSV Import Engine.

Pure functions. No I/O beyond reading the text blob handed in.

Turns a bank-statement CSV export into normalized rows:

- Headers are matched case-insensitively against configured synonyms
  (date; description/memo; amount; debit/withdrawal; credit/deposit;
  check number).
- Amounts strip currency symbols, thousands separators and spaces;
  ``(45.20)`` means ``-45.20``.
- With a single signed amount column, negative means debit.  With separate
  debit/credit columns, a non-zero debit wins.
- The stored amount is the absolute value.  Rows whose amount is zero,
  negative after normalization, or unparsable are dropped silently, as are
  rows without a parsable date.

Usage:
    parsed = parse_bank_csv(
        csv_text=text,
        synonyms=config.imports.synonyms(),
        date_formats=config.imports.date_formats,
    )
    for row in parsed.rows:
        ...
"""

from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Mapping, Sequence

from billing_engines.tracer import traced_engine
from billing_kernel.db.types import ZERO, round_money
from billing_kernel.exceptions import ValidationError
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.bank_import")

_STRIP_CHARS = re.compile(r"[$€£¥,\s]")
_PARENTHESIZED = re.compile(r"^\((.+)\)$")
_MONTH_DAY = re.compile(r"^(\d{1,2})/(\d{1,2})$")


class TransactionType(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


@dataclass(frozen=True, slots=True)
class ColumnMap:
    """Header index of each recognized field (None when absent)."""

    date: int
    description: int | None = None
    amount: int | None = None
    debit: int | None = None
    credit: int | None = None
    check_number: int | None = None

    @property
    def has_split_columns(self) -> bool:
        return self.debit is not None or self.credit is not None


@dataclass(frozen=True, slots=True)
class ParsedBankRow:
    row_number: int
    transaction_date: date
    description: str
    amount: Decimal
    type: TransactionType
    check_number: str | None = None


@dataclass(frozen=True, slots=True)
class ParsedStatement:
    rows: tuple[ParsedBankRow, ...]
    skipped: int

    @property
    def deposits_total(self) -> Decimal:
        return sum((r.amount for r in self.rows if r.type == TransactionType.CREDIT), ZERO)

    @property
    def withdrawals_total(self) -> Decimal:
        return sum((r.amount for r in self.rows if r.type == TransactionType.DEBIT), ZERO)


def parse_amount(text: str | None) -> Decimal | None:
    """
    Parse a statement amount.

    Returns None for blank or unparsable text.

    >>> parse_amount("$1,234.50")
    Decimal('1234.50')
    >>> parse_amount("(45.20)")
    Decimal('-45.20')
    """
    if text is None:
        return None
    cleaned = _STRIP_CHARS.sub("", text)
    if not cleaned:
        return None
    match = _PARENTHESIZED.match(cleaned)
    if match:
        cleaned = "-" + match.group(1)
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def parse_date(
    text: str | None,
    date_formats: Sequence[str],
    default_year: int | None = None,
) -> date | None:
    """Parse a statement date; ``MM/DD`` uses ``default_year`` when given."""
    if not text:
        return None
    text = text.strip()
    for fmt in date_formats:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    match = _MONTH_DAY.match(text)
    if match and default_year is not None:
        try:
            return date(default_year, int(match.group(1)), int(match.group(2)))
        except ValueError:
            return None
    return None


def resolve_columns(
    header: Sequence[str],
    synonyms: Mapping[str, Sequence[str]],
) -> ColumnMap:
    """
    Map header cells to fields by case-insensitive synonym match.

    Raises:
        ValidationError: No date column, or neither an amount column nor
            debit/credit columns.
    """
    normalized = [cell.strip().lower() for cell in header]
    found: dict[str, int] = {}
    for field_name, names in synonyms.items():
        for index, cell in enumerate(normalized):
            if cell in names:
                found[field_name] = index
                break

    if "date" not in found:
        raise ValidationError("csv_header", "no date column found")
    if "amount" not in found and "debit" not in found and "credit" not in found:
        raise ValidationError("csv_header", "no amount, debit or credit column found")

    return ColumnMap(
        date=found["date"],
        description=found.get("description"),
        amount=found.get("amount"),
        debit=found.get("debit"),
        credit=found.get("credit"),
        check_number=found.get("check_number"),
    )


def _cell(row: Sequence[str], index: int | None) -> str | None:
    if index is None or index >= len(row):
        return None
    return row[index]


def _signed_amount(row: Sequence[str], columns: ColumnMap) -> Decimal | None:
    """Signed amount of a row: negative for money out."""
    if columns.amount is not None and not columns.has_split_columns:
        return parse_amount(_cell(row, columns.amount))

    debit = parse_amount(_cell(row, columns.debit))
    if debit is not None and debit != 0:
        return -abs(debit)
    credit = parse_amount(_cell(row, columns.credit))
    if credit is not None and credit != 0:
        return abs(credit)
    if columns.amount is not None:
        return parse_amount(_cell(row, columns.amount))
    return credit if credit is not None else debit


@traced_engine("bank_import", "1.0", fingerprint_fields=("csv_text",))
def parse_bank_csv(
    *,
    csv_text: str,
    synonyms: Mapping[str, Sequence[str]],
    date_formats: Sequence[str],
    default_year: int | None = None,
) -> ParsedStatement:
    """
    Parse a CSV statement into normalized rows.

    Raises:
        ValidationError: Empty input or an unusable header.
    """
    reader = csv.reader(io.StringIO(csv_text.lstrip("\ufeff")))
    header = next(reader, None)
    if not header or not any(cell.strip() for cell in header):
        raise ValidationError("csv_text", "statement has no header row")
    columns = resolve_columns(header, synonyms)

    rows: list[ParsedBankRow] = []
    skipped = 0
    for row_number, row in enumerate(reader, start=2):
        if not any(cell.strip() for cell in row):
            continue

        signed = _signed_amount(row, columns)
        transaction_date = parse_date(_cell(row, columns.date), date_formats, default_year)
        if signed is None or signed == 0 or transaction_date is None:
            skipped += 1
            logger.debug("bank_csv_row_skipped", extra={
                "row_number": row_number,
                "reason": "no_date" if transaction_date is None else "non_positive_amount",
            })
            continue

        amount = round_money(abs(signed))
        if amount <= 0:
            skipped += 1
            continue

        description = (_cell(row, columns.description) or "").strip()
        check_number = (_cell(row, columns.check_number) or "").strip() or None
        rows.append(ParsedBankRow(
            row_number=row_number,
            transaction_date=transaction_date,
            description=description,
            amount=amount,
            type=TransactionType.DEBIT if signed < 0 else TransactionType.CREDIT,
            check_number=check_number,
        ))

    logger.info("bank_csv_parsed", extra={
        "row_count": len(rows),
        "skipped_count": skipped,
    })
    return ParsedStatement(rows=tuple(rows), skipped=skipped)
