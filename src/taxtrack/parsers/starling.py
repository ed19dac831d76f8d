"""Starling Bank statement CSV parser.

Starling CSV format:
    Date, Counter Party, Reference, Type, Amount (GBP), Balance (GBP),
    Spending Category, Notes

Sign convention:
    Negative amounts are money out, positive amounts money in.

Dates are ``DD/MM/YYYY``.  Amounts may carry thousands separators and a
pound sign, both of which are stripped.  Blank records are ignored and do
not count toward line numbers; a quoted field spanning several physical
lines belongs to one record.

A malformed row does not stop the parse: it is returned with an ``error``
message and no candidate, so the importer can report it and carry on.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation

from taxtrack.models import MAX_AMOUNT, Candidate, quantize_amount

REQUIRED_HEADER_TERMS = ("date", "counter party", "amount")
MIN_FIELDS = 5


class StatementFormatError(ValueError):
    """The text is not a Starling statement export."""


@dataclass
class StatementRow:
    """One data row of a statement.

    Attributes:
        line_number: 1-based position among non-blank records (the header
            is line 1).
        raw_date: The date column as written, for reporting.
        candidate: The parsed row, or None when the row is malformed.
        error: ``"Line N: ..."`` message for a malformed row.
    """

    line_number: int
    raw_date: str = ""
    candidate: Candidate | None = None
    error: str | None = None


@dataclass
class StatementParse:
    rows: list[StatementRow] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.rows)


def parse(text: str) -> StatementParse:
    """Parse the text of a Starling statement export.

    Args:
        text: Full CSV content, header included.

    Returns:
        A :class:`StatementParse` with one :class:`StatementRow` per data
        line, in file order.

    Raises:
        StatementFormatError: If there is no data row, or the header does not
            name the date, counter party and amount columns.
    """
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    records = [[f.strip() for f in fields] for fields in reader]
    records = [fields for fields in records if any(fields)]

    if len(records) < 2:
        raise StatementFormatError("CSV must have a header and at least one data row")

    header = ",".join(records[0]).lower()
    if not all(term in header for term in REQUIRED_HEADER_TERMS):
        raise StatementFormatError(
            "Invalid CSV format. Expected Starling Bank statement format."
        )

    result = StatementParse()
    for index, fields in enumerate(records[1:], start=2):
        result.rows.append(_parse_row(index, fields))
    return result


def _parse_row(line_number: int, fields: list[str]) -> StatementRow:
    row = StatementRow(line_number=line_number, raw_date=fields[0] if fields else "")

    if len(fields) < MIN_FIELDS:
        row.error = f"Line {line_number}: Not enough fields"
        return row

    date_str, counter_party, reference, _type, amount_str = fields[:MIN_FIELDS]

    parts = date_str.split("/")
    if len(parts) != 3:
        row.error = f"Line {line_number}: Invalid date format"
        return row
    try:
        day, month, year = (int(p) for p in parts)
        txn_date = date(year, month, day)
    except ValueError:
        row.error = f"Line {line_number}: Invalid date"
        return row

    cleaned = amount_str.replace(",", "").replace("£", "").strip()
    try:
        amount = Decimal(cleaned)
        valid = amount.is_finite() and abs(amount) <= MAX_AMOUNT
        if valid:
            amount = quantize_amount(amount)
    except InvalidOperation:
        valid = False
    if not valid:
        row.error = f"Line {line_number}: Invalid amount"
        return row

    row.candidate = Candidate(
        date=txn_date,
        amount=amount,
        description=counter_party,
        merchant=counter_party,
        reference=reference or None,
    )
    return row
