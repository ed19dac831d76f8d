"""Core data models for taxtrack.

This module defines the dataclasses, classification constants, and the
fingerprint functions used throughout the ingestion engine. It has zero
internal imports -- everything depends on it, but it depends on nothing
within the package.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

# Transaction types
BUSINESS = "Business"
PERSONAL = "Personal"
UNREVIEWED = "Unreviewed"
SPLIT = "Split"
TRANSACTION_TYPES = (BUSINESS, PERSONAL, UNREVIEWED, SPLIT)

# Business types
INCOME = "Income"
EXPENSE = "Expense"
TRANSFER = "Transfer"
BUSINESS_TYPES = (INCOME, EXPENSE, TRANSFER)

# Lifecycle statuses
PENDING = "Pending"
CLEARED = "Cleared"

# Provenance tags
CSV_IMPORT_TAG = "import:csv"
MANUAL_TAG = "manual"
STARLING_TAG_PREFIX = "starling:"

FINGERPRINT_LENGTH = 32

# Largest magnitude a stored amount column (12 digits, 2 places) holds
MAX_AMOUNT = Decimal("9999999999.99")


def normalize_description(description: str) -> str:
    """Lowercase and trim a description for fingerprinting and matching."""
    return description.strip().lower()


def to_date(value: date | datetime) -> date:
    """Drop the time-of-day from *value*, if any."""
    if isinstance(value, datetime):
        return value.date()
    return value


def quantize_amount(amount: Decimal | int | float | str) -> Decimal:
    """Return *amount* as a Decimal rounded to exactly two places."""
    return Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def generate_fingerprint(
    txn_date: date | datetime,
    amount: Decimal | int | float | str,
    description: str,
) -> str:
    """Generate the identity fingerprint of a transaction.

    The fingerprint is a 32-character hex string derived from a SHA-256 hash
    of the pipe-delimited concatenation of: ISO date (time-of-day dropped),
    amount formatted to two decimal places, and the lowercased, stripped
    description.

    The reference is not part of the hash: a feed item without one and a
    statement row with one hash identically.  Two distinct transactions with
    the same date, amount, and description share a fingerprint; see
    :func:`occurrence_fingerprint`.

    Args:
        txn_date: Occurrence date (a datetime is truncated to its date).
        amount: Signed amount.
        description: Counterparty/merchant label.

    Returns:
        A 32-character lowercase hex string.
    """
    raw = (
        f"{to_date(txn_date).isoformat()}"
        f"|{quantize_amount(amount):.2f}"
        f"|{normalize_description(description)}"
    )
    return hashlib.sha256(raw.encode()).hexdigest()[:FINGERPRINT_LENGTH]


def occurrence_fingerprint(base: str, ordinal: int) -> str:
    """Qualify *base* with the 1-based occurrence *ordinal* within one run.

    The first occurrence keeps the base fingerprint, so single transactions
    hash identically regardless of how they arrive.  The second and later
    identical candidates in the same statement or feed get a distinct,
    equally deterministic fingerprint.
    """
    if ordinal <= 1:
        return base
    return hashlib.sha256(f"{base}|{ordinal}".encode()).hexdigest()[:FINGERPRINT_LENGTH]


@dataclass(frozen=True)
class Classification:
    """The classification triple assigned to a transaction."""

    type: str
    business_type: str | None = None
    category: str | None = None


@dataclass(frozen=True)
class Candidate:
    """A normalized, not-yet-persisted transaction from any source.

    Carries only the fields the rule engine and fingerprint generator need.
    Bank-feed items, CSV rows, and manual entries are all converted into a
    candidate before they reach the duplicate gate.
    """

    date: date
    amount: Decimal
    description: str
    merchant: str = ""
    reference: str | None = None

    @property
    def fingerprint(self) -> str:
        return generate_fingerprint(self.date, self.amount, self.description)


@dataclass
class Transaction:
    """A canonical ledger transaction.

    Attributes:
        id: Opaque identifier assigned by the store.
        date: Occurrence date; time-of-day is not significant.
        description: Counterparty/merchant label used for fingerprinting.
        amount: Signed two-place Decimal. Negative means outflow.
        merchant: Counterparty name, consulted by the rule engine.
        reference: Optional source reference string.
        type: One of ``TRANSACTION_TYPES``.
        business_type: One of ``BUSINESS_TYPES`` or None.
        category: Category label, or None.
        status: ``"Pending"`` or ``"Cleared"``.
        tags: Provenance tags, e.g. ``"starling:<feedItemUid>"`` or
            ``"import:csv"``.
        fingerprint: Identity hash; None only for legacy rows awaiting
            backfill.
        created_at: When the row was written.
    """

    date: date
    description: str
    amount: Decimal
    merchant: str = ""
    reference: str | None = None
    type: str = UNREVIEWED
    business_type: str | None = None
    category: str | None = None
    status: str = CLEARED
    tags: list[str] = field(default_factory=list)
    fingerprint: str | None = None
    id: str = ""
    created_at: datetime | None = None

    @property
    def classification(self) -> Classification:
        return Classification(self.type, self.business_type, self.category)

    def correlation_ids(self, prefix: str = STARLING_TAG_PREFIX) -> list[str]:
        """Return the durable source ids recorded in tags under *prefix*."""
        return [tag[len(prefix):] for tag in self.tags if tag.startswith(prefix)]


@dataclass
class CategorizationRule:
    """An ordered keyword-to-classification rule.

    Rules are consulted in ascending ``position``; the first rule whose
    keyword is a case-insensitive substring of the description, merchant,
    or reference wins.
    """

    keyword: str
    type: str
    business_type: str | None = None
    category: str | None = None
    position: int = 0
    id: str = ""

    @property
    def classification(self) -> Classification:
        return Classification(self.type, self.business_type, self.category)


@dataclass
class ExclusionEntry:
    """A fingerprint the user has asked never to re-import."""

    fingerprint: str
    description: str
    amount: Decimal
    date: date
    reason: str = "User deleted"
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Job results
# ---------------------------------------------------------------------------


@dataclass
class SkippedRow:
    """A candidate rejected by the duplicate gate, with a readable reason."""

    date: str
    description: str
    amount: Decimal
    reason: str

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "description": self.description,
            "amount": str(self.amount),
            "reason": self.reason,
        }


@dataclass
class ImportResult:
    """Outcome of a CSV statement import.

    Attributes:
        imported: Rows written to the ledger.
        skipped: Rows rejected as excluded, exact, or fuzzy duplicates.
        categorized: Imported rows classified by a user rule.
        total: Data rows in the statement (blank lines excluded).
        failed: Rows that passed the gate but could not be written.
        errors: Row-level error messages, in line order.
        skipped_details: One entry per skipped row.
    """

    imported: int = 0
    skipped: int = 0
    categorized: int = 0
    total: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    skipped_details: list[SkippedRow] = field(default_factory=list)

    @property
    def message(self) -> str:
        return (
            f"Imported {self.imported} transactions "
            f"({self.skipped} duplicates skipped, {self.categorized} auto-categorized)"
        )

    def to_dict(self, max_errors: int = 10) -> dict:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "categorized": self.categorized,
            "total": self.total,
            "failed": self.failed,
            "errors": self.errors[:max_errors],
            "skippedDetails": [s.to_dict() for s in self.skipped_details],
            "message": self.message,
        }


@dataclass
class SyncResult:
    """Outcome of a bank-feed sync across all accounts."""

    imported: int = 0
    status_updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    skipped_details: list[SkippedRow] = field(default_factory=list)

    @property
    def message(self) -> str:
        parts: list[str] = []
        if self.imported > 0:
            plural = "" if self.imported == 1 else "s"
            parts.append(f"Imported {self.imported} new transaction{plural}")
        if self.status_updated > 0:
            plural = "" if self.status_updated == 1 else "s"
            parts.append(
                f"Updated {self.status_updated} pending transaction{plural} to cleared"
            )
        if not parts:
            return "All transactions are up to date"
        return ". ".join(parts)

    def to_dict(self) -> dict:
        return {
            "imported": self.imported,
            "statusUpdated": self.status_updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
            "message": self.message,
        }


@dataclass
class ApplyRulesResult:
    """Outcome of re-applying all rules to stored transactions."""

    updated: int = 0
    failed: int = 0

    @property
    def message(self) -> str:
        return f"Applied rules to {self.updated} transactions"

    def to_dict(self) -> dict:
        return {"updated": self.updated, "failed": self.failed, "message": self.message}


@dataclass
class BackfillResult:
    """Outcome of computing fingerprints for legacy rows."""

    updated: int = 0
    total: int = 0
    collisions: int = 0

    @property
    def message(self) -> str:
        return f"Added fingerprints to {self.updated} transactions"

    def to_dict(self) -> dict:
        return {"updated": self.updated, "total": self.total, "message": self.message}


@dataclass
class ReferenceBackfillResult:
    """Outcome of filling references on feed-correlated rows."""

    updated: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return f"Updated {self.updated} transactions with references"

    def to_dict(self) -> dict:
        return {"updated": self.updated, "message": self.message}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class StarlingConfig:
    """Bank-feed connection settings.

    Attributes:
        token_env: Name of the environment variable holding the Starling
            personal access token.
        sandbox: Use the Starling sandbox API instead of production.
        lookback_days: How far back to request feed changes. Starling
            limits ``changesSince`` queries to 90 days.
        timeout: HTTP request timeout in seconds.
    """

    token_env: str = "STARLING_TOKEN"
    sandbox: bool = False
    lookback_days: int = 90
    timeout: float = 30.0


@dataclass
class AppConfig:
    """Top-level application configuration loaded from config.toml.

    Attributes:
        database_path: SQLite file path, relative to the project root.
        database_url: Optional SQLAlchemy URL; overrides ``database_path``.
        max_reported_errors: Cap on row-level errors surfaced per import.
        fuzzy_window_days: Inclusive +/- day tolerance for fuzzy duplicates.
        starling: Bank-feed settings.
    """

    database_path: str = "taxtrack.db"
    database_url: str = ""
    max_reported_errors: int = 10
    fuzzy_window_days: int = 1
    starling: StarlingConfig = field(default_factory=StarlingConfig)
