"""Shared pytest fixtures for taxtrack tests.

Provides reusable fixtures for:
- store: A ledger store backed by a throwaway SQLite file.
- project_dir: A temporary directory initialized with the default config
  files, for CLI and config tests.
- FakeFeed: An in-memory stand-in for the Starling client.
- Statement helpers for building Starling CSV text inline.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from taxtrack.config import initialize
from taxtrack.models import CLEARED, UNREVIEWED, Transaction, generate_fingerprint
from taxtrack.starling import FeedItem, StarlingAccount, StarlingAPIError
from taxtrack.store import SqlLedgerStore

STATEMENT_HEADER = (
    "Date,Counter Party,Reference,Type,Amount (GBP),Balance (GBP),Spending Category,Notes"
)


# ---------------------------------------------------------------------------
# Store and project fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path: Path):
    """A fresh ledger store on a temporary SQLite file."""
    s = SqlLedgerStore(f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}")
    yield s
    s.close()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Temporary project root holding the default config files."""
    project = tmp_path / "project"
    initialize(project)
    return project


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def statement(*rows: str) -> str:
    """Build Starling statement CSV text from data rows."""
    return "\n".join([STATEMENT_HEADER, *rows]) + "\n"


def make_txn(
    txn_date: date = date(2024, 4, 6),
    description: str = "Tesco",
    amount: str = "-42.50",
    type: str = UNREVIEWED,
    business_type: str | None = "Expense",
    category: str | None = None,
    status: str = CLEARED,
    tags: list[str] | None = None,
    reference: str | None = None,
) -> Transaction:
    """Helper to build an unsaved Transaction."""
    return Transaction(
        date=txn_date,
        description=description,
        amount=Decimal(amount),
        merchant=description,
        reference=reference,
        type=type,
        business_type=business_type,
        category=category,
        status=status,
        tags=tags or [],
    )


def save_txn(store: SqlLedgerStore, txn: Transaction, with_fingerprint: bool = True) -> Transaction:
    """Insert *txn* under its computed fingerprint (or none, for legacy rows)."""
    fingerprint = (
        generate_fingerprint(txn.date, txn.amount, txn.description) if with_fingerprint else None
    )
    return store.insert(txn, fingerprint)


def make_feed_item(
    uid: str,
    when: datetime = datetime(2024, 4, 6, 10, 15, tzinfo=timezone.utc),
    amount: str = "42.50",
    direction: str = "OUT",
    counter_party: str | None = "Tesco",
    reference: str | None = None,
    status: str | None = "SETTLED",
) -> FeedItem:
    return FeedItem(
        feed_item_uid=uid,
        transaction_time=when,
        amount=Decimal(amount),
        direction=direction,
        counter_party_name=counter_party,
        reference=reference,
        status=status,
    )


class FakeFeed:
    """In-memory bank feed.

    Args:
        items: Feed items per account uid.
        failing: Account uids whose fetch raises ``StarlingAPIError``.
    """

    def __init__(self, items: dict[str, list[FeedItem]], failing: set[str] | None = None) -> None:
        self.items = items
        self.failing = failing or set()
        self.since: list[datetime] = []

    def list_accounts(self) -> list[StarlingAccount]:
        uids = list(self.items) + [u for u in sorted(self.failing) if u not in self.items]
        return [StarlingAccount(account_uid=u, default_category=f"cat-{u}") for u in uids]

    def fetch_feed_items(self, account: StarlingAccount, since: datetime) -> list[FeedItem]:
        self.since.append(since)
        if account.account_uid in self.failing:
            raise StarlingAPIError("Starling API returned HTTP 503", status_code=503)
        return list(self.items.get(account.account_uid, []))
