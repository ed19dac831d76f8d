"""Exclusion registry: fingerprints the user never wants re-imported.

Deleting a transaction with ``exclude=True`` records its fingerprint here.
Every ingestion path consults the registry before writing, so the deleted
record stays deleted however often the bank feed or a statement offers it
again.  Entries are only removed by an explicit :func:`remove_exclusion`.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from taxtrack.models import ExclusionEntry, Transaction, generate_fingerprint
from taxtrack.store import SqlLedgerStore

logger = logging.getLogger(__name__)

DEFAULT_REASON = "User deleted"


def exclude(
    store: SqlLedgerStore,
    fingerprint: str,
    description: str,
    amount: Decimal,
    txn_date: date,
    reason: str = DEFAULT_REASON,
) -> ExclusionEntry:
    """Add *fingerprint* to the registry; a no-op if it is already there."""
    entry = ExclusionEntry(
        fingerprint=fingerprint,
        description=description,
        amount=amount,
        date=txn_date,
        reason=reason,
    )
    return store.add_exclusion(entry)


def is_excluded(store: SqlLedgerStore, fingerprint: str) -> bool:
    return store.is_excluded(fingerprint)


def list_excluded(store: SqlLedgerStore) -> set[str]:
    return store.list_excluded_fingerprints()


def list_exclusions(store: SqlLedgerStore) -> list[ExclusionEntry]:
    return store.list_exclusions()


def remove_exclusion(store: SqlLedgerStore, fingerprint: str) -> bool:
    """Allow *fingerprint* to be imported again.

    Returns:
        False if the fingerprint was not excluded.
    """
    removed = store.remove_exclusion(fingerprint)
    if removed:
        logger.info("Removed exclusion %s", fingerprint)
    return removed


def delete_transaction(
    store: SqlLedgerStore,
    txn_id: str,
    exclude_future: bool = False,
    reason: str = DEFAULT_REASON,
) -> Transaction:
    """Delete a transaction, optionally excluding it from future imports.

    Legacy records without a stored fingerprint have one computed from
    their date, amount and description before they are excluded.

    Raises:
        KeyError: If *txn_id* does not exist.
    """
    txn = store.get_transaction(txn_id)
    if txn is None:
        raise KeyError(f"Transaction not found: {txn_id}")

    if exclude_future:
        fingerprint = txn.fingerprint or generate_fingerprint(
            txn.date, txn.amount, txn.description
        )
        exclude(store, fingerprint, txn.description, txn.amount, txn.date, reason)
        logger.info("Excluded %s (%s) from future imports", fingerprint, txn.description)

    store.delete_transaction(txn_id)
    return txn
