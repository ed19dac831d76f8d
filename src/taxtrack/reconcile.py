"""Pending-to-cleared status reconciliation for bank-feed items."""

from __future__ import annotations

import logging

from taxtrack.models import CLEARED, PENDING, Transaction

logger = logging.getLogger(__name__)

# Status string the bank feed uses for an unsettled item.
STILL_PENDING = "PENDING"


def next_status(stored: str, source: str | None) -> str | None:
    """Return the status *stored* should move to, or None to leave it.

    Only ``Pending -> Cleared`` is ever produced.  A cleared record is never
    moved back, whatever the source reports.
    """
    if stored == PENDING and source != STILL_PENDING:
        return CLEARED
    return None


def reconcile_status(store, txn: Transaction, source_status: str | None) -> bool:
    """Advance *txn* to cleared if the source says it has settled.

    Only the ``status`` field is written; classification and every other
    field stay as the user left them.

    Returns:
        True if the record was updated.
    """
    new = next_status(txn.status, source_status)
    if new is None:
        return False
    store.update(txn.id, status=new)
    logger.info("Transaction %s (%s) is now %s", txn.id, txn.description, new)
    return True
