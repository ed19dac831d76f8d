"""Ingestion pipelines for taxtrack.

Three paths bring transactions into the ledger: the Starling bank feed, a
Starling statement CSV, and manual entry.  Each normalizes its input into
:class:`~taxtrack.models.Candidate` objects, passes them through one
:class:`~taxtrack.dedupe.DuplicateGate`, classifies the survivors with the
user's rules, and writes them one at a time.  A failure on one record is
counted and reported; it never undoes the records written before it.

The module also hosts the retrofit jobs that operate on records already in
the store: fingerprint backfill and reference backfill.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Protocol

from taxtrack.categorizer import classify
from taxtrack.dedupe import DuplicateGate
from taxtrack.models import (
    CLEARED,
    CSV_IMPORT_TAG,
    MANUAL_TAG,
    PENDING,
    STARLING_TAG_PREFIX,
    BackfillResult,
    Candidate,
    Classification,
    ImportResult,
    ReferenceBackfillResult,
    SkippedRow,
    SyncResult,
    Transaction,
    generate_fingerprint,
    quantize_amount,
)
from taxtrack.parsers import get_parser
from taxtrack.reconcile import STILL_PENDING, reconcile_status
from taxtrack.starling import FeedItem, StarlingAccount, StarlingAPIError
from taxtrack.store import DuplicateFingerprintError, SqlLedgerStore, StoreError

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 90


class BankFeed(Protocol):
    """What the sync needs from a bank API client."""

    def list_accounts(self) -> list[StarlingAccount]: ...

    def fetch_feed_items(self, account: StarlingAccount, since: datetime) -> list[FeedItem]: ...


class DuplicateTransactionError(ValueError):
    """A manually entered transaction is already in the ledger."""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def sync_bank_feed(
    store: SqlLedgerStore,
    feed: BankFeed,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    fuzzy_window_days: int = 1,
    now: datetime | None = None,
) -> SyncResult:
    """Pull recent feed items from every account into the ledger.

    Items already correlated to a stored transaction (by their
    ``starling:<feedItemUid>`` tag) only have their status reconciled.
    Unknown items are gated for duplicates, classified and written with the
    correlation tag.

    Args:
        store: Ledger store.
        feed: Bank API client.
        lookback_days: Request items changed within this many days.
        fuzzy_window_days: Day tolerance for fuzzy duplicates.
        now: Reference time; defaults to the current UTC time.

    Returns:
        A :class:`SyncResult` with partial counts even when some accounts
        failed.

    Raises:
        StarlingAPIError: If the account list cannot be fetched.
    """
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=lookback_days)
    result = SyncResult()

    accounts = feed.list_accounts()
    if not accounts:
        logger.info("No accounts found")

    correlated = _correlation_index(store.list_transactions())
    gate = DuplicateGate.load(store, fuzzy_window_days)
    rules = store.list_rules()

    for account in accounts:
        try:
            items = feed.fetch_feed_items(account, since)
        except StarlingAPIError as exc:
            logger.warning("Failed to fetch transactions for account %s: %s", account.account_uid, exc)
            result.errors.append(f"Account {account.account_uid}: {exc}")
            continue

        known = [i for i in items if i.feed_item_uid in correlated]
        new = [i for i in items if i.feed_item_uid not in correlated]

        # Known items first, so new identical items are numbered after them.
        for item in known:
            txn = correlated[item.feed_item_uid]
            gate.claim(item.to_candidate(), txn.fingerprint)
            try:
                if reconcile_status(store, txn, item.status):
                    result.status_updated += 1
            except StoreError as exc:
                logger.warning("Failed to update status of %s: %s", txn.id, exc)
                result.failed += 1
                result.errors.append(f"Feed item {item.feed_item_uid}: {exc}")

        for item in new:
            if item.feed_item_uid in correlated:
                # Listed twice in one response.
                continue
            candidate = item.to_candidate()
            decision = gate.check(candidate)
            if not decision.accepted:
                logger.info("Skipping feed item %s: %s", item.feed_item_uid, decision.reason)
                result.skipped += 1
                result.skipped_details.append(
                    _skipped(candidate.date.strftime("%d/%m/%Y"), candidate, decision.reason)
                )
                continue

            classification, _matched = classify(candidate, rules)
            txn = _build_transaction(
                candidate,
                classification,
                status=PENDING if item.status == STILL_PENDING else CLEARED,
                tags=[f"{STARLING_TAG_PREFIX}{item.feed_item_uid}"],
            )
            try:
                stored = store.insert(txn, decision.fingerprint)
            except StoreError as exc:
                logger.warning("Failed to store feed item %s: %s", item.feed_item_uid, exc)
                result.failed += 1
                result.errors.append(f"Feed item {item.feed_item_uid}: {exc}")
                continue

            gate.record(decision)
            correlated[item.feed_item_uid] = stored
            result.imported += 1

    store.set_last_sync_at(now)
    logger.info(result.message)
    return result


def import_csv(
    store: SqlLedgerStore,
    text: str,
    fuzzy_window_days: int = 1,
    parser: str = "starling",
) -> ImportResult:
    """Import a bank statement CSV into the ledger.

    Malformed rows are reported in ``errors`` and processing continues.
    Duplicates are skipped with a reason.  The statement is treated as the
    source of truth for its own rows: two identical rows in one file are
    both imported.

    Args:
        store: Ledger store.
        text: Full CSV content.
        fuzzy_window_days: Day tolerance for fuzzy duplicates.
        parser: Registered statement format name.

    Returns:
        An :class:`ImportResult`.

    Raises:
        StatementFormatError: If the text is not a recognised statement.
    """
    statement = get_parser(parser)(text)
    result = ImportResult(total=statement.total)

    gate = DuplicateGate.load(store, fuzzy_window_days, source_tag=CSV_IMPORT_TAG)
    rules = store.list_rules()

    for row in statement.rows:
        if row.candidate is None:
            result.errors.append(row.error)
            continue

        candidate = row.candidate
        decision = gate.check(candidate)
        if not decision.accepted:
            logger.info("Line %d skipped: %s", row.line_number, decision.reason)
            result.skipped += 1
            result.skipped_details.append(_skipped(row.raw_date, candidate, decision.reason))
            continue

        classification, matched = classify(candidate, rules)
        txn = _build_transaction(candidate, classification, status=CLEARED, tags=[CSV_IMPORT_TAG])
        try:
            store.insert(txn, decision.fingerprint)
        except StoreError as exc:
            logger.warning("Line %d could not be stored: %s", row.line_number, exc)
            result.failed += 1
            result.errors.append(f"Line {row.line_number}: {exc}")
            continue

        gate.record(decision)
        result.imported += 1
        if matched:
            result.categorized += 1

    logger.info(result.message)
    return result


def add_manual_transaction(
    store: SqlLedgerStore,
    txn_date: date,
    description: str,
    amount: Decimal | str,
    merchant: str = "",
    reference: str | None = None,
    classification: Classification | None = None,
    status: str = CLEARED,
) -> Transaction:
    """Record a transaction entered by the user.

    Without an explicit *classification* the rules are consulted, then the
    amount-based defaults.

    Raises:
        ValueError: If *description* is blank.
        DuplicateTransactionError: If the fingerprint is already stored or
            excluded.
    """
    if not description or not description.strip():
        raise ValueError("Description must not be blank")

    candidate = Candidate(
        date=txn_date,
        amount=quantize_amount(amount),
        description=description.strip(),
        merchant=merchant or description.strip(),
        reference=reference or None,
    )
    fingerprint = candidate.fingerprint
    if store.is_excluded(fingerprint):
        raise DuplicateTransactionError(
            f"Transaction is excluded from import: {description} on {txn_date.isoformat()}"
        )
    if fingerprint in store.list_all_fingerprints():
        raise DuplicateTransactionError(
            f"Transaction already exists: {description} {candidate.amount} on {txn_date.isoformat()}"
        )

    if classification is None:
        classification, _matched = classify(candidate, store.list_rules())

    txn = _build_transaction(candidate, classification, status=status, tags=[MANUAL_TAG])
    try:
        return store.insert(txn, fingerprint)
    except DuplicateFingerprintError as exc:
        raise DuplicateTransactionError(str(exc)) from exc


def backfill_fingerprints(store: SqlLedgerStore) -> BackfillResult:
    """Compute fingerprints for legacy transactions that have none.

    A row whose computed fingerprint already belongs to another row is left
    without one and counted as a collision.
    """
    transactions = store.list_transactions()
    taken = {t.fingerprint for t in transactions if t.fingerprint}
    result = BackfillResult(total=len(transactions))

    for txn in transactions:
        if txn.fingerprint:
            continue
        fingerprint = generate_fingerprint(txn.date, txn.amount, txn.description)
        if fingerprint in taken:
            logger.warning(
                "Fingerprint of %s (%s, %s) is already taken; left unset",
                txn.id,
                txn.description,
                txn.date.isoformat(),
            )
            result.collisions += 1
            continue
        try:
            store.update(txn.id, fingerprint=fingerprint)
        except DuplicateFingerprintError as exc:
            logger.warning("Could not set fingerprint on %s: %s", txn.id, exc)
            result.collisions += 1
            continue
        taken.add(fingerprint)
        result.updated += 1

    logger.info(result.message)
    return result


def backfill_references(
    store: SqlLedgerStore,
    feed: BankFeed,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    now: datetime | None = None,
) -> ReferenceBackfillResult:
    """Fill in references on feed-correlated rows from the current feed.

    Only the ``reference`` field is written, and only when the feed has one
    that differs from the stored value.

    Raises:
        StarlingAPIError: If the account list cannot be fetched.
    """
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=lookback_days)
    result = ReferenceBackfillResult()

    correlated = _correlation_index(store.list_transactions())
    for account in feed.list_accounts():
        try:
            items = feed.fetch_feed_items(account, since)
        except StarlingAPIError as exc:
            logger.warning("Failed to fetch transactions for account %s: %s", account.account_uid, exc)
            result.errors.append(f"Account {account.account_uid}: {exc}")
            continue

        for item in items:
            txn = correlated.get(item.feed_item_uid)
            if txn is None or not item.reference or txn.reference == item.reference:
                continue
            try:
                correlated[item.feed_item_uid] = store.update(txn.id, reference=item.reference)
            except StoreError as exc:
                logger.warning("Failed to update reference of %s: %s", txn.id, exc)
                result.errors.append(f"Feed item {item.feed_item_uid}: {exc}")
                continue
            result.updated += 1

    logger.info(result.message)
    return result


def sync_status(store: SqlLedgerStore) -> dict:
    """Summarize the ledger for display: last sync time and counts."""
    transactions = store.list_transactions()
    last = store.get_last_sync_at()
    return {
        "lastSyncAt": last.isoformat() if last else None,
        "transactions": len(transactions),
        "pending": sum(1 for t in transactions if t.status == PENDING),
        "feedCorrelated": sum(1 for t in transactions if t.correlation_ids()),
        "excluded": len(store.list_excluded_fingerprints()),
    }


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _correlation_index(transactions: list[Transaction]) -> dict[str, Transaction]:
    index: dict[str, Transaction] = {}
    for txn in transactions:
        for uid in txn.correlation_ids():
            index[uid] = txn
    return index


def _build_transaction(
    candidate: Candidate,
    classification: Classification,
    status: str,
    tags: list[str],
) -> Transaction:
    return Transaction(
        date=candidate.date,
        description=candidate.description,
        amount=candidate.amount,
        merchant=candidate.merchant,
        reference=candidate.reference,
        type=classification.type,
        business_type=classification.business_type,
        category=classification.category,
        status=status,
        tags=tags,
    )


def _skipped(raw_date: str, candidate: Candidate, reason: str) -> SkippedRow:
    return SkippedRow(
        date=raw_date,
        description=candidate.description,
        amount=candidate.amount,
        reason=reason,
    )
