"""Human-readable summaries of ingestion runs and ledger listings."""

from __future__ import annotations

from collections import Counter
from decimal import Decimal

from taxtrack.models import (
    PENDING,
    CategorizationRule,
    ExclusionEntry,
    ImportResult,
    SkippedRow,
    SyncResult,
    Transaction,
)


# ---------------------------------------------------------------------------
# Run summaries
# ---------------------------------------------------------------------------


def print_import_summary(result: ImportResult, max_errors: int = 10) -> None:
    """Print the outcome of a statement import to stdout.

    At most *max_errors* row errors are shown; the rest are counted.
    """
    print()
    print("== Import Summary ==")
    print(f"Rows:        {result.total}")
    print(f"Imported:    {result.imported} ({result.categorized} auto-categorized)")
    print(f"Skipped:     {result.skipped}")
    if result.failed:
        print(f"Failed:      {result.failed}")

    _print_skipped(result.skipped_details)
    _print_errors(result.errors, max_errors)

    print()
    print(result.message)


def print_sync_summary(result: SyncResult) -> None:
    print()
    print("== Sync Summary ==")
    print(f"Imported:        {result.imported}")
    print(f"Status updated:  {result.status_updated}")
    print(f"Skipped:         {result.skipped}")
    if result.failed:
        print(f"Failed:          {result.failed}")

    _print_skipped(result.skipped_details)
    _print_errors(result.errors, len(result.errors))

    print()
    print(result.message)


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------


def print_transactions(transactions: list[Transaction]) -> None:
    """Print one line per transaction, then totals by classification."""
    if not transactions:
        print("No transactions.")
        return

    for t in transactions:
        category = t.category or "-"
        business = t.business_type or "-"
        flag = " (pending)" if t.status == PENDING else ""
        print(
            f"{t.date.isoformat()}  {t.amount:>10.2f}  {t.description[:32]:<32}  "
            f"{t.type}/{business}/{category}{flag}  [{t.id}]"
        )

    by_type: Counter[str] = Counter(t.type for t in transactions)
    net = sum((t.amount for t in transactions), Decimal("0"))
    print()
    print(f"Total: {len(transactions)} transactions, net {net:.2f}")
    print("  " + ", ".join(f"{name}: {count}" for name, count in sorted(by_type.items())))


def print_rules(rules: list[CategorizationRule]) -> None:
    if not rules:
        print("No rules.")
        return
    for i, rule in enumerate(rules, start=1):
        target = "/".join(p for p in (rule.type, rule.business_type, rule.category) if p)
        print(f'{i:>3}. "{rule.keyword}" -> {target}  [{rule.id}]')


def print_exclusions(entries: list[ExclusionEntry]) -> None:
    if not entries:
        print("No excluded transactions.")
        return
    for e in entries:
        print(
            f"{e.date.isoformat()}  {e.amount:>10.2f}  {e.description[:32]:<32}  "
            f"{e.reason}  [{e.fingerprint}]"
        )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _print_skipped(skipped: list[SkippedRow]) -> None:
    if not skipped:
        return
    print()
    print("Skipped:")
    for s in skipped:
        print(f"  {s.date}  {s.description}  {s.amount}: {s.reason}")


def _print_errors(errors: list[str], limit: int) -> None:
    if not errors:
        return
    print()
    print("Errors:")
    for message in errors[:limit]:
        print(f"  {message}")
    hidden = len(errors) - limit
    if hidden > 0:
        print(f"  ... and {hidden} more")
