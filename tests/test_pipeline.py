"""Tests for taxtrack.pipeline -- CSV import, bank-feed sync and retrofit jobs."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from taxtrack.exclusions import delete_transaction
from taxtrack.models import (
    BUSINESS,
    CLEARED,
    CSV_IMPORT_TAG,
    EXPENSE,
    INCOME,
    MANUAL_TAG,
    PENDING,
    PERSONAL,
    UNREVIEWED,
    CategorizationRule,
    Classification,
)
from taxtrack.parsers.starling import StatementFormatError
from taxtrack.pipeline import (
    DuplicateTransactionError,
    add_manual_transaction,
    backfill_fingerprints,
    backfill_references,
    import_csv,
    sync_bank_feed,
    sync_status,
)
from taxtrack.starling import StarlingAPIError
from taxtrack.store import StoreError

from conftest import FakeFeed, make_feed_item, make_txn, save_txn, statement

NOW = datetime(2024, 4, 20, 12, 0, tzinfo=timezone.utc)
TESCO_ROW = "06/04/2024,Tesco,,POS,-42.50"


# ---------------------------------------------------------------------------
# CSV import
# ---------------------------------------------------------------------------


class TestImportCsv:
    """Statement import through the duplicate gate."""

    def test_single_row_scenario(self, store):
        result = import_csv(store, statement(TESCO_ROW))

        assert (result.imported, result.skipped, result.total) == (1, 0, 1)
        [txn] = store.list_transactions()
        assert txn.date == date(2024, 4, 6)
        assert txn.amount == Decimal("-42.50")
        assert txn.classification == Classification(UNREVIEWED, EXPENSE, None)
        assert txn.status == CLEARED
        assert txn.tags == [CSV_IMPORT_TAG]
        assert len(txn.fingerprint) == 32

    def test_reimport_is_idempotent(self, store):
        import_csv(store, statement(TESCO_ROW))
        result = import_csv(store, statement(TESCO_ROW))

        assert (result.imported, result.skipped) == (0, 1)
        assert result.skipped_details[0].reason == "Exact fingerprint match (already imported)"
        assert result.skipped_details[0].date == "06/04/2024"
        assert len(store.list_transactions()) == 1

    def test_identical_rows_in_one_file_all_imported(self, store):
        text = statement(TESCO_ROW, TESCO_ROW, TESCO_ROW)
        assert import_csv(store, text).imported == 3
        assert len({t.fingerprint for t in store.list_transactions()}) == 3

        again = import_csv(store, text)
        assert (again.imported, again.skipped) == (0, 3)

    def test_income_defaults(self, store):
        import_csv(store, statement("10/04/2024,Acme Ltd,INV-7,FASTER PAYMENT,500.00"))
        [txn] = store.list_transactions()
        assert txn.classification == Classification(BUSINESS, INCOME, "Sales")
        assert txn.reference == "INV-7"

    def test_rules_applied_and_counted(self, store):
        store.add_rule(CategorizationRule("tesco", BUSINESS, EXPENSE, "Cost of Goods"))
        result = import_csv(store, statement(TESCO_ROW, "07/04/2024,Boots,,POS,-3.00"))

        assert result.categorized == 1
        assert result.message == "Imported 2 transactions (0 duplicates skipped, 1 auto-categorized)"
        by_desc = {t.description: t for t in store.list_transactions()}
        assert by_desc["Tesco"].category == "Cost of Goods"
        assert by_desc["Boots"].type == UNREVIEWED

    def test_fuzzy_window_boundary(self, store):
        save_txn(store, make_txn(txn_date=date(2024, 4, 6)))
        result = import_csv(
            store,
            statement("07/04/2024,Tesco,,POS,-42.50", "08/04/2024,Tesco,,POS,-42.50"),
        )
        assert (result.imported, result.skipped) == (1, 1)
        assert result.skipped_details[0].reason.startswith("Fuzzy match")
        dates = sorted(t.date for t in store.list_transactions())
        assert dates == [date(2024, 4, 6), date(2024, 4, 8)]

    def test_row_errors_reported_and_processing_continues(self, store):
        result = import_csv(
            store,
            statement("xx,Tesco,,POS,-1.00", "06/04/2024,Tesco,,POS", TESCO_ROW),
        )
        assert result.imported == 1
        assert result.total == 3
        assert result.errors == ["Line 2: Invalid date format", "Line 3: Not enough fields"]

    def test_oversized_amount_is_row_error(self, store):
        result = import_csv(
            store,
            statement("06/04/2024,Tesco,,POS,1e30", "07/04/2024,Costa,,POS,-3.10"),
        )
        assert result.imported == 1
        assert result.errors == ["Line 2: Invalid amount"]
        assert [t.description for t in store.list_transactions()] == ["Costa"]

    def test_consecutive_day_statements_both_imported(self, store):
        """A daily charge on the next day's statement is not a shifted copy."""
        import_csv(store, statement("06/04/2024,Costa,,POS,-3.10"))
        result = import_csv(store, statement("07/04/2024,Costa,,POS,-3.10"))

        assert (result.imported, result.skipped) == (1, 0)
        dates = sorted(t.date for t in store.list_transactions())
        assert dates == [date(2024, 4, 6), date(2024, 4, 7)]

    def test_fuzzy_match_folds_non_ascii_case(self, store):
        save_txn(store, make_txn(description="CAFÉ NERO", amount="-3.10"))
        result = import_csv(store, statement("07/04/2024,Café Nero,,POS,-3.10"))
        assert (result.imported, result.skipped) == (0, 1)

    def test_format_error_refuses_import(self, store):
        with pytest.raises(StatementFormatError):
            import_csv(store, "Foo,Bar\n1,2\n")
        assert store.list_transactions() == []

    def test_persistence_failure_counted(self, store, monkeypatch):
        def broken_insert(txn, fingerprint):
            raise StoreError("disk full")

        monkeypatch.setattr(store, "insert", broken_insert)
        result = import_csv(store, statement(TESCO_ROW))
        assert (result.imported, result.failed) == (0, 1)
        assert result.errors == ["Line 2: disk full"]


class TestExclusionPersistence:
    """Deleted-and-excluded transactions never come back."""

    def test_csv_reimport_after_exclusion(self, store):
        import_csv(store, statement(TESCO_ROW))
        [txn] = store.list_transactions()
        delete_transaction(store, txn.id, exclude_future=True)

        result = import_csv(store, statement(TESCO_ROW))
        assert result.imported == 0
        assert result.skipped_details[0].reason == "Transaction excluded by user (do not reimport)"
        assert store.list_transactions() == []

    def test_feed_respects_exclusion(self, store):
        import_csv(store, statement(TESCO_ROW))
        [txn] = store.list_transactions()
        delete_transaction(store, txn.id, exclude_future=True)

        result = sync_bank_feed(store, FakeFeed({"acc": [make_feed_item("uid-1")]}), now=NOW)
        assert (result.imported, result.skipped) == (0, 1)

    def test_delete_without_exclude_allows_reimport(self, store):
        import_csv(store, statement(TESCO_ROW))
        [txn] = store.list_transactions()
        delete_transaction(store, txn.id)
        assert import_csv(store, statement(TESCO_ROW)).imported == 1

    def test_legacy_row_excluded_by_computed_fingerprint(self, store):
        legacy = save_txn(store, make_txn(), with_fingerprint=False)
        delete_transaction(store, legacy.id, exclude_future=True)
        assert import_csv(store, statement(TESCO_ROW)).imported == 0

    def test_delete_unknown_id(self, store):
        with pytest.raises(KeyError):
            delete_transaction(store, "missing")


# ---------------------------------------------------------------------------
# Bank-feed sync
# ---------------------------------------------------------------------------


class TestSyncBankFeed:
    """Starling feed ingestion with a fake feed."""

    def test_imports_new_items_with_correlation_tag(self, store):
        feed = FakeFeed({"acc": [make_feed_item("uid-1"), make_feed_item("uid-2", direction="IN", counter_party="Acme")]})
        result = sync_bank_feed(store, feed, now=NOW)

        assert result.imported == 2
        assert result.message == "Imported 2 new transactions"
        by_desc = {t.description: t for t in store.list_transactions()}
        assert by_desc["Tesco"].tags == ["starling:uid-1"]
        assert by_desc["Tesco"].amount == Decimal("-42.50")
        assert by_desc["Acme"].classification == Classification(BUSINESS, INCOME, "Sales")

    def test_uses_lookback_window(self, store):
        feed = FakeFeed({"acc": []})
        sync_bank_feed(store, feed, lookback_days=30, now=NOW)
        assert feed.since == [NOW - timedelta(days=30)]

    def test_pending_item_then_settled(self, store):
        sync_bank_feed(store, FakeFeed({"acc": [make_feed_item("uid-1", status="PENDING")]}), now=NOW)
        [txn] = store.list_transactions()
        assert txn.status == PENDING

        store.update(txn.id, type=PERSONAL, business_type=None)
        result = sync_bank_feed(store, FakeFeed({"acc": [make_feed_item("uid-1", status="SETTLED")]}), now=NOW)

        assert (result.imported, result.status_updated) == (0, 1)
        assert result.message == "Updated 1 pending transaction to cleared"
        [txn] = store.list_transactions()
        assert txn.status == CLEARED
        assert txn.type == PERSONAL

    def test_cleared_never_reverts(self, store):
        sync_bank_feed(store, FakeFeed({"acc": [make_feed_item("uid-1")]}), now=NOW)
        result = sync_bank_feed(store, FakeFeed({"acc": [make_feed_item("uid-1", status="PENDING")]}), now=NOW)
        assert result.status_updated == 0
        assert result.message == "All transactions are up to date"
        assert store.list_transactions()[0].status == CLEARED

    def test_csv_then_feed_is_exact_duplicate(self, store):
        import_csv(store, statement(TESCO_ROW))
        result = sync_bank_feed(store, FakeFeed({"acc": [make_feed_item("uid-1", reference="CARD")]}), now=NOW)
        assert (result.imported, result.skipped) == (0, 1)
        assert len(store.list_transactions()) == 1

    def test_feed_date_shift_is_fuzzy_duplicate(self, store):
        import_csv(store, statement(TESCO_ROW))
        shifted = make_feed_item("uid-1", when=datetime(2024, 4, 7, 0, 30, tzinfo=timezone.utc))
        result = sync_bank_feed(store, FakeFeed({"acc": [shifted]}), now=NOW)
        assert result.skipped == 1
        assert result.skipped_details[0].reason.startswith("Fuzzy match")

    def test_feed_then_csv_is_duplicate(self, store):
        sync_bank_feed(store, FakeFeed({"acc": [make_feed_item("uid-1")]}), now=NOW)
        result = import_csv(store, statement(TESCO_ROW))
        assert (result.imported, result.skipped) == (0, 1)

    def test_identical_feed_items_both_imported(self, store):
        feed = FakeFeed({"acc": [make_feed_item("uid-1"), make_feed_item("uid-2")]})
        assert sync_bank_feed(store, feed, now=NOW).imported == 2

        # A third identical purchase appears alongside the two already known.
        feed.items["acc"].append(make_feed_item("uid-3"))
        result = sync_bank_feed(store, feed, now=NOW)
        assert (result.imported, result.skipped) == (1, 0)
        assert len(store.list_transactions()) == 3

    def test_account_failure_isolated(self, store):
        feed = FakeFeed({"good": [make_feed_item("uid-1")]}, failing={"bad"})
        result = sync_bank_feed(store, feed, now=NOW)
        assert result.imported == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Account bad:")

    def test_account_listing_failure_raises(self, store):
        class Down(FakeFeed):
            def list_accounts(self):
                raise StarlingAPIError("HTTP 401", status_code=401)

        with pytest.raises(StarlingAPIError):
            sync_bank_feed(store, Down({}), now=NOW)
        assert store.get_last_sync_at() is None

    def test_records_last_sync(self, store):
        sync_bank_feed(store, FakeFeed({}), now=NOW)
        assert store.get_last_sync_at() == NOW
        assert sync_status(store)["lastSyncAt"] == NOW.isoformat()


# ---------------------------------------------------------------------------
# Manual entry
# ---------------------------------------------------------------------------


class TestManualEntry:
    def test_add_with_rules(self, store):
        store.add_rule(CategorizationRule("tesco", PERSONAL))
        txn = add_manual_transaction(store, date(2024, 4, 6), "Tesco", "-42.50")
        assert txn.type == PERSONAL
        assert txn.tags == [MANUAL_TAG]

    def test_explicit_classification(self, store):
        txn = add_manual_transaction(
            store,
            date(2024, 4, 6),
            "Printer ink",
            Decimal("-20"),
            classification=Classification(BUSINESS, EXPENSE, "Office Costs"),
        )
        assert txn.category == "Office Costs"
        assert txn.amount == Decimal("-20.00")

    def test_duplicate_refused(self, store):
        import_csv(store, statement(TESCO_ROW))
        with pytest.raises(DuplicateTransactionError):
            add_manual_transaction(store, date(2024, 4, 6), "TESCO", "-42.50")

    def test_blank_description(self, store):
        with pytest.raises(ValueError):
            add_manual_transaction(store, date(2024, 4, 6), " ", "-1")


# ---------------------------------------------------------------------------
# Retrofit jobs
# ---------------------------------------------------------------------------


class TestBackfillFingerprints:
    def test_fills_missing(self, store):
        legacy = save_txn(store, make_txn(), with_fingerprint=False)
        save_txn(store, make_txn(description="Boots"))

        result = backfill_fingerprints(store)

        assert (result.updated, result.total) == (1, 2)
        assert result.message == "Added fingerprints to 1 transactions"
        assert store.get_transaction(legacy.id).fingerprint is not None

    def test_collision_left_alone(self, store):
        save_txn(store, make_txn())
        legacy = save_txn(store, make_txn(), with_fingerprint=False)

        result = backfill_fingerprints(store)

        assert (result.updated, result.collisions) == (0, 1)
        assert store.get_transaction(legacy.id).fingerprint is None

    def test_backfilled_rows_block_reimport(self, store):
        save_txn(store, make_txn(), with_fingerprint=False)
        backfill_fingerprints(store)
        assert import_csv(store, statement(TESCO_ROW)).skipped == 1


class TestBackfillReferences:
    def test_fills_reference_on_correlated_rows_only(self, store):
        sync_bank_feed(store, FakeFeed({"acc": [make_feed_item("uid-1")]}), now=NOW)
        save_txn(store, make_txn(description="Boots", tags=["import:csv"]))

        feed = FakeFeed(
            {
                "acc": [
                    make_feed_item("uid-1", reference="TESCO 1234"),
                    make_feed_item("uid-9", counter_party="Boots", reference="BOOTS"),
                ]
            }
        )
        result = backfill_references(store, feed, now=NOW)

        assert result.updated == 1
        assert result.message == "Updated 1 transactions with references"
        by_desc = {t.description: t for t in store.list_transactions()}
        assert by_desc["Tesco"].reference == "TESCO 1234"
        assert by_desc["Boots"].reference is None

    def test_unchanged_reference_not_counted(self, store):
        sync_bank_feed(store, FakeFeed({"acc": [make_feed_item("uid-1", reference="R")]}), now=NOW)
        result = backfill_references(store, FakeFeed({"acc": [make_feed_item("uid-1", reference="R")]}), now=NOW)
        assert result.updated == 0
