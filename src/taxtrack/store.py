"""Ledger persistence on SQLAlchemy.

The ingestion engine talks to storage through the :class:`LedgerStore`
protocol.  :class:`SqlLedgerStore` is the shipped implementation: SQLite by
default, any SQLAlchemy URL accepted.  Each public method runs in its own
session and commits on success, so a batch job writes one record at a time
and a failure on one record never rolls back the records before it.

Rows are converted to the plain dataclasses in :mod:`taxtrack.models`
before they leave this module.
"""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    delete,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from taxtrack.models import (
    BUSINESS_TYPES,
    CLEARED,
    TRANSACTION_TYPES,
    CategorizationRule,
    ExclusionEntry,
    Transaction,
    normalize_description,
    quantize_amount,
)

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync_at"

# Half a penny either side: amounts are stored at two places, and SQLite keeps
# NUMERIC values as floats.
_AMOUNT_TOLERANCE = Decimal("0.005")

# Fields ``update()`` may write.  ``fingerprint`` is only ever filled in when
# it is NULL; see :meth:`SqlLedgerStore.update`.
_UPDATABLE_FIELDS = {
    "date",
    "description",
    "amount",
    "merchant",
    "reference",
    "type",
    "business_type",
    "category",
    "status",
    "tags",
    "fingerprint",
}


class StoreError(Exception):
    """A single read or write against the ledger failed."""


class DuplicateFingerprintError(StoreError):
    """A write would violate the unique fingerprint constraint."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# ORM models
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


class TransactionRow(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    merchant: Mapped[str] = mapped_column(Text, nullable=False, default="")
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    business_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=CLEARED)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # Unique, but nullable for legacy rows awaiting backfill.
    fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class ExclusionRow(Base):
    __tablename__ = "excluded_fingerprints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="User deleted")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class RuleRow(Base):
    __tablename__ = "categorization_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    keyword: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    business_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class SettingRow(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------


class LedgerStore(Protocol):
    """Storage operations the ingestion engine depends on."""

    def list_all_fingerprints(self) -> set[str]: ...

    def list_excluded_fingerprints(self) -> set[str]: ...

    def find_fuzzy_duplicates(
        self,
        txn_date: date,
        amount: Decimal,
        description: str,
        exclude: Iterable[str] = (),
        window_days: int = 1,
    ) -> list[Transaction]: ...

    def insert(self, txn: Transaction, fingerprint: str | None) -> Transaction: ...

    def update(self, txn_id: str, **fields: Any) -> Transaction | None: ...

    def list_rules(self) -> list[CategorizationRule]: ...

    def list_transactions(self) -> list[Transaction]: ...


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------


class SqlLedgerStore:
    """:class:`LedgerStore` backed by a SQLAlchemy engine.

    Args:
        database_url: Any SQLAlchemy URL, e.g. ``"sqlite:///taxtrack.db"``.
        create: Create missing tables on construction.
        echo: Log emitted SQL (passed through to ``create_engine``).
    """

    def __init__(self, database_url: str, *, create: bool = True, echo: bool = False) -> None:
        self.database_url = database_url
        self.engine: Engine = create_engine(database_url, echo=echo, pool_pre_ping=True)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if create:
            Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Provide a transactional scope around a series of operations.

        SQLAlchemy errors are re-raised as :class:`StoreError` (or
        :class:`DuplicateFingerprintError` for uniqueness violations) so
        callers do not depend on the storage engine.
        """
        session = self._sessions()
        try:
            yield session
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            if "fingerprint" in str(exc.orig):
                raise DuplicateFingerprintError(str(exc.orig)) from exc
            raise StoreError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -- Transactions --------------------------------------------------------

    def list_transactions(self) -> list[Transaction]:
        """Return every transaction, newest first."""
        with self.session_scope() as session:
            rows = session.scalars(
                select(TransactionRow).order_by(
                    TransactionRow.date.desc(), TransactionRow.created_at.desc()
                )
            ).all()
            return [_to_transaction(r) for r in rows]

    def get_transaction(self, txn_id: str) -> Transaction | None:
        with self.session_scope() as session:
            row = session.get(TransactionRow, txn_id)
            return _to_transaction(row) if row is not None else None

    def list_all_fingerprints(self) -> set[str]:
        with self.session_scope() as session:
            values = session.scalars(
                select(TransactionRow.fingerprint).where(TransactionRow.fingerprint.is_not(None))
            ).all()
            return set(values)

    def insert(self, txn: Transaction, fingerprint: str | None) -> Transaction:
        """Persist *txn* under *fingerprint* and return the stored record.

        Raises:
            DuplicateFingerprintError: If *fingerprint* is already taken.
            StoreError: For any other storage failure.
        """
        row = TransactionRow(
            id=txn.id or _new_id(),
            date=txn.date,
            description=txn.description,
            reference=txn.reference,
            amount=quantize_amount(txn.amount),
            merchant=txn.merchant,
            type=txn.type,
            business_type=txn.business_type,
            category=txn.category,
            status=txn.status,
            tags=list(txn.tags),
            fingerprint=fingerprint,
            created_at=txn.created_at or _utcnow(),
        )
        with self.session_scope() as session:
            session.add(row)
            session.flush()
            return _to_transaction(row)

    def update(self, txn_id: str, **fields: Any) -> Transaction | None:
        """Write *fields* onto the transaction *txn_id*.

        Only the named fields are touched.  A fingerprint can be set on a row
        that has none, but never changed once set.

        Returns:
            The updated transaction, or None if *txn_id* does not exist.

        Raises:
            KeyError: If a field name is not updatable.
            ValueError: On an attempt to change an existing fingerprint.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise KeyError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        with self.session_scope() as session:
            row = session.get(TransactionRow, txn_id)
            if row is None:
                return None
            if "fingerprint" in fields and row.fingerprint is not None:
                if fields["fingerprint"] != row.fingerprint:
                    raise ValueError(f"Fingerprint of transaction {txn_id} is immutable")
            for name, value in fields.items():
                if name == "amount":
                    value = quantize_amount(value)
                elif name == "tags":
                    value = list(value)
                setattr(row, name, value)
            session.flush()
            return _to_transaction(row)

    def delete_transaction(self, txn_id: str) -> Transaction | None:
        """Delete and return the transaction, or None if it does not exist."""
        with self.session_scope() as session:
            row = session.get(TransactionRow, txn_id)
            if row is None:
                return None
            txn = _to_transaction(row)
            session.delete(row)
            return txn

    def find_fuzzy_duplicates(
        self,
        txn_date: date,
        amount: Decimal,
        description: str,
        exclude: Iterable[str] = (),
        window_days: int = 1,
    ) -> list[Transaction]:
        """Find stored records that may be the same real-world transaction.

        A record matches when its amount equals *amount*, its normalized
        description equals the normalized *description*, and its date lies
        within ``txn_date +/- window_days`` inclusive.  Records whose
        fingerprint is in *exclude* are ignored.

        Returns:
            Matching transactions ordered by distance from *txn_date*, then
            creation time.
        """
        amount = quantize_amount(amount)
        excluded = set(exclude)
        start = txn_date - timedelta(days=window_days)
        end = txn_date + timedelta(days=window_days)

        stmt = select(TransactionRow).where(
            TransactionRow.date.between(start, end),
            TransactionRow.amount.between(amount - _AMOUNT_TOLERANCE, amount + _AMOUNT_TOLERANCE),
        )
        if excluded:
            stmt = stmt.where(
                or_(
                    TransactionRow.fingerprint.is_(None),
                    TransactionRow.fingerprint.not_in(excluded),
                )
            )

        # Descriptions are compared in Python: SQLite lower() and trim() only
        # handle ASCII letters and spaces.
        wanted = normalize_description(description)
        with self.session_scope() as session:
            rows = session.scalars(stmt).all()
            matches = [
                _to_transaction(r)
                for r in rows
                if normalize_description(r.description) == wanted
            ]

        matches.sort(key=lambda t: (abs((t.date - txn_date).days), t.created_at or _utcnow()))
        return matches

    # -- Exclusions ----------------------------------------------------------

    def list_excluded_fingerprints(self) -> set[str]:
        with self.session_scope() as session:
            return set(session.scalars(select(ExclusionRow.fingerprint)).all())

    def list_exclusions(self) -> list[ExclusionEntry]:
        with self.session_scope() as session:
            rows = session.scalars(
                select(ExclusionRow).order_by(ExclusionRow.created_at.desc())
            ).all()
            return [_to_exclusion(r) for r in rows]

    def is_excluded(self, fingerprint: str) -> bool:
        with self.session_scope() as session:
            found = session.scalar(
                select(ExclusionRow.id).where(ExclusionRow.fingerprint == fingerprint)
            )
            return found is not None

    def add_exclusion(self, entry: ExclusionEntry) -> ExclusionEntry:
        """Record *entry*; an already-excluded fingerprint is left as is."""
        with self.session_scope() as session:
            existing = session.scalar(
                select(ExclusionRow).where(ExclusionRow.fingerprint == entry.fingerprint)
            )
            if existing is not None:
                return _to_exclusion(existing)
            row = ExclusionRow(
                fingerprint=entry.fingerprint,
                description=entry.description,
                amount=quantize_amount(entry.amount),
                date=entry.date,
                reason=entry.reason,
                created_at=entry.created_at or _utcnow(),
            )
            session.add(row)
            session.flush()
            return _to_exclusion(row)

    def remove_exclusion(self, fingerprint: str) -> bool:
        with self.session_scope() as session:
            result = session.execute(
                delete(ExclusionRow).where(ExclusionRow.fingerprint == fingerprint)
            )
            return result.rowcount > 0

    # -- Rules ---------------------------------------------------------------

    def list_rules(self) -> list[CategorizationRule]:
        """Return rules in their stored order (ascending position)."""
        with self.session_scope() as session:
            rows = session.scalars(
                select(RuleRow).order_by(RuleRow.position, RuleRow.created_at)
            ).all()
            return [_to_rule(r) for r in rows]

    def add_rule(self, rule: CategorizationRule, position: int | None = None) -> CategorizationRule:
        """Store *rule* at *position* (0-based), or at the end when None.

        Raises:
            ValueError: If the keyword is blank or the type values are
                unknown.
        """
        _validate_rule(rule)
        with self.session_scope() as session:
            rows = list(session.scalars(select(RuleRow).order_by(RuleRow.position)).all())
            if position is None or position >= len(rows):
                position = len(rows)
            position = max(position, 0)
            row = RuleRow(
                id=rule.id or _new_id(),
                keyword=rule.keyword.strip(),
                type=rule.type,
                business_type=rule.business_type,
                category=rule.category,
                position=position,
            )
            rows.insert(position, row)
            session.add(row)
            _renumber(rows)
            session.flush()
            return _to_rule(row)

    def update_rule(self, rule_id: str, **fields: Any) -> CategorizationRule | None:
        allowed = {"keyword", "type", "business_type", "category"}
        unknown = set(fields) - allowed
        if unknown:
            raise KeyError(f"Cannot update rule field(s): {', '.join(sorted(unknown))}")
        with self.session_scope() as session:
            row = session.get(RuleRow, rule_id)
            if row is None:
                return None
            merged = _to_rule(row)
            for name, value in fields.items():
                setattr(merged, name, value)
            _validate_rule(merged)
            for name, value in fields.items():
                setattr(row, name, value.strip() if name == "keyword" else value)
            session.flush()
            return _to_rule(row)

    def move_rule(self, rule_id: str, position: int) -> CategorizationRule | None:
        """Move a rule to the 0-based *position*, shifting the others."""
        with self.session_scope() as session:
            rows = list(session.scalars(select(RuleRow).order_by(RuleRow.position)).all())
            target = next((r for r in rows if r.id == rule_id), None)
            if target is None:
                return None
            rows.remove(target)
            position = min(max(position, 0), len(rows))
            rows.insert(position, target)
            _renumber(rows)
            session.flush()
            return _to_rule(target)

    def delete_rule(self, rule_id: str) -> bool:
        with self.session_scope() as session:
            row = session.get(RuleRow, rule_id)
            if row is None:
                return False
            session.delete(row)
            session.flush()
            remaining = list(session.scalars(select(RuleRow).order_by(RuleRow.position)).all())
            _renumber(remaining)
            return True

    def replace_rules(self, rules: list[CategorizationRule]) -> list[CategorizationRule]:
        """Replace the whole rule list with *rules*, keeping their order."""
        for rule in rules:
            _validate_rule(rule)
        with self.session_scope() as session:
            session.execute(delete(RuleRow))
            rows = [
                RuleRow(
                    id=_new_id(),
                    keyword=rule.keyword.strip(),
                    type=rule.type,
                    business_type=rule.business_type,
                    category=rule.category,
                    position=i,
                )
                for i, rule in enumerate(rules)
            ]
            session.add_all(rows)
            session.flush()
            return [_to_rule(r) for r in rows]

    # -- Settings ------------------------------------------------------------

    def get_setting(self, key: str) -> str | None:
        with self.session_scope() as session:
            row = session.get(SettingRow, key)
            return row.value if row is not None else None

    def set_setting(self, key: str, value: str) -> None:
        with self.session_scope() as session:
            row = session.get(SettingRow, key)
            if row is None:
                session.add(SettingRow(key=key, value=value))
            else:
                row.value = value

    def get_last_sync_at(self) -> datetime | None:
        value = self.get_setting(LAST_SYNC_KEY)
        return datetime.fromisoformat(value) if value else None

    def set_last_sync_at(self, when: datetime) -> None:
        self.set_setting(LAST_SYNC_KEY, when.isoformat())


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _validate_rule(rule: CategorizationRule) -> None:
    if not rule.keyword or not rule.keyword.strip():
        raise ValueError("Rule keyword must not be blank")
    if rule.type not in TRANSACTION_TYPES:
        raise ValueError(
            f"Invalid rule type {rule.type!r}; expected one of {', '.join(TRANSACTION_TYPES)}"
        )
    if rule.business_type is not None and rule.business_type not in BUSINESS_TYPES:
        raise ValueError(
            f"Invalid business type {rule.business_type!r}; "
            f"expected one of {', '.join(BUSINESS_TYPES)}"
        )


def _renumber(rows: list[RuleRow]) -> None:
    for i, row in enumerate(rows):
        row.position = i


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back out.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_transaction(row: TransactionRow) -> Transaction:
    return Transaction(
        id=row.id,
        date=row.date,
        description=row.description,
        reference=row.reference,
        amount=quantize_amount(row.amount),
        merchant=row.merchant,
        type=row.type,
        business_type=row.business_type,
        category=row.category,
        status=row.status,
        tags=list(row.tags or []),
        fingerprint=row.fingerprint,
        created_at=_as_utc(row.created_at),
    )


def _to_exclusion(row: ExclusionRow) -> ExclusionEntry:
    return ExclusionEntry(
        fingerprint=row.fingerprint,
        description=row.description,
        amount=quantize_amount(row.amount),
        date=row.date,
        reason=row.reason,
        created_at=_as_utc(row.created_at),
    )


def _to_rule(row: RuleRow) -> CategorizationRule:
    return CategorizationRule(
        id=row.id,
        keyword=row.keyword,
        type=row.type,
        business_type=row.business_type,
        category=row.category,
        position=row.position,
    )
