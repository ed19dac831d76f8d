"""Categorization rule engine.

Rules are an ordered list of keyword patterns.  A rule matches a
transaction when its keyword is a case-insensitive substring of the
description, the merchant, or the reference.  The first matching rule in
stored order wins; there is no longest-match or specificity ranking, so
the user controls precedence by ordering the list.

Transactions no rule matches get a default classification from the sign of
their amount.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal
from typing import Protocol

from taxtrack.models import (
    BUSINESS,
    EXPENSE,
    INCOME,
    UNREVIEWED,
    ApplyRulesResult,
    Candidate,
    CategorizationRule,
    Classification,
    Transaction,
)
from taxtrack.store import StoreError

logger = logging.getLogger(__name__)

DEFAULT_INCOME_CATEGORY = "Sales"


class RuleSource(Protocol):
    """Store operations :func:`apply_rules_to_existing` needs."""

    def list_rules(self) -> list[CategorizationRule]: ...

    def list_transactions(self) -> list[Transaction]: ...

    def update(self, txn_id: str, **fields) -> Transaction | None: ...


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def match_rule(
    candidate: Candidate | Transaction,
    rules: Iterable[CategorizationRule],
) -> Classification | None:
    """Return the classification of the first rule matching *candidate*.

    Args:
        candidate: Anything with ``description``, ``merchant`` and
            ``reference`` attributes.
        rules: Rules in precedence order.

    Returns:
        The winning rule's classification, or None when no rule matches.
    """
    haystacks = [
        (candidate.description or "").lower(),
        (candidate.merchant or "").lower(),
        (candidate.reference or "").lower(),
    ]
    for rule in rules:
        keyword = rule.keyword.strip().lower()
        if not keyword:
            continue
        if any(keyword in text for text in haystacks):
            logger.debug("Rule %r matched %r", rule.keyword, candidate.description)
            return rule.classification
    return None


def default_classification(amount: Decimal) -> Classification:
    """Classification for a transaction no rule claims.

    Money in is assumed to be business income; everything else is left
    unreviewed for the user.
    """
    if amount > 0:
        return Classification(BUSINESS, INCOME, DEFAULT_INCOME_CATEGORY)
    return Classification(UNREVIEWED, EXPENSE, None)


def classify(
    candidate: Candidate,
    rules: Iterable[CategorizationRule],
) -> tuple[Classification, bool]:
    """Classify *candidate* by rules, falling back to the defaults.

    Returns:
        ``(classification, matched)`` where *matched* is True when a user
        rule supplied the classification.
    """
    matched = match_rule(candidate, rules)
    if matched is not None:
        return matched, True
    return default_classification(candidate.amount), False


# ---------------------------------------------------------------------------
# Bulk re-application
# ---------------------------------------------------------------------------


def apply_rules_to_existing(store: RuleSource) -> ApplyRulesResult:
    """Re-run the rules over every stored transaction.

    Only transactions some rule matches are considered, and only the
    classification fields that actually change are written.  Unmatched
    transactions keep whatever classification they have, including manual
    edits.  A failed write is logged, counted and skipped.
    """
    rules = store.list_rules()
    result = ApplyRulesResult()
    if not rules:
        return result

    for txn in store.list_transactions():
        matched = match_rule(txn, rules)
        if matched is None or matched == txn.classification:
            continue
        changes = {
            name: getattr(matched, name)
            for name in ("type", "business_type", "category")
            if getattr(matched, name) != getattr(txn, name)
        }
        try:
            store.update(txn.id, **changes)
        except StoreError as exc:
            logger.warning("Failed to apply rules to %s: %s", txn.id, exc)
            result.failed += 1
            continue
        result.updated += 1

    logger.info("Applied rules to %d transactions (%d failed)", result.updated, result.failed)
    return result


def unknown_categories(
    rules: Iterable[CategorizationRule],
    categories: list[dict],
) -> list[str]:
    """Return rule categories missing from the category taxonomy.

    Args:
        rules: Rules to check.
        categories: Taxonomy entries, each a dict with a ``name`` key.
    """
    known = {c["name"] for c in categories}
    missing: list[str] = []
    for rule in rules:
        if rule.category and rule.category not in known and rule.category not in missing:
            missing.append(rule.category)
    return missing
