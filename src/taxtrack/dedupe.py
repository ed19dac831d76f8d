"""Duplicate resolution for ingestion runs.

A :class:`DuplicateGate` is created once per batch job.  It snapshots the
persisted fingerprints and the exclusion registry from the store, then
decides for each candidate whether it is new:

1. **Excluded** -- the fingerprint was deleted-and-excluded by the user.
2. **Exact** -- the fingerprint is already stored.
3. **Fuzzy** -- a stored record has the same amount and normalized
   description within +/- ``fuzzy_window_days`` of the candidate date.
   A match on the candidate date always rejects.  Otherwise exactly one
   match not carrying the run's ``source_tag`` rejects; several such
   matches are taken for a recurring charge.

Records written earlier in the same run are held in a batch-local set.
They are never promoted to the persisted set and are hidden from the fuzzy
lookup, so several genuinely distinct but identical rows in one statement
do not reject each other.  Repeated identical candidates within a run are
told apart by an occurrence ordinal folded into their fingerprint (see
:func:`~taxtrack.models.occurrence_fingerprint`).
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass

from taxtrack.models import Candidate, Transaction, occurrence_fingerprint
from taxtrack.store import LedgerStore

logger = logging.getLogger(__name__)

EXCLUDED = "excluded"
EXACT = "exact"
FUZZY = "fuzzy"

EXCLUDED_REASON = "Transaction excluded by user (do not reimport)"
EXACT_REASON = "Exact fingerprint match (already imported)"


@dataclass
class Decision:
    """Outcome of :meth:`DuplicateGate.check` for one candidate."""

    accepted: bool
    fingerprint: str
    base_fingerprint: str
    kind: str = ""
    reason: str = ""
    match: Transaction | None = None


class DuplicateGate:
    """Three-tier duplicate check over one ingestion run.

    Args:
        store: Ledger store used for the fuzzy lookup.
        persisted: Fingerprints stored before the run started.
        excluded: Fingerprints in the exclusion registry.
        fuzzy_window_days: Inclusive day tolerance for fuzzy matches.
        source_tag: Provenance tag of the records this run writes.  Stored
            records carrying it are not counted as adjacent-day matches.
    """

    def __init__(
        self,
        store: LedgerStore,
        persisted: set[str],
        excluded: set[str],
        fuzzy_window_days: int = 1,
        source_tag: str | None = None,
    ) -> None:
        if fuzzy_window_days < 0:
            raise ValueError("fuzzy_window_days must not be negative")
        self.store = store
        self.persisted = set(persisted)
        self.excluded = set(excluded)
        self.fuzzy_window_days = fuzzy_window_days
        self.source_tag = source_tag
        self.batch: set[str] = set()
        self._seen: Counter[str] = Counter()

    @classmethod
    def load(
        cls,
        store: LedgerStore,
        fuzzy_window_days: int = 1,
        source_tag: str | None = None,
    ) -> DuplicateGate:
        """Snapshot fingerprints and exclusions from *store*."""
        persisted = store.list_all_fingerprints()
        excluded = store.list_excluded_fingerprints()
        logger.debug(
            "Duplicate gate loaded: %d fingerprints, %d exclusions",
            len(persisted),
            len(excluded),
        )
        return cls(store, persisted, excluded, fuzzy_window_days, source_tag)

    # -- Public API ----------------------------------------------------------

    def check(self, candidate: Candidate) -> Decision:
        """Decide whether *candidate* is new.

        The candidate counts toward the occurrence ordinal of its base
        fingerprint whether or not it is accepted.
        """
        base, fingerprint = self._next_fingerprint(candidate)

        if fingerprint in self.excluded:
            return Decision(False, fingerprint, base, EXCLUDED, EXCLUDED_REASON)

        if fingerprint in self.persisted:
            return Decision(False, fingerprint, base, EXACT, EXACT_REASON)

        match = self._fuzzy_match(candidate)
        if match is not None:
            reason = (
                f"Fuzzy match: existing transaction on {match.date.strftime('%d/%m/%Y')} "
                f"({match.description}, £{match.amount:.2f})"
            )
            return Decision(False, fingerprint, base, FUZZY, reason, match)

        return Decision(True, fingerprint, base)

    def record(self, decision: Decision) -> None:
        """Note that the accepted *decision* has been written."""
        if not decision.accepted:
            raise ValueError("Only accepted decisions can be recorded")
        self.batch.add(decision.fingerprint)

    def claim(self, candidate: Candidate, fingerprint: str | None = None) -> None:
        """Count *candidate* as seen without checking it.

        Used for feed items already correlated to a stored record: the
        stored *fingerprint* joins the batch-local set so a distinct,
        identical item later in the run is not fuzzy-matched against it.
        """
        self._next_fingerprint(candidate)
        if fingerprint:
            self.batch.add(fingerprint)

    # -- Internal helpers ----------------------------------------------------

    def _next_fingerprint(self, candidate: Candidate) -> tuple[str, str]:
        base = candidate.fingerprint
        self._seen[base] += 1
        return base, occurrence_fingerprint(base, self._seen[base])

    def _fuzzy_match(self, candidate: Candidate) -> Transaction | None:
        matches = self.store.find_fuzzy_duplicates(
            candidate.date,
            candidate.amount,
            candidate.description,
            exclude=self.batch,
            window_days=self.fuzzy_window_days,
        )
        if not matches:
            return None

        same_day = [m for m in matches if m.date == candidate.date]
        if same_day:
            return same_day[0]

        # Off the day itself, records from the run's own source are distinct
        # purchases; exactly one record from elsewhere is the same purchase.
        others = [m for m in matches if self.source_tag not in m.tags]
        if len(others) == 1:
            return others[0]

        logger.debug(
            "Accepting %s on %s: %d adjacent-day matches from other sources",
            candidate.description,
            candidate.date.isoformat(),
            len(others),
        )
        return None
