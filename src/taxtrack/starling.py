"""Starling Bank API v2 client.

Lists the accounts behind a personal access token and fetches their
transaction feed.  Feed items are parsed into :class:`FeedItem` records and
normalized into :class:`~taxtrack.models.Candidate` objects for the
ingestion pipeline.

All HTTP failures (timeouts, transport errors, non-2xx responses,
unparseable bodies) are raised as :class:`StarlingAPIError` so callers can
decide per account whether to continue.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import httpx

from taxtrack.models import Candidate, StarlingConfig, quantize_amount

logger = logging.getLogger(__name__)

STARLING_API_BASE = "https://api.starlingbank.com/api/v2"
STARLING_SANDBOX_API_BASE = "https://api-sandbox.starlingbank.com/api/v2"

DIRECTION_IN = "IN"
DIRECTION_OUT = "OUT"
UNKNOWN_COUNTERPARTY = "Unknown"


class StarlingAPIError(Exception):
    """A Starling API request failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class StarlingAccount:
    account_uid: str
    default_category: str
    name: str = ""


@dataclass(frozen=True)
class FeedItem:
    """One entry of an account's transaction feed.

    Attributes:
        feed_item_uid: Durable id of the item across syncs.
        transaction_time: When the transaction happened (UTC).
        amount: Unsigned amount in pounds.
        direction: ``"IN"`` or ``"OUT"``.
        counter_party_name: Merchant or payer name, if Starling knows it.
        reference: Payment reference, if any.
        status: Starling status string, e.g. ``"SETTLED"`` or ``"PENDING"``.
    """

    feed_item_uid: str
    transaction_time: datetime
    amount: Decimal
    direction: str
    counter_party_name: str | None = None
    reference: str | None = None
    status: str | None = None

    @property
    def signed_amount(self) -> Decimal:
        if self.direction == DIRECTION_IN:
            return self.amount
        return -self.amount

    def to_candidate(self) -> Candidate:
        """Normalize into a candidate; money out becomes a negative amount."""
        return Candidate(
            date=self.transaction_time.astimezone(timezone.utc).date(),
            amount=self.signed_amount,
            description=self.counter_party_name or self.reference or UNKNOWN_COUNTERPARTY,
            merchant=self.counter_party_name or UNKNOWN_COUNTERPARTY,
            reference=self.reference or None,
        )


def parse_feed_item(raw: dict) -> FeedItem:
    """Build a :class:`FeedItem` from one element of ``feedItems``.

    Raises:
        ValueError: If a required field is missing or malformed.
    """
    try:
        uid = raw["feedItemUid"]
        minor_units = int(raw["amount"]["minorUnits"])
        when = _parse_timestamp(raw["transactionTime"])
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Malformed feed item: missing {exc}") from exc

    direction = raw.get("direction", DIRECTION_OUT)
    if direction not in (DIRECTION_IN, DIRECTION_OUT):
        raise ValueError(f"Malformed feed item {uid}: unknown direction {direction!r}")

    return FeedItem(
        feed_item_uid=uid,
        transaction_time=when,
        amount=quantize_amount(Decimal(minor_units) / 100),
        direction=direction,
        counter_party_name=raw.get("counterPartyName") or None,
        reference=raw.get("reference") or None,
        status=raw.get("status"),
    )


def _parse_timestamp(value: str) -> datetime:
    # Starling sends e.g. "2024-04-06T10:15:30.000Z".
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class StarlingClient:
    """Synchronous Starling API client.

    Args:
        token: Personal access token.
        sandbox: Talk to the sandbox API instead of production.
        timeout: HTTP request timeout in seconds.
    """

    def __init__(self, token: str, sandbox: bool = False, timeout: float = 30.0) -> None:
        if not token:
            raise ValueError("A Starling access token is required")
        self.token = token
        self.base_url = STARLING_SANDBOX_API_BASE if sandbox else STARLING_API_BASE
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: StarlingConfig) -> StarlingClient:
        """Create a client, reading the token from ``config.token_env``.

        Raises:
            ValueError: If the environment variable is unset or empty.
        """
        token = os.environ.get(config.token_env, "")
        if not token:
            raise ValueError(
                f"Starling token not found in environment variable '{config.token_env}'"
            )
        return cls(token, sandbox=config.sandbox, timeout=config.timeout)

    def list_accounts(self) -> list[StarlingAccount]:
        body = self._get("/accounts")
        accounts: list[StarlingAccount] = []
        for raw in body.get("accounts", []):
            try:
                accounts.append(
                    StarlingAccount(
                        account_uid=raw["accountUid"],
                        default_category=raw["defaultCategory"],
                        name=raw.get("name", ""),
                    )
                )
            except KeyError as exc:
                raise StarlingAPIError(f"Malformed account in response: missing {exc}") from exc
        return accounts

    def fetch_feed_items(self, account: StarlingAccount, since: datetime) -> list[FeedItem]:
        """Return feed items of *account* changed since *since*.

        Items that cannot be parsed are logged and left out.
        """
        path = f"/feed/account/{account.account_uid}/category/{account.default_category}"
        body = self._get(path, params={"changesSince": _format_since(since)})

        items: list[FeedItem] = []
        for raw in body.get("feedItems", []):
            try:
                items.append(parse_feed_item(raw))
            except ValueError as exc:
                logger.warning("Skipping feed item: %s", exc)
        logger.info("Fetched %d feed items for account %s", len(items), account.account_uid)
        return items

    def _get(self, path: str, params: dict | None = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
        }
        try:
            response = httpx.get(
                f"{self.base_url}{path}",
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise StarlingAPIError(f"Request to {path} timed out") from exc
        except httpx.HTTPStatusError as exc:
            raise StarlingAPIError(
                f"Starling API returned HTTP {exc.response.status_code} for {path}: "
                f"{exc.response.text[:200]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise StarlingAPIError(f"Request to {path} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise StarlingAPIError(f"Invalid JSON from {path}") from exc
        if not isinstance(body, dict):
            raise StarlingAPIError(f"Unexpected response body from {path}")
        return body


def _format_since(since: datetime) -> str:
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return since.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
