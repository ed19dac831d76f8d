"""Tests for taxtrack.starling -- the Starling API client.

All tests use mocked HTTP responses. No real API calls are made.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest

from taxtrack.models import StarlingConfig
from taxtrack.starling import (
    STARLING_API_BASE,
    STARLING_SANDBOX_API_BASE,
    StarlingAccount,
    StarlingAPIError,
    StarlingClient,
    parse_feed_item,
)

RAW_ITEM = {
    "feedItemUid": "11221122-1122-1122-1122-112211221122",
    "amount": {"currency": "GBP", "minorUnits": 4250},
    "direction": "OUT",
    "transactionTime": "2024-04-06T23:30:00.000Z",
    "counterPartyName": "Tesco",
    "reference": "TESCO STORES 1234",
    "status": "SETTLED",
}

ACCOUNT = StarlingAccount(account_uid="acc-1", default_category="cat-1", name="Personal")


def _response(status_code: int, body: dict, url: str = f"{STARLING_API_BASE}/accounts") -> httpx.Response:
    return httpx.Response(
        status_code=status_code,
        json=body,
        request=httpx.Request("GET", url),
    )


class TestParseFeedItem:
    def test_outgoing_item(self):
        item = parse_feed_item(RAW_ITEM)
        assert item.amount == Decimal("42.50")
        assert item.signed_amount == Decimal("-42.50")
        assert item.transaction_time == datetime(2024, 4, 6, 23, 30, tzinfo=timezone.utc)

        candidate = item.to_candidate()
        assert candidate.date == date(2024, 4, 6)
        assert candidate.amount == Decimal("-42.50")
        assert candidate.description == "Tesco"
        assert candidate.reference == "TESCO STORES 1234"

    def test_incoming_item_positive(self):
        item = parse_feed_item({**RAW_ITEM, "direction": "IN"})
        assert item.to_candidate().amount == Decimal("42.50")

    def test_description_falls_back_to_reference_then_unknown(self):
        no_name = {k: v for k, v in RAW_ITEM.items() if k != "counterPartyName"}
        assert parse_feed_item(no_name).to_candidate().description == "TESCO STORES 1234"

        bare = {k: v for k, v in no_name.items() if k != "reference"}
        candidate = parse_feed_item(bare).to_candidate()
        assert candidate.description == "Unknown"
        assert candidate.merchant == "Unknown"

    def test_missing_field_raises(self):
        with pytest.raises(ValueError):
            parse_feed_item({"feedItemUid": "x"})

    def test_unknown_direction_raises(self):
        with pytest.raises(ValueError):
            parse_feed_item({**RAW_ITEM, "direction": "SIDEWAYS"})


class TestStarlingClient:
    """HTTP behaviour of the client with httpx mocked out."""

    def test_list_accounts(self):
        body = {"accounts": [{"accountUid": "acc-1", "defaultCategory": "cat-1", "name": "Personal"}]}
        with patch("taxtrack.starling.httpx.get", return_value=_response(200, body)) as mock_get:
            accounts = StarlingClient("tok").list_accounts()

        assert accounts == [ACCOUNT]
        url = mock_get.call_args.args[0]
        assert url == f"{STARLING_API_BASE}/accounts"
        headers = mock_get.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer tok"

    def test_sandbox_base_url(self):
        with patch("taxtrack.starling.httpx.get", return_value=_response(200, {"accounts": []})) as mock_get:
            StarlingClient("tok", sandbox=True).list_accounts()
        assert mock_get.call_args.args[0].startswith(STARLING_SANDBOX_API_BASE)

    def test_fetch_feed_items(self):
        body = {"feedItems": [RAW_ITEM, {"feedItemUid": "broken"}]}
        since = datetime(2024, 1, 7, 12, 0, tzinfo=timezone.utc)
        with patch("taxtrack.starling.httpx.get", return_value=_response(200, body)) as mock_get:
            items = StarlingClient("tok").fetch_feed_items(ACCOUNT, since)

        assert [i.feed_item_uid for i in items] == [RAW_ITEM["feedItemUid"]]
        assert mock_get.call_args.args[0].endswith("/feed/account/acc-1/category/cat-1")
        assert mock_get.call_args.kwargs["params"] == {"changesSince": "2024-01-07T12:00:00.000Z"}

    def test_http_error_raises(self):
        with patch("taxtrack.starling.httpx.get", return_value=_response(401, {"error": "invalid_token"})):
            with pytest.raises(StarlingAPIError) as excinfo:
                StarlingClient("tok").list_accounts()
        assert excinfo.value.status_code == 401

    def test_timeout_raises(self):
        with patch("taxtrack.starling.httpx.get", side_effect=httpx.ReadTimeout("timed out")):
            with pytest.raises(StarlingAPIError, match="timed out"):
                StarlingClient("tok").list_accounts()

    def test_transport_error_raises(self):
        with patch("taxtrack.starling.httpx.get", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(StarlingAPIError):
                StarlingClient("tok").list_accounts()


class TestFromConfig:
    def test_reads_token_from_env(self, monkeypatch):
        monkeypatch.setenv("MY_TOKEN", "secret")
        client = StarlingClient.from_config(StarlingConfig(token_env="MY_TOKEN", timeout=5.0))
        assert client.token == "secret"
        assert client.timeout == 5.0

    def test_missing_token(self, monkeypatch):
        monkeypatch.delenv("MY_TOKEN", raising=False)
        with pytest.raises(ValueError, match="MY_TOKEN"):
            StarlingClient.from_config(StarlingConfig(token_env="MY_TOKEN"))
