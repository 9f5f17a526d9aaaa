"""Tests for the ADVBox API client."""

from datetime import date
from decimal import Decimal

import httpx
import pytest
import respx

from portalsync.advbox import (
    AdvboxAPIError,
    AdvboxAuthError,
    AdvboxClient,
    AdvboxRateLimitError,
    AdvboxTransaction,
    RecordValidationError,
    TransactionPage,
    parse_transaction,
    resolve_external_id,
)

TRANSACTIONS_URL = "https://advbox.test/api/v1/transactions"
START = date(2025, 1, 15)
END = date(2026, 1, 15)


class TestTransactionPage:
    """Tests for TransactionPage."""

    def test_full_page_has_more(self):
        """Test a full page without totalCount means more pages."""
        page = TransactionPage(records=[{}] * 50, offset=0, limit=50)
        assert page.has_more is True

    def test_short_page_is_last(self):
        """Test a short page ends the pagination."""
        page = TransactionPage(records=[{}] * 12, offset=100, limit=50)
        assert page.has_more is False

    def test_empty_page_is_last(self):
        """Test an empty page ends the pagination."""
        page = TransactionPage(records=[], offset=0, limit=50, total_count=200)
        assert page.has_more is False

    def test_total_count_takes_precedence(self):
        """Test totalCount decides when the upstream reports it."""
        assert TransactionPage([{}] * 50, 50, 50, total_count=100).has_more is False
        assert TransactionPage([{}] * 10, 0, 50, total_count=100).has_more is True


class TestAdvboxTransaction:
    """Tests for AdvboxTransaction."""

    def test_paid_flag(self):
        """Test the paid flag settles the transaction."""
        txn = AdvboxTransaction(id="1", amount=Decimal("10"), paid=True)
        assert txn.is_paid is True

    def test_paid_status(self):
        """Test a 'paid' status settles the transaction."""
        txn = AdvboxTransaction(id="1", amount=Decimal("10"), status="PAID")
        assert txn.is_paid is True

    def test_pending(self):
        """Test an open transaction."""
        txn = AdvboxTransaction(id="1", amount=Decimal("10"), status="open")
        assert txn.is_paid is False


class TestAdvboxClient:
    """Tests for AdvboxClient."""

    def test_get_headers(self, advbox_config):
        """Test authorization headers."""
        client = AdvboxClient(advbox_config, "secret-token")
        headers = client._get_headers()
        assert headers["Authorization"] == "Bearer secret-token"
        assert headers["Accept"] == "application/json"

    async def test_context_manager(self, advbox_config):
        """Test the HTTP client lives only inside the context."""
        async with AdvboxClient(advbox_config, "token") as client:
            assert client._client is not None
        assert client._client is None

    async def test_context_manager_exit_without_client(self, advbox_config):
        """Test exiting a context that was never entered."""
        client = AdvboxClient(advbox_config, "token")
        await client.__aexit__(None, None, None)
        assert client._client is None

    @respx.mock
    async def test_fetch_page_sends_window_and_paging(self, advbox_config):
        """Test the query parameters of a page request."""
        route = respx.get(TRANSACTIONS_URL).mock(
            return_value=httpx.Response(200, json={"data": [{"id": 1}]})
        )
        async with AdvboxClient(advbox_config, "token") as client:
            page = await client.fetch_transactions_page(START, END, offset=100, limit=50)

        params = route.calls.last.request.url.params
        assert params["limit"] == "50"
        assert params["offset"] == "100"
        assert params["date_due_start"] == "2025-01-15"
        assert params["date_due_end"] == "2026-01-15"
        assert route.calls.last.request.headers["Authorization"] == "Bearer token"
        assert page.records == [{"id": 1}]
        assert page.offset == 100
        assert page.total_count is None

    @respx.mock
    async def test_fetch_page_default_limit(self, advbox_config):
        """Test the page size comes from the config."""
        route = respx.get(TRANSACTIONS_URL).mock(
            return_value=httpx.Response(200, json={"data": []})
        )
        async with AdvboxClient(advbox_config, "token") as client:
            await client.fetch_transactions_page(START, END)

        assert route.calls.last.request.url.params["limit"] == str(advbox_config.page_size)

    @respx.mock
    async def test_fetch_page_total_count(self, advbox_config):
        """Test totalCount is read from the envelope."""
        respx.get(TRANSACTIONS_URL).mock(
            return_value=httpx.Response(
                200, json={"data": [{"id": 1}, {"id": 2}], "totalCount": "2"}
            )
        )
        async with AdvboxClient(advbox_config, "token") as client:
            page = await client.fetch_transactions_page(START, END)

        assert page.total_count == 2
        assert page.has_more is False

    @respx.mock
    async def test_fetch_page_bare_list(self, advbox_config):
        """Test a bare list body is accepted."""
        respx.get(TRANSACTIONS_URL).mock(
            return_value=httpx.Response(200, json=[{"id": 1}])
        )
        async with AdvboxClient(advbox_config, "token") as client:
            page = await client.fetch_transactions_page(START, END)

        assert page.records == [{"id": 1}]

    @respx.mock
    async def test_fetch_page_missing_data(self, advbox_config):
        """Test an envelope without data is an empty page."""
        respx.get(TRANSACTIONS_URL).mock(return_value=httpx.Response(200, json={}))
        async with AdvboxClient(advbox_config, "token") as client:
            page = await client.fetch_transactions_page(START, END)

        assert page.records == []
        assert page.has_more is False

    @respx.mock
    async def test_fetch_page_unauthorized(self, advbox_config):
        """Test a 401 raises AdvboxAuthError."""
        respx.get(TRANSACTIONS_URL).mock(return_value=httpx.Response(401))
        async with AdvboxClient(advbox_config, "token") as client:
            with pytest.raises(AdvboxAuthError) as exc_info:
                await client.fetch_transactions_page(START, END)

        assert exc_info.value.status_code == 401

    @respx.mock
    async def test_fetch_page_rate_limited(self, advbox_config):
        """Test a 429 raises AdvboxRateLimitError with Retry-After."""
        respx.get(TRANSACTIONS_URL).mock(
            return_value=httpx.Response(429, headers={"Retry-After": "7"})
        )
        async with AdvboxClient(advbox_config, "token") as client:
            with pytest.raises(AdvboxRateLimitError) as exc_info:
                await client.fetch_transactions_page(START, END)

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 7.0

    @pytest.mark.parametrize("retry_after", ["soon", "nan", "inf", "-3"])
    @respx.mock
    async def test_fetch_page_rate_limited_without_retry_after(
        self, advbox_config, retry_after
    ):
        """Test a 429 without a usable Retry-After header."""
        respx.get(TRANSACTIONS_URL).mock(
            return_value=httpx.Response(429, headers={"Retry-After": retry_after})
        )
        async with AdvboxClient(advbox_config, "token") as client:
            with pytest.raises(AdvboxRateLimitError) as exc_info:
                await client.fetch_transactions_page(START, END)

        assert exc_info.value.retry_after is None

    @respx.mock
    async def test_fetch_page_server_error(self, advbox_config):
        """Test a 5xx raises AdvboxAPIError with the status."""
        respx.get(TRANSACTIONS_URL).mock(
            return_value=httpx.Response(500, text="Internal Server Error")
        )
        async with AdvboxClient(advbox_config, "token") as client:
            with pytest.raises(AdvboxAPIError) as exc_info:
                await client.fetch_transactions_page(START, END)

        assert exc_info.value.status_code == 500
        assert "500" in str(exc_info.value)
        assert not isinstance(exc_info.value, AdvboxAuthError)

    @respx.mock
    async def test_fetch_page_non_json(self, advbox_config):
        """Test a non-JSON body raises AdvboxAPIError."""
        respx.get(TRANSACTIONS_URL).mock(
            return_value=httpx.Response(200, text="<html>maintenance</html>")
        )
        async with AdvboxClient(advbox_config, "token") as client:
            with pytest.raises(AdvboxAPIError, match="non-JSON"):
                await client.fetch_transactions_page(START, END)

    @respx.mock
    async def test_fetch_page_unexpected_shape(self, advbox_config):
        """Test a data field that is not a list."""
        respx.get(TRANSACTIONS_URL).mock(
            return_value=httpx.Response(200, json={"data": {"id": 1}})
        )
        async with AdvboxClient(advbox_config, "token") as client:
            with pytest.raises(AdvboxAPIError, match="Unexpected"):
                await client.fetch_transactions_page(START, END)

    @respx.mock
    async def test_fetch_page_transport_error(self, advbox_config):
        """Test a network failure raises AdvboxAPIError."""
        respx.get(TRANSACTIONS_URL).mock(side_effect=httpx.ConnectError("refused"))
        async with AdvboxClient(advbox_config, "token") as client:
            with pytest.raises(AdvboxAPIError) as exc_info:
                await client.fetch_transactions_page(START, END)

        assert exc_info.value.status_code is None


class TestResolveExternalId:
    """Tests for resolve_external_id."""

    def test_numeric_id(self):
        """Test a numeric id becomes a string."""
        assert resolve_external_id({"id": 123}) == "123"

    def test_identification_fallback(self):
        """Test identification is used when id is missing."""
        assert resolve_external_id({"identification": "NF-77"}) == "NF-77"

    def test_id_preferred(self):
        """Test id wins over identification."""
        assert resolve_external_id({"id": "9", "identification": "NF-77"}) == "9"

    def test_blank_id_falls_back(self):
        """Test a blank id falls back to identification."""
        assert resolve_external_id({"id": "  ", "identification": "NF-77"}) == "NF-77"

    def test_no_identifier(self):
        """Test records without an identifier."""
        assert resolve_external_id({"amount": 10}) is None
        assert resolve_external_id({"id": None, "identification": ""}) is None
        assert resolve_external_id({"id": True}) is None

    def test_not_a_record(self):
        """Test non-object records."""
        assert resolve_external_id(None) is None
        assert resolve_external_id("123") is None


class TestParseTransaction:
    """Tests for parse_transaction."""

    def test_full_record(self):
        """Test a complete record."""
        record = {
            "id": 501,
            "amount": "-1250.40",
            "name": "Custas processuais",
            "description": "Guia",
            "customer_name": "Maria Silva",
            "date_due": "2025-06-10T00:00:00",
            "date_payment": "2025-06-12",
            "paid": "sim",
            "category": "Custas",
            "lawsuit_title": "Processo 0001",
            "bank_account": "Itaú",
            "notes": "Pago via PIX",
        }
        txn = parse_transaction(record)

        assert txn.id == "501"
        assert txn.amount == Decimal("-1250.40")
        assert txn.name == "Custas processuais"
        assert txn.date_due == date(2025, 6, 10)
        assert txn.date_payment == date(2025, 6, 12)
        assert txn.paid is True
        assert txn.is_paid is True
        assert txn.category == "Custas"
        assert txn.bank_account == "Itaú"
        assert txn.raw is record

    def test_minimal_record(self):
        """Test a record with only an identifier."""
        txn = parse_transaction({"identification": "X-1"})
        assert txn.id == "X-1"
        assert txn.amount == Decimal("0")
        assert txn.date_due is None
        assert txn.is_paid is False

    def test_numeric_amount(self):
        """Test a numeric amount."""
        assert parse_transaction({"id": 1, "amount": 99.5}).amount == Decimal("99.5")

    def test_blank_strings_are_none(self):
        """Test blank text fields become None."""
        txn = parse_transaction({"id": 1, "name": "  ", "date_due": ""})
        assert txn.name is None
        assert txn.date_due is None

    def test_invalid_amount(self):
        """Test an amount that is not a number."""
        with pytest.raises(RecordValidationError, match="amount"):
            parse_transaction({"id": 1, "amount": "abc"})

    def test_non_finite_amount(self):
        """Test NaN and infinite amounts are rejected."""
        with pytest.raises(RecordValidationError):
            parse_transaction({"id": 1, "amount": "NaN"})
        with pytest.raises(RecordValidationError):
            parse_transaction({"id": 1, "amount": "Infinity"})

    def test_boolean_amount(self):
        """Test a boolean amount is rejected."""
        with pytest.raises(RecordValidationError):
            parse_transaction({"id": 1, "amount": True})

    def test_invalid_date(self):
        """Test a malformed due date."""
        with pytest.raises(RecordValidationError, match="date_due"):
            parse_transaction({"id": 1, "date_due": "10/06/2025"})

    def test_non_string_date(self):
        """Test a due date that is not a string."""
        with pytest.raises(RecordValidationError, match="date_due"):
            parse_transaction({"id": 1, "date_due": 20250610})

    def test_missing_identifier(self):
        """Test a record without an identifier."""
        with pytest.raises(RecordValidationError, match="identifier"):
            parse_transaction({"amount": 10})

    def test_not_a_record(self):
        """Test a non-object record."""
        with pytest.raises(RecordValidationError):
            parse_transaction(["id", 1])
