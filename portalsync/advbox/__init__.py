"""ADVBox practice-management API client module."""

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation

import httpx

from portalsync.config import AdvboxConfig

log = logging.getLogger("portalsync.advbox")

ID_FIELDS = ("id", "identification")
TRUE_FLAGS = {"true", "1", "yes", "sim"}


class AdvboxAPIError(Exception):
    """Exception raised for ADVBox API errors."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AdvboxAuthError(AdvboxAPIError):
    """The ADVBox API rejected the configured token (HTTP 401)."""


class AdvboxRateLimitError(AdvboxAPIError):
    """The ADVBox API throttled the request (HTTP 429)."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class RecordValidationError(ValueError):
    """An upstream record does not have the shape of a transaction."""


@dataclass
class AdvboxTransaction:
    """Validated ADVBox financial transaction."""

    id: str
    amount: Decimal
    name: str | None = None
    description: str | None = None
    identification: str | None = None
    customer_name: str | None = None
    date_due: date | None = None
    date_payment: date | None = None
    paid: bool = False
    status: str | None = None
    category: str | None = None
    lawsuit_id: str | None = None
    lawsuit_title: str | None = None
    bank_account: str | None = None
    notes: str | None = None
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def is_paid(self) -> bool:
        """Check if the transaction is settled."""
        return self.paid or (self.status or "").lower() == "paid"


@dataclass
class TransactionPage:
    """One page of raw transaction records."""

    records: list
    offset: int
    limit: int
    total_count: int | None = None

    @property
    def has_more(self) -> bool:
        """Check whether the upstream has records past this page."""
        if not self.records:
            return False
        if self.total_count is not None:
            return self.offset + len(self.records) < self.total_count
        return len(self.records) >= self.limit


class AdvboxClient:
    """Async client for the ADVBox API."""

    def __init__(self, config: AdvboxConfig, api_token: str):
        self._config = config
        self._api_token = api_token
        self._base_url = config.base_url.rstrip("/")
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "AdvboxClient":
        """Enter async context."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._get_headers(),
            timeout=self._config.request_timeout,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_headers(self) -> dict[str, str]:
        """Get request headers with authorization."""
        return {
            "Authorization": f"Bearer {self._api_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def fetch_transactions_page(
        self,
        start_date: date,
        end_date: date,
        offset: int = 0,
        limit: int | None = None,
    ) -> TransactionPage:
        """Fetch one page of transactions due inside [start_date, end_date]."""
        limit = limit or self._config.page_size
        params = {
            "limit": limit,
            "offset": offset,
            "date_due_start": start_date.isoformat(),
            "date_due_end": end_date.isoformat(),
        }
        try:
            response = await self._client.get("/transactions", params=params)
        except httpx.TransportError as e:
            raise AdvboxAPIError(f"ADVBox request failed: {e}") from e

        if response.status_code == 401:
            raise AdvboxAuthError("ADVBox rejected the API token", status_code=401)
        if response.status_code == 429:
            raise AdvboxRateLimitError(
                "ADVBox rate limit reached", retry_after=_retry_after(response)
            )
        if response.status_code >= 400:
            raise AdvboxAPIError(
                f"ADVBox API error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AdvboxAPIError(
                "ADVBox API returned non-JSON response", status_code=response.status_code
            ) from e

        total_count = None
        if isinstance(data, dict):
            items = data.get("data") or []
            total_count = _optional_int(data.get("totalCount"))
        else:
            items = data
        if not isinstance(items, list):
            raise AdvboxAPIError(
                f"Unexpected ADVBox payload: {type(items).__name__}",
                status_code=response.status_code,
            )
        log.debug(f"Fetched {len(items)} transactions at offset {offset}")
        return TransactionPage(
            records=items, offset=offset, limit=limit, total_count=total_count
        )


def resolve_external_id(record) -> str | None:
    """Resolve the identifier of a raw record, or None when it has none."""
    if not isinstance(record, dict):
        return None
    for key in ID_FIELDS:
        value = record.get(key)
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (int, str)):
            text = str(value).strip()
            if text:
                return text
    return None


def parse_transaction(record) -> AdvboxTransaction:
    """Validate a raw upstream record into an AdvboxTransaction.

    Raises RecordValidationError when the record has no identifier or a
    field with an unusable value.
    """
    if not isinstance(record, dict):
        raise RecordValidationError(f"record is a {type(record).__name__}, not an object")
    external_id = resolve_external_id(record)
    if external_id is None:
        raise RecordValidationError("record has no identifier")
    return AdvboxTransaction(
        id=external_id,
        amount=_parse_amount(record.get("amount")),
        name=_optional_str(record.get("name")),
        description=_optional_str(record.get("description")),
        identification=_optional_str(record.get("identification")),
        customer_name=_optional_str(record.get("customer_name")),
        date_due=_parse_date(record.get("date_due"), "date_due"),
        date_payment=_parse_date(record.get("date_payment"), "date_payment"),
        paid=_parse_flag(record.get("paid")),
        status=_optional_str(record.get("status")),
        category=_optional_str(record.get("category")),
        lawsuit_id=_optional_str(record.get("lawsuit_id")),
        lawsuit_title=_optional_str(record.get("lawsuit_title")),
        bank_account=_optional_str(record.get("bank_account")),
        notes=_optional_str(record.get("notes")),
        raw=record,
    )


def _parse_amount(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, bool):
        raise RecordValidationError(f"invalid amount: {value!r}")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise RecordValidationError(f"invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise RecordValidationError(f"invalid amount: {value!r}")
    return amount


def _parse_date(value, field_name: str) -> date | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise RecordValidationError(f"invalid {field_name}: {value!r}")
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError as e:
        raise RecordValidationError(f"invalid {field_name}: {value!r}") from e


def _parse_flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in TRUE_FLAGS
    return bool(value)


def _optional_str(value) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return None


def _optional_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _retry_after(response: httpx.Response) -> float | None:
    try:
        value = float(response.headers["Retry-After"])
    except (KeyError, ValueError):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value
