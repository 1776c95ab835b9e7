"""Row validation for usage files.

``validate_row`` turns one raw CSV row into either a ``ValidatedUsageRecord`` or a
``RowError``. It performs no I/O and keeps no state, so it is safe to call from any
number of import jobs at once and always returns equal results for equal input.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "account_id": ("LinkedAccountId", "lineItem/UsageAccountId", "account_id"),
    "service_code": ("ServiceCode", "ProductCode", "lineItem/ProductCode", "service_code"),
    "usage_type": ("UsageType", "lineItem/UsageType", "usage_type"),
    "operation": ("Operation", "lineItem/Operation", "operation"),
    "resource_id": ("ResourceId", "lineItem/ResourceId", "resource_id"),
    "usage_start": ("UsageStartDate", "lineItem/UsageStartDate", "usage_start_date"),
    "usage_end": ("UsageEndDate", "lineItem/UsageEndDate", "usage_end_date"),
    "usage_quantity": ("UsageQuantity", "lineItem/UsageAmount", "usage_quantity"),
    "rate": ("Rate", "UnblendedRate", "lineItem/UnblendedRate", "rate"),
    "cost": ("Cost", "UnblendedCost", "lineItem/UnblendedCost", "cost"),
    "currency": ("Currency", "CurrencyCode", "lineItem/CurrencyCode", "currency"),
    "region": ("Region", "product/region", "region"),
    "availability_zone": ("AvailabilityZone", "lineItem/AvailabilityZone", "availability_zone"),
}

# Column limits shared with UsageRecord.
TEXT_FIELD_LIMITS: dict[str, int] = {
    "account_id": 64,
    "service_code": 128,
    "usage_type": 255,
    "operation": 255,
    "region": 64,
    "availability_zone": 64,
}
CURRENCY_LENGTH = 3
AMOUNT_PRECISION = 24
AMOUNT_SCALE = 10
AMOUNT_LIMIT = Decimal(10) ** (AMOUNT_PRECISION - AMOUNT_SCALE)

_FALLBACK_DATE_FORMATS = (
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)


@dataclass(frozen=True, slots=True)
class ValidatedUsageRecord:
    row_number: int
    account_id: str
    service_code: str
    usage_type: str
    operation: str
    resource_id: str
    usage_start: datetime | None
    usage_end: datetime | None
    usage_quantity: Decimal
    rate: Decimal
    cost: Decimal
    currency: str
    region: str
    availability_zone: str

    def to_row(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "account_id": self.account_id,
            "service_code": self.service_code,
            "usage_type": self.usage_type,
            "operation": self.operation,
            "resource_id": self.resource_id,
            "usage_start": self.usage_start,
            "usage_end": self.usage_end,
            "usage_quantity": self.usage_quantity,
            "rate": self.rate,
            "cost": self.cost,
            "currency": self.currency,
            "region": self.region,
            "availability_zone": self.availability_zone,
        }


@dataclass(frozen=True, slots=True)
class RowError:
    row_number: int
    code: str
    field: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"row_number": self.row_number, "code": self.code, "field": self.field, "message": self.message}


class _RowRejected(Exception):
    def __init__(self, code: str, field: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.field = field
        self.message = message


def _lookup(raw: Mapping[Any, Any], field: str) -> tuple[bool, str]:
    """Return (column_present, stripped_value) for the first alias found in the row."""
    for alias in COLUMN_ALIASES[field]:
        if alias in raw:
            value = raw[alias]
            if value is None:
                return True, ""
            return True, str(value).strip()
    return False, ""


def _text(raw: Mapping[Any, Any], field: str) -> str:
    value = _lookup(raw, field)[1]
    limit = TEXT_FIELD_LIMITS.get(field)
    if limit is not None and len(value) > limit:
        raise _RowRejected("TOO_LONG", field, f"{field} exceeds {limit} characters")
    return value


def _within_range(field: str, value: Decimal) -> Decimal:
    if abs(value) >= AMOUNT_LIMIT:
        raise _RowRejected("OUT_OF_RANGE", field, f"{field} must be below {AMOUNT_LIMIT:f}")
    return value


def _required_decimal(raw: Mapping[Any, Any], field: str) -> Decimal:
    present, value = _lookup(raw, field)
    if not present or value == "":
        raise _RowRejected("REQUIRED", field, f"{field} is required")
    try:
        parsed = Decimal(value)
    except InvalidOperation:
        raise _RowRejected("INVALID_NUMBER", field, f"{field} is not a number: {value[:64]}")
    if not parsed.is_finite():
        raise _RowRejected("INVALID_NUMBER", field, f"{field} must be finite")
    if parsed < 0:
        raise _RowRejected("NEGATIVE_NUMBER", field, f"{field} must not be negative")
    return _within_range(field, parsed)


def _optional_rate(raw: Mapping[Any, Any]) -> Decimal:
    value = _text(raw, "rate")
    if value == "":
        return Decimal("0")
    try:
        parsed = Decimal(value)
    except InvalidOperation:
        return Decimal("0")
    if not parsed.is_finite():
        return Decimal("0")
    if parsed < 0:
        raise _RowRejected("NEGATIVE_NUMBER", "rate", "rate must not be negative")
    return _within_range("rate", parsed)


def parse_usage_timestamp(value: str) -> datetime | None:
    if not value:
        return None
    candidate = value.strip()
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    parsed: datetime | None
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        parsed = None
        for fmt in _FALLBACK_DATE_FORMATS:
            try:
                parsed = datetime.strptime(candidate, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def validate_row(
    raw: Mapping[Any, Any],
    *,
    row_number: int,
    default_currency: str = "USD",
    account_scope: frozenset[str] = frozenset(),
) -> ValidatedUsageRecord | RowError:
    try:
        usage_type = _text(raw, "usage_type")
        if not usage_type:
            raise _RowRejected("REQUIRED", "usage_type", "usage_type is required")

        cost = _required_decimal(raw, "cost")
        usage_quantity = _required_decimal(raw, "usage_quantity")
        rate = _optional_rate(raw)

        usage_start = parse_usage_timestamp(_text(raw, "usage_start"))
        usage_end = parse_usage_timestamp(_text(raw, "usage_end"))
        if usage_start is not None and usage_end is not None and usage_end < usage_start:
            raise _RowRejected("INVALID_WINDOW", "usage_end", "usage window ends before it starts")

        account_id = _text(raw, "account_id")
        if account_scope and account_id and account_id not in account_scope:
            raise _RowRejected("OUT_OF_SCOPE", "account_id", f"account {account_id} is outside the declared scope")

        currency = (_text(raw, "currency") or default_currency or "USD").upper()
        if len(currency) != CURRENCY_LENGTH or not (currency.isascii() and currency.isalpha()):
            raise _RowRejected("INVALID_CURRENCY", "currency", f"currency must be a 3-letter code: {currency[:16]}")

        service_code = _text(raw, "service_code")
        operation = _text(raw, "operation")
        region = _text(raw, "region")
        availability_zone = _text(raw, "availability_zone")
    except _RowRejected as exc:
        return RowError(row_number=row_number, code=exc.code, field=exc.field, message=exc.message)

    return ValidatedUsageRecord(
        row_number=row_number,
        account_id=account_id,
        service_code=service_code,
        usage_type=usage_type,
        operation=operation,
        resource_id=_text(raw, "resource_id"),
        usage_start=usage_start,
        usage_end=usage_end,
        usage_quantity=usage_quantity,
        rate=rate,
        cost=cost,
        currency=currency,
        region=region,
        availability_zone=availability_zone,
    )
