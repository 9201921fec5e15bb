from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
import json
import logging
from typing import Iterable, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from networth.dates import utcnow

logger = logging.getLogger(__name__)

FRANKFURTER_URL = "https://api.frankfurter.app"
ONE = Decimal("1")


class RateProviderUnavailable(RuntimeError):
    """Raised when live FX rates cannot be fetched."""


@dataclass(frozen=True)
class FXRate:
    base_currency: str
    target_currency: str
    rate: Decimal
    updated_at: datetime | None = None


@dataclass
class RateTable:
    """Exchange rates anchored at a single base currency.

    Each rate reads "1 unit of base = rate units of target". Rows quoted
    against any other base are ignored. When a currency has no rate the
    table answers 1 (parity with the base) unless ``strict`` is set; the
    currencies that hit that fallback are collected in ``missing``.
    """

    rates: Iterable[FXRate] | Mapping[str, Decimal] = ()
    base_currency: str = "USD"
    strict: bool = False
    missing: set[str] = field(default_factory=set)

    def __post_init__(self) -> None:
        self.base_currency = normalize_currency(self.base_currency)
        self.rates = _index_rates(self.rates, self.base_currency)

    def get_rate(self, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        if normalized == self.base_currency:
            return ONE
        rate = self.rates.get(normalized)
        if rate is None or rate <= 0:
            if self.strict:
                raise ValueError(f"Unsupported currency: {normalized}")
            if normalized not in self.missing:
                logger.warning(
                    "No %s->%s rate, treating %s at parity",
                    self.base_currency,
                    normalized,
                    normalized,
                )
                self.missing.add(normalized)
            return ONE
        return rate


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_table: RateTable | None = None,
) -> Decimal:
    """Convert an amount between currencies through the table's base."""
    table = rate_table if rate_table is not None else RateTable()
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    coerced_amount = coerce_amount(amount)

    if normalized_source == normalized_target:
        return coerced_amount

    source_rate = table.get_rate(normalized_source)
    target_rate = table.get_rate(normalized_target)
    amount_in_base = coerced_amount / source_rate
    return amount_in_base * target_rate


def fetch_latest_rates(
    base_currency: str = "USD",
    base_url: str = FRANKFURTER_URL,
) -> list[FXRate]:
    """Fetch today's rates for ``base_currency`` from the Frankfurter API."""
    normalized_base = normalize_currency(base_currency)
    url = f"{base_url}/latest?from={normalized_base}"
    try:
        with urlopen(url, timeout=8) as response:
            payload = json.load(response)
    except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise RateProviderUnavailable("Frankfurter API unavailable") from exc

    rates = payload.get("rates")
    if not isinstance(rates, dict):
        raise RateProviderUnavailable("Frankfurter response missing rates")

    fetched_at = utcnow()
    parsed = [
        FXRate(
            base_currency=normalized_base,
            target_currency=normalize_currency(code),
            rate=Decimal(str(value)),
            updated_at=fetched_at,
        )
        for code, value in rates.items()
    ]
    parsed.append(
        FXRate(
            base_currency=normalized_base,
            target_currency=normalized_base,
            rate=ONE,
            updated_at=fetched_at,
        )
    )
    return parsed


def normalize_currency(value: str) -> str:
    code = value.strip().upper()
    if len(code) == 3 and code.isascii() and code.isalpha():
        return code
    raise ValueError(f"{value!r} is not a 3-letter ISO 4217 currency code.")


def coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    """Coerce money to Decimal, rejecting NaN and infinities."""
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    if not value.is_finite():
        raise ValueError(f"Amount must be a finite number, got {amount!r}.")
    return value


def _index_rates(
    rates: Iterable[FXRate] | Mapping[str, Decimal], base_currency: str
) -> dict[str, Decimal]:
    if isinstance(rates, Mapping):
        return {
            normalize_currency(code): coerce_amount(value)
            for code, value in rates.items()
        }
    indexed: dict[str, Decimal] = {}
    for row in rates:
        if normalize_currency(row.base_currency) != base_currency:
            continue
        indexed[normalize_currency(row.target_currency)] = coerce_amount(row.rate)
    return indexed
