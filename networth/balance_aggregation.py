from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from networth.currency_conversion import RateTable, coerce_amount, convert_amount

ZERO = Decimal("0")
VALUATION = "Valuation"


@dataclass(frozen=True)
class Snapshot:
    amount: Decimal
    currency: str
    recorded_at: datetime
    id: int = 0
    kind: Optional[str] = None
    source_id: int = 0


@dataclass(frozen=True)
class AccountBalances:
    account_id: int
    logs: tuple[Snapshot, ...] = ()


@dataclass(frozen=True)
class BankBalances:
    bank_id: int
    owner_id: int
    accounts: tuple[AccountBalances, ...] = ()


@dataclass(frozen=True)
class AssetHolding:
    asset_id: int
    owner_id: int
    value: Decimal
    currency: str


@dataclass(frozen=True)
class OwnerSummary:
    owner_id: int
    name: str
    total: Decimal
    bank_count: int
    asset_count: int


def current_value(logs: Iterable[Snapshot]) -> Optional[Snapshot]:
    """Return the snapshot with the latest ``recorded_at``, ids breaking ties."""
    latest: Optional[Snapshot] = None
    for log in logs:
        if latest is None or (log.recorded_at, log.id) >= (latest.recorded_at, latest.id):
            latest = log
    return latest


def latest_valuation(logs: Iterable[Snapshot]) -> Optional[Snapshot]:
    return current_value(log for log in logs if log.kind == VALUATION)


def total_balance(
    bank: BankBalances,
    display_currency: str,
    rate_table: RateTable,
) -> Decimal:
    total = ZERO
    for account in bank.accounts:
        latest = current_value(account.logs)
        if latest is None:
            continue
        total += convert_amount(latest.amount, latest.currency, display_currency, rate_table)
    return total


def asset_value(
    asset: AssetHolding,
    display_currency: str,
    rate_table: RateTable,
) -> Decimal:
    return convert_amount(
        coerce_amount(asset.value or ZERO), asset.currency, display_currency, rate_table
    )


def total_net_worth(
    banks: Iterable[BankBalances],
    assets: Iterable[AssetHolding],
    display_currency: str,
    rate_table: RateTable,
    owner_id: Optional[int] = None,
) -> Decimal:
    total = ZERO
    for bank in banks:
        if owner_id is not None and bank.owner_id != owner_id:
            continue
        total += total_balance(bank, display_currency, rate_table)
    for asset in assets:
        if owner_id is not None and asset.owner_id != owner_id:
            continue
        total += asset_value(asset, display_currency, rate_table)
    return total


def summarize_owners(
    owners: Mapping[int, str],
    banks: Iterable[BankBalances],
    assets: Iterable[AssetHolding],
    display_currency: str,
    rate_table: RateTable,
) -> list[OwnerSummary]:
    """Per-owner totals in ``display_currency``, in ``owners`` order.

    Banks and assets whose owner is not listed are ignored.
    """
    totals: dict[int, Decimal] = {owner_id: ZERO for owner_id in owners}
    bank_counts: dict[int, int] = {owner_id: 0 for owner_id in owners}
    asset_counts: dict[int, int] = {owner_id: 0 for owner_id in owners}

    for bank in banks:
        if bank.owner_id not in totals:
            continue
        totals[bank.owner_id] += total_balance(bank, display_currency, rate_table)
        bank_counts[bank.owner_id] += 1
    for asset in assets:
        if asset.owner_id not in totals:
            continue
        totals[asset.owner_id] += asset_value(asset, display_currency, rate_table)
        asset_counts[asset.owner_id] += 1

    return [
        OwnerSummary(
            owner_id=owner_id,
            name=name,
            total=totals[owner_id],
            bank_count=bank_counts[owner_id],
            asset_count=asset_counts[owner_id],
        )
        for owner_id, name in owners.items()
    ]
