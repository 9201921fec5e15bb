"""Bridges stored records and the aggregation/trend engines."""
from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Iterable, Optional

from networth.balance_aggregation import (
    ZERO,
    AccountBalances,
    AssetHolding,
    BankBalances,
    Snapshot,
    asset_value,
    summarize_owners,
    total_balance,
)
from networth.currency_conversion import FXRate, RateTable
from networth.schemas import AssetDetail, BalanceLog, BankDetail, Dataset, FXRateRecord
from networth.trend_series import SeriesItem, TrendPoint, build_series

TREND_KINDS = {"all", "banks", "assets"}


def build_rate_table(records: Iterable[FXRateRecord], base_currency: str) -> RateTable:
    return RateTable(
        rates=[
            FXRate(
                base_currency=record.base_currency,
                target_currency=record.target_currency,
                rate=record.rate,
                updated_at=record.updated_at,
            )
            for record in records
        ],
        base_currency=base_currency,
    )


def _balance_snapshot(log: BalanceLog) -> Snapshot:
    return Snapshot(
        amount=log.balance,
        currency=log.currency,
        recorded_at=log.recorded_at,
        id=log.id,
        source_id=log.account_id,
    )


def bank_balances(dataset: Dataset) -> list[BankBalances]:
    logs_by_account: dict[int, list[Snapshot]] = defaultdict(list)
    for log in dataset.logs:
        logs_by_account[log.account_id].append(_balance_snapshot(log))
    accounts_by_bank: dict[int, list[AccountBalances]] = defaultdict(list)
    for account in dataset.accounts:
        accounts_by_bank[account.bank_id].append(
            AccountBalances(account_id=account.id, logs=tuple(logs_by_account[account.id]))
        )
    return [
        BankBalances(bank_id=bank.id, owner_id=bank.owner_id, accounts=tuple(accounts_by_bank[bank.id]))
        for bank in dataset.banks
    ]


def asset_holdings(dataset: Dataset) -> list[AssetHolding]:
    return [
        AssetHolding(asset_id=asset.id, owner_id=asset.owner_id, value=asset.value, currency=asset.currency)
        for asset in dataset.assets
    ]


def display_totals(dataset: Dataset, display_currency: str, rate_table: RateTable) -> dict[int, Decimal]:
    """Converted total per bank id."""
    return {
        bank.bank_id: total_balance(bank, display_currency, rate_table)
        for bank in bank_balances(dataset)
    }


def build_summary(
    dataset: Dataset,
    display_currency: str,
    rate_table: RateTable,
    owner_id: Optional[int] = None,
) -> dict:
    banks = [
        bank for bank in bank_balances(dataset) if owner_id is None or bank.owner_id == owner_id
    ]
    assets = [
        asset for asset in asset_holdings(dataset) if owner_id is None or asset.owner_id == owner_id
    ]
    bank_total = sum((total_balance(bank, display_currency, rate_table) for bank in banks), ZERO)
    asset_total = sum((asset_value(asset, display_currency, rate_table) for asset in assets), ZERO)
    owners = {
        owner.id: owner.name
        for owner in dataset.owners
        if owner_id is None or owner.id == owner_id
    }
    distribution = summarize_owners(owners, banks, assets, display_currency, rate_table)
    return {
        "display_currency": display_currency,
        "net_worth": bank_total + asset_total,
        "bank_total": bank_total,
        "asset_total": asset_total,
        "bank_count": len(banks),
        "asset_count": len(assets),
        "owners": [
            {
                "owner_id": entry.owner_id,
                "name": entry.name,
                "total": entry.total,
                "bank_count": entry.bank_count,
                "asset_count": entry.asset_count,
            }
            for entry in distribution
        ],
        "missing_rates": sorted(rate_table.missing),
    }


def portfolio_items(dataset: Dataset, kind: str = "all", owner_id: Optional[int] = None) -> list[SeriesItem]:
    """One series item per bank (summing its accounts) and per asset."""
    normalized = kind.strip().lower()
    if normalized not in TREND_KINDS:
        raise ValueError("Invalid kind. Use all, banks or assets.")
    items: list[SeriesItem] = []
    if normalized in ("all", "banks"):
        bank_of_account = {account.id: account.bank_id for account in dataset.accounts}
        snapshots: dict[int, list[Snapshot]] = defaultdict(list)
        for log in dataset.logs:
            bank_id = bank_of_account.get(log.account_id)
            if bank_id is not None:
                snapshots[bank_id].append(_balance_snapshot(log))
        for bank in dataset.banks:
            if owner_id is not None and bank.owner_id != owner_id:
                continue
            items.append(SeriesItem(item_id=bank.id, label=bank.name, snapshots=tuple(snapshots[bank.id])))
    if normalized in ("all", "assets"):
        for asset in dataset.assets:
            if owner_id is not None and asset.owner_id != owner_id:
                continue
            items.append(
                SeriesItem(
                    item_id=asset.id,
                    label=asset.name,
                    snapshots=tuple(
                        Snapshot(
                            amount=log.amount,
                            currency=log.currency,
                            recorded_at=log.recorded_at,
                            id=log.id,
                            kind=log.type,
                        )
                        for log in dataset.asset_logs
                        if log.asset_id == asset.id
                    ),
                )
            )
    return items


def bank_items(bank: BankDetail) -> list[SeriesItem]:
    return [
        SeriesItem(
            item_id=account.id,
            label=account.name,
            snapshots=tuple(_balance_snapshot(log) for log in account.logs),
        )
        for account in bank.accounts
    ]


def asset_items(asset: AssetDetail) -> list[SeriesItem]:
    return [
        SeriesItem(
            item_id=asset.id,
            label=asset.name,
            snapshots=tuple(
                Snapshot(
                    amount=log.amount,
                    currency=log.currency,
                    recorded_at=log.recorded_at,
                    id=log.id,
                    kind=log.type,
                )
                for log in asset.logs
            ),
        )
    ]


def flatten_point(point: TrendPoint) -> dict:
    row: dict = {"date": point.date.isoformat()}
    row.update(point.values)
    row["Sum"] = point.total
    return row


def trend_response(
    items: list[SeriesItem],
    window: str,
    display_currency: str,
    rate_table: RateTable,
) -> dict:
    points = build_series(items, window, display_currency, rate_table)
    labels = list(points[0].values) if points else []
    return {
        "window": window,
        "display_currency": display_currency,
        "series": labels,
        "points": [flatten_point(point) for point in points],
        "missing_rates": sorted(rate_table.missing),
    }
