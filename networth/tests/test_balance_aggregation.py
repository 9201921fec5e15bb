import unittest
from datetime import datetime
from decimal import Decimal

from networth.balance_aggregation import (
    AccountBalances,
    AssetHolding,
    BankBalances,
    Snapshot,
    current_value,
    latest_valuation,
    summarize_owners,
    total_balance,
    total_net_worth,
)
from networth.currency_conversion import RateTable


def snapshot(amount: str, currency: str, day: datetime, log_id: int = 0, kind=None) -> Snapshot:
    return Snapshot(amount=Decimal(amount), currency=currency, recorded_at=day, id=log_id, kind=kind)


class BalanceAggregationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.rates = RateTable(rates={"HKD": Decimal("8"), "EUR": Decimal("0.5")})
        self.checking = AccountBalances(
            account_id=1,
            logs=(
                snapshot("5000", "USD", datetime(2024, 1, 1), 1),
                snapshot("8200", "USD", datetime(2024, 2, 1), 2),
            ),
        )
        self.chase = BankBalances(bank_id=1, owner_id=1, accounts=(self.checking,))

    def test_current_value_is_latest_recorded_log(self) -> None:
        latest = current_value(reversed(self.checking.logs))

        self.assertEqual(latest.amount, Decimal("8200"))

    def test_current_value_without_logs_is_none(self) -> None:
        self.assertIsNone(current_value([]))

    def test_current_value_ties_go_to_latest_id(self) -> None:
        day = datetime(2024, 3, 1)
        logs = [snapshot("1", "USD", day, 7), snapshot("2", "USD", day, 9), snapshot("3", "USD", day, 8)]

        self.assertEqual(current_value(logs).amount, Decimal("2"))

    def test_total_balance_uses_latest_log_per_account(self) -> None:
        self.assertEqual(total_balance(self.chase, "USD", self.rates), Decimal("8200"))

    def test_total_balance_converts_and_skips_empty_accounts(self) -> None:
        bank = BankBalances(
            bank_id=2,
            owner_id=1,
            accounts=(
                AccountBalances(account_id=2, logs=(snapshot("800", "HKD", datetime(2024, 1, 1)),)),
                AccountBalances(account_id=3, logs=()),
                AccountBalances(account_id=4, logs=(snapshot("50", "USD", datetime(2024, 1, 1)),)),
            ),
        )

        self.assertEqual(total_balance(bank, "USD", self.rates), Decimal("150"))

    def test_net_worth_adds_assets_in_display_currency(self) -> None:
        house = AssetHolding(asset_id=1, owner_id=1, value=Decimal("100"), currency="EUR")
        other = AssetHolding(asset_id=2, owner_id=2, value=Decimal("10"), currency="USD")

        total = total_net_worth([self.chase], [house, other], "USD", self.rates)
        mine = total_net_worth([self.chase], [house, other], "USD", self.rates, owner_id=1)

        self.assertEqual(total, Decimal("8410"))
        self.assertEqual(mine, Decimal("8400"))

    def test_latest_valuation_ignores_other_log_types(self) -> None:
        logs = [
            snapshot("300000", "USD", datetime(2024, 1, 1), 1, kind="Valuation"),
            snapshot("1200", "USD", datetime(2024, 6, 1), 2, kind="Dividend"),
            snapshot("310000", "USD", datetime(2024, 3, 1), 3, kind="Valuation"),
        ]

        self.assertEqual(latest_valuation(logs).amount, Decimal("310000"))
        self.assertIsNone(latest_valuation(logs[1:2]))

    def test_summarize_owners_groups_totals(self) -> None:
        car = AssetHolding(asset_id=1, owner_id=2, value=Decimal("16"), currency="HKD")

        summary = summarize_owners({1: "Me", 2: "Partner"}, [self.chase], [car], "USD", self.rates)

        self.assertEqual([entry.name for entry in summary], ["Me", "Partner"])
        self.assertEqual(summary[0].total, Decimal("8200"))
        self.assertEqual(summary[0].bank_count, 1)
        self.assertEqual(summary[1].total, Decimal("2"))
        self.assertEqual(summary[1].asset_count, 1)


if __name__ == "__main__":
    unittest.main()
