import unittest
from decimal import Decimal

from sqlalchemy import inspect

from networth.schemas import BalanceLogPayload
from networth.sql_store import SqlStore, create_store_engine
from networth.tests.store_cases import StoreCases


class SqlStoreTests(StoreCases, unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_store_engine("sqlite://")
        self.store = SqlStore(self.engine)
        self.store.initialize()

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_creates_all_tables(self) -> None:
        tables = set(inspect(self.engine).get_table_names())

        self.assertTrue(
            {"owners", "config_options", "fx_rates", "banks", "accounts", "balance_logs", "assets", "asset_logs"}
            <= tables
        )

    def test_total_balance_breaks_same_time_ties_by_id(self) -> None:
        bank = self.make_bank()
        account_id = self.default_account_id(bank.id)
        for balance in ("1", "3", "2"):
            self.store.create_log(
                BalanceLogPayload(account_id=account_id, balance=Decimal(balance), recorded_at="2024-01-01")
            )

        self.assertEqual(self.store.list_banks()[0].total_balance, Decimal("2"))


class SqlStoreDemoSeedTests(unittest.TestCase):
    def test_seeds_demo_banks_once(self) -> None:
        store = SqlStore(create_store_engine("sqlite://"))
        store.initialize(seed_demo=True)
        store.initialize(seed_demo=True)

        summaries = {summary.name: summary for summary in store.list_banks()}

        self.assertEqual(set(summaries), {"Chase Main", "HSBC HK"})
        self.assertEqual(summaries["Chase Main"].total_balance, Decimal("18250"))
        self.assertEqual(summaries["HSBC HK"].total_balance, Decimal("50000"))


if __name__ == "__main__":
    unittest.main()
