import unittest
from datetime import date, datetime
from decimal import Decimal

from networth.balance_aggregation import Snapshot
from networth.currency_conversion import RateTable
from networth.reporting import flatten_point
from networth.trend_series import SeriesItem, build_series


def log(amount: str, day: date, log_id: int = 0, currency: str = "USD", source_id: int = 0, kind=None) -> Snapshot:
    return Snapshot(
        amount=Decimal(amount),
        currency=currency,
        recorded_at=datetime(day.year, day.month, day.day, 12),
        id=log_id,
        kind=kind,
        source_id=source_id,
    )


class TrendSeriesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.rates = RateTable(rates={"HKD": Decimal("8")})
        self.today = date(2024, 3, 15)

    def build(self, items, window="ALL"):
        return build_series(items, window, "USD", self.rates, today=self.today)

    def test_forward_fills_between_snapshots(self) -> None:
        checking = SeriesItem(1, "Checking", (log("100", date(2024, 1, 1), 1), log("200", date(2024, 1, 10), 2)))
        savings = SeriesItem(2, "Savings", (log("50", date(2024, 1, 5), 3),))

        points = self.build([checking, savings])
        by_date = {point.date: point for point in points}

        self.assertEqual(by_date[date(2024, 1, 5)].values["Checking"], Decimal("100"))
        self.assertEqual(by_date[date(2024, 1, 5)].total, Decimal("150"))
        self.assertEqual(by_date[date(2024, 1, 1)].values["Savings"], Decimal("0"))
        self.assertEqual(by_date[date(2024, 1, 10)].total, Decimal("250"))

    def test_appends_today_point(self) -> None:
        item = SeriesItem(1, "Checking", (log("100", date(2024, 1, 1)),))

        points = self.build([item])

        self.assertEqual([point.date for point in points], [date(2024, 1, 1), self.today])
        self.assertEqual(points[-1].total, Decimal("100"))

    def test_no_today_point_when_last_snapshot_is_today(self) -> None:
        item = SeriesItem(1, "Checking", (log("100", self.today),))

        points = self.build([item])

        self.assertEqual([point.date for point in points], [self.today])

    def test_empty_series_without_snapshots(self) -> None:
        self.assertEqual(self.build([SeriesItem(1, "Checking")]), [])
        self.assertEqual(self.build([]), [])

    def test_window_adds_boundary_point(self) -> None:
        item = SeriesItem(
            1,
            "Checking",
            (log("100", date(2024, 1, 1), 1), log("300", date(2024, 3, 1), 2)),
        )

        points = self.build([item], window="1M")

        self.assertEqual(
            [point.date for point in points],
            [date(2024, 2, 15), date(2024, 3, 1), self.today],
        )
        self.assertEqual(points[0].total, Decimal("100"))
        self.assertEqual(points[-1].total, Decimal("300"))

    def test_window_without_earlier_data_has_no_boundary(self) -> None:
        item = SeriesItem(1, "Checking", (log("100", date(2024, 2, 1)),))

        points = self.build([item], window="YTD")

        self.assertEqual(points[0].date, date(2024, 2, 1))

    def test_window_with_only_older_data_is_carried_to_today(self) -> None:
        item = SeriesItem(1, "Checking", (log("100", date(2023, 1, 1)),))

        points = self.build([item], window="ytd")

        self.assertEqual([point.date for point in points], [date(2024, 1, 1), self.today])
        self.assertEqual(points[1].total, Decimal("100"))

    def test_invalid_window_raises(self) -> None:
        with self.assertRaises(ValueError):
            self.build([SeriesItem(1, "Checking", (log("1", date(2024, 1, 1)),))], window="2W")

    def test_bank_item_sums_latest_balance_per_account(self) -> None:
        bank = SeriesItem(
            1,
            "Chase",
            (
                log("100", date(2024, 1, 1), 1, source_id=10),
                log("50", date(2024, 1, 2), 2, source_id=11),
                log("120", date(2024, 1, 3), 3, source_id=10),
            ),
        )

        points = self.build([bank])

        self.assertEqual([point.total for point in points[:3]], [Decimal("100"), Decimal("150"), Decimal("170")])

    def test_same_day_snapshots_use_latest(self) -> None:
        day = date(2024, 1, 1)
        early = Snapshot(Decimal("10"), "USD", datetime(2024, 1, 1, 8), id=5)
        late = Snapshot(Decimal("20"), "USD", datetime(2024, 1, 1, 18), id=4)

        points = self.build([SeriesItem(1, "Checking", (late, early))])

        self.assertEqual(points[0].date, day)
        self.assertEqual(points[0].total, Decimal("20"))

    def test_converts_to_display_currency(self) -> None:
        item = SeriesItem(1, "HSBC", (log("800", date(2024, 1, 1), currency="HKD"),))

        points = self.build([item])

        self.assertEqual(points[0].values["HSBC"], Decimal("100"))

    def test_only_valuations_feed_asset_series(self) -> None:
        house = SeriesItem(
            1,
            "House",
            (
                log("1000", date(2024, 1, 1), 1, kind="Valuation"),
                log("5", date(2024, 2, 1), 2, kind="Dividend"),
            ),
        )

        points = self.build([house])

        self.assertEqual([point.date for point in points], [date(2024, 1, 1), self.today])

    def test_duplicate_labels_get_item_ids(self) -> None:
        first = SeriesItem(1, "Savings", (log("1", date(2024, 1, 1)),))
        second = SeriesItem(2, "Savings", (log("2", date(2024, 1, 1)),))

        points = self.build([first, second])

        self.assertEqual(sorted(points[0].values), ["Savings #1", "Savings #2"])

    def test_labels_matching_row_keys_get_item_ids(self) -> None:
        when = SeriesItem(3, "date", (log("1", date(2024, 1, 1)),))
        total = SeriesItem(4, "Sum", (log("2", date(2024, 1, 1)),))

        row = flatten_point(self.build([when, total])[0])

        self.assertEqual(row["date"], "2024-01-01")
        self.assertEqual(row["Sum"], Decimal("3"))
        self.assertEqual(row["date #3"], Decimal("1"))
        self.assertEqual(row["Sum #4"], Decimal("2"))


if __name__ == "__main__":
    unittest.main()
