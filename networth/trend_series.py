from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from networth.balance_aggregation import VALUATION, ZERO, Snapshot
from networth.currency_conversion import RateTable, convert_amount
from networth.dates import utcnow, window_start


@dataclass(frozen=True)
class SeriesItem:
    """One line of a trend chart: a bank, a sub-account or an asset.

    ``snapshots`` may come from several sub-ledgers (``Snapshot.source_id``);
    each sub-ledger is carried forward on its own and the item's value is
    their sum.
    """

    item_id: int
    label: str
    snapshots: tuple[Snapshot, ...] = ()


@dataclass(frozen=True)
class TrendPoint:
    date: date
    values: Dict[str, Decimal]
    total: Decimal


def build_series(
    items: Iterable[SeriesItem],
    window: str,
    display_currency: str,
    rate_table: RateTable,
    today: Optional[date] = None,
) -> List[TrendPoint]:
    """Merge snapshot logs into one date-sorted, forward-filled series.

    A point is produced for every date carrying at least one snapshot.
    Points before the window start are dropped; when that hides earlier
    data a boundary point dated at the window start carries the values
    known on that day. The series always ends on ``today``.
    """
    today = today or utcnow().date()
    start = window_start(today, window)
    item_list = list(items)
    labels = _unique_labels(item_list)

    events: Dict[date, List[tuple[int, Snapshot]]] = defaultdict(list)
    for index, item in enumerate(item_list):
        for snapshot in item.snapshots:
            if snapshot.kind is not None and snapshot.kind != VALUATION:
                continue
            events[snapshot.recorded_at.date()].append((index, snapshot))
    if not events:
        return []

    last_known: Dict[int, Dict[int, Snapshot]] = {index: {} for index in range(len(item_list))}
    full: List[TrendPoint] = []
    for day in sorted(events):
        for index, snapshot in sorted(
            events[day], key=lambda entry: (entry[1].recorded_at, entry[1].id)
        ):
            last_known[index][snapshot.source_id] = snapshot
        full.append(_make_point(day, labels, last_known, display_currency, rate_table))

    if start is None:
        points = full
    else:
        earlier = [point for point in full if point.date < start]
        points = [point for point in full if point.date >= start]
        if earlier and (not points or points[0].date != start):
            points.insert(0, _carry(earlier[-1], start))

    if points and points[-1].date < today:
        points.append(_carry(points[-1], today))
    return points


def _make_point(
    day: date,
    labels: Sequence[str],
    last_known: Dict[int, Dict[int, Snapshot]],
    display_currency: str,
    rate_table: RateTable,
) -> TrendPoint:
    values: Dict[str, Decimal] = {}
    total = ZERO
    for index, label in enumerate(labels):
        item_total = ZERO
        for snapshot in last_known[index].values():
            item_total += convert_amount(
                snapshot.amount, snapshot.currency, display_currency, rate_table
            )
        values[label] = item_total
        total += item_total
    return TrendPoint(date=day, values=values, total=total)


def _carry(point: TrendPoint, day: date) -> TrendPoint:
    return TrendPoint(date=day, values=dict(point.values), total=point.total)


# Keys the flattened chart rows already use.
RESERVED_LABELS = frozenset({"date", "Sum"})


def _unique_labels(items: Sequence[SeriesItem]) -> List[str]:
    counts = Counter(item.label for item in items)
    return [
        f"{item.label} #{item.item_id}"
        if counts[item.label] > 1 or item.label in RESERVED_LABELS
        else item.label
        for item in items
    ]
