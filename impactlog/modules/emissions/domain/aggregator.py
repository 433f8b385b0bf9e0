"""
Impact overview aggregation.

Contribution policy: an activity contributes the CO2e value currently held
by the store. While a recalculation is in flight that is the last known
value; an activity that has never been calculated contributes zero and is
reported in ``uncalculated_activities`` instead of being hidden.
"""

from __future__ import annotations

from collections import Counter
from decimal import Decimal
from typing import Dict, Iterable

from impactlog.modules.emissions.domain.factor_table import (
    normalize_channel,
    normalize_market,
)
from impactlog.modules.emissions.domain.models import (
    ActivityRecord,
    AggregateSummary,
)


def _contribution(record: ActivityRecord) -> Decimal:
    return record.co2e_kg if record.co2e_kg is not None else Decimal("0")


def summarize(records: Iterable[ActivityRecord]) -> AggregateSummary:
    """Recompute the summary from scratch."""
    total = Decimal("0")
    count = 0
    uncalculated = 0
    channels: set[str] = set()
    markets: set[str] = set()
    by_scope: Dict[int, Decimal] = {}

    for record in records:
        count += 1
        channels.add(normalize_channel(record.channel))
        markets.add(normalize_market(record.market))
        if record.co2e_kg is None:
            uncalculated += 1
        value = _contribution(record)
        total += value
        scope = int(record.scope)
        by_scope[scope] = by_scope.get(scope, Decimal("0")) + value

    return AggregateSummary(
        total_activities=count,
        distinct_channels=len(channels),
        distinct_markets=len(markets),
        total_co2e_kg=total,
        uncalculated_activities=uncalculated,
        co2e_kg_by_scope=by_scope,
    )


class SummaryTracker:
    """
    Incremental counterpart of ``summarize``.

    Distinct channels and markets are reference-counted, so removing the last
    activity in a market drops it from the count exactly as a full
    recomputation would. Totals use Decimal, so add/subtract is exact.
    """

    def __init__(self, records: Iterable[ActivityRecord] = ()) -> None:
        self._records: Dict[int, ActivityRecord] = {}
        self._channels: Counter[str] = Counter()
        self._markets: Counter[str] = Counter()
        self._scopes: Counter[int] = Counter()
        self._by_scope: Dict[int, Decimal] = {}
        self._total = Decimal("0")
        self._uncalculated = 0
        for record in records:
            self.add(record)

    def add(self, record: ActivityRecord) -> None:
        if record.id in self._records:
            self.replace(record)
            return
        self._records[record.id] = record
        self._channels[normalize_channel(record.channel)] += 1
        self._markets[normalize_market(record.market)] += 1
        scope = int(record.scope)
        self._scopes[scope] += 1
        value = _contribution(record)
        self._by_scope[scope] = self._by_scope.get(scope, Decimal("0")) + value
        self._total += value
        if record.co2e_kg is None:
            self._uncalculated += 1

    def remove(self, activity_id: int) -> None:
        record = self._records.pop(activity_id, None)
        if record is None:
            return
        channel = normalize_channel(record.channel)
        self._channels[channel] -= 1
        if self._channels[channel] <= 0:
            del self._channels[channel]
        market = normalize_market(record.market)
        self._markets[market] -= 1
        if self._markets[market] <= 0:
            del self._markets[market]
        scope = int(record.scope)
        value = _contribution(record)
        self._scopes[scope] -= 1
        if self._scopes[scope] <= 0:
            del self._scopes[scope]
            del self._by_scope[scope]
        else:
            self._by_scope[scope] -= value
        self._total -= value
        if record.co2e_kg is None:
            self._uncalculated -= 1

    def replace(self, record: ActivityRecord) -> None:
        self.remove(record.id)
        self.add(record)

    def snapshot(self) -> AggregateSummary:
        return AggregateSummary(
            total_activities=len(self._records),
            distinct_channels=len(self._channels),
            distinct_markets=len(self._markets),
            total_co2e_kg=self._total,
            uncalculated_activities=self._uncalculated,
            co2e_kg_by_scope=dict(self._by_scope),
        )
