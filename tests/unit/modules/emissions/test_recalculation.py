"""
Tests for the recalculation controller: edit handling, latest-edit-wins
superseding, failure isolation and summary consistency.
"""

import asyncio
from decimal import Decimal

import pytest

from impactlog.modules.emissions.domain.aggregator import summarize
from impactlog.modules.emissions.domain.factor_table import EmissionFactorTable
from impactlog.modules.emissions.domain.models import (
    CalculationStatus,
    EmissionFactorEntry,
    Scope,
)
from impactlog.modules.emissions.domain.recalculation import RecalculationController
from impactlog.modules.emissions.domain.record_store import InMemoryActivityStore
from impactlog.shared.core.exceptions import (
    ActivityNotFoundError,
    InvalidActivityFieldError,
    InvalidQuantityError,
    StaleCalculationError,
    UnresolvableFactorError,
)


class GatedFactorSource:
    """Async factor source whose first ``gated_calls`` calls block until released."""

    def __init__(self, table, gated_calls=1):
        self.table = table
        self.gates = [asyncio.Event() for _ in range(gated_calls)]
        self.calls = 0

    def release(self, call=0):
        self.gates[call].set()

    async def __call__(self):
        call = self.calls
        self.calls += 1
        if call < len(self.gates):
            await self.gates[call].wait()
        return self.table


async def _wait_for(condition):
    for _ in range(100):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


async def _wait_until_calculating(controller, activity_id):
    await _wait_for(lambda: controller.is_calculating(activity_id))


async def _assert_summary_consistent(controller, store):
    assert await controller.summary() == summarize(store.list())


@pytest.mark.asyncio
async def test_add_activity_stores_co2e(controller, store, make_activity):
    result = await controller.add_activity(make_activity())

    assert result.co2e_kg == Decimal("0.4")
    stored = store.get(1)
    assert stored.co2e_kg == Decimal("0.4")
    assert stored.quantity == Decimal("10000")
    assert not controller.is_calculating(1)
    await _assert_summary_consistent(controller, store)


@pytest.mark.asyncio
async def test_add_invalid_activity_is_not_stored(controller, store, make_activity):
    with pytest.raises(InvalidQuantityError):
        await controller.add_activity(make_activity(quantity=-5))
    assert len(store) == 0
    assert (await controller.summary()).total_activities == 0


@pytest.mark.asyncio
async def test_quantity_edit_recalculates(controller, store, make_activity):
    await controller.add_activity(make_activity())

    co2e = await controller.recalculate(1, {"quantity": 20000})

    assert co2e == Decimal("0.8")
    assert store.get(1).co2e_kg == Decimal("0.8")
    assert controller.state(1).status is CalculationStatus.IDLE
    await _assert_summary_consistent(controller, store)


@pytest.mark.asyncio
async def test_scope_edit_uses_scope_factor(controller, store, make_activity):
    await controller.add_activity(make_activity())
    assert await controller.recalculate(1, {"scope": 1}) == Decimal("9")
    assert store.get(1).scope is Scope.DIRECT


@pytest.mark.asyncio
async def test_unknown_channel_keeps_prior_value(controller, store, make_activity):
    await controller.add_activity(make_activity())

    with pytest.raises(UnresolvableFactorError):
        await controller.recalculate(1, {"channel": "unknown-channel"})

    stored = store.get(1)
    assert stored.channel == "email"
    assert stored.co2e_kg == Decimal("0.4")
    state = controller.state(1)
    assert state.status is CalculationStatus.IDLE
    assert isinstance(state.last_error, UnresolvableFactorError)
    await _assert_summary_consistent(controller, store)


@pytest.mark.asyncio
async def test_negative_quantity_edit_keeps_prior_value(controller, store, make_activity):
    await controller.add_activity(make_activity())

    with pytest.raises(InvalidQuantityError):
        await controller.recalculate(1, {"quantity": -5})

    assert store.get(1).quantity == Decimal("10000")
    assert store.get(1).co2e_kg == Decimal("0.4")
    assert not controller.is_calculating(1)


@pytest.mark.asyncio
async def test_successful_edit_clears_previous_error(controller, store, make_activity):
    await controller.add_activity(make_activity())
    with pytest.raises(InvalidQuantityError):
        await controller.recalculate(1, {"quantity": -5})

    await controller.recalculate(1, {"quantity": 5000})

    assert controller.state(1).last_error is None
    assert store.get(1).co2e_kg == Decimal("0.2")


@pytest.mark.asyncio
async def test_notes_edit_skips_recalculation(store, factor_table, make_activity):
    calls = []

    def source():
        calls.append(1)
        return factor_table

    controller = RecalculationController(store, source)
    await controller.add_activity(make_activity())
    calls.clear()

    co2e = await controller.recalculate(1, {"notes": "Resent to lapsed subscribers"})

    assert co2e == Decimal("0.4")
    assert calls == []
    assert store.get(1).notes == "Resent to lapsed subscribers"
    assert controller.state(1).generation == 0


@pytest.mark.asyncio
async def test_same_value_edit_is_idempotent(controller, store, make_activity):
    await controller.add_activity(make_activity())
    before = store.get(1)

    assert await controller.recalculate(1, {"quantity": 10000}) == Decimal("0.4")
    assert store.get(1) == before


@pytest.mark.asyncio
async def test_immutable_field_edit_rejected(controller, store, make_activity):
    await controller.add_activity(make_activity())
    with pytest.raises(InvalidActivityFieldError):
        await controller.recalculate(1, {"co2e_kg": Decimal("0")})
    assert store.get(1).co2e_kg == Decimal("0.4")


@pytest.mark.asyncio
async def test_unknown_activity(controller):
    with pytest.raises(ActivityNotFoundError):
        await controller.recalculate(42, {"quantity": 1})


@pytest.mark.asyncio
async def test_latest_edit_wins(store, factor_table, make_activity):
    source = GatedFactorSource(factor_table)
    store.add(make_activity(co2e_kg=Decimal("0.4")))
    controller = RecalculationController(store, source)

    first = asyncio.create_task(controller.recalculate(1, {"quantity": 20000}))
    await _wait_until_calculating(controller, 1)

    second = await controller.recalculate(1, {"quantity": 30000})
    assert second == Decimal("1.2")
    assert not controller.is_calculating(1)

    source.release()
    with pytest.raises(StaleCalculationError):
        await first

    stored = store.get(1)
    assert stored.quantity == Decimal("30000")
    assert stored.co2e_kg == Decimal("1.2")
    assert not controller.is_calculating(1)
    await _assert_summary_consistent(controller, store)


@pytest.mark.asyncio
async def test_edit_reverting_to_stored_value_supersedes_pending_request(
    store, factor_table, make_activity
):
    source = GatedFactorSource(factor_table)
    store.add(make_activity(quantity=Decimal("10000"), co2e_kg=Decimal("0.4")))
    controller = RecalculationController(store, source)

    first = asyncio.create_task(controller.recalculate(1, {"quantity": 20000}))
    await _wait_until_calculating(controller, 1)

    assert await controller.recalculate(1, {"quantity": 10000}) == Decimal("0.4")

    source.release()
    with pytest.raises(StaleCalculationError):
        await first

    stored = store.get(1)
    assert stored.quantity == Decimal("10000")
    assert stored.co2e_kg == Decimal("0.4")
    assert not controller.is_calculating(1)
    await _assert_summary_consistent(controller, store)


@pytest.mark.asyncio
async def test_remove_activity_releases_its_lock(controller, store, make_activity):
    await controller.add_activity(make_activity())
    await controller.recalculate(1, {"quantity": 5000})
    assert 1 in controller._locks

    await controller.remove_activity(1)

    assert 1 not in controller._locks


@pytest.mark.asyncio
async def test_calculating_flag_held_by_newest_request(store, factor_table, make_activity):
    source = GatedFactorSource(factor_table, gated_calls=2)
    store.add(make_activity(co2e_kg=Decimal("0.4")))
    controller = RecalculationController(store, source)

    first = asyncio.create_task(controller.recalculate(1, {"quantity": 20000}))
    await _wait_until_calculating(controller, 1)
    assert controller.calculating_ids() == {1}

    second = asyncio.create_task(controller.recalculate(1, {"quantity": 30000}))
    await _wait_for(lambda: source.calls == 2)

    source.release(0)
    with pytest.raises(StaleCalculationError):
        await first
    assert controller.is_calculating(1)

    source.release(1)
    assert await second == Decimal("1.2")
    assert not controller.is_calculating(1)


@pytest.mark.asyncio
async def test_notes_edit_during_calculation_is_preserved(store, factor_table, make_activity):
    source = GatedFactorSource(factor_table)
    store.add(make_activity(co2e_kg=Decimal("0.4")))
    controller = RecalculationController(store, source)

    pending = asyncio.create_task(controller.recalculate(1, {"quantity": 20000}))
    await _wait_until_calculating(controller, 1)

    await controller.recalculate(1, {"notes": "Subject line A/B test"})
    assert controller.is_calculating(1)

    source.release()
    assert await pending == Decimal("0.8")

    stored = store.get(1)
    assert stored.notes == "Subject line A/B test"
    assert stored.co2e_kg == Decimal("0.8")


@pytest.mark.asyncio
async def test_removed_activity_discards_in_flight_result(store, factor_table, make_activity):
    source = GatedFactorSource(factor_table)
    store.add(make_activity(co2e_kg=Decimal("0.4")))
    controller = RecalculationController(store, source)

    pending = asyncio.create_task(controller.recalculate(1, {"quantity": 20000}))
    await _wait_until_calculating(controller, 1)

    await controller.remove_activity(1)
    source.release()
    with pytest.raises(StaleCalculationError):
        await pending

    assert len(store) == 0
    assert not controller.is_calculating(1)
    await _assert_summary_consistent(controller, store)


@pytest.mark.asyncio
async def test_async_store_is_supported(factor_table, make_activity):
    class AsyncStore:
        def __init__(self):
            self._inner = InMemoryActivityStore()

        async def get(self, activity_id):
            return self._inner.get(activity_id)

        async def add(self, record):
            return self._inner.add(record)

        async def update(self, record):
            return self._inner.update(record)

        async def delete(self, activity_id):
            self._inner.delete(activity_id)

        async def list(self):
            return self._inner.list()

    async_store = AsyncStore()
    controller = RecalculationController(async_store, factor_table)
    await controller.add_activity(make_activity())
    assert await controller.recalculate(1, {"quantity": 5000}) == Decimal("0.2")
    assert (await controller.summary()).total_co2e_kg == Decimal("0.2")


class TestRecalculateAll:
    @pytest.mark.asyncio
    async def test_new_reference_data_applies_to_every_activity(
        self, controller, store, make_activity
    ):
        await controller.add_activity(make_activity())
        await controller.add_activity(
            make_activity(2, market="US", channel="paid-search", quantity=10000)
        )

        updated = EmissionFactorTable(
            [
                EmissionFactorEntry("UK", "email", Scope.VALUE_CHAIN, Decimal("0.00008")),
                EmissionFactorEntry("US", "paid-search", Scope.VALUE_CHAIN, Decimal("0.0002")),
            ],
            factor_version="test-2",
        )
        results = await controller.recalculate_all(updated)

        assert results == {1: Decimal("0.8"), 2: Decimal("2.0")}
        assert store.get(1).co2e_kg == Decimal("0.8")
        assert (await controller.summary()).total_co2e_kg == Decimal("2.8")
        await _assert_summary_consistent(controller, store)

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, controller, store, make_activity):
        await controller.add_activity(make_activity())
        await controller.add_activity(make_activity(2, market="US", channel="paid-search"))

        partial = EmissionFactorTable(
            [EmissionFactorEntry("UK", "email", Scope.VALUE_CHAIN, Decimal("0.00008"))],
            allow_fallback=False,
        )
        results = await controller.recalculate_all(partial)

        assert results[1] == Decimal("0.8")
        assert isinstance(results[2], UnresolvableFactorError)
        assert store.get(2).co2e_kg == Decimal("1.6")
        assert isinstance(controller.state(2).last_error, UnresolvableFactorError)
        assert controller.calculating_ids() == set()

    @pytest.mark.asyncio
    async def test_empty_store(self, controller):
        assert await controller.recalculate_all() == {}


@pytest.mark.asyncio
async def test_summary_tracks_every_mutation(controller, store, make_activity):
    await controller.add_activity(make_activity())
    await controller.add_activity(make_activity(2, market="US", channel="paid-search"))
    await _assert_summary_consistent(controller, store)

    summary = await controller.summary()
    assert summary.total_activities == 2
    assert summary.distinct_markets == 2
    assert summary.total_co2e_kg == Decimal("2.0")

    await controller.recalculate(2, {"market": "UK", "channel": "paid-social"})
    await _assert_summary_consistent(controller, store)
    assert (await controller.summary()).distinct_markets == 1

    await controller.remove_activity(1)
    await _assert_summary_consistent(controller, store)
    assert (await controller.summary()).distinct_channels == 1


@pytest.mark.asyncio
async def test_summary_picks_up_preexisting_records(store, factor_table, make_activity):
    store.add(make_activity(co2e_kg=Decimal("0.4")))
    store.add(make_activity(2, market="FR"))
    controller = RecalculationController(store, factor_table)

    summary = await controller.summary()
    assert summary.total_co2e_kg == Decimal("0.4")
    assert summary.uncalculated_activities == 1
