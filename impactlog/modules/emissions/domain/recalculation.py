"""
Recalculation Controller

Per-activity state machine:

    IDLE --(market/channel/scope/quantity edit)--> CALCULATING
    CALCULATING --success--> IDLE (new CO2e merged into the store)
    CALCULATING --failure--> IDLE (stored record and CO2e untouched, error kept)

Latest edit wins: every request takes a new generation number and a request
whose generation is no longer the newest for its activity is discarded with
StaleCalculationError when it resolves. Only the newest request clears the
"calculating" flag.

State transitions happen in synchronous sections (no await between check
and set); store read-modify-write runs under a per-activity lock.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
import itertools
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Mapping, Union

import structlog

from impactlog.modules.emissions.domain.aggregator import SummaryTracker
from impactlog.modules.emissions.domain.calculator import EmissionsCalculator
from impactlog.modules.emissions.domain.factor_table import EmissionFactorTable
from impactlog.modules.emissions.domain.models import (
    CALCULATION_FIELDS,
    ActivityRecord,
    AggregateSummary,
    CalculationResult,
    CalculationState,
    CalculationStatus,
    affects_calculation,
)
from impactlog.modules.emissions.domain.record_store import ActivityRecordStore
from impactlog.modules.emissions.domain.validator import ActivityValidator
from impactlog.shared.core.async_utils import maybe_await, maybe_call
from impactlog.shared.core.config import get_settings
from impactlog.shared.core.exceptions import StaleCalculationError

logger = structlog.get_logger()

FactorTableSource = Union[
    EmissionFactorTable,
    Callable[[], Union[EmissionFactorTable, Awaitable[EmissionFactorTable]]],
]


class RecalculationController:
    def __init__(
        self,
        store: ActivityRecordStore,
        factor_table_source: FactorTableSource,
        *,
        concurrency: int | None = None,
    ) -> None:
        self.store = store
        self._factor_source = factor_table_source
        self._concurrency = concurrency or get_settings().RECALCULATION_CONCURRENCY
        self._states: Dict[int, CalculationState] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._generations = itertools.count(1)
        self._tracker: SummaryTracker | None = None

    # -- state ----------------------------------------------------------------

    def state(self, activity_id: int) -> CalculationState:
        current = self._states.get(activity_id)
        return replace(current) if current is not None else CalculationState()

    def is_calculating(self, activity_id: int) -> bool:
        current = self._states.get(activity_id)
        return current is not None and current.is_calculating

    def calculating_ids(self) -> set[int]:
        return {aid for aid, s in self._states.items() if s.is_calculating}

    def _lock(self, activity_id: int) -> asyncio.Lock:
        return self._locks.setdefault(activity_id, asyncio.Lock())

    def _is_current(self, activity_id: int, generation: int) -> bool:
        current = self._states.get(activity_id)
        return current is not None and current.generation == generation

    def _begin(self, activity_id: int) -> int:
        generation = next(self._generations)
        current = self._states.setdefault(activity_id, CalculationState())
        if current.is_calculating:
            logger.debug(
                "recalculation_superseded",
                activity_id=activity_id,
                superseded_generation=current.generation,
                generation=generation,
            )
        current.generation = generation
        current.status = CalculationStatus.CALCULATING
        return generation

    def _settle(self, activity_id: int, error: Exception | None) -> None:
        current = self._states[activity_id]
        current.status = CalculationStatus.IDLE
        current.last_error = error

    # -- collaborators ----------------------------------------------------------

    async def _factor_table(self) -> EmissionFactorTable:
        source = self._factor_source
        if isinstance(source, EmissionFactorTable):
            return source
        return await maybe_await(source())

    async def _ensure_tracker(self) -> SummaryTracker:
        if self._tracker is None:
            records = await maybe_call(self.store.list)
            if self._tracker is None:
                self._tracker = SummaryTracker(records)
        return self._tracker

    # -- operations -------------------------------------------------------------

    async def add_activity(self, record: ActivityRecord) -> CalculationResult:
        """Validate, calculate and store a new activity."""
        tracker = await self._ensure_tracker()
        table = await self._factor_table()
        validated = ActivityValidator(table).validate(record)
        result = EmissionsCalculator(table).calculate(validated)
        stored = validated.normalized_record().with_updates(co2e_kg=result.co2e_kg)

        async with self._lock(record.id):
            await maybe_call(self.store.add, stored)
            self._states[record.id] = CalculationState()
            tracker.add(stored)

        logger.info("activity_added", activity_id=record.id, co2e_kg=str(result.co2e_kg))
        return result

    async def recalculate(
        self, activity_id: int, updated_fields: Mapping[str, Any]
    ) -> Decimal | None:
        """
        Apply an edit and recompute CO2e when a calculation field changed.

        Returns the activity's CO2e after the edit. Edits that only touch
        informational fields (campaign, notes, ...) are merged without a
        recalculation and return the unchanged value.
        """
        return await self._run(activity_id, dict(updated_fields), force=False)

    async def _run(
        self, activity_id: int, updates: Dict[str, Any], *, force: bool
    ) -> Decimal | None:
        tracker = await self._ensure_tracker()
        current = await maybe_call(self.store.get, activity_id)
        edited = ActivityValidator.validate_updates(current, updates)

        # While a calculation is pending the stored record is not the newest
        # request, so any edit naming a calculation field must supersede it.
        pending_override = self.is_calculating(activity_id) and bool(
            set(updates) & CALCULATION_FIELDS
        )
        if not force and not pending_override and not affects_calculation(current, edited):
            # Calculation fields are unchanged here; keep the stored normalized values.
            informational = {
                name: value
                for name, value in updates.items()
                if name not in CALCULATION_FIELDS
            }
            async with self._lock(activity_id):
                latest = await maybe_call(self.store.get, activity_id)
                merged = latest.with_updates(**informational)
                await maybe_call(self.store.update, merged)
                tracker.replace(merged)
            logger.debug(
                "recalculation_skipped",
                activity_id=activity_id,
                fields=sorted(updates),
            )
            return merged.co2e_kg

        generation = self._begin(activity_id)
        log = logger.bind(activity_id=activity_id, generation=generation)
        error: Exception | None = None
        try:
            table = await self._factor_table()
            validated = ActivityValidator(table).validate(edited)
            result = EmissionsCalculator(table).calculate(
                validated, generation=generation
            )

            async with self._lock(activity_id):
                if not self._is_current(activity_id, generation):
                    raise StaleCalculationError(
                        f"Calculation {generation} for activity {activity_id} was superseded",
                        details={"activity_id": activity_id, "generation": generation},
                    )
                latest = await maybe_call(self.store.get, activity_id)
                merged = latest.with_updates(
                    **{
                        **updates,
                        "market": validated.market,
                        "channel": validated.channel,
                        "scope": validated.scope,
                        "quantity": validated.quantity,
                        "co2e_kg": result.co2e_kg,
                    }
                )
                await maybe_call(self.store.update, merged)
                tracker.replace(merged)

            log.info("recalculation_applied", co2e_kg=str(result.co2e_kg))
            return result.co2e_kg
        except StaleCalculationError:
            log.debug("recalculation_discarded")
            raise
        except Exception as exc:
            if not self._is_current(activity_id, generation):
                log.debug("recalculation_discarded", discarded_error=str(exc))
                raise StaleCalculationError(
                    f"Calculation {generation} for activity {activity_id} was superseded",
                    details={"activity_id": activity_id, "generation": generation},
                ) from exc
            error = exc
            log.warning(
                "recalculation_failed",
                error=str(exc),
                code=getattr(exc, "code", "internal_error"),
            )
            raise
        finally:
            if self._is_current(activity_id, generation):
                self._settle(activity_id, error)

    async def recalculate_all(
        self, factor_table: EmissionFactorTable | None = None
    ) -> Dict[int, Decimal | None | BaseException]:
        """
        Recompute every stored activity, e.g. after reference data changed.

        Failures are returned per activity and never interrupt the others.
        """
        if factor_table is not None:
            self._factor_source = factor_table
        records = await maybe_call(self.store.list)
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _one(activity_id: int) -> Decimal | None:
            async with semaphore:
                return await self._run(activity_id, {}, force=True)

        ids = [record.id for record in records]
        outcomes = await asyncio.gather(
            *(_one(activity_id) for activity_id in ids), return_exceptions=True
        )
        results = dict(zip(ids, outcomes))
        failed = sum(1 for value in outcomes if isinstance(value, BaseException))
        logger.info(
            "recalculation_all_completed",
            total_processed=len(ids),
            failed_calculations=failed,
        )
        return results

    async def remove_activity(self, activity_id: int) -> None:
        tracker = await self._ensure_tracker()
        async with self._lock(activity_id):
            await maybe_call(self.store.delete, activity_id)
            # Dropping the state makes any in-flight request stale.
            self._states.pop(activity_id, None)
            tracker.remove(activity_id)
        self._locks.pop(activity_id, None)
        logger.info("activity_removed", activity_id=activity_id)

    async def summary(self) -> AggregateSummary:
        tracker = await self._ensure_tracker()
        return tracker.snapshot()
