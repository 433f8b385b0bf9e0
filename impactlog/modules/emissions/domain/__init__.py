from impactlog.modules.emissions.domain.aggregator import SummaryTracker, summarize
from impactlog.modules.emissions.domain.calculator import (
    EmissionsCalculator,
    compute,
    kg_to_tonnes,
)
from impactlog.modules.emissions.domain.factor_table import EmissionFactorTable
from impactlog.modules.emissions.domain.models import (
    ActivityRecord,
    AggregateSummary,
    CalculationResult,
    CalculationState,
    CalculationStatus,
    EmissionFactorEntry,
    Scope,
    ValidatedRecord,
    affects_calculation,
)
from impactlog.modules.emissions.domain.recalculation import RecalculationController
from impactlog.modules.emissions.domain.record_store import (
    ActivityRecordStore,
    InMemoryActivityStore,
)
from impactlog.modules.emissions.domain.validator import ActivityValidator, validate

__all__ = [
    "ActivityRecord",
    "ActivityRecordStore",
    "ActivityValidator",
    "AggregateSummary",
    "CalculationResult",
    "CalculationState",
    "CalculationStatus",
    "EmissionFactorEntry",
    "EmissionFactorTable",
    "EmissionsCalculator",
    "InMemoryActivityStore",
    "RecalculationController",
    "Scope",
    "SummaryTracker",
    "ValidatedRecord",
    "affects_calculation",
    "compute",
    "kg_to_tonnes",
    "summarize",
    "validate",
]
