"""
Global pytest fixtures for the impactlog test suite.

Provides:
- Test environment settings (set before any impactlog import)
- A reference emission factor table
- In-memory record store and recalculation controller
- Activity record factory
"""
import os
from datetime import date
from decimal import Decimal

import pytest
import structlog

# Set test environment BEFORE any impactlog imports
os.environ["TESTING"] = "true"
os.environ["ENVIRONMENT"] = "local"
os.environ.pop("EMISSION_FACTOR_TABLE_PATH", None)

from impactlog.modules.emissions.domain.factor_table import EmissionFactorTable  # noqa: E402
from impactlog.modules.emissions.domain.models import (  # noqa: E402
    ActivityRecord,
    EmissionFactorEntry,
    Scope,
)
from impactlog.modules.emissions.domain.recalculation import (  # noqa: E402
    RecalculationController,
)
from impactlog.modules.emissions.domain.record_store import (  # noqa: E402
    InMemoryActivityStore,
)
from impactlog.shared.core.config import get_settings  # noqa: E402


REFERENCE_FACTORS = [
    EmissionFactorEntry("UK", "email", Scope.VALUE_CHAIN, Decimal("0.00004"), "emails"),
    EmissionFactorEntry("UK", "email", Scope.DIRECT, Decimal("0.0009"), "emails"),
    EmissionFactorEntry("UK", "paid-social", Scope.VALUE_CHAIN, Decimal("0.00016"), "impressions"),
    EmissionFactorEntry("US", "paid-search", Scope.VALUE_CHAIN, Decimal("0.00016"), "impressions"),
    EmissionFactorEntry("US", "email", Scope.VALUE_CHAIN, Decimal("0.00005"), "emails"),
    EmissionFactorEntry("*", "display", Scope.VALUE_CHAIN, Decimal("0.000002"), "impressions"),
    EmissionFactorEntry("DE", "*", Scope.VALUE_CHAIN, Decimal("0.00003")),
]


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def factor_table() -> EmissionFactorTable:
    return EmissionFactorTable(
        REFERENCE_FACTORS,
        factor_source="test reference data",
        factor_version="test-1",
        factor_timestamp=date(2025, 1, 1),
        allow_fallback=True,
    )


@pytest.fixture
def make_activity():
    def _make(activity_id: int = 1, **overrides) -> ActivityRecord:
        values = {
            "id": activity_id,
            "date": date(2025, 3, 14),
            "market": "UK",
            "channel": "email",
            "scope": 3,
            "quantity": 10000,
            "activity_label": "Newsletter send",
            "campaign": "Spring launch",
            "notes": None,
        }
        values.update(overrides)
        return ActivityRecord(**values)

    return _make


@pytest.fixture
def store() -> InMemoryActivityStore:
    return InMemoryActivityStore()


@pytest.fixture
def controller(store, factor_table) -> RecalculationController:
    return RecalculationController(store, factor_table, concurrency=4)
