"""
Domain types for the marketing emissions engine.

Records and factor entries are immutable snapshots; edits produce new
instances through ``ActivityRecord.with_updates``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import date
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Mapping

FALLBACK_KEY = "*"

SCOPE_LABELS = {
    1: "direct emissions",
    2: "indirect energy",
    3: "value chain",
}


class Scope(IntEnum):
    """GHG Protocol scope of an activity."""

    DIRECT = 1
    INDIRECT_ENERGY = 2
    VALUE_CHAIN = 3

    @property
    def label(self) -> str:
        return SCOPE_LABELS[int(self)]

    def describe(self) -> str:
        return f"Scope {int(self)} ({self.label})"

    @classmethod
    def coerce(cls, value: Any) -> "Scope":
        """
        Strict conversion: ints, Scope members and digit strings only.

        Raises ValueError for bools, floats (3.9 is not Scope 3) and
        anything outside 1-3.
        """
        if isinstance(value, bool):
            raise ValueError(f"Scope must be 1, 2 or 3, got {value!r}")
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str) and value.strip().isdigit():
            return cls(int(value.strip()))
        raise ValueError(f"Scope must be 1, 2 or 3, got {value!r}")


class FactorResolution(str, Enum):
    """Which lookup tier produced a factor."""

    EXACT = "exact"
    GLOBAL_CHANNEL = "global_channel"
    MARKET_DEFAULT = "market_default"


class CalculationStatus(str, Enum):
    IDLE = "idle"
    CALCULATING = "calculating"


# Fields whose change requires a new CO2e value.
CALCULATION_FIELDS = frozenset({"market", "channel", "scope", "quantity"})
# Fields owned by the store / controller; never edited directly.
IMMUTABLE_FIELDS = frozenset({"id", "co2e_kg"})


@dataclass(frozen=True)
class ActivityRecord:
    id: int
    date: date
    market: str
    channel: str
    scope: Any
    quantity: Any
    activity_label: str = ""
    campaign: str | None = None
    notes: str | None = None
    co2e_kg: Decimal | None = None

    @classmethod
    def editable_fields(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls)) - IMMUTABLE_FIELDS

    def with_updates(self, **updates: Any) -> "ActivityRecord":
        return replace(self, **updates)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ActivityRecord":
        """Build a record from loosely-typed input (JSON, form posts)."""
        raw_date = data.get("date")
        if isinstance(raw_date, str):
            activity_date = date.fromisoformat(raw_date[:10])
        else:
            activity_date = raw_date
        raw_co2e = data.get("co2e_kg")
        return cls(
            id=int(data["id"]),
            date=activity_date,
            market=data.get("market", ""),
            channel=data.get("channel", ""),
            scope=data.get("scope"),
            quantity=data.get("quantity", data.get("qty")),
            activity_label=str(
                data.get("activity_label", data.get("activityLabel")) or ""
            ),
            campaign=data.get("campaign"),
            notes=data.get("notes"),
            co2e_kg=Decimal(str(raw_co2e)) if raw_co2e is not None else None,
        )


def changed_fields(old: ActivityRecord, new: ActivityRecord) -> set[str]:
    return {
        f.name for f in fields(ActivityRecord) if getattr(old, f.name) != getattr(new, f.name)
    }


def affects_calculation(old: ActivityRecord, new: ActivityRecord) -> bool:
    """True when the diff between two versions touches a calculation field."""
    return bool(changed_fields(old, new) & CALCULATION_FIELDS)


@dataclass(frozen=True)
class EmissionFactorEntry:
    market: str
    channel: str
    scope: Scope
    factor: Decimal  # kg CO2e per unit of quantity
    unit: str | None = None

    @property
    def key(self) -> tuple[str, str, Scope]:
        return (self.market, self.channel, self.scope)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "market": self.market,
            "channel": self.channel,
            "scope": int(self.scope),
            "factor": str(self.factor),
        }
        if self.unit:
            payload["unit"] = self.unit
        return payload


@dataclass(frozen=True)
class ValidatedRecord:
    record: ActivityRecord
    market: str
    channel: str
    scope: Scope
    quantity: Decimal
    factor: EmissionFactorEntry
    resolution: FactorResolution

    @property
    def activity_id(self) -> int:
        return self.record.id

    def normalized_record(self) -> ActivityRecord:
        return self.record.with_updates(
            market=self.market,
            channel=self.channel,
            scope=self.scope,
            quantity=self.quantity,
        )


@dataclass(frozen=True)
class CalculationResult:
    activity_id: int
    co2e_kg: Decimal
    factor: EmissionFactorEntry
    resolution: FactorResolution
    generation: int = 0
    methodology: dict[str, Any] = field(default_factory=dict)

    @property
    def co2e_tonnes(self) -> Decimal:
        return self.co2e_kg / Decimal("1000")


@dataclass
class CalculationState:
    status: CalculationStatus = CalculationStatus.IDLE
    generation: int = 0
    last_error: Exception | None = None

    @property
    def is_calculating(self) -> bool:
        return self.status is CalculationStatus.CALCULATING


@dataclass(frozen=True)
class AggregateSummary:
    total_activities: int
    distinct_channels: int
    distinct_markets: int
    total_co2e_kg: Decimal
    uncalculated_activities: int = 0
    co2e_kg_by_scope: dict[int, Decimal] = field(default_factory=dict)

    @property
    def total_co2e_tonnes(self) -> Decimal:
        return self.total_co2e_kg / Decimal("1000")

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_activities": self.total_activities,
            "distinct_channels": self.distinct_channels,
            "distinct_markets": self.distinct_markets,
            "total_co2e_kg": str(self.total_co2e_kg),
            "total_co2e_tonnes": str(self.total_co2e_tonnes),
            "uncalculated_activities": self.uncalculated_activities,
            "co2e_kg_by_scope": {
                str(scope): str(value)
                for scope, value in sorted(self.co2e_kg_by_scope.items())
            },
        }
