from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

import structlog

from impactlog.modules.emissions.domain.factor_table import (
    EmissionFactorTable,
    normalize_channel,
    normalize_market,
)
from impactlog.modules.emissions.domain.models import (
    IMMUTABLE_FIELDS,
    ActivityRecord,
    Scope,
    ValidatedRecord,
)
from impactlog.shared.core.exceptions import (
    FactorNotFoundError,
    InvalidActivityFieldError,
    InvalidQuantityError,
    InvalidScopeError,
    UnresolvableFactorError,
)

logger = structlog.get_logger()


def parse_scope(value: Any) -> Scope:
    try:
        return Scope.coerce(value)
    except ValueError:
        raise InvalidScopeError(
            f"Scope must be 1, 2 or 3, got {value!r}", details={"scope": repr(value)}
        ) from None


def parse_quantity(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise InvalidQuantityError(
            f"Quantity must be a number, got {value!r}",
            details={"quantity": repr(value)},
        )
    if isinstance(value, (int, float, Decimal)):
        raw = str(value)
    elif isinstance(value, str) and value.strip():
        raw = value.strip().replace(",", "")
    else:
        raise InvalidQuantityError(
            f"Quantity must be a number, got {value!r}",
            details={"quantity": repr(value)},
        )
    try:
        quantity = Decimal(raw)
    except (InvalidOperation, ValueError):
        raise InvalidQuantityError(
            f"Quantity must be a number, got {value!r}",
            details={"quantity": repr(value)},
        ) from None
    if not quantity.is_finite():
        raise InvalidQuantityError(
            "Quantity must be finite", details={"quantity": raw}
        )
    if quantity < 0:
        raise InvalidQuantityError(
            f"Quantity must not be negative, got {raw}", details={"quantity": raw}
        )
    return quantity


class ActivityValidator:
    """
    Gate in front of the calculator.

    Checks shape first (scope, quantity, identifiers) and then resolves the
    emission factor eagerly so missing reference data surfaces here rather
    than in the middle of a calculation.
    """

    def __init__(self, factor_table: EmissionFactorTable) -> None:
        self.factor_table = factor_table

    def validate(self, record: ActivityRecord) -> ValidatedRecord:
        scope = parse_scope(record.scope)
        quantity = parse_quantity(record.quantity)

        market = normalize_market(record.market)
        channel = normalize_channel(record.channel)
        if not market:
            raise InvalidActivityFieldError(
                "Activity market is required", details={"activity_id": record.id}
            )
        if not channel:
            raise InvalidActivityFieldError(
                "Activity channel is required", details={"activity_id": record.id}
            )

        try:
            factor, resolution = self.factor_table.resolve(market, channel, scope)
        except FactorNotFoundError as exc:
            raise UnresolvableFactorError(
                exc.message, details={"activity_id": record.id, **exc.details}
            ) from exc

        return ValidatedRecord(
            record=record,
            market=market,
            channel=channel,
            scope=scope,
            quantity=quantity,
            factor=factor,
            resolution=resolution,
        )

    @staticmethod
    def validate_updates(
        record: ActivityRecord, updates: Mapping[str, Any]
    ) -> ActivityRecord:
        """Apply an edit to a record, rejecting unknown or immutable fields."""
        blocked = sorted(set(updates) & IMMUTABLE_FIELDS)
        if blocked:
            raise InvalidActivityFieldError(
                f"Fields cannot be edited: {', '.join(blocked)}",
                details={"activity_id": record.id, "fields": blocked},
            )
        unknown = sorted(set(updates) - ActivityRecord.editable_fields())
        if unknown:
            raise InvalidActivityFieldError(
                f"Unknown activity fields: {', '.join(unknown)}",
                details={"activity_id": record.id, "fields": unknown},
            )
        return record.with_updates(**updates)


def validate(record: ActivityRecord, factor_table: EmissionFactorTable) -> ValidatedRecord:
    return ActivityValidator(factor_table).validate(record)
