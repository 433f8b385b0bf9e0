"""
CO2e Calculator

co2e_kg = quantity x factor, in decimal arithmetic.

Scope never changes the arithmetic; it only selects the factor row. The
calculator still checks scope explicitly so factors for different scopes
of the same (market, channel) are never mixed up.
"""

from decimal import Decimal
import hashlib
import json
from typing import Any, Dict

import structlog

from impactlog.modules.emissions.domain.factor_table import EmissionFactorTable
from impactlog.modules.emissions.domain.models import (
    CalculationResult,
    EmissionFactorEntry,
    ValidatedRecord,
)
from impactlog.modules.emissions.domain.validator import parse_scope
from impactlog.shared.core.exceptions import InvalidScopeError

logger = structlog.get_logger()

KG_PER_TONNE = Decimal("1000")


def kg_to_tonnes(co2e_kg: Decimal) -> Decimal:
    return co2e_kg / KG_PER_TONNE


def compute(
    validated: ValidatedRecord,
    factor: EmissionFactorEntry | Decimal,
    *,
    scope: Any = None,
) -> Decimal:
    """Pure quantity x factor. No I/O, no logging, no rounding."""
    if isinstance(factor, EmissionFactorEntry):
        if factor.scope != validated.scope:
            raise InvalidScopeError(
                f"Factor for scope {int(factor.scope)} applied to a scope "
                f"{int(validated.scope)} activity",
                details={
                    "activity_id": validated.activity_id,
                    "factor_scope": int(factor.scope),
                    "activity_scope": int(validated.scope),
                },
            )
        value = factor.factor
    else:
        value = Decimal(str(factor))

    if scope is not None and parse_scope(scope) != validated.scope:
        raise InvalidScopeError(
            f"Requested scope {scope!r} does not match activity scope "
            f"{int(validated.scope)}",
            details={"activity_id": validated.activity_id},
        )

    return validated.quantity * value


class EmissionsCalculator:
    """
    Calculates per-activity CO2e against one factor table and stamps each
    result with the methodology metadata needed to reproduce it.
    """

    def __init__(self, factor_table: EmissionFactorTable) -> None:
        self.factor_table = factor_table

    def calculate(
        self, validated: ValidatedRecord, *, generation: int = 0
    ) -> CalculationResult:
        co2e_kg = compute(validated, validated.factor, scope=validated.scope)
        result = CalculationResult(
            activity_id=validated.activity_id,
            co2e_kg=co2e_kg,
            factor=validated.factor,
            resolution=validated.resolution,
            generation=generation,
            methodology=self._build_methodology_metadata(validated),
        )
        logger.info(
            "co2e_calculated",
            activity_id=validated.activity_id,
            market=validated.market,
            channel=validated.channel,
            scope=int(validated.scope),
            co2e_kg=str(co2e_kg),
            resolution=validated.resolution.value,
        )
        return result

    def _build_methodology_metadata(self, validated: ValidatedRecord) -> Dict[str, Any]:
        input_checksum = hashlib.sha256(
            json.dumps(
                {
                    "market": validated.market,
                    "channel": validated.channel,
                    "scope": int(validated.scope),
                    "quantity": str(validated.quantity),
                    "factor": str(validated.factor.factor),
                },
                sort_keys=True,
                separators=(",", ":"),
            ).encode("utf-8")
        ).hexdigest()

        return {
            "methodology_version": self.factor_table.methodology_version,
            "factor_source": self.factor_table.factor_source,
            "factor_version": self.factor_table.factor_version,
            "factor_resolution": validated.resolution.value,
            "factor_key": {
                "market": validated.factor.market,
                "channel": validated.factor.channel,
                "scope": int(validated.factor.scope),
            },
            "factors_checksum_sha256": self.factor_table.checksum,
            "calculation_input_checksum_sha256": input_checksum,
        }
