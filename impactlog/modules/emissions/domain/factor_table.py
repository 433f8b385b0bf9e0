"""
Emission Factor Table

Immutable (market, channel, scope) -> kg CO2e per unit reference data.

Lookup tiers, always within the requested scope:
1. exact (market, channel)
2. global channel entry ("*", channel)
3. market default entry (market, "*")

Tiers 2 and 3 only match entries the table declares explicitly. A miss is
a FactorNotFoundError, never a zero factor.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import hashlib
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

import structlog

from impactlog.modules.emissions.domain.models import (
    FALLBACK_KEY,
    EmissionFactorEntry,
    FactorResolution,
    Scope,
)
from impactlog.shared.core.config import get_settings
from impactlog.shared.core.exceptions import (
    ConfigurationError,
    FactorNotFoundError,
    FactorTableError,
)

logger = structlog.get_logger()

FACTOR_SOURCE_UNSPECIFIED = "unspecified"
DEFAULT_METHODOLOGY_VERSION = "impactlog-co2e-v1"


def normalize_market(market: Any) -> str:
    return str(market or "").strip().upper()


def normalize_channel(channel: Any) -> str:
    return str(channel or "").strip().lower()


def compute_factor_checksum(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _parse_factor_date(value: Any) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        # Accept YYYY-MM-DD or full ISO timestamps.
        return date.fromisoformat(value.strip()[:10])
    raise ValueError(f"Invalid factor_timestamp: {value!r}")


def _parse_entry(raw: Mapping[str, Any], index: int) -> EmissionFactorEntry:
    if not isinstance(raw, Mapping):
        raise FactorTableError(
            f"Factor entry #{index} must be an object", details={"index": index}
        )
    market = normalize_market(raw.get("market"))
    channel = normalize_channel(raw.get("channel"))
    if not market or not channel:
        raise FactorTableError(
            f"Factor entry #{index} needs a market and a channel",
            details={"index": index},
        )
    try:
        scope = Scope.coerce(raw.get("scope"))
    except (TypeError, ValueError):
        raise FactorTableError(
            f"Factor entry #{index} has invalid scope {raw.get('scope')!r}",
            details={"index": index},
        ) from None
    try:
        factor = Decimal(str(raw.get("factor")))
    except (InvalidOperation, ValueError):
        raise FactorTableError(
            f"Factor entry #{index} has a non-numeric factor {raw.get('factor')!r}",
            details={"index": index},
        ) from None
    if not factor.is_finite() or factor < 0:
        raise FactorTableError(
            f"Factor entry #{index} must have a finite, non-negative factor",
            details={"index": index, "factor": str(factor)},
        )
    unit = raw.get("unit")
    return EmissionFactorEntry(
        market=market,
        channel=channel,
        scope=scope,
        factor=factor,
        unit=str(unit) if unit else None,
    )


class EmissionFactorTable:
    """
    Read-only emission factor reference data.

    Instances are never mutated after construction, so calculations may
    share one table across concurrent tasks without locking.
    """

    def __init__(
        self,
        entries: Iterable[EmissionFactorEntry],
        *,
        factor_source: str = FACTOR_SOURCE_UNSPECIFIED,
        factor_version: str = "unversioned",
        factor_timestamp: date | None = None,
        methodology_version: str = DEFAULT_METHODOLOGY_VERSION,
        allow_fallback: bool | None = None,
    ) -> None:
        index: Dict[tuple[str, str, Scope], EmissionFactorEntry] = {}
        for entry in entries:
            if entry.key in index:
                raise FactorTableError(
                    "Duplicate emission factor entry",
                    details={
                        "market": entry.market,
                        "channel": entry.channel,
                        "scope": int(entry.scope),
                    },
                )
            index[entry.key] = entry
        self._entries = index
        self.factor_source = factor_source
        self.factor_version = factor_version
        self.factor_timestamp = factor_timestamp
        self.methodology_version = methodology_version
        if allow_fallback is None:
            allow_fallback = get_settings().FACTOR_FALLBACK_ENABLED
        self.allow_fallback = allow_fallback
        self._checksum = compute_factor_checksum(self.to_payload())

    # -- construction -------------------------------------------------------

    @staticmethod
    def _validate_payload(payload: Mapping[str, Any]) -> None:
        if not isinstance(payload, Mapping):
            raise FactorTableError("Emission factor payload must be an object")
        factors = payload.get("factors")
        if not isinstance(factors, list) or not factors:
            raise FactorTableError("factors must be a non-empty list")
        for key in ("factor_source", "factor_version"):
            value = payload.get(key)
            if value is not None and (not isinstance(value, str) or not value.strip()):
                raise FactorTableError(f"{key} must be a non-empty string")

    @classmethod
    def from_payload(
        cls, payload: Mapping[str, Any], *, allow_fallback: bool | None = None
    ) -> "EmissionFactorTable":
        cls._validate_payload(payload)
        entries = [_parse_entry(raw, i) for i, raw in enumerate(payload["factors"])]
        timestamp = payload.get("factor_timestamp")
        try:
            factor_timestamp = _parse_factor_date(timestamp) if timestamp else None
        except ValueError as exc:
            raise FactorTableError(str(exc)) from None
        return cls(
            entries,
            factor_source=str(payload.get("factor_source") or FACTOR_SOURCE_UNSPECIFIED),
            factor_version=str(payload.get("factor_version") or "unversioned"),
            factor_timestamp=factor_timestamp,
            methodology_version=str(
                payload.get("methodology_version") or DEFAULT_METHODOLOGY_VERSION
            ),
            allow_fallback=allow_fallback,
        )

    @classmethod
    def from_json_file(
        cls, path: str | Path, *, allow_fallback: bool | None = None
    ) -> "EmissionFactorTable":
        file_path = Path(path)
        try:
            payload = json.loads(file_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise FactorTableError(
                f"Emission factor file {file_path} is not valid JSON: {exc}"
            ) from exc
        table = cls.from_payload(payload, allow_fallback=allow_fallback)
        logger.info(
            "factor_table_loaded",
            path=str(file_path),
            entries=len(table),
            version=table.factor_version,
            checksum=table.checksum,
        )
        return table

    @classmethod
    def from_settings(cls) -> "EmissionFactorTable":
        settings = get_settings()
        if not settings.EMISSION_FACTOR_TABLE_PATH:
            raise ConfigurationError(
                "EMISSION_FACTOR_TABLE_PATH is not configured",
                code="factor_table_missing",
            )
        return cls.from_json_file(settings.EMISSION_FACTOR_TABLE_PATH)

    # -- lookup ---------------------------------------------------------------

    def _candidate_keys(
        self, market: str, channel: str, scope: Scope
    ) -> List[tuple[FactorResolution, tuple[str, str, Scope]]]:
        candidates = [(FactorResolution.EXACT, (market, channel, scope))]
        if self.allow_fallback:
            candidates.append(
                (FactorResolution.GLOBAL_CHANNEL, (FALLBACK_KEY, channel, scope))
            )
            candidates.append(
                (FactorResolution.MARKET_DEFAULT, (market, FALLBACK_KEY, scope))
            )
        return candidates

    def resolve(
        self, market: Any, channel: Any, scope: Any
    ) -> tuple[EmissionFactorEntry, FactorResolution]:
        market_key = normalize_market(market)
        channel_key = normalize_channel(channel)
        try:
            scope_key = Scope.coerce(scope)
        except (TypeError, ValueError):
            raise FactorNotFoundError(
                f"No emission factor for scope {scope!r}",
                details={"market": market_key, "channel": channel_key, "scope": scope},
            ) from None

        for resolution, key in self._candidate_keys(market_key, channel_key, scope_key):
            entry = self._entries.get(key)
            if entry is not None:
                if resolution is not FactorResolution.EXACT:
                    logger.debug(
                        "factor_fallback_used",
                        market=market_key,
                        channel=channel_key,
                        scope=int(scope_key),
                        resolution=resolution.value,
                    )
                return entry, resolution

        logger.warning(
            "factor_not_found",
            market=market_key,
            channel=channel_key,
            scope=int(scope_key),
            factor_version=self.factor_version,
        )
        raise FactorNotFoundError(
            f"No emission factor for market={market_key} channel={channel_key} "
            f"scope={int(scope_key)}",
            details={
                "market": market_key,
                "channel": channel_key,
                "scope": int(scope_key),
            },
        )

    def lookup(self, market: Any, channel: Any, scope: Any) -> EmissionFactorEntry:
        entry, _ = self.resolve(market, channel, scope)
        return entry

    def lookup_factor(self, market: Any, channel: Any, scope: Any) -> Decimal:
        return self.lookup(market, channel, scope).factor

    def unit_for(self, market: Any, channel: Any, scope: Any) -> str | None:
        return self.lookup(market, channel, scope).unit

    # -- listings -------------------------------------------------------------

    def markets(self) -> List[str]:
        return sorted({m for (m, _, _) in self._entries if m != FALLBACK_KEY})

    def channels(self, market: str | None = None) -> List[str]:
        if market is None:
            return sorted({c for (_, c, _) in self._entries if c != FALLBACK_KEY})
        market_key = normalize_market(market)
        return sorted(
            {
                c
                for (m, c, _) in self._entries
                if c != FALLBACK_KEY and m in (market_key, FALLBACK_KEY)
            }
        )

    def entries(self) -> List[EmissionFactorEntry]:
        return sorted(
            self._entries.values(),
            key=lambda e: (e.market, e.channel, int(e.scope)),
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    # -- provenance -----------------------------------------------------------

    @property
    def checksum(self) -> str:
        return self._checksum

    def to_payload(self) -> Dict[str, Any]:
        return {
            "factor_source": self.factor_source,
            "factor_version": self.factor_version,
            "factor_timestamp": (
                self.factor_timestamp.isoformat() if self.factor_timestamp else None
            ),
            "methodology_version": self.methodology_version,
            "factors": [entry.to_dict() for entry in self.entries()],
        }

    def assurance_snapshot(self) -> Dict[str, Any]:
        """Auditable summary of the reference data used for calculations."""
        return {
            "methodology_version": self.methodology_version,
            "factor_source": self.factor_source,
            "factor_version": self.factor_version,
            "factor_timestamp": (
                self.factor_timestamp.isoformat() if self.factor_timestamp else None
            ),
            "entries": len(self),
            "markets": self.markets(),
            "fallback_enabled": self.allow_fallback,
            "factors_checksum_sha256": self.checksum,
        }
