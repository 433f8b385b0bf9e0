"""
Calculate a marketing activity log against an emission factor table and print
the impact overview.

Usage:
    python -m scripts.summarize_activities \
        --factors scripts/sample_emission_factors.json \
        --activities activities.json [--json]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
from typing import Any

import structlog

from impactlog.modules.emissions.domain.display import (
    display_co2e,
    format_co2e_kg,
    format_co2e_tonnes,
    scope_label,
)
from impactlog.modules.emissions.domain.factor_table import EmissionFactorTable
from impactlog.modules.emissions.domain.models import ActivityRecord
from impactlog.modules.emissions.domain.recalculation import RecalculationController
from impactlog.modules.emissions.domain.record_store import InMemoryActivityStore
from impactlog.shared.core.exceptions import ImpactLogException
from impactlog.shared.core.logging import setup_logging

logger = structlog.get_logger()


async def _run(table: EmissionFactorTable, raw_activities: list[dict[str, Any]]) -> dict[str, Any]:
    store = InMemoryActivityStore()
    controller = RecalculationController(store, table)
    rejected: list[dict[str, Any]] = []

    for raw in raw_activities:
        if not isinstance(raw, dict):
            rejected.append(
                {"id": None, "code": "malformed", "error": "Activity must be a JSON object"}
            )
            continue
        try:
            record = ActivityRecord.from_dict(raw)
            await controller.add_activity(record)
        except ImpactLogException as exc:
            rejected.append({"id": raw.get("id"), "code": exc.code, "error": exc.message})
        except (KeyError, TypeError, ValueError) as exc:
            rejected.append({"id": raw.get("id"), "code": "malformed", "error": str(exc)})

    if rejected:
        logger.warning("activities_rejected", count=len(rejected))

    summary = await controller.summary()
    return {
        "summary": summary.to_dict(),
        "activities": [
            {
                "id": record.id,
                "market": record.market,
                "channel": record.channel,
                "scope": scope_label(record.scope),
                "co2e": display_co2e(record),
            }
            for record in store.list()
        ],
        "rejected": rejected,
        "factor_table": table.assurance_snapshot(),
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Summarize the CO2e footprint of a marketing activity log."
    )
    parser.add_argument(
        "--factors",
        default=os.environ.get("EMISSION_FACTOR_TABLE_PATH"),
        help="JSON emission factor table (defaults to EMISSION_FACTOR_TABLE_PATH).",
    )
    parser.add_argument("--activities", required=True, help="JSON list of activities.")
    parser.add_argument("--json", action="store_true", help="Print machine-readable output.")
    args = parser.parse_args(argv)

    setup_logging()

    if not args.factors:
        raise SystemExit("Missing factor table. Set EMISSION_FACTOR_TABLE_PATH or pass --factors.")

    try:
        table = EmissionFactorTable.from_json_file(args.factors)
    except ImpactLogException as exc:
        raise SystemExit(f"Invalid factor table: {exc.message}") from None

    raw_activities = json.loads(Path(args.activities).read_text(encoding="utf-8"))
    if not isinstance(raw_activities, list):
        raise SystemExit("Activities file must contain a JSON list.")

    report = asyncio.run(_run(table, raw_activities))

    exit_code = 0 if not report["rejected"] else 1
    if args.json:
        print(json.dumps(report, indent=2))
        return exit_code

    summary = report["summary"]
    total_kg = summary["total_co2e_kg"]
    print(
        f"[impact] activities={summary['total_activities']} "
        f"channels={summary['distinct_channels']} "
        f"markets={summary['distinct_markets']} "
        f"total={format_co2e_kg(total_kg)} kg CO2e "
        f"(~{format_co2e_tonnes(total_kg)} tCO2e)"
    )
    for item in report["activities"]:
        print(f"  #{item['id']:03d} {item['market']}/{item['channel']} {item['scope']}: {item['co2e']}")
    for item in report["rejected"]:
        print(f"  rejected id={item['id']} [{item['code']}] {item['error']}")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
