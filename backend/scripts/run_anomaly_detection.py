#!/usr/bin/env python3
"""Run sales anomaly detection once, outside the Celery schedule.

Examples:
  python backend/scripts/run_anomaly_detection.py
  python backend/scripts/run_anomaly_detection.py --date 2026-10-18 --dry-run --pretty
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import date
from typing import Any

# Add backend/ to path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from alerts.engine import detect_for_date, run_anomaly_pipeline
from core.clock import business_today
from core.config import get_settings


async def _run(evaluation_date: date, dry_run: bool) -> dict[str, Any]:
    engine = create_async_engine(get_settings().database_url)
    try:
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with session_factory() as db:
            if not dry_run:
                summary = await run_anomaly_pipeline(db, evaluation_date)
                return {"status": "success", "dry_run": False, **summary}

            processed, candidates = await detect_for_date(db, evaluation_date)
            return {
                "status": "success",
                "dry_run": True,
                "processed_channels": processed,
                "detected_anomalies": len(candidates),
                "anomalies": [
                    {
                        "channel_id": str(c.channel_id),
                        "channel_name": c.channel_name,
                        "type": c.type.value,
                        "severity": c.severity.value,
                        "message": c.message,
                        "current_value": c.current_value,
                        "expected_value": round(c.expected_value, 2),
                        "variation_percentage": round(c.variation_percentage, 2),
                        "detected_at": c.detected_at.isoformat(),
                    }
                    for c in candidates
                ],
            }
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Detect and persist sales anomalies for yesterday")
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Evaluation date (YYYY-MM-DD); anomalies are detected for the day before. Default: today",
    )
    parser.add_argument("--dry-run", action="store_true", help="Detect only, do not persist")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    args = parser.parse_args(argv)

    evaluation_date = args.date or business_today()
    try:
        summary = asyncio.run(_run(evaluation_date, dry_run=bool(args.dry_run)))
        ok = True
    except Exception as exc:  # noqa: BLE001
        summary = {"status": "failed", "error": str(exc), "evaluation_date": evaluation_date.isoformat()}
        ok = False

    if args.pretty:
        print(json.dumps(summary, indent=2, sort_keys=True))
    else:
        print(json.dumps(summary))

    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
