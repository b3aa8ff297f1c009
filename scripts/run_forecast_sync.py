#!/usr/bin/env python3
"""
Run Forecast Sync Script.

Reconciles forecast records for one or more parent records against their
billable items' billing configuration, or promotes forecast records to
ready.

Usage:
    # Dry run (reads the store, logs writes instead of sending them)
    python -m scripts.run_forecast_sync 1234 5678 --dry-run

    # Reconcile
    python -m scripts.run_forecast_sync 1234 5678

    # Promote one occurrence now
    python -m scripts.run_forecast_sync --promote "1234::LI:987::2024-03-15"

    # Promote every due automated occurrence of a parent
    python -m scripts.run_forecast_sync 1234 --promote-due
"""
import argparse
import asyncio
import json
import logging
from typing import List, Optional

from forecast_sync.config import settings
from forecast_sync.pipeline import ForecastSyncEngine, run_forecast_batch
from forecast_sync.forecast.promotion import PromotionTrigger
from forecast_sync.reporting import StoreErrorReporter
from forecast_sync.store import DryRunStore, HttpStoreClient, RecordStore

logger = logging.getLogger("forecast_sync")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile billing forecast records")
    parser.add_argument("parent_ids", nargs="*", help="Parent record ids to reconcile")
    parser.add_argument("--dry-run", action="store_true", help="Log writes instead of sending them")
    parser.add_argument("--promote", metavar="KEY", help="Promote the forecast record with this key")
    parser.add_argument(
        "--promote-due",
        action="store_true",
        help="Promote due automated forecast records of the given parents",
    )
    parser.add_argument("--concurrency", type=int, default=None, help="Parents processed at once")
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store: RecordStore = HttpStoreClient.from_settings(settings)
    if args.dry_run or settings.DRY_RUN:
        logger.info("[DRY RUN MODE - No changes will be made]")
        store = DryRunStore(store)

    reporter = StoreErrorReporter(
        store,
        max_lines=settings.ERROR_REPORT_MAX_LINES,
        max_chars=settings.ERROR_REPORT_MAX_CHARS,
    )
    engine = ForecastSyncEngine.from_settings(store, settings, reporter)

    try:
        if args.promote:
            result = await engine.promotion.promote(args.promote, PromotionTrigger.OVERRIDE)
            print(json.dumps(result.to_dict(), indent=2))
            return 0 if result.promoted or result.reason == "already_ready" else 1

        if not args.parent_ids:
            logger.error("No parent ids given")
            return 2

        if args.promote_due:
            today = engine.today()
            for parent_id in args.parent_ids:
                results = await engine.promotion.promote_due(parent_id, today)
                print(json.dumps([r.to_dict() for r in results], indent=2))
            return 0

        results = await run_forecast_batch(
            engine,
            args.parent_ids,
            concurrency=args.concurrency or settings.BATCH_CONCURRENCY,
        )
        print(json.dumps([r.to_dict() for r in results], indent=2))
        return 0 if all(r.success for r in results) else 1
    finally:
        await store.close()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
