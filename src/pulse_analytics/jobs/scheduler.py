"""
Pulse Scheduled Jobs

Background tasks that keep learned patterns fresh:
1. Nightly: discover correlations over the trailing window, roll up, validate
2. Daily: forecast tomorrow for every entity
3. Weekly: regenerate internal patterns

Each job runs per entity on a bounded thread pool; an entity that fails is
logged and reported without stopping the rest.

Can be run as:
- Cron jobs (self-hosted)
- Manual CLI invocation (``pulse-jobs nightly``)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import date, timedelta
from typing import Optional

from ..core.config import PulseConfig
from ..service import PulseService

logger = logging.getLogger(__name__)


# =============================================================================
# JOB DEFINITIONS
# =============================================================================

def job_discover(
    service: PulseService,
    days_back: int = 90,
    entity_ids: Optional[list] = None,
    end: Optional[date] = None,
) -> dict:
    """
    Discover correlations over the trailing window for each entity.

    Run: Nightly
    Purpose: Pick up new relationships and refresh statistics (roll-up follows)
    """
    end = end or date.today() - timedelta(days=1)
    start = end - timedelta(days=days_back - 1)
    entity_ids = entity_ids or service.entity_ids()
    logger.info(f"Starting discovery job for {len(entity_ids)} entities ({start} to {end})")

    summary = service.run_batch("discover", entity_ids, lambda e: service.discover(e, start, end))
    return summary.to_dict()


def job_validate(
    service: PulseService,
    entity_ids: Optional[list] = None,
    as_of: Optional[date] = None,
) -> dict:
    """
    Backtest active patterns against days they were not discovered on.

    Run: Nightly (after discovery)
    Purpose: Keep accuracy honest and retire patterns that stopped holding
    """
    as_of = as_of or date.today() - timedelta(days=1)
    entity_ids = entity_ids or service.entity_ids()
    logger.info(f"Starting validation job for {len(entity_ids)} entities (as of {as_of})")

    summary = service.run_batch("validate", entity_ids, lambda e: service.validate(e, as_of))
    return summary.to_dict()


def job_rollup(service: PulseService, entity_ids: Optional[list] = None) -> dict:
    """
    Merge validated entity patterns into regional and global records.

    Run: After validation
    Purpose: Let new entities benefit from what similar ones learned
    """
    entity_ids = entity_ids or service.entity_ids()
    logger.info(f"Starting roll-up job for {len(entity_ids)} entities")

    summary = service.run_batch("rollup", entity_ids, service.roll_up)
    return summary.to_dict()


def job_forecast(
    service: PulseService,
    target_date: Optional[date] = None,
    entity_ids: Optional[list] = None,
) -> dict:
    """
    Forecast revenue for the target date (default tomorrow).

    Run: Daily
    Purpose: Staffing and prep planning
    """
    target_date = target_date or date.today() + timedelta(days=1)
    entity_ids = entity_ids or service.entity_ids()
    logger.info(f"Starting forecast job for {len(entity_ids)} entities on {target_date}")

    summary = service.run_batch("predict", entity_ids, lambda e: service.predict(e, target_date))
    return summary.to_dict()


def job_internal_patterns(
    service: PulseService,
    days_back: int = 30,
    entity_ids: Optional[list] = None,
) -> dict:
    """
    Regenerate internal (transaction-only) patterns.

    Run: Weekly
    Purpose: Staffing, menu and momentum insights
    """
    end = date.today() - timedelta(days=1)
    start = end - timedelta(days=days_back - 1)
    entity_ids = entity_ids or service.entity_ids()
    logger.info(f"Starting internal patterns job for {len(entity_ids)} entities")

    summary = service.run_batch(
        "patterns", entity_ids, lambda e: service.internal_patterns(e, start, end)
    )
    return summary.to_dict()


# =============================================================================
# ORCHESTRATOR
# =============================================================================

def run_nightly_jobs(service: PulseService, days_back: int = 90) -> dict:
    """Discovery, then validation, then roll-up of what validation promoted."""
    results = {}

    results["discover"] = job_discover(service, days_back=days_back)
    results["validate"] = job_validate(service)
    results["rollup"] = job_rollup(service)

    return results


def run_job(service: PulseService, job_type: str, args: Optional[argparse.Namespace] = None) -> dict:
    """Dispatch a job by name."""
    logger.info(f"Job starting: {job_type}")
    days_back = getattr(args, "days_back", 90) if args else 90
    entity_ids = getattr(args, "entity", None) if args else None

    if job_type == "nightly":
        return run_nightly_jobs(service, days_back=days_back)
    elif job_type == "discover":
        return job_discover(service, days_back=days_back, entity_ids=entity_ids)
    elif job_type == "validate":
        return job_validate(service, entity_ids=entity_ids)
    elif job_type == "rollup":
        return job_rollup(service, entity_ids=entity_ids)
    elif job_type == "predict":
        target = getattr(args, "date", None) if args else None
        return job_forecast(
            service,
            target_date=date.fromisoformat(target) if target else None,
            entity_ids=entity_ids,
        )
    elif job_type == "patterns":
        return job_internal_patterns(service, days_back=min(days_back, 90), entity_ids=entity_ids)
    else:
        return {"status": "error", "error": f"Unknown job type: {job_type}"}


def _failed(result: dict) -> bool:
    if result.get("status") == "error":
        return True
    return any(isinstance(v, dict) and v.get("status") == "error" for v in result.values())


# =============================================================================
# CLI
# =============================================================================

def main(argv: Optional[list] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="Pulse Scheduled Jobs")
    parser.add_argument(
        "job",
        choices=["nightly", "discover", "validate", "rollup", "predict", "patterns"],
        help="Job to run",
    )
    parser.add_argument("--db", default=None, help="Database path (default: $PULSE_DB_PATH)")
    parser.add_argument("--days-back", type=int, default=90, help="Days of history to analyze")
    parser.add_argument("--date", default=None, help="Target date for predict (YYYY-MM-DD)")
    parser.add_argument("--entity", action="append", help="Limit to entity (repeatable)")
    parser.add_argument("--workers", type=int, default=None, help="Max concurrent entities")

    args = parser.parse_args(argv)

    config = PulseConfig()
    if args.db:
        config.db_path = args.db
    if args.workers:
        config.max_workers = args.workers

    job_type = os.environ.get("PULSE_JOB_TYPE", args.job)
    service = PulseService(config)
    try:
        result = run_job(service, job_type, args)
    finally:
        service.close()

    print(f"\n{'=' * 60}")
    print(f"Job: {job_type}")
    print(json.dumps(result, indent=2, default=str))
    print(f"{'=' * 60}")

    return 1 if _failed(result) else 0


if __name__ == "__main__":
    sys.exit(main())
