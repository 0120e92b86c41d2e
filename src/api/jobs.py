"""
Periodic maintenance jobs.

Each job is idempotent and safe to run alongside live traffic. They are triggered
by an external scheduler, either through this CLI:

    python -m src.api.jobs update-popularity
    python -m src.api.jobs refresh-recommendations --limit 100

or through `POST /jobs/{name}` with the `X-Cron-Secret` header.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from src.api.analytics import AnalyticsAggregator, recalculate_popularity_scores
from src.api.config import Settings, configure_logging
from src.api.constants import STANDARD_GENRES
from src.api.db import Database
from src.api.event_store import ListeningEventStore
from src.api.feature_store import SongFeatureStore
from src.api.models import utcnow
from src.api.rec_cache import RecommendationCache
from src.api.recommendation_service import refresh_stale_recommendations

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_LIMIT = 100
POPULARITY_WINDOW_DAYS = 90
SNAPSHOT_GENRE_LIMIT = 20
SNAPSHOT_GLOBAL_LIMIT = 50
SNAPSHOT_WINDOW_DAYS = 7


@dataclass(frozen=True)
class JobContext:
    database: Database
    settings: Settings
    clock: Callable[[], datetime] = utcnow
    limit: Optional[int] = None


@dataclass(frozen=True)
class Job:
    name: str
    schedule: Optional[str]  # cron expression, UTC; None for on-demand jobs
    description: str
    run: Callable[[JobContext], Dict[str, Any]]


def _update_popularity(ctx: JobContext) -> Dict[str, Any]:
    result = recalculate_popularity_scores(ctx.database, POPULARITY_WINDOW_DAYS, ctx.clock)
    return {"updated": result.updated, "total": result.total}


def _refresh_recommendations(ctx: JobContext) -> Dict[str, Any]:
    result = refresh_stale_recommendations(ctx.database, ctx.settings, ctx.limit or DEFAULT_REFRESH_LIMIT, ctx.clock)
    return {"refreshed": result.updated, "total": result.total}


def _cleanup(ctx: JobContext) -> Dict[str, Any]:
    with ctx.database.session() as db:
        deleted_events = ListeningEventStore(db, ctx.clock).purge_older_than(ctx.settings.listening_retention_days)
    with ctx.database.session() as db:
        deleted_entries = RecommendationCache(db, clock=ctx.clock).purge_expired()
    return {"deletedEvents": deleted_events, "deletedCacheEntries": deleted_entries}


def _trending_snapshot(ctx: JobContext) -> Dict[str, Any]:
    counts: Dict[str, Any] = {}
    with ctx.database.session() as db:
        analytics = AnalyticsAggregator(ListeningEventStore(db, ctx.clock), SongFeatureStore(db, ctx.clock))
        for genre in STANDARD_GENRES:
            counts[genre] = len(analytics.get_trending_songs(genre, SNAPSHOT_GENRE_LIMIT, SNAPSHOT_WINDOW_DAYS))
        counts["global"] = len(analytics.get_trending_songs(None, SNAPSHOT_GLOBAL_LIMIT, SNAPSHOT_WINDOW_DAYS))
    logger.info("trending_snapshot: %s", counts)
    return counts


def _init_db(ctx: JobContext) -> Dict[str, Any]:
    ctx.database.create_all()
    return {"created": True}


JOBS: Dict[str, Job] = {
    job.name: job
    for job in (
        Job("update-popularity", "0 2 * * *", "Recalculate popularity and trending scores for every song.", _update_popularity),
        Job("refresh-recommendations", "0 * * * *", "Regenerate stale recommendation lists.", _refresh_recommendations),
        Job("cleanup", "0 3 * * 0", "Delete listening events past retention and expired recommendation lists.", _cleanup),
        Job("trending-snapshot", "0 * * * *", "Compute per-genre and global trending lists.", _trending_snapshot),
        Job("init-db", None, "Create missing tables.", _init_db),
    )
}


# PUBLIC_INTERFACE
def run_job(name: str, ctx: JobContext) -> Dict[str, Any]:
    """Run one registered job and return its result. Raises KeyError for an unknown job."""
    job = JOBS[name]
    logger.info("job_started: job=%s", name)
    result = job.run(ctx)
    logger.info("job_finished: job=%s result=%s", name, result)
    return result


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a maintenance job.",
        epilog="\n".join(f"{j.name:<24} {j.schedule or 'on demand':<12} {j.description}" for j in JOBS.values()),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("job", choices=sorted(JOBS), help="Job to run")
    parser.add_argument("--limit", type=int, default=None, help="Batch size for refresh-recommendations")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    database = Database()
    try:
        result = run_job(args.job, JobContext(database=database, settings=settings, limit=args.limit))
    except Exception:
        logger.exception("job_failed: job=%s", args.job)
        return 1
    finally:
        database.dispose()

    print(json.dumps({"job": args.job, "result": result}))
    return 0


if __name__ == "__main__":
    sys.exit(main())
