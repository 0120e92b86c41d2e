"""
Scheduler trigger for maintenance jobs:
- POST /jobs/{name} (requires the X-Cron-Secret header)
"""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Header, Query, Request

from src.api.errors import NotFound, Unauthenticated
from src.api.jobs import JOBS, JobContext, run_job
from src.api.schemas import JobResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["Jobs"])


def _check_cron_secret(configured: Optional[str], supplied: Optional[str]) -> None:
    if not configured or not supplied or not hmac.compare_digest(configured, supplied):
        raise Unauthenticated("invalid_cron_secret", "A valid X-Cron-Secret header is required.")


@router.post(
    "/{name}",
    response_model=JobResult,
    summary="Run a maintenance job",
    description="Runs one job synchronously and returns its result. Intended for an external cron.",
    operation_id="run_job",
)
def trigger_job(
    name: str,
    request: Request,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    x_cron_secret: Optional[str] = Header(None),
) -> JobResult:
    state = request.app.state
    _check_cron_secret(state.settings.cron_secret, x_cron_secret)
    if name not in JOBS:
        raise NotFound("job_not_found", f"Unknown job {name}.")

    ctx = JobContext(database=state.database, settings=state.settings, clock=state.clock, limit=limit)
    return JobResult(job=name, result=run_job(name, ctx))
