"""Tests for the maintenance jobs and their CLI."""

import json
from datetime import timedelta
from unittest import mock

import pytest

from src.api import jobs
from src.api.config import Settings
from src.api.constants import RecommendationType
from src.api.jobs import JOBS, JobContext, run_job
from src.api.rec_cache import RecommendationCache

from conftest import add_feature, listen


def _ctx(database, clock, **kwargs):
    return JobContext(database=database, settings=Settings(recommendation_timeout_seconds=0), clock=clock, **kwargs)


def test_every_scheduled_job_has_a_cron_expression():
    scheduled = {name: job.schedule for name, job in JOBS.items() if job.schedule}

    assert scheduled == {
        "update-popularity": "0 2 * * *",
        "refresh-recommendations": "0 * * * *",
        "cleanup": "0 3 * * 0",
        "trending-snapshot": "0 * * * *",
    }


def test_unknown_job(database, clock):
    with pytest.raises(KeyError):
        run_job("defragment", _ctx(database, clock))


def test_cleanup_applies_retention(database, clock):
    with database.session() as db:
        listen(db, clock, "u1", "old", at=clock.now - timedelta(days=120))
        listen(db, clock, "u1", "recent", at=clock.now - timedelta(days=2))
        RecommendationCache(db, clock=clock).get_or_create("u1", RecommendationType.PERSONALIZED)

    clock.advance(hours=25)
    result = run_job("cleanup", _ctx(database, clock))

    assert result == {"deletedEvents": 1, "deletedCacheEntries": 1}


def test_refresh_recommendations_reports_counts(database, clock):
    with database.session() as db:
        add_feature(db, "pop-hit", primary_genre="pop", trending_score=80, popularity_score=70)
        RecommendationCache(db, clock=clock).get_or_create("u1", RecommendationType.PERSONALIZED)

    clock.advance(hours=19)
    result = run_job("refresh-recommendations", _ctx(database, clock, limit=5))

    assert result == {"refreshed": 1, "total": 1}


def test_cli_prints_json(database, capsys):
    with mock.patch.object(jobs, "Database", return_value=database):
        exit_code = jobs.main(["init-db"])

    assert exit_code == 0
    assert json.loads(capsys.readouterr().out) == {"job": "init-db", "result": {"created": True}}


def test_cli_reports_failure(database):
    with mock.patch.object(jobs, "Database", return_value=database), \
            mock.patch.object(jobs, "run_job", side_effect=RuntimeError("db down")):
        assert jobs.main(["cleanup"]) == 1
