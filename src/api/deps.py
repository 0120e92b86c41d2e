"""
FastAPI dependencies that assemble request-scoped components from the handles
stored on `app.state` at startup.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from src.api.analytics import AnalyticsAggregator
from src.api.db import db_session_dep
from src.api.event_store import ListeningEventStore
from src.api.feature_store import SongFeatureStore
from src.api.recommendation_service import RecommendationService


def clock_dep(request: Request) -> Callable[[], datetime]:
    return request.app.state.clock


# PUBLIC_INTERFACE
def analytics_dep(
    db: Session = Depends(db_session_dep),
    clock: Callable[[], datetime] = Depends(clock_dep),
) -> AnalyticsAggregator:
    return AnalyticsAggregator(ListeningEventStore(db, clock), SongFeatureStore(db, clock))


# PUBLIC_INTERFACE
def recommendation_service_dep(
    request: Request,
    db: Session = Depends(db_session_dep),
    clock: Callable[[], datetime] = Depends(clock_dep),
) -> RecommendationService:
    state = request.app.state
    return RecommendationService(
        db,
        state.settings,
        database=state.database,
        executor=state.executor,
        response_cache=state.response_cache,
        clock=clock,
    )
