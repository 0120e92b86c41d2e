"""
Listening analytics endpoints (authenticated):
- POST /analytics/track
- GET /analytics/stats, /top-songs, /time-patterns, /genre-preferences, /mood-preferences
- GET /analytics/trending
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from sqlalchemy.exc import SQLAlchemyError

from src.api.analytics import AnalyticsAggregator, update_song_metrics_in_background
from src.api.auth import Identity, get_current_identity
from src.api.deps import analytics_dep, clock_dep
from src.api.errors import DependencyUnavailable
from src.api.event_store import NewListeningEvent
from src.api.recommendation_service import mark_user_recommendations_stale
from src.api.schemas import (
    EventTrendingOut,
    GenreCountOut,
    MoodCountOut,
    TimePatternOut,
    TopSongOut,
    TrackListeningRequest,
    TrackListeningResponse,
    UserStatsOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["Analytics"])


@router.post(
    "/track",
    response_model=TrackListeningResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Track a listen",
    description="Records one play. Song metrics are refreshed in the background after the response.",
    operation_id="track_listening",
)
def track_listening(
    body: TrackListeningRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_current_identity),
    analytics: AnalyticsAggregator = Depends(analytics_dep),
    clock: Callable[[], datetime] = Depends(clock_dep),
) -> TrackListeningResponse:
    """Append a listening event for the caller."""
    data = NewListeningEvent(
        user_id=identity.user_id,
        song_id=body.song_id,
        play_duration_ms=body.play_duration,
        song_duration_ms=body.song_duration,
        skipped=body.skipped,
        skip_position_ms=body.skip_position,
        source=body.source.value,
        device_type=body.device_type.value,
        network_type=body.network_type.value if body.network_type else None,
        quality=body.quality.value,
        liked=body.liked,
        added_to_playlist=body.added_to_playlist,
        shared=body.shared,
        replayed=body.replayed,
        session_id=body.session_id,
        session_position=body.session_position,
    )
    try:
        event = analytics.track_listening(data)
        # Commit before the metric update reads the event log.
        analytics.session.commit()
    except SQLAlchemyError as exc:
        logger.exception("listening_track_failed: user_id=%s song_id=%s", identity.user_id, body.song_id)
        raise DependencyUnavailable("tracking_unavailable", "Could not record the listen; please retry.") from exc

    database = request.app.state.database
    settings = request.app.state.settings
    background_tasks.add_task(update_song_metrics_in_background, database, body.song_id, settings.listening_retention_days, clock)
    if body.liked or body.added_to_playlist:
        background_tasks.add_task(mark_user_recommendations_stale, database, identity.user_id, clock)

    return TrackListeningResponse(pattern_id=event.id)


@router.get(
    "/stats",
    response_model=UserStatsOut,
    summary="Listening statistics",
    description="Aggregate statistics over the caller's last `days` days. All zeros when there were no plays.",
    operation_id="get_user_stats",
)
def get_user_stats(
    days: int = Query(30, ge=1, le=365),
    identity: Identity = Depends(get_current_identity),
    analytics: AnalyticsAggregator = Depends(analytics_dep),
) -> UserStatsOut:
    stats = analytics.get_user_stats(identity.user_id, days)
    if stats is None:
        return UserStatsOut()
    return UserStatsOut(
        total_plays=stats.total_plays,
        total_duration=stats.total_duration,
        avg_completion_rate=stats.avg_completion_rate,
        skip_rate=stats.skip_rate,
        unique_songs_count=stats.unique_songs_count,
        favorite_source=stats.favorite_source,
    )


@router.get(
    "/top-songs",
    response_model=List[TopSongOut],
    summary="Most played songs",
    operation_id="get_user_top_songs",
)
def get_user_top_songs(
    limit: int = Query(20, ge=1, le=100),
    days: int = Query(30, ge=1, le=365),
    identity: Identity = Depends(get_current_identity),
    analytics: AnalyticsAggregator = Depends(analytics_dep),
) -> List[TopSongOut]:
    return [
        TopSongOut(
            song_id=s.song_id,
            play_count=s.play_count,
            avg_completion_rate=s.avg_completion_rate,
            like_count=s.like_count,
            total_duration=s.total_duration,
        )
        for s in analytics.get_user_top_songs(identity.user_id, limit, days)
    ]


@router.get(
    "/time-patterns",
    response_model=List[TimePatternOut],
    summary="Listening by hour and weekday",
    description="Play counts per (hourOfDay, dayOfWeek) over all of the caller's history; dayOfWeek 0 is Sunday.",
    operation_id="get_user_time_patterns",
)
def get_user_time_patterns(
    identity: Identity = Depends(get_current_identity),
    analytics: AnalyticsAggregator = Depends(analytics_dep),
) -> List[TimePatternOut]:
    return [
        TimePatternOut(hour_of_day=p.hour_of_day, day_of_week=p.day_of_week, count=p.count)
        for p in analytics.get_user_time_patterns(identity.user_id)
    ]


@router.get(
    "/genre-preferences",
    response_model=List[GenreCountOut],
    summary="Genre histogram",
    operation_id="get_user_genre_preferences",
)
def get_user_genre_preferences(
    days: int = Query(30, ge=1, le=365),
    identity: Identity = Depends(get_current_identity),
    analytics: AnalyticsAggregator = Depends(analytics_dep),
) -> List[GenreCountOut]:
    return [GenreCountOut(genre=c.label, count=c.count) for c in analytics.get_user_genre_preferences(identity.user_id, days)]


@router.get(
    "/mood-preferences",
    response_model=List[MoodCountOut],
    summary="Mood histogram",
    operation_id="get_user_mood_preferences",
)
def get_user_mood_preferences(
    days: int = Query(30, ge=1, le=365),
    identity: Identity = Depends(get_current_identity),
    analytics: AnalyticsAggregator = Depends(analytics_dep),
) -> List[MoodCountOut]:
    return [MoodCountOut(mood=c.label, count=c.count) for c in analytics.get_user_mood_preferences(identity.user_id, days)]


@router.get(
    "/trending",
    response_model=List[EventTrendingOut],
    summary="Most active songs",
    description="Songs ranked by recent listening activity. A genre filter is applied after ranking.",
    operation_id="get_event_trending_songs",
)
def get_trending_songs(
    genre: Optional[str] = Query(None, description="Optional primary genre filter."),
    limit: int = Query(20, ge=1, le=100),
    days: int = Query(7, ge=1, le=90),
    identity: Identity = Depends(get_current_identity),
    analytics: AnalyticsAggregator = Depends(analytics_dep),
) -> List[EventTrendingOut]:
    return [
        EventTrendingOut(
            song_id=t.song_id,
            play_count=t.play_count,
            unique_listeners=t.unique_listeners,
            avg_completion_rate=t.avg_completion_rate,
            trend_score=t.trend_score,
        )
        for t in analytics.get_trending_songs(genre, limit, days)
    ]
