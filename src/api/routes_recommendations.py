"""
Recommendation endpoints (authenticated).

List endpoints return the items in the body and, when the list is held in the
recommendation cache, its id in the `X-Recommendation-Cache-Id` header so clients
can report engagement against it.
"""

from __future__ import annotations

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Response

from src.api.auth import Identity, get_current_identity
from src.api.constants import Mood
from src.api.deps import recommendation_service_dep
from src.api.recommendation_service import RecommendationList, RecommendationService
from src.api.schemas import (
    EngagementRequest,
    EngagementResponse,
    PerformanceOut,
    RecommendationOut,
    TrendingOut,
)

router = APIRouter(prefix="/recommendations", tags=["Recommendations"])

CACHE_ID_HEADER = "X-Recommendation-Cache-Id"


def _render(result: RecommendationList, response: Response) -> List[RecommendationOut]:
    if result.cache_id is not None:
        response.headers[CACHE_ID_HEADER] = str(result.cache_id)
    return [
        RecommendationOut(song_id=r.song_id, score=r.score, reason=r.reason, confidence=r.confidence)
        for r in result.items
    ]


@router.get(
    "",
    response_model=List[RecommendationOut],
    summary="Personalised recommendations",
    description="Hybrid recommendations for the caller, served from cache unless `refresh` is set.",
    operation_id="get_recommendations",
)
def get_recommendations(
    response: Response,
    limit: int = Query(20, ge=1, le=100),
    refresh: bool = Query(False, description="Regenerate instead of serving the cached list."),
    identity: Identity = Depends(get_current_identity),
    service: RecommendationService = Depends(recommendation_service_dep),
) -> List[RecommendationOut]:
    return _render(service.personalized(identity.user_id, limit, refresh), response)


@router.get(
    "/similar/{song_id}",
    response_model=List[RecommendationOut],
    summary="Songs similar to a song",
    operation_id="get_similar_songs",
    responses={404: {"description": "No features recorded for the song"}},
)
def get_similar_songs(
    response: Response,
    song_id: str = Path(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    service: RecommendationService = Depends(recommendation_service_dep),
) -> List[RecommendationOut]:
    return _render(service.similar(identity.user_id, song_id, limit), response)


@router.get(
    "/mood/{mood}",
    response_model=List[RecommendationOut],
    summary="Recommendations for a mood",
    operation_id="get_mood_recommendations",
)
def get_mood_recommendations(
    response: Response,
    mood: Mood,
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    service: RecommendationService = Depends(recommendation_service_dep),
) -> List[RecommendationOut]:
    return _render(service.mood(identity.user_id, mood.value, limit), response)


@router.get(
    "/trending",
    response_model=List[TrendingOut],
    summary="Trending songs",
    description="Songs ranked by trend score among those played in the last `days` days.",
    operation_id="get_trending_recommendations",
)
def get_trending(
    genre: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    days: int = Query(7, ge=1, le=90),
    identity: Identity = Depends(get_current_identity),
    service: RecommendationService = Depends(recommendation_service_dep),
) -> List[TrendingOut]:
    return [
        TrendingOut(
            song_id=t.song_id,
            trend_score=t.trend_score,
            popularity_score=t.popularity_score,
            total_plays=t.total_plays,
        )
        for t in service.trending_songs(genre, limit, days)
    ]


@router.get(
    "/performance",
    response_model=List[PerformanceOut],
    summary="Recommendation performance",
    description="Engagement with the caller's recommendation lists per type, most effective first.",
    operation_id="get_recommendation_performance",
)
def get_performance(
    days: int = Query(30, ge=1, le=365),
    identity: Identity = Depends(get_current_identity),
    service: RecommendationService = Depends(recommendation_service_dep),
) -> List[PerformanceOut]:
    return [
        PerformanceOut(
            type=p.type,
            total_views=p.total_views,
            total_plays=p.total_plays,
            total_likes=p.total_likes,
            total_skips=p.total_skips,
            avg_ctr=p.avg_ctr,
            avg_completion_rate=p.avg_completion_rate,
            count=p.count,
            effectiveness=p.effectiveness,
        )
        for p in service.performance(identity.user_id, days)
    ]


@router.post(
    "/{cache_id}/engagement",
    response_model=EngagementResponse,
    summary="Report engagement",
    description="Counts a view, play, like or skip against one of the caller's recommendation lists.",
    operation_id="track_recommendation_engagement",
    responses={404: {"description": "Unknown list, or the list belongs to another user"}},
)
def track_engagement(
    cache_id: uuid.UUID,
    body: EngagementRequest,
    identity: Identity = Depends(get_current_identity),
    service: RecommendationService = Depends(recommendation_service_dep),
) -> EngagementResponse:
    entry = service.track_engagement(identity.user_id, cache_id, body.event, body.completion_rate)
    return EngagementResponse(
        cache_id=entry.id,
        views=entry.views,
        plays=entry.plays,
        likes=entry.likes,
        skips=entry.skips,
        click_through_rate=entry.click_through_rate,
        avg_completion_rate=entry.avg_completion_rate,
        effectiveness=entry.effectiveness,
    )
