"""
Recommendation service: the cache-fronted entry points used by the HTTP routes and
the refresh job.

The cache is an optimisation only. Cache reads and writes that fail are logged and
skipped, and generation runs under a time budget; when the budget is exceeded the
caller gets whatever the cache holds (stale entries included) or the trending list.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.api.analytics import AnalyticsAggregator, BatchResult
from src.api.config import Settings
from src.api.constants import EngagementEvent, ModelType, RecommendationType
from src.api.db import Database
from src.api.errors import NotFound
from src.api.event_store import ListeningEventStore
from src.api.feature_store import SongFeatureStore, TrendingSong
from src.api.models import RecommendationCacheEntry, utcnow
from src.api.rec_cache import (
    CacheContext,
    MoodContext,
    NoContext,
    RecommendationCache,
    SongContext,
    TypePerformance,
    context_of,
)
from src.api.recommender import Recommendation, RecommendationEngine
from src.api.response_cache import ResponseCache

logger = logging.getLogger(__name__)

ALGORITHM_VERSION = "1.0"
REFRESH_LIST_SIZE = 20
SIMILAR_MEMO_TTL_SECONDS = 3600
SIMILAR_MEMO_PREFIX = "similar:"


@dataclass(frozen=True)
class RecommendationList:
    items: List[Recommendation]
    cache_id: Optional[uuid.UUID] = None


def _algorithm(model_type: ModelType, features: List[str]) -> dict:
    return {"version": ALGORITHM_VERSION, "modelType": model_type.value, "features": features}


HYBRID_ALGORITHM = _algorithm(ModelType.HYBRID, ["content_based", "collaborative", "listening_history", "time_context"])
MOOD_ALGORITHM = _algorithm(ModelType.CONTENT_BASED, ["mood"])
SIMILAR_ALGORITHM = _algorithm(ModelType.CONTENT_BASED, ["energy", "valence", "danceability", "tempo"])


def build_engine(session: Session, clock: Callable[[], datetime] = utcnow) -> RecommendationEngine:
    events = ListeningEventStore(session, clock)
    features = SongFeatureStore(session, clock)
    return RecommendationEngine(AnalyticsAggregator(events, features), clock)


class RecommendationService:
    def __init__(
        self,
        session: Session,
        settings: Settings,
        database: Optional[Database] = None,
        executor: Optional[Executor] = None,
        response_cache: Optional[ResponseCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session
        self.settings = settings
        self.database = database
        self.executor = executor
        self.response_cache = response_cache
        self.clock = clock
        self.engine = build_engine(session, clock)
        self.cache = RecommendationCache(
            session,
            ttl_hours=settings.recommendation_cache_ttl_hours,
            refresh_fraction=settings.recommendation_refresh_fraction,
            clock=clock,
        )

    # PUBLIC_INTERFACE
    def personalized(self, user_id: str, limit: int = 20, refresh: bool = False) -> RecommendationList:
        """Cached hybrid recommendations; `refresh` forces regeneration."""
        entry = None
        if not refresh:
            entry = self._lookup(user_id, RecommendationType.PERSONALIZED, NoContext())
            if entry is not None and entry.recommendations:
                self._track_view(entry.id)
                return RecommendationList(self._cached_items(entry, limit), entry.id)

        started = time.monotonic()
        try:
            recommendations = self._generate_within_budget(user_id, limit)
        except SQLAlchemyError:
            logger.exception("recommendation_generation_failed: user_id=%s", user_id)
            self._rollback()
            return self._degraded(user_id, RecommendationType.PERSONALIZED, NoContext(), limit)

        if recommendations is None:
            return self._degraded(user_id, RecommendationType.PERSONALIZED, NoContext(), limit)

        cache_id = self._store(entry, user_id, RecommendationType.PERSONALIZED, NoContext(), recommendations, HYBRID_ALGORITHM, started)
        return RecommendationList(recommendations, cache_id)

    # PUBLIC_INTERFACE
    def similar(self, user_id: str, song_id: str, limit: int = 20) -> RecommendationList:
        """Songs similar to `song_id`. Raises NotFound when the song has no features."""
        context = SongContext(song_id)
        entry = self._lookup(user_id, RecommendationType.SIMILAR_TO_SONG, context)
        if entry is not None and entry.recommendations:
            return RecommendationList(self._cached_items(entry, limit), entry.id)

        started = time.monotonic()
        memo_key = f"{SIMILAR_MEMO_PREFIX}{song_id}:{limit}"
        memo = self.response_cache.get(memo_key) if self.response_cache else None
        if memo is not None:
            recommendations = [Recommendation.from_dict(d) for d in memo]
        else:
            recommendations = self.engine.similar_songs(song_id, limit)
            if self.response_cache:
                self.response_cache.set(memo_key, [r.to_dict() for r in recommendations], SIMILAR_MEMO_TTL_SECONDS)

        cache_id = self._store(entry, user_id, RecommendationType.SIMILAR_TO_SONG, context, recommendations, SIMILAR_ALGORITHM, started)
        return RecommendationList(recommendations, cache_id)

    # PUBLIC_INTERFACE
    def mood(self, user_id: str, mood: str, limit: int = 20) -> RecommendationList:
        context = MoodContext(mood)
        entry = self._lookup(user_id, RecommendationType.MOOD_BASED, context)
        if entry is not None and entry.recommendations:
            return RecommendationList(self._cached_items(entry, limit), entry.id)

        started = time.monotonic()
        recommendations = self.engine.mood_recommendations(user_id, mood, limit)
        cache_id = self._store(entry, user_id, RecommendationType.MOOD_BASED, context, recommendations, MOOD_ALGORITHM, started)
        return RecommendationList(recommendations, cache_id)

    # PUBLIC_INTERFACE
    def trending_songs(self, genre: Optional[str] = None, limit: int = 20, days: Optional[int] = 7) -> List[TrendingSong]:
        """Feature-store trending list, optionally restricted to songs played in the last `days` days."""
        active_since = self.engine.events.window_start(days) if days else None
        try:
            return self.engine.features.get_trending(genre, limit, active_since=active_since)
        except SQLAlchemyError:
            logger.exception("trending_lookup_failed: genre=%s", genre)
            self._rollback()
            return []

    # PUBLIC_INTERFACE
    def track_engagement(
        self,
        user_id: str,
        cache_id: uuid.UUID,
        event: EngagementEvent,
        completion_rate: Optional[float] = None,
    ) -> RecommendationCacheEntry:
        entry = self.cache.get(cache_id)
        if entry is None or entry.user_id != user_id:
            raise NotFound("recommendation_cache_not_found", "Recommendation list not found.")
        updated = self.cache.track_engagement(cache_id, event, completion_rate)
        if updated is None:
            raise NotFound("recommendation_cache_not_found", "Recommendation list not found.")
        return updated

    # PUBLIC_INTERFACE
    def performance(self, user_id: str, days: int = 30) -> List[TypePerformance]:
        return self.cache.get_user_performance(user_id, days)

    # PUBLIC_INTERFACE
    def regenerate(self, user_id: str, rec_type: RecommendationType, context: CacheContext) -> tuple:
        """Fresh list for a cache key, chosen by recommendation type. Returns (items, algorithm)."""
        if rec_type is RecommendationType.MOOD_BASED and isinstance(context, MoodContext):
            return self.engine.mood_recommendations(user_id, context.mood, REFRESH_LIST_SIZE), MOOD_ALGORITHM
        if rec_type is RecommendationType.SIMILAR_TO_SONG and isinstance(context, SongContext):
            return self.engine.similar_songs(context.song_id, REFRESH_LIST_SIZE), SIMILAR_ALGORITHM
        return self.engine.generate(user_id, REFRESH_LIST_SIZE), HYBRID_ALGORITHM

    def _cached_items(self, entry: RecommendationCacheEntry, limit: int) -> List[Recommendation]:
        return [Recommendation.from_dict(d) for d in entry.recommendations[:limit]]

    def _lookup(self, user_id: str, rec_type: RecommendationType, context: CacheContext) -> Optional[RecommendationCacheEntry]:
        try:
            entry, _ = self.cache.get_or_create(user_id, rec_type, context)
            return entry
        except SQLAlchemyError:
            logger.warning("recommendation_cache_read_failed: user_id=%s type=%s", user_id, rec_type.value, exc_info=True)
            self._rollback()
            return None

    def _store(
        self,
        entry: Optional[RecommendationCacheEntry],
        user_id: str,
        rec_type: RecommendationType,
        context: CacheContext,
        recommendations: List[Recommendation],
        algorithm: dict,
        started: float,
    ) -> Optional[uuid.UUID]:
        metrics = {
            "generationTime": round((time.monotonic() - started) * 1000, 3),
            "dataPoints": len(recommendations),
        }
        try:
            if entry is None:
                entry, _ = self.cache.get_or_create(user_id, rec_type, context)
            self.cache.update_recommendations(entry.id, recommendations, algorithm, metrics)
            return entry.id
        except SQLAlchemyError:
            logger.warning("recommendation_cache_write_failed: user_id=%s type=%s", user_id, rec_type.value, exc_info=True)
            self._rollback()
            return None

    def _track_view(self, cache_id: uuid.UUID) -> None:
        try:
            self.cache.track_engagement(cache_id, EngagementEvent.VIEW)
        except SQLAlchemyError:
            logger.warning("recommendation_view_tracking_failed: cache_id=%s", cache_id, exc_info=True)
            self._rollback()

    def _rollback(self) -> None:
        try:
            self.session.rollback()
        except SQLAlchemyError:
            logger.warning("session_rollback_failed", exc_info=True)

    def _generate_within_budget(self, user_id: str, limit: int) -> Optional[List[Recommendation]]:
        """Run the engine; None means the time budget ran out."""
        budget = self.settings.recommendation_timeout_seconds
        if not budget or budget <= 0 or self.database is None or self.executor is None:
            return self.engine.generate(user_id, limit)

        future = self.executor.submit(_generate_isolated, self.database, user_id, limit, self.clock)
        try:
            return future.result(timeout=budget)
        except FutureTimeout:
            logger.warning("recommendation_generation_timeout: user_id=%s budget_seconds=%s", user_id, budget)
            return None

    def _degraded(self, user_id: str, rec_type: RecommendationType, context: CacheContext, limit: int) -> RecommendationList:
        """Last cached list for the key (even if stale), else trending, else nothing."""
        try:
            entry = self.cache.latest(user_id, rec_type, context)
            if entry is not None:
                return RecommendationList(self._cached_items(entry, limit), entry.id)
            return RecommendationList(self.engine.trending(limit))
        except SQLAlchemyError:
            logger.exception("recommendation_fallback_failed: user_id=%s", user_id)
            self._rollback()
            return RecommendationList([])


def _generate_isolated(database: Database, user_id: str, limit: int, clock: Callable[[], datetime]) -> List[Recommendation]:
    with database.session() as db:
        return build_engine(db, clock).generate(user_id, limit)


# PUBLIC_INTERFACE
def mark_user_recommendations_stale(database: Database, user_id: str, clock: Callable[[], datetime] = utcnow) -> None:
    """Background task: flag a user's cached lists for regeneration. Never raises."""
    try:
        with database.session() as db:
            marked = RecommendationCache(db, clock=clock).mark_stale(user_id)
        logger.info("recommendations_marked_stale: user_id=%s entries=%s", user_id, marked)
    except Exception:
        logger.exception("recommendations_mark_stale_failed: user_id=%s", user_id)


# PUBLIC_INTERFACE
def refresh_stale_recommendations(
    database: Database,
    settings: Settings,
    limit: int = 100,
    clock: Callable[[], datetime] = utcnow,
) -> BatchResult:
    """
    Regenerate cache entries that are past `refresh_after` or flagged stale.

    Each entry is refreshed in its own transaction; failures are logged and skipped.
    """
    with database.session() as db:
        cache = RecommendationCache(
            db,
            ttl_hours=settings.recommendation_cache_ttl_hours,
            refresh_fraction=settings.recommendation_refresh_fraction,
            clock=clock,
        )
        stale = [(e.id, e.user_id, RecommendationType(e.type), context_of(e)) for e in cache.get_stale_entries(limit)]

    refreshed = 0
    for cache_id, user_id, rec_type, context in stale:
        try:
            with database.session() as db:
                service = RecommendationService(db, settings, clock=clock)
                started = time.monotonic()
                items, algorithm = service.regenerate(user_id, rec_type, context)
                metrics = {"generationTime": round((time.monotonic() - started) * 1000, 3), "dataPoints": len(items)}
                service.cache.update_recommendations(cache_id, items, algorithm, metrics)
            refreshed += 1
        except Exception:
            logger.exception("recommendation_refresh_failed: cache_id=%s user_id=%s", cache_id, user_id)

    logger.info("recommendation_caches_refreshed: refreshed=%s total=%s", refreshed, len(stale))
    return BatchResult(updated=refreshed, total=len(stale))
