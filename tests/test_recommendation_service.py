"""Tests for the cache-fronted recommendation service and the stale-refresh batch."""

import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from unittest import mock

import pytest
from sqlalchemy.exc import OperationalError

from src.api.config import Settings
from src.api.constants import EngagementEvent, RecommendationType
from src.api.errors import NotFound
from src.api.models import RecommendationCacheEntry
from src.api.rec_cache import MoodContext, RecommendationCache
from src.api.recommendation_service import (
    RecommendationService,
    mark_user_recommendations_stale,
    refresh_stale_recommendations,
)
from src.api.recommender import Recommendation, RecommendationEngine
from src.api.response_cache import ResponseCache

from conftest import add_feature, listen

INLINE = Settings(recommendation_timeout_seconds=0)


def _seed(session):
    add_feature(session, "jazz-1", primary_genre="jazz", mood="calm", energy=0.3, valence=0.4, danceability=0.4, tempo=100)
    add_feature(session, "jazz-2", primary_genre="jazz", mood="calm", energy=0.35, valence=0.4, danceability=0.4, tempo=100)
    add_feature(session, "pop-hit", primary_genre="pop", mood="happy", trending_score=80, popularity_score=70, total_plays=900)


def test_personalized_generates_then_serves_from_cache(session, clock):
    _seed(session)
    listen(session, clock, "u1", "jazz-1")
    service = RecommendationService(session, INLINE, clock=clock)

    first = service.personalized("u1", limit=5)
    with mock.patch.object(RecommendationEngine, "generate", side_effect=AssertionError("should be cached")):
        second = service.personalized("u1", limit=5)

    assert first.items == second.items
    assert first.cache_id == second.cache_id
    entry = session.get(RecommendationCacheEntry, first.cache_id)
    assert entry.views == 1
    assert entry.algorithm["modelType"] == "hybrid"
    assert entry.metrics["dataPoints"] == len(first.items)


def test_refresh_bypasses_cache(session, clock):
    _seed(session)
    service = RecommendationService(session, INLINE, clock=clock)
    service.personalized("u1", limit=5)

    with mock.patch.object(RecommendationEngine, "generate", return_value=[]) as generate:
        result = service.personalized("u1", limit=5, refresh=True)

    generate.assert_called_once_with("u1", 5)
    assert result.items == []


def test_generation_timeout_falls_back_to_trending(database, session, clock):
    _seed(session)
    session.commit()
    settings = Settings(recommendation_timeout_seconds=0.05)
    executor = ThreadPoolExecutor(max_workers=1)

    def slow(*args):
        time.sleep(0.5)
        return []

    try:
        service = RecommendationService(session, settings, database=database, executor=executor, clock=clock)
        with mock.patch("src.api.recommendation_service._generate_isolated", side_effect=slow):
            result = service.personalized("u1", limit=3)
    finally:
        executor.shutdown(wait=True)

    assert result.items[0].song_id == "pop-hit"
    assert all(r.reason == "trending" for r in result.items)


def _stale_personal_list(session, clock):
    """A committed, stale list holding a song that trending can never produce."""
    cache = RecommendationCache(session, clock=clock)
    entry, _ = cache.get_or_create("u1", RecommendationType.PERSONALIZED)
    cache.update_recommendations(entry.id, [Recommendation("cached-song", 0.9, "similar_features", 0.9)])
    cache.mark_stale("u1")
    session.commit()
    return entry


def test_generation_failure_serves_stale_list(session, clock):
    _seed(session)
    entry = _stale_personal_list(session, clock)
    clock.advance(minutes=5)
    service = RecommendationService(session, INLINE, clock=clock)

    failure = OperationalError("SELECT", {}, Exception("connection reset"))
    with mock.patch.object(RecommendationEngine, "generate", side_effect=failure):
        result = service.personalized("u1", limit=5)

    assert [r.song_id for r in result.items] == ["cached-song"]
    assert result.cache_id == entry.id


def test_generation_timeout_serves_stale_list_over_new_placeholder(database, session, clock):
    _seed(session)
    entry = _stale_personal_list(session, clock)
    clock.advance(minutes=5)
    executor = ThreadPoolExecutor(max_workers=1)

    def slow(*args):
        time.sleep(0.5)
        return []

    try:
        service = RecommendationService(
            session, Settings(recommendation_timeout_seconds=0.05), database=database, executor=executor, clock=clock
        )
        with mock.patch("src.api.recommendation_service._generate_isolated", side_effect=slow):
            result = service.personalized("u1", limit=5)
    finally:
        executor.shutdown(wait=True)

    assert [r.song_id for r in result.items] == ["cached-song"]
    assert result.cache_id == entry.id


def test_similar_is_memoised(session, clock):
    _seed(session)
    memo = ResponseCache()
    service = RecommendationService(session, INLINE, response_cache=memo, clock=clock)

    first = service.similar("u1", "jazz-1", limit=5)
    assert memo.get("similar:jazz-1:5") == [r.to_dict() for r in first.items]

    with mock.patch.object(RecommendationEngine, "similar_songs", side_effect=AssertionError("should be memoised")):
        other_user = service.similar("u2", "jazz-1", limit=5)

    assert other_user.items == first.items


def test_similar_unknown_song(session, clock):
    service = RecommendationService(session, INLINE, response_cache=ResponseCache(), clock=clock)

    with pytest.raises(NotFound):
        service.similar("u1", "missing", limit=5)


def test_mood_results_are_cached_per_mood(session, clock):
    _seed(session)
    service = RecommendationService(session, INLINE, clock=clock)

    calm = service.mood("u1", "calm", limit=5)
    happy = service.mood("u1", "happy", limit=5)

    assert {r.song_id for r in calm.items} == {"jazz-1", "jazz-2"}
    assert [r.song_id for r in happy.items] == ["pop-hit"]
    assert calm.cache_id != happy.cache_id


def test_engagement_requires_ownership(session, clock):
    _seed(session)
    service = RecommendationService(session, INLINE, clock=clock)
    result = service.personalized("u1", limit=5)

    with pytest.raises(NotFound):
        service.track_engagement("someone-else", result.cache_id, EngagementEvent.PLAY)
    with pytest.raises(NotFound):
        service.track_engagement("u1", uuid.uuid4(), EngagementEvent.PLAY)

    entry = service.track_engagement("u1", result.cache_id, EngagementEvent.LIKE)
    assert entry.likes == 1


def test_refresh_is_type_aware(database, session, clock):
    _seed(session)
    listen(session, clock, "u1", "jazz-1")
    cache = RecommendationCache(session, clock=clock)
    personal, _ = cache.get_or_create("u1", RecommendationType.PERSONALIZED)
    mood, _ = cache.get_or_create("u1", RecommendationType.MOOD_BASED, MoodContext("happy"))
    session.commit()

    clock.advance(hours=19)
    result = refresh_stale_recommendations(database, INLINE, limit=10, clock=clock)

    assert (result.updated, result.total) == (2, 2)
    session.expire_all()
    refreshed_mood = session.get(RecommendationCacheEntry, mood.id)
    assert [r["songId"] for r in refreshed_mood.recommendations] == ["pop-hit"]
    assert refreshed_mood.algorithm["features"] == ["mood"]
    assert session.get(RecommendationCacheEntry, personal.id).algorithm["modelType"] == "hybrid"


def test_refresh_skips_failing_entries(database, session, clock):
    _seed(session)
    cache = RecommendationCache(session, clock=clock)
    cache.get_or_create("u1", RecommendationType.PERSONALIZED)
    cache.get_or_create("u2", RecommendationType.PERSONALIZED)
    session.commit()
    clock.advance(hours=19)

    original = RecommendationEngine.generate

    def flaky(self, user_id, limit=20):
        if user_id == "u1":
            raise RuntimeError("boom")
        return original(self, user_id, limit)

    with mock.patch.object(RecommendationEngine, "generate", flaky):
        result = refresh_stale_recommendations(database, INLINE, clock=clock)

    assert (result.updated, result.total) == (1, 2)


def test_mark_user_recommendations_stale(database, session, clock):
    cache = RecommendationCache(session, clock=clock)
    entry, _ = cache.get_or_create("u1", RecommendationType.PERSONALIZED)
    session.commit()

    mark_user_recommendations_stale(database, "u1", clock=clock)

    session.expire_all()
    assert session.get(RecommendationCacheEntry, entry.id).is_stale is True
