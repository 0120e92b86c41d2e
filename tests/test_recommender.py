"""Tests for the hybrid recommendation engine."""

from datetime import timedelta
from unittest import mock

import pytest

from src.api.analytics import AnalyticsAggregator
from src.api.event_store import ListeningEventStore
from src.api.feature_store import SongFeatureStore
from src.api.recommender import RecommendationEngine

from conftest import add_feature, listen


def _engine(session, clock):
    return RecommendationEngine(
        AnalyticsAggregator(ListeningEventStore(session, clock), SongFeatureStore(session, clock)),
        clock,
    )


def _catalogue(session):
    """Three jazz songs the user knows, jazz and rock candidates, and a trending pop song."""
    add_feature(session, "jazz-1", primary_genre="jazz", energy=0.3, valence=0.4, danceability=0.4, tempo=100)
    add_feature(session, "jazz-2", primary_genre="jazz", energy=0.32, valence=0.38, danceability=0.4, tempo=104)
    add_feature(session, "jazz-3", primary_genre="jazz", energy=0.28, valence=0.42, danceability=0.4, tempo=96)
    add_feature(session, "jazz-near", primary_genre="jazz", energy=0.31, valence=0.4, danceability=0.4, tempo=100)
    add_feature(session, "jazz-far", primary_genre="jazz", energy=0.9, valence=0.9, danceability=0.9, tempo=180)
    add_feature(session, "rock-near", primary_genre="rock", energy=0.3, valence=0.4, danceability=0.4, tempo=100)
    add_feature(session, "pop-hit", primary_genre="pop", energy=0.8, valence=0.8, trending_score=80, popularity_score=70, total_plays=900)


def test_new_user_gets_trending(session, clock):
    for i in range(7):
        add_feature(session, f"s{i}", trending_score=10 * i, popularity_score=5 * i, total_plays=100 * i)
    engine = _engine(session, clock)

    recommendations = engine.generate("new-user", limit=5)
    trending = SongFeatureStore(session, clock).get_trending(None, 5)

    assert [r.song_id for r in recommendations] == [t.song_id for t in trending]
    assert all(r.reason == "trending" for r in recommendations)
    assert [r.score for r in recommendations] == pytest.approx([t.trend_score / 100 for t in trending])


def test_content_candidates_restricted_to_seed_genre(session, clock):
    _catalogue(session)
    for song_id in ("jazz-1", "jazz-2", "jazz-3"):
        listen(session, clock, "u1", song_id)

    candidates = _engine(session, clock).content_based(["jazz-1", "jazz-2", "jazz-3"], limit=10)

    assert [song_id for song_id, _ in candidates] == ["jazz-near", "jazz-far"]


def test_content_candidates_need_a_genre(session, clock):
    add_feature(session, "untagged", energy=0.5)

    assert _engine(session, clock).content_based(["untagged"], limit=10) == []


def test_generate_excludes_seed_songs_and_blends(session, clock):
    _catalogue(session)
    for song_id in ("jazz-1", "jazz-2", "jazz-3"):
        listen(session, clock, "u1", song_id, at=clock.now - timedelta(days=1))

    recommendations = _engine(session, clock).generate("u1", limit=10)
    by_id = {r.song_id: r for r in recommendations}

    assert not {"jazz-1", "jazz-2", "jazz-3"} & set(by_id)
    assert by_id["jazz-near"].reason == "similar_features"
    assert by_id["pop-hit"].reason == "trending"
    assert recommendations == sorted(recommendations, key=lambda r: -r.score)
    assert all(0 <= r.confidence <= 1 for r in recommendations)


def test_generate_is_deterministic(session, clock):
    _catalogue(session)
    for song_id in ("jazz-1", "jazz-2"):
        listen(session, clock, "u1", song_id)
    listen(session, clock, "u2", "jazz-1")
    listen(session, clock, "u2", "rock-near")
    engine = _engine(session, clock)

    assert engine.generate("u1", limit=10) == engine.generate("u1", limit=10)


def test_collaborative_scores_normalised_to_one(session, clock):
    listen(session, clock, "u1", "shared")
    for neighbour in ("n1", "n2", "n3"):
        listen(session, clock, neighbour, "shared")
        listen(session, clock, neighbour, "popular-with-neighbours")
    listen(session, clock, "n1", "niche", play_ms=20000)

    candidates = _engine(session, clock).collaborative("u1", limit=10)

    assert candidates[0][0] == "popular-with-neighbours"
    assert max(score for _, score in candidates) == 1.0
    assert "shared" not in {song_id for song_id, _ in candidates}


def test_collaborative_without_neighbours(session, clock):
    listen(session, clock, "u1", "lonely")

    assert _engine(session, clock).collaborative("u1", limit=10) == []


def test_time_context_matches_energy_band(session, clock):
    add_feature(session, "evening-usual", energy=0.5, valence=0.5)
    add_feature(session, "in-band", energy=0.6, valence=0.45)
    add_feature(session, "out-of-band", energy=0.95, valence=0.1)
    listen(session, clock, "u1", "evening-usual", at=clock.now - timedelta(days=7))

    candidates = _engine(session, clock).time_context("u1", limit=10)

    assert [song_id for song_id, _ in candidates] == ["in-band"]


def test_failing_source_is_skipped(session, clock):
    _catalogue(session)
    listen(session, clock, "u1", "jazz-1")
    engine = _engine(session, clock)

    with mock.patch.object(engine, "content_based", side_effect=RuntimeError("no features")):
        recommendations = engine.generate("u1", limit=10)

    assert recommendations
    assert all(r.reason != "similar_features" for r in recommendations)


def test_all_sources_failing_falls_back_to_trending(session, clock):
    _catalogue(session)
    listen(session, clock, "u1", "jazz-1")
    engine = _engine(session, clock)
    boom = RuntimeError("store down")

    with mock.patch.object(engine, "content_based", side_effect=boom), \
            mock.patch.object(engine, "collaborative", side_effect=boom), \
            mock.patch.object(engine, "trending_candidates", side_effect=[boom, [("pop-hit", 0.5)]]), \
            mock.patch.object(engine, "time_context", side_effect=boom):
        recommendations = engine.generate("u1", limit=5)

    assert [(r.song_id, r.reason) for r in recommendations] == [("pop-hit", "trending")]


def test_similar_songs(session, clock):
    _catalogue(session)

    similar = _engine(session, clock).similar_songs("jazz-1", limit=10)

    assert similar[0].song_id == "jazz-near"
    assert similar[-1].song_id == "jazz-far"
    assert "rock-near" not in {r.song_id for r in similar}
    assert all(r.reason == "similar_features" for r in similar)


def test_mood_recommendations_confidence_is_mood_score(session, clock):
    add_feature(session, "calm-jazz", primary_genre="jazz", mood="calm", mood_score=0.9, popularity_score=20)
    add_feature(session, "calm-pop", primary_genre="pop", mood="calm", popularity_score=90)
    add_feature(session, "known-jazz", primary_genre="jazz", mood="sad")
    listen(session, clock, "u1", "known-jazz")

    recommendations = _engine(session, clock).mood_recommendations("u1", "calm", limit=10)

    assert [r.song_id for r in recommendations] == ["calm-jazz", "calm-pop"]
    # 1 jazz listen * 0.6 + 20/100 * 0.4
    assert recommendations[0].score == pytest.approx(0.68)
    assert recommendations[0].confidence == 0.9
    assert recommendations[1].confidence == 0.5
    assert all(r.reason == "mood_match" for r in recommendations)


def test_mood_confidence_keeps_a_recorded_zero(session, clock):
    add_feature(session, "unsure", mood="calm", mood_score=0.0, popularity_score=50)
    add_feature(session, "unscored", mood="calm", popularity_score=10)

    recommendations = _engine(session, clock).mood_recommendations("u1", "calm", limit=10)

    assert {r.song_id: r.confidence for r in recommendations} == {"unsure": 0.0, "unscored": 0.5}
