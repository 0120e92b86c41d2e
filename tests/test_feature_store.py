"""Tests for song features: popularity maths, metric aggregation and similarity lookups."""

from datetime import timedelta

import pytest

from src.api.errors import NotFound
from src.api.event_store import ListeningEventStore
from src.api.feature_store import SongFeatureStore, popularity_score

from conftest import add_feature, listen

AGGREGATE_FIELDS = (
    "total_plays",
    "unique_listeners",
    "avg_completion_rate",
    "skip_rate",
    "like_count",
    "share_count",
    "playlist_add_count",
    "popularity_score",
    "trending_score",
)


def test_popularity_formula():
    # (100/10)*0.3 + 0.8*30 + (1-0.25)*20 + min(20/10, 10) + min(15/5, 10)
    assert popularity_score(100, 0.8, 0.25, 20, 15) == pytest.approx(3 + 24 + 15 + 2 + 3)


def test_popularity_is_capped_at_100():
    assert popularity_score(100000, 1.0, 0.0, 1000, 1000) == 100.0


def test_popularity_never_negative():
    assert popularity_score(0, 0.0, 1.0, 0, 0) == 0.0


def test_update_metrics_is_a_full_overwrite(session, clock):
    listen(session, clock, "u1", "s1", play_ms=200000, song_ms=200000, liked=True)
    listen(session, clock, "u2", "s1", play_ms=50000, song_ms=200000, skipped=True, shared=True)
    listen(session, clock, "u2", "s1", play_ms=100000, song_ms=200000, added_to_playlist=True)
    events = ListeningEventStore(session, clock).query(song_id="s1")
    store = SongFeatureStore(session, clock)

    first = store.update_metrics_from_events("s1", events)
    snapshot = {name: getattr(first, name) for name in AGGREGATE_FIELDS}
    second = store.update_metrics_from_events("s1", events)

    assert {name: getattr(second, name) for name in AGGREGATE_FIELDS} == snapshot
    assert second.total_plays == 3
    assert second.unique_listeners == 2
    assert second.like_count == 1
    assert second.share_count == 1
    assert second.playlist_add_count == 1
    assert second.skip_rate == pytest.approx(1 / 3)
    assert 0 <= second.popularity_score <= 100


def test_update_metrics_without_events_writes_nothing(session, clock):
    store = SongFeatureStore(session, clock)

    assert store.update_metrics_from_events("s1", []) is None
    assert store.get("s1") is None


def test_trending_score_uses_only_recent_events(session, clock):
    listen(session, clock, "u1", "s1", at=clock.now - timedelta(days=30))
    events = ListeningEventStore(session, clock).query(song_id="s1")

    feature = SongFeatureStore(session, clock).update_metrics_from_events("s1", events)

    assert feature.popularity_score > 0
    assert feature.trending_score == 0.0


def test_upsert_content_leaves_aggregates_alone(session, clock):
    add_feature(session, "s1", total_plays=42, popularity_score=12.5)
    store = SongFeatureStore(session, clock)

    feature = store.upsert_content("s1", {"energy": 0.7, "primary_genre": "rock"})

    assert feature.energy == 0.7
    assert feature.primary_genre == "rock"
    assert feature.total_plays == 42
    assert feature.popularity_score == 12.5


def test_upsert_content_rejects_aggregate_fields(session, clock):
    with pytest.raises(ValueError):
        SongFeatureStore(session, clock).upsert_content("s1", {"popularity_score": 99})


def test_find_similar_same_genre_closest_first(session, clock):
    add_feature(session, "seed", primary_genre="jazz", energy=0.3, valence=0.4, danceability=0.5, tempo=100)
    add_feature(session, "close", primary_genre="jazz", energy=0.32, valence=0.41, danceability=0.5, tempo=100)
    add_feature(session, "far", primary_genre="jazz", energy=0.9, valence=0.9, danceability=0.5, tempo=100)
    add_feature(session, "rock", primary_genre="rock", energy=0.3, valence=0.4, danceability=0.5, tempo=100)

    similar = SongFeatureStore(session, clock).find_similar("seed", limit=10)

    assert [s.song_id for s in similar] == ["close", "far"]
    assert similar[0].similarity > similar[1].similarity


def test_find_similar_breaks_ties_by_popularity(session, clock):
    add_feature(session, "seed", primary_genre="pop", energy=0.5, valence=0.5, danceability=0.5, tempo=120)
    add_feature(session, "a", primary_genre="pop", energy=0.75, valence=0.5, danceability=0.5, tempo=120, popularity_score=10)
    add_feature(session, "b", primary_genre="pop", energy=0.25, valence=0.5, danceability=0.5, tempo=120, popularity_score=80)

    similar = SongFeatureStore(session, clock).find_similar("seed", limit=10)

    assert [s.song_id for s in similar] == ["b", "a"]


def test_find_similar_unknown_song(session, clock):
    with pytest.raises(NotFound):
        SongFeatureStore(session, clock).find_similar("missing")


def test_get_trending_orders_and_filters(session, clock):
    add_feature(session, "low", primary_genre="pop", trending_score=10, popularity_score=10, total_plays=10)
    add_feature(session, "high", primary_genre="pop", trending_score=90, popularity_score=80, total_plays=5000)
    add_feature(session, "rock", primary_genre="rock", trending_score=50, popularity_score=50, total_plays=100)
    store = SongFeatureStore(session, clock)

    everything = store.get_trending(None, 10)
    assert [t.song_id for t in everything] == ["high", "rock", "low"]
    # 90*0.4 + 80*0.3 + min(5000/1000, 100)*0.3
    assert everything[0].trend_score == pytest.approx(36 + 24 + 1.5)

    assert [t.song_id for t in store.get_trending("pop", 10)] == ["high", "low"]
    assert [t.song_id for t in store.get_trending(None, 1)] == ["high"]


def test_get_trending_restricted_to_recent_activity(session, clock):
    add_feature(session, "active", trending_score=10)
    add_feature(session, "idle", trending_score=90)
    listen(session, clock, "u1", "active", at=clock.now - timedelta(days=1))
    listen(session, clock, "u1", "idle", at=clock.now - timedelta(days=20))
    store = SongFeatureStore(session, clock)

    recent = store.get_trending(None, 10, active_since=clock.now - timedelta(days=7))

    assert [t.song_id for t in recent] == ["active"]


def test_song_quality_score(session, clock):
    feature = add_feature(
        session, "s1", total_plays=500, avg_completion_rate=0.5, like_count=30, playlist_add_count=20, popularity_score=50
    )

    # 0.5*0.3 + 0.5*0.3 + 0.5*0.2 + 0.5*0.2
    assert feature.quality_score == pytest.approx(0.5)
