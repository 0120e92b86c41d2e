"""Tests for the listening event log."""

from datetime import datetime, timedelta, timezone

import pytest

from src.api.errors import ValidationFailure
from src.api.event_store import ListeningEventStore, NewListeningEvent, completion_rate, day_of_week

from conftest import listen


def test_completion_rate_clamps_to_one():
    """A play longer than the song counts as exactly one full play."""
    assert completion_rate(240000, 200000) == 1.0


def test_completion_rate_fraction():
    assert completion_rate(50000, 200000) == pytest.approx(0.25)


def test_completion_rate_unknown_duration_is_zero():
    assert completion_rate(50000, None) == 0.0


def test_completion_rate_rejects_non_positive_duration():
    with pytest.raises(ValidationFailure):
        completion_rate(1000, 0)


def test_day_of_week_starts_on_sunday():
    assert day_of_week(datetime(2026, 3, 1, tzinfo=timezone.utc)) == 0  # Sunday
    assert day_of_week(datetime(2026, 3, 4, tzinfo=timezone.utc)) == 3  # Wednesday
    assert day_of_week(datetime(2026, 3, 7, tzinfo=timezone.utc)) == 6  # Saturday


def test_append_derives_time_context(session, clock):
    event = listen(session, clock, "u1", "s1", play_ms=240000, song_ms=200000)

    assert event.completion_rate == 1.0
    assert event.hour_of_day == 15
    assert event.day_of_week == 3
    assert event.timestamp == clock.now


def test_append_drops_skip_position_unless_skipped(session, clock):
    kept = listen(session, clock, "u1", "s1", skipped=True, skip_position_ms=3000)
    dropped = listen(session, clock, "u1", "s2", skipped=False, skip_position_ms=3000)

    assert kept.skip_position_ms == 3000
    assert dropped.skip_position_ms is None


def test_append_rejects_negative_play_duration(session, clock):
    store = ListeningEventStore(session, clock)
    with pytest.raises(ValidationFailure):
        store.append(NewListeningEvent(user_id="u1", song_id="s1", play_duration_ms=-1, source="search"))


def test_append_requires_song(session, clock):
    store = ListeningEventStore(session, clock)
    with pytest.raises(ValidationFailure):
        store.append(NewListeningEvent(user_id="u1", song_id="", play_duration_ms=10, source="search"))


def test_distinct_song_ids_in_first_listen_order(session, clock):
    listen(session, clock, "u1", "b", at=clock.now - timedelta(hours=3))
    listen(session, clock, "u1", "a", at=clock.now - timedelta(hours=2))
    listen(session, clock, "u1", "b", at=clock.now - timedelta(hours=1))
    listen(session, clock, "u2", "c")

    assert ListeningEventStore(session, clock).distinct_song_ids("u1") == ["b", "a"]


def test_events_at_time_window_has_no_midnight_wrap(session, clock):
    wednesday = clock.now
    listen(session, clock, "u1", "near", at=wednesday.replace(hour=14))
    listen(session, clock, "u1", "far", at=wednesday.replace(hour=18))
    listen(session, clock, "u1", "other-day", at=wednesday.replace(hour=15) - timedelta(days=1))

    events = ListeningEventStore(session, clock).events_at_time("u1", 15, 3)
    assert [e.song_id for e in events] == ["near"]

    assert ListeningEventStore(session, clock).events_at_time("u1", 0, 3) == []


def test_purge_older_than(session, clock):
    listen(session, clock, "u1", "old", at=clock.now - timedelta(days=91))
    listen(session, clock, "u1", "new", at=clock.now - timedelta(days=10))

    store = ListeningEventStore(session, clock)
    assert store.purge_older_than(90) == 1
    assert [e.song_id for e in store.query(user_id="u1")] == ["new"]


def test_quality_score(session, clock):
    event = listen(session, clock, "u1", "s1", play_ms=100000, song_ms=200000, liked=True, replayed=True)

    # 0.5*0.4 + 0.2 (not skipped) + 0.2 (liked) + 0.1 (replayed)
    assert event.quality_score == pytest.approx(0.7)
