"""Shared fixtures: an in-memory SQLite database and a controllable clock."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from sqlalchemy.pool import StaticPool

from src.api.db import Database
from src.api.event_store import ListeningEventStore, NewListeningEvent
from src.api.feature_store import SongFeatureStore
from src.api.models import SongFeature

# A Wednesday afternoon, UTC.
FIXED_NOW = datetime(2026, 3, 4, 15, 30, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def database():
    db = Database("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def session(database):
    with database.session() as db:
        yield db


def add_feature(session, song_id: str, **values: Any) -> SongFeature:
    """Insert a feature row with sensible zero aggregates."""
    defaults = dict(
        genres=[values["primary_genre"]] if values.get("primary_genre") else [],
        similar_songs=[],
        popularity_score=0.0,
        trending_score=0.0,
        total_plays=0,
        unique_listeners=0,
        avg_completion_rate=0.0,
        skip_rate=0.0,
        like_count=0,
        share_count=0,
        playlist_add_count=0,
    )
    defaults.update(values)
    feature = SongFeature(song_id=song_id, **defaults)
    session.add(feature)
    session.flush()
    return feature


def listen(
    session,
    clock: FakeClock,
    user_id: str,
    song_id: str,
    play_ms: int = 180000,
    song_ms: Optional[int] = 200000,
    at: Optional[datetime] = None,
    **flags: Any,
):
    """Append one event, optionally at a specific time."""
    saved = clock.now
    if at is not None:
        clock.now = at
    try:
        data = NewListeningEvent(
            user_id=user_id,
            song_id=song_id,
            play_duration_ms=play_ms,
            song_duration_ms=song_ms,
            source=flags.pop("source", "search"),
            **flags,
        )
        return ListeningEventStore(session, clock).append(data)
    finally:
        clock.now = saved


def feature_store(session, clock: FakeClock) -> SongFeatureStore:
    return SongFeatureStore(session, clock)
