"""
SQLAlchemy models for song metadata, listening events, song features and the
recommendation cache.

User and song ids are opaque strings owned by the identity provider and the
catalogue respectively.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    BIGINT,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        # SQLite hands back naive values.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class Song(Base):
    """Catalogue row: metadata plus the object-storage key of the audio file."""

    __tablename__ = "songs"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    artist: Mapped[str] = mapped_column(Text, nullable=False)

    object_key: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(Text, nullable=False, default="audio/mpeg")
    size_bytes: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)

    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class ListeningEvent(Base):
    """One row per play attempt. Written once, never updated."""

    __tablename__ = "listening_events"
    __table_args__ = (
        Index("ix_listening_events_user_ts", "user_id", "timestamp"),
        Index("ix_listening_events_song_ts", "song_id", "timestamp"),
        Index("ix_listening_events_user_song", "user_id", "song_id"),
        Index("ix_listening_events_session", "session_id", "session_position"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    song_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    play_duration_ms: Mapped[int] = mapped_column(BIGINT, nullable=False)
    song_duration_ms: Mapped[Optional[int]] = mapped_column(BIGINT, nullable=True)
    completion_rate: Mapped[float] = mapped_column(Float, nullable=False)

    skipped: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    skip_position_ms: Mapped[Optional[int]] = mapped_column(BIGINT, nullable=True)
    liked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    added_to_playlist: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    shared: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    replayed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    source: Mapped[str] = mapped_column(Text, nullable=False)
    device_type: Mapped[str] = mapped_column(Text, nullable=False, default="mobile")
    network_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    quality: Mapped[str] = mapped_column(Text, nullable=False, default="high")

    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    hour_of_day: Mapped[int] = mapped_column(Integer, nullable=False)

    session_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    session_position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, index=True)

    @property
    def quality_score(self) -> float:
        score = self.completion_rate * 0.4
        if not self.skipped:
            score += 0.2
        if self.liked:
            score += 0.2
        if self.replayed:
            score += 0.1
        if self.added_to_playlist:
            score += 0.1
        return min(score, 1.0)


class SongFeature(Base):
    """Content attributes and aggregate engagement for one song."""

    __tablename__ = "song_features"
    __table_args__ = (
        Index("ix_song_features_genre_mood_pop", "primary_genre", "mood", "popularity_score"),
        Index("ix_song_features_tempo_energy", "tempo", "energy"),
        Index("ix_song_features_valence_dance", "valence", "danceability"),
    )

    song_id: Mapped[str] = mapped_column(Text, primary_key=True)

    acousticness: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    danceability: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    energy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    instrumentalness: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    liveness: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    loudness: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    speechiness: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    valence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    tempo: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    key: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    mode: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    time_signature: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    genres: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    primary_genre: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)
    mood: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)
    mood_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    popularity_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, index=True)
    trending_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    total_plays: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_listeners: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_completion_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    skip_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    like_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    share_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    playlist_add_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # [{"songId": ..., "similarityScore": ...}], may be stale
    similar_songs: Mapped[List[dict]] = mapped_column(JSON, nullable=False, default=list)

    analysis_source: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_analyzed: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    needs_reanalysis: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def quality_score(self) -> float:
        play_weight = min((self.total_plays or 0) / 1000, 1) * 0.3
        completion_weight = (self.avg_completion_rate or 0.0) * 0.3
        engagement_weight = min(((self.like_count or 0) + (self.playlist_add_count or 0)) / 100, 1) * 0.2
        popularity_weight = ((self.popularity_score or 0.0) / 100) * 0.2
        return play_weight + completion_weight + engagement_weight + popularity_weight


class RecommendationCacheEntry(Base):
    """A computed recommendation list for one (user, type, context) key."""

    __tablename__ = "recommendation_cache"
    __table_args__ = (
        Index("ix_rec_cache_user_type", "user_id", "type"),
        Index("ix_rec_cache_user_expires", "user_id", "expires_at"),
        Index("ix_rec_cache_context_song", "context_song_id"),
        Index("ix_rec_cache_context_genre_mood", "context_genre", "context_mood"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    type: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    context_song_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context_artist_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context_genre: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context_mood: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # [{"songId", "score", "reason", "confidence"}] in rank order
    recommendations: Mapped[List[dict]] = mapped_column(JSON, nullable=False, default=list)
    algorithm: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    metrics: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    plays: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    likes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skips: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    click_through_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_completion_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    refresh_after: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    is_stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_accessed: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    @property
    def effectiveness(self) -> float:
        if not self.views:
            return 0.0
        ctr = self.click_through_rate * 0.3
        completion = self.avg_completion_rate * 0.3
        like_rate = (self.likes / self.views) * 0.2
        non_skip = (1 - self.skips / self.plays) if self.plays > 0 else 0.0
        return ctr + completion + like_rate + non_skip * 0.2
