"""
Listening analytics: per-user statistics, top songs, genre/mood histograms and
event-window trending, plus the song-metric maintenance routines that keep
SongFeature aggregates in step with the event log.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import case, desc, distinct, func, select

from src.api.db import Database
from src.api.event_store import ListeningEventStore, NewListeningEvent
from src.api.feature_store import SongFeatureStore
from src.api.models import ListeningEvent, SongFeature, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserStats:
    total_plays: int
    total_duration: int
    avg_completion_rate: float
    skip_rate: float
    unique_songs_count: int
    favorite_source: Optional[str]


@dataclass(frozen=True)
class TopSong:
    song_id: str
    play_count: int
    avg_completion_rate: float
    like_count: int
    total_duration: int


@dataclass(frozen=True)
class TimePattern:
    hour_of_day: int
    day_of_week: int
    count: int


@dataclass(frozen=True)
class LabelCount:
    label: str
    count: int


@dataclass(frozen=True)
class EventTrendingSong:
    song_id: str
    play_count: int
    unique_listeners: int
    avg_completion_rate: float
    trend_score: float


@dataclass(frozen=True)
class BatchResult:
    updated: int
    total: int


class AnalyticsAggregator:
    def __init__(self, events: ListeningEventStore, features: SongFeatureStore) -> None:
        self.events = events
        self.features = features
        self.session = events.session

    # PUBLIC_INTERFACE
    def track_listening(self, data: NewListeningEvent) -> ListeningEvent:
        """Record one listen. Song metrics are refreshed separately, off the request path."""
        event = self.events.append(data)
        logger.info("listening_tracked: user_id=%s song_id=%s event_id=%s", data.user_id, data.song_id, event.id)
        return event

    # PUBLIC_INTERFACE
    def update_song_metrics(self, song_id: str, window_days: int = 90) -> Optional[SongFeature]:
        """Re-aggregate one song from every event in the trailing window."""
        events = self.events.query(song_id=song_id, since=self.events.window_start(window_days))
        return self.features.update_metrics_from_events(song_id, events)

    # PUBLIC_INTERFACE
    def get_user_stats(self, user_id: str, days: int = 30) -> Optional[UserStats]:
        """Aggregate the user's window. Returns None when there were no plays."""
        window = (ListeningEvent.user_id == user_id, ListeningEvent.timestamp >= self.events.window_start(days))
        row = self.session.execute(
            select(
                func.count(ListeningEvent.id),
                func.coalesce(func.sum(ListeningEvent.play_duration_ms), 0),
                func.avg(ListeningEvent.completion_rate),
                func.avg(case((ListeningEvent.skipped, 1.0), else_=0.0)),
                func.count(distinct(ListeningEvent.song_id)),
            ).where(*window)
        ).one()
        total_plays = int(row[0] or 0)
        if total_plays == 0:
            return None

        # Source of the earliest event in the window, not a true mode.
        favorite_source = self.session.execute(
            select(ListeningEvent.source)
            .where(*window)
            .order_by(ListeningEvent.timestamp, ListeningEvent.id)
            .limit(1)
        ).scalar_one_or_none()

        return UserStats(
            total_plays=total_plays,
            total_duration=int(row[1] or 0),
            avg_completion_rate=float(row[2] or 0.0),
            skip_rate=float(row[3] or 0.0),
            unique_songs_count=int(row[4] or 0),
            favorite_source=favorite_source,
        )

    # PUBLIC_INTERFACE
    def get_user_top_songs(self, user_id: str, limit: int = 20, days: int = 30) -> List[TopSong]:
        """Songs ranked by play count, then average completion."""
        stmt = (
            select(
                ListeningEvent.song_id,
                func.count(ListeningEvent.id).label("play_count"),
                func.avg(ListeningEvent.completion_rate).label("avg_completion_rate"),
                func.sum(case((ListeningEvent.liked, 1), else_=0)).label("like_count"),
                func.sum(ListeningEvent.play_duration_ms).label("total_duration"),
            )
            .where(ListeningEvent.user_id == user_id, ListeningEvent.timestamp >= self.events.window_start(days))
            .group_by(ListeningEvent.song_id)
            .order_by(desc("play_count"), desc("avg_completion_rate"), ListeningEvent.song_id)
            .limit(limit)
        )
        return [
            TopSong(
                song_id=row.song_id,
                play_count=int(row.play_count),
                avg_completion_rate=float(row.avg_completion_rate or 0.0),
                like_count=int(row.like_count or 0),
                total_duration=int(row.total_duration or 0),
            )
            for row in self.session.execute(stmt).all()
        ]

    # PUBLIC_INTERFACE
    def get_user_time_patterns(self, user_id: str) -> List[TimePattern]:
        stmt = (
            select(ListeningEvent.hour_of_day, ListeningEvent.day_of_week, func.count(ListeningEvent.id).label("count"))
            .where(ListeningEvent.user_id == user_id)
            .group_by(ListeningEvent.hour_of_day, ListeningEvent.day_of_week)
            .order_by(desc("count"), ListeningEvent.day_of_week, ListeningEvent.hour_of_day)
        )
        return [TimePattern(hour_of_day=r.hour_of_day, day_of_week=r.day_of_week, count=int(r.count)) for r in self.session.execute(stmt).all()]

    def _window_features(self, user_id: str, days: int) -> List[SongFeature]:
        song_ids = self.events.distinct_song_ids(user_id, since=self.events.window_start(days))
        return self.features.get_many(song_ids)

    # PUBLIC_INTERFACE
    def get_user_genre_preferences(self, user_id: str, days: int = 30) -> List[LabelCount]:
        counts = Counter(f.primary_genre for f in self._window_features(user_id, days) if f.primary_genre)
        return [LabelCount(label=genre, count=n) for genre, n in counts.most_common()]

    # PUBLIC_INTERFACE
    def get_user_mood_preferences(self, user_id: str, days: int = 30) -> List[LabelCount]:
        counts = Counter(f.mood for f in self._window_features(user_id, days) if f.mood)
        return [LabelCount(label=mood, count=n) for mood, n in counts.most_common()]

    # PUBLIC_INTERFACE
    def get_trending_songs(self, genre: Optional[str] = None, limit: int = 20, days: int = 7) -> List[EventTrendingSong]:
        """
        Most active songs of the window: playCount*0.4 + uniqueListeners*0.3 + avgCompletionRate*30.

        Songs are ranked and truncated globally before the genre filter is applied,
        so a genre request can return fewer than `limit` rows.
        """
        stmt = (
            select(
                ListeningEvent.song_id,
                func.count(ListeningEvent.id).label("play_count"),
                func.count(distinct(ListeningEvent.user_id)).label("unique_listeners"),
                func.avg(ListeningEvent.completion_rate).label("avg_completion_rate"),
            )
            .where(ListeningEvent.timestamp >= self.events.window_start(days))
            .group_by(ListeningEvent.song_id)
            .order_by(ListeningEvent.song_id)
        )
        ranked = []
        for row in self.session.execute(stmt).all():
            avg_completion = float(row.avg_completion_rate or 0.0)
            ranked.append(
                EventTrendingSong(
                    song_id=row.song_id,
                    play_count=int(row.play_count),
                    unique_listeners=int(row.unique_listeners),
                    avg_completion_rate=avg_completion,
                    trend_score=row.play_count * 0.4 + row.unique_listeners * 0.3 + avg_completion * 30,
                )
            )
        ranked.sort(key=lambda t: -t.trend_score)
        trending = ranked[:limit]

        if genre:
            in_genre = {f.song_id for f in self.features.get_many(t.song_id for t in trending) if f.primary_genre == genre}
            trending = [t for t in trending if t.song_id in in_genre]
        return trending


# PUBLIC_INTERFACE
def update_song_metrics_in_background(
    database: Database,
    song_id: str,
    window_days: int = 90,
    clock: Callable[[], datetime] = utcnow,
) -> None:
    """
    Background task run after a listen is recorded.

    Uses its own session and never raises: a failed metric update must not affect
    the write that recorded the listen.
    """
    try:
        with database.session() as db:
            aggregator = AnalyticsAggregator(ListeningEventStore(db, clock), SongFeatureStore(db, clock))
            feature = aggregator.update_song_metrics(song_id, window_days)
        if feature is not None:
            logger.info("song_metrics_updated: song_id=%s popularity=%.2f", song_id, feature.popularity_score)
    except Exception:
        logger.exception("song_metrics_update_failed: song_id=%s", song_id)


# PUBLIC_INTERFACE
def recalculate_popularity_scores(
    database: Database,
    window_days: int = 90,
    clock: Callable[[], datetime] = utcnow,
) -> BatchResult:
    """
    Re-aggregate every song that has a feature record.

    Each song runs in its own transaction; a failure is logged and the batch
    moves on to the next song.
    """
    with database.session() as db:
        song_ids = SongFeatureStore(db, clock).all_song_ids()

    updated = 0
    for song_id in song_ids:
        try:
            with database.session() as db:
                aggregator = AnalyticsAggregator(ListeningEventStore(db, clock), SongFeatureStore(db, clock))
                if aggregator.update_song_metrics(song_id, window_days) is not None:
                    updated += 1
        except Exception:
            logger.exception("popularity_recalculation_failed: song_id=%s", song_id)

    logger.info("popularity_scores_updated: updated=%s total=%s", updated, len(song_ids))
    return BatchResult(updated=updated, total=len(song_ids))
