"""
Per-song feature records: content attributes, aggregate engagement and the
popularity/trending scores derived from listening events.

Scores are always recomputed from the complete event set handed to
`update_metrics_from_events`; nothing here increments a stored aggregate.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from src.api.errors import NotFound
from src.api.models import ListeningEvent, SongFeature, utcnow

logger = logging.getLogger(__name__)

TREND_WINDOW_DAYS = 7
TEMPO_SCALE = 200.0

CONTENT_FIELDS = (
    "acousticness",
    "danceability",
    "energy",
    "instrumentalness",
    "liveness",
    "loudness",
    "speechiness",
    "valence",
    "tempo",
    "key",
    "mode",
    "time_signature",
    "genres",
    "primary_genre",
    "mood",
    "mood_score",
    "similar_songs",
    "analysis_source",
)


@dataclass(frozen=True)
class FeatureVector:
    energy: float
    valence: float
    danceability: float
    tempo: float

    @classmethod
    def of(cls, feature: SongFeature) -> "FeatureVector":
        return cls(
            energy=feature.energy or 0.0,
            valence=feature.valence or 0.0,
            danceability=feature.danceability or 0.0,
            tempo=feature.tempo or 0.0,
        )

    @classmethod
    def mean(cls, features: Sequence[SongFeature]) -> "FeatureVector":
        vectors = [cls.of(f) for f in features]
        n = len(vectors)
        return cls(
            energy=sum(v.energy for v in vectors) / n,
            valence=sum(v.valence for v in vectors) / n,
            danceability=sum(v.danceability for v in vectors) / n,
            tempo=sum(v.tempo for v in vectors) / n,
        )

    def similarity(self, other: "FeatureVector") -> float:
        """1 - euclidean distance over (energy, valence, danceability, tempo/200)."""
        return 1 - math.sqrt(
            (other.energy - self.energy) ** 2
            + (other.valence - self.valence) ** 2
            + (other.danceability - self.danceability) ** 2
            + (other.tempo / TEMPO_SCALE - self.tempo / TEMPO_SCALE) ** 2
        )


@dataclass(frozen=True)
class SimilarSong:
    song_id: str
    similarity: float
    popularity_score: float


@dataclass(frozen=True)
class TrendingSong:
    song_id: str
    trend_score: float
    popularity_score: float
    total_plays: int


@dataclass(frozen=True)
class EngagementAggregate:
    total_plays: int
    unique_listeners: int
    avg_completion_rate: float
    skip_rate: float
    like_count: int
    share_count: int
    playlist_add_count: int

    @classmethod
    def of(cls, events: Sequence[ListeningEvent]) -> "EngagementAggregate":
        total = len(events)
        return cls(
            total_plays=total,
            unique_listeners=len({e.user_id for e in events}),
            avg_completion_rate=sum(e.completion_rate for e in events) / total,
            skip_rate=sum(1 for e in events if e.skipped) / total,
            like_count=sum(1 for e in events if e.liked),
            share_count=sum(1 for e in events if e.shared),
            playlist_add_count=sum(1 for e in events if e.added_to_playlist),
        )

    @property
    def popularity(self) -> float:
        return popularity_score(
            self.total_plays,
            self.avg_completion_rate,
            self.skip_rate,
            self.like_count,
            self.unique_listeners,
        )


# PUBLIC_INTERFACE
def popularity_score(
    total_plays: int,
    avg_completion_rate: float,
    skip_rate: float,
    like_count: int,
    unique_listeners: int,
) -> float:
    """
    Weighted popularity heuristic in [0, 100]:

        min(100, (plays/10)*0.3 + avgCompletion*30 + (1-skipRate)*20
                 + min(likes/10, 10) + min(uniqueListeners/5, 10))

    Downstream ranking depends on this exact shape.
    """
    score = (
        (total_plays / 10) * 0.3
        + avg_completion_rate * 30
        + (1 - skip_rate) * 20
        + min(like_count / 10, 10)
        + min(unique_listeners / 5, 10)
    )
    return max(0.0, min(score, 100.0))


def trend_score(feature: SongFeature) -> float:
    return (
        (feature.trending_score or 0.0) * 0.4
        + (feature.popularity_score or 0.0) * 0.3
        + min((feature.total_plays or 0) / 1000, 100) * 0.3
    )


class SongFeatureStore:
    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow) -> None:
        self.session = session
        self.clock = clock

    def get(self, song_id: str) -> Optional[SongFeature]:
        return self.session.get(SongFeature, song_id)

    def get_many(self, song_ids: Iterable[str]) -> List[SongFeature]:
        ids = list(song_ids)
        if not ids:
            return []
        stmt = select(SongFeature).where(SongFeature.song_id.in_(ids)).order_by(SongFeature.song_id)
        return list(self.session.execute(stmt).scalars().all())

    def all_song_ids(self) -> List[str]:
        return list(self.session.execute(select(SongFeature.song_id).order_by(SongFeature.song_id)).scalars().all())

    def _get_or_create(self, song_id: str) -> SongFeature:
        feature = self.get(song_id)
        if feature is None:
            now = self.clock()
            feature = SongFeature(
                song_id=song_id,
                genres=[],
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
                needs_reanalysis=False,
                last_analyzed=now,
                created_at=now,
                updated_at=now,
            )
            self.session.add(feature)
        return feature

    # PUBLIC_INTERFACE
    def upsert_content(self, song_id: str, attributes: Dict[str, Any]) -> SongFeature:
        """Store externally analysed content attributes; engagement aggregates are left alone."""
        feature = self._get_or_create(song_id)
        for name, value in attributes.items():
            if name not in CONTENT_FIELDS:
                raise ValueError(f"not a content attribute: {name}")
            setattr(feature, name, value)
        feature.last_analyzed = self.clock()
        feature.needs_reanalysis = False
        self.session.flush()
        return feature

    # PUBLIC_INTERFACE
    def update_metrics_from_events(self, song_id: str, events: Sequence[ListeningEvent]) -> Optional[SongFeature]:
        """
        Recompute every aggregate field of a song from its full event set and upsert it.

        Returns None (and writes nothing) when there are no events.
        """
        if not events:
            return None

        aggregate = EngagementAggregate.of(events)
        trend_cutoff = self.clock() - timedelta(days=TREND_WINDOW_DAYS)
        recent = [e for e in events if e.timestamp >= trend_cutoff]
        trending = EngagementAggregate.of(recent).popularity if recent else 0.0

        feature = self._get_or_create(song_id)
        feature.total_plays = aggregate.total_plays
        feature.unique_listeners = aggregate.unique_listeners
        feature.avg_completion_rate = aggregate.avg_completion_rate
        feature.skip_rate = aggregate.skip_rate
        feature.like_count = aggregate.like_count
        feature.share_count = aggregate.share_count
        feature.playlist_add_count = aggregate.playlist_add_count
        feature.popularity_score = aggregate.popularity
        feature.trending_score = trending
        feature.last_analyzed = self.clock()
        self.session.flush()
        return feature

    # PUBLIC_INTERFACE
    def find_similar(self, song_id: str, limit: int = 10) -> List[SimilarSong]:
        """Same-genre songs closest to the seed's own feature vector."""
        seed = self.get(song_id)
        if seed is None:
            raise NotFound("song_features_not_found", f"No features for song {song_id}.")
        return self.find_near(FeatureVector.of(seed), seed.primary_genre, exclude=[song_id], limit=limit)

    def find_near(
        self,
        query: FeatureVector,
        genre: Optional[str],
        exclude: Iterable[str],
        limit: int,
    ) -> List[SimilarSong]:
        """Rank songs of `genre` by similarity to `query`, popularity breaking ties."""
        excluded = list(exclude)
        stmt = select(SongFeature).where(SongFeature.primary_genre == genre)
        if excluded:
            stmt = stmt.where(SongFeature.song_id.not_in(excluded))
        stmt = stmt.order_by(SongFeature.song_id)

        scored = [
            SimilarSong(
                song_id=candidate.song_id,
                similarity=query.similarity(FeatureVector.of(candidate)),
                popularity_score=candidate.popularity_score or 0.0,
            )
            for candidate in self.session.execute(stmt).scalars()
        ]
        scored.sort(key=lambda s: (-s.similarity, -s.popularity_score))
        return scored[:limit]

    # PUBLIC_INTERFACE
    def get_trending(
        self,
        genre: Optional[str] = None,
        limit: int = 20,
        active_since: Optional[datetime] = None,
    ) -> List[TrendingSong]:
        """trendScore = trendingScore*0.4 + popularityScore*0.3 + min(totalPlays/1000, 100)*0.3, highest first."""
        stmt = select(SongFeature)
        if genre:
            stmt = stmt.where(SongFeature.primary_genre == genre)
        if active_since is not None:
            recent = select(ListeningEvent.song_id).where(ListeningEvent.timestamp >= active_since)
            stmt = stmt.where(SongFeature.song_id.in_(recent))
        stmt = stmt.order_by(SongFeature.song_id)

        ranked = [
            TrendingSong(
                song_id=f.song_id,
                trend_score=trend_score(f),
                popularity_score=f.popularity_score or 0.0,
                total_plays=f.total_plays or 0,
            )
            for f in self.session.execute(stmt).scalars()
        ]
        ranked.sort(key=lambda t: -t.trend_score)
        return ranked[:limit]

    def find_by_mood(self, mood: str, limit: int) -> List[SongFeature]:
        stmt = (
            select(SongFeature)
            .where(SongFeature.mood == mood)
            .order_by(desc(SongFeature.popularity_score), desc(SongFeature.avg_completion_rate), SongFeature.song_id)
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars().all())

    def find_in_band(
        self,
        energy: float,
        valence: float,
        exclude: Iterable[str],
        limit: int,
        band: float = 0.2,
    ) -> List[tuple]:
        """(song_id, score) for songs within `band` of both energy and valence, closest first."""
        excluded = list(exclude)
        stmt = select(SongFeature).where(
            SongFeature.energy >= energy - band,
            SongFeature.energy <= energy + band,
            SongFeature.valence >= valence - band,
            SongFeature.valence <= valence + band,
        )
        if excluded:
            stmt = stmt.where(SongFeature.song_id.not_in(excluded))
        stmt = stmt.order_by(SongFeature.song_id)

        scored = [
            (f.song_id, 1 - (abs(f.energy - energy) + abs(f.valence - valence)))
            for f in self.session.execute(stmt).scalars()
        ]
        scored.sort(key=lambda pair: -pair[1])
        return scored[:limit]
