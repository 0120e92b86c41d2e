"""
Recommendation cache: computed lists keyed by (user, type, context).

Each entry has a hard expiry (`expires_at`, after which it is treated as absent)
and a soft `refresh_after` threshold at a fraction of the TTL, after which it is
still served but becomes eligible for background regeneration. `is_stale` flags an
entry for regeneration independently of time.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from src.api.constants import EngagementEvent, RecommendationType
from src.api.models import RecommendationCacheEntry, utcnow
from src.api.recommender import Recommendation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoContext:
    def columns(self) -> Dict[str, Optional[str]]:
        return {}


@dataclass(frozen=True)
class SongContext:
    song_id: str

    def columns(self) -> Dict[str, Optional[str]]:
        return {"context_song_id": self.song_id}


@dataclass(frozen=True)
class ArtistContext:
    artist_id: str

    def columns(self) -> Dict[str, Optional[str]]:
        return {"context_artist_id": self.artist_id}


@dataclass(frozen=True)
class GenreContext:
    genre: str

    def columns(self) -> Dict[str, Optional[str]]:
        return {"context_genre": self.genre}


@dataclass(frozen=True)
class MoodContext:
    mood: str

    def columns(self) -> Dict[str, Optional[str]]:
        return {"context_mood": self.mood}


CacheContext = Union[NoContext, SongContext, ArtistContext, GenreContext, MoodContext]

CONTEXT_BY_TYPE = {
    RecommendationType.DAILY_MIX: NoContext,
    RecommendationType.DISCOVER_WEEKLY: NoContext,
    RecommendationType.SIMILAR_TO_SONG: SongContext,
    RecommendationType.SIMILAR_TO_ARTIST: ArtistContext,
    RecommendationType.MOOD_BASED: MoodContext,
    RecommendationType.GENRE_BASED: GenreContext,
    RecommendationType.TIME_BASED: NoContext,
    RecommendationType.TRENDING: NoContext,
    RecommendationType.PERSONALIZED: NoContext,
}

_CONTEXT_COLUMNS = ("context_song_id", "context_artist_id", "context_genre", "context_mood")


def context_of(entry: RecommendationCacheEntry) -> CacheContext:
    """Rebuild the typed context of a stored entry."""
    kind = CONTEXT_BY_TYPE[RecommendationType(entry.type)]
    if kind is SongContext:
        return SongContext(entry.context_song_id or "")
    if kind is ArtistContext:
        return ArtistContext(entry.context_artist_id or "")
    if kind is GenreContext:
        return GenreContext(entry.context_genre or "")
    if kind is MoodContext:
        return MoodContext(entry.context_mood or "")
    return NoContext()


@dataclass(frozen=True)
class TypePerformance:
    type: str
    total_views: int
    total_plays: int
    total_likes: int
    total_skips: int
    avg_ctr: float
    avg_completion_rate: float
    count: int

    @property
    def effectiveness(self) -> float:
        like_rate = self.total_likes / self.total_views if self.total_views > 0 else 0.0
        return self.avg_ctr * 0.4 + self.avg_completion_rate * 0.4 + like_rate * 0.2


class RecommendationCache:
    def __init__(
        self,
        session: Session,
        ttl_hours: float = 24.0,
        refresh_fraction: float = 0.75,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if ttl_hours <= 0:
            raise ValueError("ttl_hours must be positive")
        if not 0 < refresh_fraction < 1:
            raise ValueError("refresh_fraction must be between 0 and 1")
        self.session = session
        self.ttl_hours = ttl_hours
        self.refresh_fraction = refresh_fraction
        self.clock = clock

    def _key_filter(self, user_id: str, rec_type: RecommendationType, context: CacheContext) -> list:
        expected = CONTEXT_BY_TYPE[rec_type]
        if not isinstance(context, expected):
            raise ValueError(f"{rec_type.value} requires {expected.__name__}, got {type(context).__name__}")
        values = context.columns()
        clauses = [RecommendationCacheEntry.user_id == user_id, RecommendationCacheEntry.type == rec_type.value]
        for name in _CONTEXT_COLUMNS:
            column = getattr(RecommendationCacheEntry, name)
            value = values.get(name)
            clauses.append(column.is_(None) if value is None else column == value)
        return clauses

    # PUBLIC_INTERFACE
    def get_or_create(
        self,
        user_id: str,
        rec_type: RecommendationType,
        context: CacheContext = NoContext(),
        ttl_hours: Optional[float] = None,
    ) -> Tuple[RecommendationCacheEntry, bool]:
        """
        Return a live entry for the key, or a new empty placeholder.

        Live means not past `expires_at` and not flagged stale; a hit bumps the access
        counters. Returns (entry, is_new).
        """
        now = self.clock()
        clauses = self._key_filter(user_id, rec_type, context)
        existing = self.session.execute(
            select(RecommendationCacheEntry)
            .where(*clauses, RecommendationCacheEntry.expires_at > now, RecommendationCacheEntry.is_stale.is_(False))
            .order_by(RecommendationCacheEntry.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

        if existing is not None:
            existing.last_accessed = now
            existing.access_count = (existing.access_count or 0) + 1
            self.session.flush()
            return existing, False

        ttl = self.ttl_hours if ttl_hours is None else ttl_hours
        if ttl <= 0:
            raise ValueError("ttl_hours must be positive")
        entry = RecommendationCacheEntry(
            id=uuid.uuid4(),
            user_id=user_id,
            type=rec_type.value,
            recommendations=[],
            algorithm={},
            metrics={},
            expires_at=now + timedelta(hours=ttl),
            refresh_after=now + timedelta(hours=ttl * self.refresh_fraction),
            is_stale=False,
            last_accessed=now,
            access_count=0,
            created_at=now,
            **context.columns(),
        )
        self.session.add(entry)
        self.session.flush()
        return entry, True

    def get(self, cache_id: uuid.UUID) -> Optional[RecommendationCacheEntry]:
        return self.session.get(RecommendationCacheEntry, cache_id)

    def latest(
        self,
        user_id: str,
        rec_type: RecommendationType,
        context: CacheContext = NoContext(),
    ) -> Optional[RecommendationCacheEntry]:
        """
        Newest unexpired entry for the key that holds recommendations, stale or not.

        Empty placeholders (created by a lookup whose generation has not finished) are
        skipped. Access counters are not touched.
        """
        entries = self.session.execute(
            select(RecommendationCacheEntry)
            .where(*self._key_filter(user_id, rec_type, context), RecommendationCacheEntry.expires_at > self.clock())
            .order_by(RecommendationCacheEntry.created_at.desc(), RecommendationCacheEntry.last_accessed.desc())
        ).scalars()
        for entry in entries:
            if entry.recommendations:
                return entry
        return None

    # PUBLIC_INTERFACE
    def update_recommendations(
        self,
        cache_id: uuid.UUID,
        recommendations: Sequence[Recommendation],
        algorithm: Optional[dict] = None,
        metrics: Optional[dict] = None,
    ) -> Optional[RecommendationCacheEntry]:
        """Replace the list and its metadata wholesale and clear the stale flag."""
        entry = self.get(cache_id)
        if entry is None:
            return None
        entry.recommendations = [r.to_dict() for r in recommendations]
        entry.algorithm = dict(algorithm or {})
        entry.metrics = dict(metrics or {})
        entry.is_stale = False
        self.session.flush()
        return entry

    # PUBLIC_INTERFACE
    def track_engagement(
        self,
        cache_id: uuid.UUID,
        event: EngagementEvent,
        completion_rate: Optional[float] = None,
    ) -> Optional[RecommendationCacheEntry]:
        """
        Count one engagement event.

        A play recomputes clickThroughRate = plays/views (left untouched while views
        is 0) and, when a completion rate is supplied, folds it into the running
        average completion.
        """
        counter = {
            EngagementEvent.VIEW: RecommendationCacheEntry.views,
            EngagementEvent.PLAY: RecommendationCacheEntry.plays,
            EngagementEvent.LIKE: RecommendationCacheEntry.likes,
            EngagementEvent.SKIP: RecommendationCacheEntry.skips,
        }[event]
        result = self.session.execute(
            update(RecommendationCacheEntry)
            .where(RecommendationCacheEntry.id == cache_id)
            .values({counter: counter + 1, RecommendationCacheEntry.last_accessed: self.clock()})
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return None

        entry = self.session.execute(
            select(RecommendationCacheEntry)
            .where(RecommendationCacheEntry.id == cache_id)
            .execution_options(populate_existing=True)
        ).scalar_one()

        if event is EngagementEvent.PLAY:
            if entry.views > 0:
                entry.click_through_rate = min(entry.plays / entry.views, 1.0)
            if completion_rate is not None:
                previous = entry.avg_completion_rate * (entry.plays - 1)
                entry.avg_completion_rate = (previous + completion_rate) / entry.plays
            self.session.flush()
        return entry

    # PUBLIC_INTERFACE
    def get_stale_entries(self, limit: int = 100) -> List[RecommendationCacheEntry]:
        """Unexpired entries past `refresh_after` or flagged stale, most recently used first."""
        now = self.clock()
        stmt = (
            select(RecommendationCacheEntry)
            .where(
                (RecommendationCacheEntry.refresh_after < now) | RecommendationCacheEntry.is_stale.is_(True),
                RecommendationCacheEntry.expires_at > now,
            )
            .order_by(RecommendationCacheEntry.last_accessed.desc(), RecommendationCacheEntry.id)
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars().all())

    # PUBLIC_INTERFACE
    def mark_stale(self, user_id: str, rec_type: Optional[RecommendationType] = None) -> int:
        """Flag the user's live entries (optionally of one type) for regeneration."""
        stmt = update(RecommendationCacheEntry).where(
            RecommendationCacheEntry.user_id == user_id,
            RecommendationCacheEntry.expires_at > self.clock(),
        )
        if rec_type is not None:
            stmt = stmt.where(RecommendationCacheEntry.type == rec_type.value)
        result = self.session.execute(stmt.values(is_stale=True).execution_options(synchronize_session="fetch"))
        return result.rowcount or 0

    # PUBLIC_INTERFACE
    def purge_expired(self) -> int:
        result = self.session.execute(
            delete(RecommendationCacheEntry).where(RecommendationCacheEntry.expires_at <= self.clock())
        )
        deleted = result.rowcount or 0
        logger.info("recommendation_cache_purged: deleted=%s", deleted)
        return deleted

    # PUBLIC_INTERFACE
    def get_user_performance(self, user_id: str, days: int = 30) -> List[TypePerformance]:
        """Engagement totals per recommendation type over entries created in the window."""
        since = self.clock() - timedelta(days=days)
        stmt = (
            select(
                RecommendationCacheEntry.type,
                func.sum(RecommendationCacheEntry.views).label("views"),
                func.sum(RecommendationCacheEntry.plays).label("plays"),
                func.sum(RecommendationCacheEntry.likes).label("likes"),
                func.sum(RecommendationCacheEntry.skips).label("skips"),
                func.avg(RecommendationCacheEntry.click_through_rate).label("ctr"),
                func.avg(RecommendationCacheEntry.avg_completion_rate).label("completion"),
                func.count(RecommendationCacheEntry.id).label("count"),
            )
            .where(RecommendationCacheEntry.user_id == user_id, RecommendationCacheEntry.created_at >= since)
            .group_by(RecommendationCacheEntry.type)
            .order_by(RecommendationCacheEntry.type)
        )
        performance = [
            TypePerformance(
                type=row.type,
                total_views=int(row.views or 0),
                total_plays=int(row.plays or 0),
                total_likes=int(row.likes or 0),
                total_skips=int(row.skips or 0),
                avg_ctr=float(row.ctr or 0.0),
                avg_completion_rate=float(row.completion or 0.0),
                count=int(row.count),
            )
            for row in self.session.execute(stmt).all()
        ]
        performance.sort(key=lambda p: -p.effectiveness)
        return performance
