"""
Append-only store of listening events.

Events are written once by the playback-tracking call and removed only by the
retention sweep.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from src.api.errors import ValidationFailure
from src.api.models import ListeningEvent, utcnow

logger = logging.getLogger(__name__)


@dataclass
class NewListeningEvent:
    """Caller-supplied fields of a listen. The completion rate is always derived here."""

    user_id: str
    song_id: str
    play_duration_ms: int
    source: str
    song_duration_ms: Optional[int] = None
    skipped: bool = False
    skip_position_ms: Optional[int] = None
    liked: bool = False
    added_to_playlist: bool = False
    shared: bool = False
    replayed: bool = False
    device_type: str = "mobile"
    network_type: Optional[str] = None
    quality: str = "high"
    session_id: Optional[str] = None
    session_position: Optional[int] = None


def completion_rate(play_duration_ms: int, song_duration_ms: Optional[int]) -> float:
    """min(play/song, 1); 0 when the song duration is unknown."""
    if song_duration_ms is None:
        return 0.0
    if song_duration_ms <= 0:
        raise ValidationFailure("invalid_song_duration", "songDuration must be greater than 0.")
    return min(play_duration_ms / song_duration_ms, 1.0)


def day_of_week(ts: datetime) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return ts.isoweekday() % 7


class ListeningEventStore:
    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow) -> None:
        self.session = session
        self.clock = clock

    # PUBLIC_INTERFACE
    def append(self, data: NewListeningEvent) -> ListeningEvent:
        """Validate, derive time context and completion rate, and persist one event."""
        if not data.user_id:
            raise ValidationFailure("missing_user", "userId is required.")
        if not data.song_id:
            raise ValidationFailure("missing_song", "songId is required.")
        if data.play_duration_ms is None or data.play_duration_ms < 0:
            raise ValidationFailure("invalid_play_duration", "playDuration must be >= 0.")

        now = self.clock()
        event = ListeningEvent(
            user_id=data.user_id,
            song_id=data.song_id,
            play_duration_ms=data.play_duration_ms,
            song_duration_ms=data.song_duration_ms,
            completion_rate=completion_rate(data.play_duration_ms, data.song_duration_ms),
            skipped=bool(data.skipped),
            skip_position_ms=data.skip_position_ms if data.skipped else None,
            liked=bool(data.liked),
            added_to_playlist=bool(data.added_to_playlist),
            shared=bool(data.shared),
            replayed=bool(data.replayed),
            source=data.source,
            device_type=data.device_type or "mobile",
            network_type=data.network_type,
            quality=data.quality or "high",
            day_of_week=day_of_week(now),
            hour_of_day=now.hour,
            session_id=data.session_id,
            session_position=data.session_position,
            timestamp=now,
        )
        self.session.add(event)
        self.session.flush()
        return event

    # PUBLIC_INTERFACE
    def query(
        self,
        *,
        user_id: Optional[str] = None,
        song_id: Optional[str] = None,
        session_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[ListeningEvent]:
        """Events matching every given filter, oldest first."""
        stmt = select(ListeningEvent)
        if user_id is not None:
            stmt = stmt.where(ListeningEvent.user_id == user_id)
        if song_id is not None:
            stmt = stmt.where(ListeningEvent.song_id == song_id)
        if session_id is not None:
            stmt = stmt.where(ListeningEvent.session_id == session_id)
        if since is not None:
            stmt = stmt.where(ListeningEvent.timestamp >= since)
        stmt = stmt.order_by(ListeningEvent.timestamp, ListeningEvent.id)
        return list(self.session.execute(stmt).scalars().all())

    def window_start(self, days: float) -> datetime:
        return self.clock() - timedelta(days=days)

    # PUBLIC_INTERFACE
    def distinct_song_ids(self, user_id: str, since: Optional[datetime] = None) -> List[str]:
        """Song ids the user has listened to, in first-listen order."""
        stmt = select(ListeningEvent.song_id).where(ListeningEvent.user_id == user_id)
        if since is not None:
            stmt = stmt.where(ListeningEvent.timestamp >= since)
        stmt = stmt.order_by(ListeningEvent.timestamp, ListeningEvent.id)
        seen: dict = {}
        for song_id in self.session.execute(stmt).scalars():
            seen.setdefault(song_id, None)
        return list(seen)

    def events_on_songs(self, song_ids: Iterable[str], exclude_user: str) -> List[ListeningEvent]:
        """Other users' events on any of `song_ids`."""
        ids = list(song_ids)
        if not ids:
            return []
        stmt = (
            select(ListeningEvent)
            .where(ListeningEvent.song_id.in_(ids), ListeningEvent.user_id != exclude_user)
            .order_by(ListeningEvent.user_id, ListeningEvent.timestamp, ListeningEvent.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def events_by_users(self, user_ids: Sequence[str], exclude_songs: Iterable[str]) -> List[ListeningEvent]:
        """Events by any of `user_ids` on songs outside `exclude_songs`."""
        if not user_ids:
            return []
        excluded = list(exclude_songs)
        stmt = select(ListeningEvent).where(ListeningEvent.user_id.in_(list(user_ids)))
        if excluded:
            stmt = stmt.where(ListeningEvent.song_id.not_in(excluded))
        stmt = stmt.order_by(ListeningEvent.timestamp, ListeningEvent.id)
        return list(self.session.execute(stmt).scalars().all())

    def events_at_time(self, user_id: str, hour_of_day: int, weekday: int) -> List[ListeningEvent]:
        """The user's events within one hour of `hour_of_day` on the same day of week (no wrap at midnight)."""
        stmt = (
            select(ListeningEvent)
            .where(
                ListeningEvent.user_id == user_id,
                ListeningEvent.hour_of_day >= hour_of_day - 1,
                ListeningEvent.hour_of_day <= hour_of_day + 1,
                ListeningEvent.day_of_week == weekday,
            )
            .order_by(ListeningEvent.timestamp, ListeningEvent.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    # PUBLIC_INTERFACE
    def purge_older_than(self, days: int) -> int:
        """Delete events older than the retention window. Returns the number removed."""
        cutoff = self.window_start(days)
        result = self.session.execute(delete(ListeningEvent).where(ListeningEvent.timestamp < cutoff))
        deleted = result.rowcount or 0
        logger.info("listening_events_purged: deleted=%s older_than_days=%s", deleted, days)
        return deleted
