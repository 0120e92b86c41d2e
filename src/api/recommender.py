"""
Hybrid recommendation engine.

A personalised list blends four candidate sources, merged in this fixed priority
order so the primary `reason` of a song is reproducible:

    content-based   0.4   songs near the user's average audio profile, same genre
    collaborative   0.3   what listeners with overlapping taste played
    trending        0.2   global trending list
    time-context    0.1   songs matching the user's usual mood at this hour/day

Each source over-fetches ceil(limit * weight * 2) candidates. A song's score is the
weighted sum of its raw source scores; the first source that proposed it supplies
its reason. Songs from the user's top-10 history are dropped, the rest are ranked
by score (stable for ties) and truncated. Users with no recent history get the
global trending list instead.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Sequence, Tuple

from src.api.analytics import AnalyticsAggregator
from src.api.constants import RecommendationReason
from src.api.event_store import day_of_week
from src.api.feature_store import FeatureVector
from src.api.models import utcnow

logger = logging.getLogger(__name__)

HISTORY_SEED_SIZE = 10
HISTORY_WINDOW_DAYS = 30
MAX_NEIGHBORS = 10
OVERFETCH = 2

Candidate = Tuple[str, float]


def _clamp_unit(value: float) -> float:
    return max(0.0, min(value, 1.0))


@dataclass(frozen=True)
class Recommendation:
    song_id: str
    score: float
    reason: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {"songId": self.song_id, "score": self.score, "reason": self.reason, "confidence": self.confidence}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recommendation":
        return cls(
            song_id=data["songId"],
            score=float(data["score"]),
            reason=data.get("reason") or RecommendationReason.LISTENING_HISTORY.value,
            confidence=float(data.get("confidence", 0.5)),
        )


@dataclass
class _Blend:
    song_id: str
    score: float = 0.0
    reasons: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Source:
    name: str
    weight: float
    reason: RecommendationReason
    fetch: Callable[[int], List[Candidate]]


class RecommendationEngine:
    def __init__(self, analytics: AnalyticsAggregator, clock: Callable[[], datetime] = utcnow) -> None:
        self.analytics = analytics
        self.events = analytics.events
        self.features = analytics.features
        self.clock = clock

    # PUBLIC_INTERFACE
    def generate(self, user_id: str, limit: int = 20) -> List[Recommendation]:
        """Ranked personalised recommendations for `user_id`."""
        top_songs = self.analytics.get_user_top_songs(user_id, limit=HISTORY_SEED_SIZE, days=HISTORY_WINDOW_DAYS)
        if not top_songs:
            return self.trending(limit)

        seed_ids = [s.song_id for s in top_songs]
        sources = [
            _Source("content_based", 0.4, RecommendationReason.SIMILAR_FEATURES, lambda n: self.content_based(seed_ids, n)),
            _Source("collaborative", 0.3, RecommendationReason.LISTENING_HISTORY, lambda n: self.collaborative(user_id, n)),
            _Source("trending", 0.2, RecommendationReason.TRENDING, self.trending_candidates),
            _Source("time_context", 0.1, RecommendationReason.TIME_PATTERN, lambda n: self.time_context(user_id, n)),
        ]

        blended: Dict[str, _Blend] = {}
        failures = 0
        for source in sources:
            try:
                candidates = source.fetch(math.ceil(limit * source.weight * OVERFETCH))
            except Exception:
                failures += 1
                logger.warning("recommendation_source_failed: source=%s user_id=%s", source.name, user_id, exc_info=True)
                continue
            for song_id, raw_score in candidates:
                entry = blended.setdefault(song_id, _Blend(song_id))
                entry.score += raw_score * source.weight
                entry.reasons.append(source.reason.value)

        if failures == len(sources):
            logger.warning("recommendation_sources_exhausted: user_id=%s falling_back=trending", user_id)
            return self.trending(limit)

        # Only the top-10 seeds are excluded, not the full history.
        listened = set(seed_ids)
        ranked = sorted((b for b in blended.values() if b.song_id not in listened), key=lambda b: -b.score)
        return [
            Recommendation(song_id=b.song_id, score=b.score, reason=b.reasons[0], confidence=_clamp_unit(b.score))
            for b in ranked[:limit]
        ]

    # PUBLIC_INTERFACE
    def trending(self, limit: int) -> List[Recommendation]:
        """Global trending list shaped as recommendations (the no-history path)."""
        return [
            Recommendation(
                song_id=song_id,
                score=score,
                reason=RecommendationReason.TRENDING.value,
                confidence=_clamp_unit(score),
            )
            for song_id, score in self.trending_candidates(limit)
        ]

    def trending_candidates(self, limit: int) -> List[Candidate]:
        return [(t.song_id, t.trend_score / 100) for t in self.features.get_trending(None, limit)]

    def content_based(self, seed_ids: Sequence[str], limit: int) -> List[Candidate]:
        """Same-genre songs ranked by similarity to the seeds' average feature vector."""
        by_id = {f.song_id: f for f in self.features.get_many(seed_ids)}
        seeds = [by_id[song_id] for song_id in seed_ids if song_id in by_id]
        if not seeds:
            return []

        genres = Counter(f.primary_genre for f in seeds if f.primary_genre)
        if not genres:
            return []
        genre = genres.most_common(1)[0][0]

        similar = self.features.find_near(FeatureVector.mean(seeds), genre, exclude=seed_ids, limit=limit)
        return [(s.song_id, s.similarity) for s in similar]

    def collaborative(self, user_id: str, limit: int) -> List[Candidate]:
        """
        Songs played by the (up to 10) users whose listening overlaps most with
        `user_id`, scored listenCount*0.6 + avgCompletion*0.4 and normalised so the
        best candidate scores 1.0.
        """
        user_songs = self.events.distinct_song_ids(user_id)
        if not user_songs:
            return []

        common: Dict[str, set] = {}
        for event in self.events.events_on_songs(user_songs, exclude_user=user_id):
            common.setdefault(event.user_id, set()).add(event.song_id)
        neighbors = sorted(common, key=lambda uid: -len(common[uid]) / len(user_songs))[:MAX_NEIGHBORS]
        if not neighbors:
            return []

        counts: Dict[str, int] = {}
        completion: Dict[str, float] = {}
        for event in self.events.events_by_users(neighbors, exclude_songs=user_songs):
            counts[event.song_id] = counts.get(event.song_id, 0) + 1
            completion[event.song_id] = completion.get(event.song_id, 0.0) + event.completion_rate

        scored = [
            (song_id, count * 0.6 + (completion[song_id] / count) * 0.4)
            for song_id, count in counts.items()
        ]
        scored.sort(key=lambda pair: -pair[1])
        scored = scored[:limit]
        if not scored:
            return []

        max_score = max(score for _, score in scored)
        return [(song_id, score / max_score) for song_id, score in scored]

    def time_context(self, user_id: str, limit: int) -> List[Candidate]:
        """Unheard songs within ±0.2 energy/valence of what the user plays at this hour and weekday."""
        now = self.clock()
        events = self.events.events_at_time(user_id, now.hour, day_of_week(now))
        if not events:
            return []

        song_ids = list(dict.fromkeys(e.song_id for e in events))
        features = self.features.get_many(song_ids)
        if not features:
            return []

        avg_energy = sum(f.energy or 0.0 for f in features) / len(features)
        avg_valence = sum(f.valence or 0.0 for f in features) / len(features)
        return self.features.find_in_band(avg_energy, avg_valence, exclude=song_ids, limit=limit)

    # PUBLIC_INTERFACE
    def similar_songs(self, song_id: str, limit: int = 20) -> List[Recommendation]:
        """Songs closest to one seed song. Raises NotFound for an unknown seed."""
        return [
            Recommendation(
                song_id=s.song_id,
                score=s.similarity,
                reason=RecommendationReason.SIMILAR_FEATURES.value,
                confidence=_clamp_unit(s.similarity),
            )
            for s in self.features.find_similar(song_id, limit)
        ]

    # PUBLIC_INTERFACE
    def mood_recommendations(self, user_id: str, mood: str, limit: int = 20) -> List[Recommendation]:
        """
        Songs of `mood` ranked by genreMatchCount*0.6 + popularity/100*0.4 (capped at 1).

        Confidence is the song's own mood score, not the ranking score. Only a missing
        score defaults to 0.5; a recorded 0.0 is reported as-is.
        """
        candidates = self.features.find_by_mood(mood, limit * 2)
        user_features = self.features.get_many(self.events.distinct_song_ids(user_id))
        genre_prefs = Counter(f.primary_genre for f in user_features if f.primary_genre)

        recommendations = [
            Recommendation(
                song_id=song.song_id,
                score=min(genre_prefs.get(song.primary_genre, 0) * 0.6 + (song.popularity_score or 0.0) / 100 * 0.4, 1.0),
                reason=RecommendationReason.MOOD_MATCH.value,
                confidence=song.mood_score if song.mood_score is not None else 0.5,
            )
            for song in candidates
        ]
        recommendations.sort(key=lambda r: -r.score)
        return recommendations[:limit]
