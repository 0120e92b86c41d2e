"""
Pydantic models (request/response shapes) for API endpoints.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.api.constants import (
    AnalysisSource,
    DeviceType,
    EngagementEvent,
    ListenSource,
    Mood,
    NetworkType,
    StreamQuality,
)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TrackListeningRequest(ApiModel):
    song_id: str = Field(..., min_length=1, description="Song that was played.")
    play_duration: int = Field(..., ge=0, description="Milliseconds actually played.")
    song_duration: Optional[int] = Field(None, description="Full song length in milliseconds.")
    skipped: bool = Field(False, description="Whether the listener skipped the song.")
    skip_position: Optional[int] = Field(None, ge=0, description="Playback position of the skip, in milliseconds.")
    source: ListenSource = Field(..., description="Where playback was started from.")
    device_type: DeviceType = Field(DeviceType.MOBILE, description="Playback device class.")
    network_type: Optional[NetworkType] = Field(None, description="Network the device was on.")
    quality: StreamQuality = Field(StreamQuality.HIGH, description="Stream quality tier.")
    liked: bool = False
    added_to_playlist: bool = False
    shared: bool = False
    replayed: bool = False
    session_id: Optional[str] = Field(None, description="Client listening session id.")
    session_position: Optional[int] = Field(None, ge=0, description="Position of this play within the session.")


class TrackListeningResponse(ApiModel):
    pattern_id: uuid.UUID = Field(..., description="Id of the stored listening event.")


class RecommendationOut(ApiModel):
    song_id: str
    score: float
    reason: str
    confidence: float


class TrendingOut(ApiModel):
    song_id: str
    trend_score: float
    popularity_score: float
    total_plays: int


class UserStatsOut(ApiModel):
    total_plays: int = 0
    total_duration: int = 0
    avg_completion_rate: float = 0.0
    skip_rate: float = 0.0
    unique_songs_count: int = 0
    favorite_source: Optional[str] = None


class TopSongOut(ApiModel):
    song_id: str
    play_count: int
    avg_completion_rate: float
    like_count: int
    total_duration: int


class TimePatternOut(ApiModel):
    hour_of_day: int
    day_of_week: int
    count: int


class GenreCountOut(ApiModel):
    genre: str
    count: int


class MoodCountOut(ApiModel):
    mood: str
    count: int


class EventTrendingOut(ApiModel):
    song_id: str
    play_count: int
    unique_listeners: int
    avg_completion_rate: float
    trend_score: float


class PerformanceOut(ApiModel):
    type: str
    total_views: int
    total_plays: int
    total_likes: int
    total_skips: int
    avg_ctr: float = Field(..., alias="avgCTR")
    avg_completion_rate: float
    count: int
    effectiveness: float


class EngagementRequest(ApiModel):
    event: EngagementEvent = Field(..., description="view, play, like or skip.")
    completion_rate: Optional[float] = Field(None, ge=0, le=1, description="Completion of the play, folded into the running average.")


class EngagementResponse(ApiModel):
    cache_id: uuid.UUID
    views: int
    plays: int
    likes: int
    skips: int
    click_through_rate: float
    avg_completion_rate: float
    effectiveness: float


class SimilarSongRef(ApiModel):
    song_id: str
    similarity_score: float = Field(..., ge=0, le=1)


class SongFeatureUpsert(ApiModel):
    """Externally analysed content attributes. Only the fields sent are written."""

    acousticness: Optional[float] = Field(None, ge=0, le=1)
    danceability: Optional[float] = Field(None, ge=0, le=1)
    energy: Optional[float] = Field(None, ge=0, le=1)
    instrumentalness: Optional[float] = Field(None, ge=0, le=1)
    liveness: Optional[float] = Field(None, ge=0, le=1)
    loudness: Optional[float] = None
    speechiness: Optional[float] = Field(None, ge=0, le=1)
    valence: Optional[float] = Field(None, ge=0, le=1)
    tempo: Optional[float] = Field(None, ge=0)
    key: Optional[int] = Field(None, ge=-1, le=11)
    mode: Optional[int] = Field(None, ge=0, le=1)
    time_signature: Optional[int] = Field(None, ge=3, le=7)
    genres: Optional[List[str]] = None
    primary_genre: Optional[str] = None
    mood: Optional[Mood] = None
    mood_score: Optional[float] = Field(None, ge=0, le=1)
    similar_songs: Optional[List[SimilarSongRef]] = None
    analysis_source: Optional[AnalysisSource] = None

    def attributes(self) -> Dict[str, Any]:
        """Fields the caller actually sent, as plain column values."""
        data = self.model_dump(mode="json", exclude_unset=True)
        if "similar_songs" in data and data["similar_songs"] is not None:
            data["similar_songs"] = [
                {"songId": s["song_id"], "similarityScore": s["similarity_score"]} for s in data["similar_songs"]
            ]
        if data.get("genres") and "primary_genre" not in data:
            data["primary_genre"] = Counter(data["genres"]).most_common(1)[0][0]
        return data


class SongFeatureResponse(ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    song_id: str
    acousticness: Optional[float] = None
    danceability: Optional[float] = None
    energy: Optional[float] = None
    instrumentalness: Optional[float] = None
    liveness: Optional[float] = None
    loudness: Optional[float] = None
    speechiness: Optional[float] = None
    valence: Optional[float] = None
    tempo: Optional[float] = None
    key: Optional[int] = None
    mode: Optional[int] = None
    time_signature: Optional[int] = None
    genres: List[str] = Field(default_factory=list)
    primary_genre: Optional[str] = None
    mood: Optional[str] = None
    mood_score: Optional[float] = None
    popularity_score: float
    trending_score: float
    total_plays: int
    unique_listeners: int
    avg_completion_rate: float
    skip_rate: float
    like_count: int
    share_count: int
    playlist_add_count: int
    quality_score: float
    analysis_source: Optional[str] = None
    last_analyzed: datetime
    needs_reanalysis: bool


class SongResponse(ApiModel):
    id: str = Field(..., description="Song id.")
    title: str = Field(..., description="Song title.")
    artist: str = Field(..., description="Song artist.")
    created_at: datetime = Field(..., description="Creation timestamp.")
    size_bytes: int = Field(..., description="File size in bytes.")
    content_type: str = Field(..., description="Content type of the stored audio.")
    duration_seconds: Optional[int] = Field(None, description="Duration in seconds if known.")


class StreamUrlResponse(ApiModel):
    url: str = Field(..., description="Presigned playback URL.")
    expires_in: int = Field(..., description="Seconds until the URL stops working.")


class JobResult(ApiModel):
    job: str
    result: Dict[str, Any] = Field(default_factory=dict)


class HealthResponse(ApiModel):
    status: str
    database: str
