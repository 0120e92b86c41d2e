"""
Enumerations shared by the ORM layer, the request schemas and the recommendation core.
"""

from __future__ import annotations

from enum import Enum


class ListenSource(str, Enum):
    SEARCH = "search"
    PLAYLIST = "playlist"
    RECOMMENDATION = "recommendation"
    ALBUM = "album"
    ARTIST = "artist"
    RADIO = "radio"


class DeviceType(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"
    TV = "tv"
    CAR = "car"
    OTHER = "other"


class NetworkType(str, Enum):
    WIFI = "wifi"
    G5 = "5g"
    G4 = "4g"
    G3 = "3g"
    G2 = "2g"
    OFFLINE = "offline"


class StreamQuality(str, Enum):
    ORIGINAL = "original"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    PREVIEW = "preview"


class Mood(str, Enum):
    HAPPY = "happy"
    SAD = "sad"
    ENERGETIC = "energetic"
    CALM = "calm"
    AGGRESSIVE = "aggressive"
    ROMANTIC = "romantic"
    MELANCHOLIC = "melancholic"
    UPLIFTING = "uplifting"
    DARK = "dark"
    CHILL = "chill"


class AnalysisSource(str, Enum):
    SPOTIFY = "spotify"
    LASTFM = "lastfm"
    CUSTOM = "custom"
    ML_MODEL = "ml_model"


class RecommendationType(str, Enum):
    DAILY_MIX = "daily_mix"
    DISCOVER_WEEKLY = "discover_weekly"
    SIMILAR_TO_SONG = "similar_to_song"
    SIMILAR_TO_ARTIST = "similar_to_artist"
    MOOD_BASED = "mood_based"
    GENRE_BASED = "genre_based"
    TIME_BASED = "time_based"
    TRENDING = "trending"
    PERSONALIZED = "personalized"


class RecommendationReason(str, Enum):
    SIMILAR_FEATURES = "similar_features"
    LISTENING_HISTORY = "listening_history"
    COLLABORATIVE_FILTERING = "collaborative_filtering"
    TRENDING = "trending"
    GENRE_MATCH = "genre_match"
    MOOD_MATCH = "mood_match"
    TIME_PATTERN = "time_pattern"


class ModelType(str, Enum):
    CONTENT_BASED = "content_based"
    COLLABORATIVE = "collaborative"
    HYBRID = "hybrid"
    MATRIX_FACTORIZATION = "matrix_factorization"
    NEURAL_NETWORK = "neural_network"


class EngagementEvent(str, Enum):
    VIEW = "view"
    PLAY = "play"
    LIKE = "like"
    SKIP = "skip"


# Genres covered by the hourly trending snapshot job.
STANDARD_GENRES = (
    "pop",
    "rock",
    "hip-hop",
    "electronic",
    "indie",
    "jazz",
    "classical",
    "r&b",
    "country",
    "metal",
)
