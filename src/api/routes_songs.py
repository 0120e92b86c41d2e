"""
Song endpoints:
- GET /songs (public catalogue listing)
- GET /songs/{song_id}/stream (presigned playback URL, authenticated)
- GET /media/{token} (serves a presigned object, Range aware)
- PUT/GET /songs/{song_id}/features (content attributes)
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from starlette.responses import StreamingResponse
from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from src.api.auth import Identity, get_current_identity
from src.api.db import db_session_dep
from src.api.deps import clock_dep
from src.api.errors import NotFound
from src.api.feature_store import SongFeatureStore
from src.api.models import Song
from src.api.recommendation_service import SIMILAR_MEMO_PREFIX
from src.api.schemas import SongFeatureResponse, SongFeatureUpsert, SongResponse, StreamUrlResponse
from src.api.storage import LocalObjectStorage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Songs"])

_CHUNK_SIZE = 1024 * 1024


def _storage(request: Request) -> LocalObjectStorage:
    return request.app.state.storage


def _sanitize_filename(name: str) -> str:
    # Letters, numbers, dot, dash, underscore.
    name = name.strip().replace("\\", "_").replace("/", "_")
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name)
    return name or "audio"


def _parse_range_header(range_header: str, file_size: int) -> Optional[Tuple[int, int]]:
    """
    Parse a single HTTP Range header ("bytes=start-end") for a file.

    Returns:
        (start, end) inclusive byte offsets if valid, else None.
    """
    if not range_header or not range_header.startswith("bytes="):
        return None

    spec = range_header[len("bytes=") :].strip()
    # Single range only.
    if "," in spec:
        return None

    start_s, end_s = (spec.split("-", 1) + [""])[:2]
    start_s = start_s.strip()
    end_s = end_s.strip()

    try:
        if start_s == "" and end_s == "":
            return None

        if start_s == "":
            # suffix range: last N bytes
            suffix_len = int(end_s)
            if suffix_len <= 0:
                return None
            return (max(file_size - suffix_len, 0), file_size - 1)

        start = int(start_s)
        end = file_size - 1 if end_s == "" else int(end_s)
        if start < 0 or end < start or start >= file_size:
            return None
        return (start, min(end, file_size - 1))
    except ValueError:
        return None


def _iter_file_range(path: Path, start: int, end: int, chunk_size: int = _CHUNK_SIZE) -> Iterator[bytes]:
    """Yield bytes from file [start, end] inclusive."""
    with path.open("rb") as f:
        f.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            chunk = f.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


def _song_response(song: Song) -> SongResponse:
    return SongResponse(
        id=song.id,
        title=song.title,
        artist=song.artist,
        created_at=song.created_at,
        size_bytes=int(song.size_bytes),
        content_type=song.content_type,
        duration_seconds=song.duration_seconds,
    )


@router.get(
    "/songs",
    response_model=List[SongResponse],
    summary="List all songs",
    description="Returns all songs in the catalogue, newest first.",
    operation_id="list_songs",
)
def list_songs(db: Session = Depends(db_session_dep)) -> List[SongResponse]:
    songs = db.execute(select(Song).order_by(desc(Song.created_at), Song.id)).scalars().all()
    return [_song_response(s) for s in songs]


@router.get(
    "/songs/{song_id}/stream",
    response_model=StreamUrlResponse,
    summary="Get a playback URL",
    description="Returns a short-lived presigned URL for the song's audio.",
    operation_id="get_stream_url",
    responses={404: {"description": "Unknown song or missing file"}},
)
def get_stream_url(
    song_id: str,
    request: Request,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(db_session_dep),
) -> StreamUrlResponse:
    song = db.get(Song, song_id)
    if song is None:
        raise NotFound("song_not_found", "Song not found.")

    storage = _storage(request)
    if not storage.exists(song.object_key):
        logger.warning("stream_url_missing_object: song_id=%s key=%s", song_id, song.object_key)
        raise NotFound("object_not_found", "File missing on server.")

    ttl = request.app.state.settings.signed_url_ttl_seconds
    logger.info("stream_url_issued: song_id=%s user_id=%s ttl=%s", song_id, identity.user_id, ttl)
    return StreamUrlResponse(url=storage.presign(song.object_key, ttl), expires_in=ttl)


@router.get(
    "/media/{token}",
    summary="Serve presigned media",
    description="Streams the object named by a presigned token. Supports HTTP Range requests.",
    operation_id="get_media",
    responses={
        200: {"content": {"audio/mpeg": {}}},
        206: {"content": {"audio/mpeg": {}}},
        404: {"description": "Invalid, expired or dangling link"},
    },
)
def get_media(token: str, request: Request):
    media_path = _storage(request).resolve(token)
    try:
        file_size = media_path.stat().st_size
    except OSError as exc:
        logger.warning("media_stat_failed: path=%s exc=%s", media_path, exc.__class__.__name__)
        raise NotFound("object_not_found", "File missing on server.")

    # Empty files are treated as missing rather than streamed.
    if file_size <= 0:
        logger.warning("media_empty_file: path=%s", media_path)
        raise NotFound("object_not_found", "File missing on server.")

    range_header = request.headers.get("range")
    byte_range = _parse_range_header(range_header or "", file_size)
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Disposition": f'inline; filename="{_sanitize_filename(media_path.name)}"',
    }

    if byte_range:
        start, end = byte_range
        headers["Content-Range"] = f"bytes {start}-{end}/{file_size}"
        headers["Content-Length"] = str(end - start + 1)
        return StreamingResponse(_iter_file_range(media_path, start, end), status_code=206, media_type="audio/mpeg", headers=headers)

    headers["Content-Length"] = str(file_size)
    return StreamingResponse(_iter_file_range(media_path, 0, file_size - 1), status_code=200, media_type="audio/mpeg", headers=headers)


@router.put(
    "/songs/{song_id}/features",
    response_model=SongFeatureResponse,
    summary="Store content features",
    description="Upserts analysed audio attributes and classification. Engagement aggregates are not touched.",
    operation_id="put_song_features",
)
def put_song_features(
    request: Request,
    song_id: str,
    body: SongFeatureUpsert,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(db_session_dep),
    clock: Callable[[], datetime] = Depends(clock_dep),
) -> SongFeatureResponse:
    feature = SongFeatureStore(db, clock).upsert_content(song_id, body.attributes())
    # New content attributes shift similarity for every song that shares the genre.
    request.app.state.response_cache.invalidate_prefix(SIMILAR_MEMO_PREFIX)
    logger.info("song_features_upserted: song_id=%s user_id=%s", song_id, identity.user_id)
    return SongFeatureResponse.model_validate(feature)


@router.get(
    "/songs/{song_id}/features",
    response_model=SongFeatureResponse,
    summary="Get content features",
    operation_id="get_song_features",
    responses={404: {"description": "No features recorded for the song"}},
)
def get_song_features(
    song_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(db_session_dep),
    clock: Callable[[], datetime] = Depends(clock_dep),
) -> SongFeatureResponse:
    feature = SongFeatureStore(db, clock).get(song_id)
    if feature is None:
        raise NotFound("song_features_not_found", f"No features for song {song_id}.")
    return SongFeatureResponse.model_validate(feature)
