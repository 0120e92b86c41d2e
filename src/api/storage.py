"""
Object storage for audio files, backed by a directory on local disk.

Playback goes through presigned URLs: `presign` returns a link to
`/media/{token}` where the token is a short-lived JWT naming the object key.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

from jose import JWTError, jwt

from src.api.config import Settings
from src.api.errors import DependencyUnavailable, NotFound

logger = logging.getLogger(__name__)

_TOKEN_ALGORITHM = "HS256"
_TOKEN_PURPOSE = "media"

# Anchor relative MEDIA_ROOT values to the project root, not the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _media_root(configured: str) -> Path:
    raw = Path(configured.strip() or "media")
    root = raw if raw.is_absolute() else _PROJECT_ROOT / raw
    return root.resolve()


class LocalObjectStorage:
    def __init__(self, media_root: str, signing_secret: Optional[str], public_base_url: str) -> None:
        self.root = _media_root(media_root)
        self.signing_secret = signing_secret
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalObjectStorage":
        return cls(settings.media_root, settings.media_signing_secret, settings.public_base_url)

    def _path(self, object_key: str) -> Path:
        """Resolve `object_key` under the media root, refusing traversal outside it."""
        if not object_key:
            raise NotFound("object_not_found", "File missing on server.")
        candidate = (self.root / object_key).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError:
            raise NotFound("object_not_found", "File missing on server.")
        return candidate

    def _secret(self) -> str:
        if not self.signing_secret:
            raise DependencyUnavailable("storage_misconfigured", "MEDIA_SIGNING_SECRET is not configured.")
        return self.signing_secret

    # PUBLIC_INTERFACE
    def presign(self, object_key: str, ttl_seconds: int) -> str:
        """Return a URL that serves `object_key` until `ttl_seconds` from now."""
        payload = {"key": object_key, "purpose": _TOKEN_PURPOSE, "exp": int(time.time()) + int(ttl_seconds)}
        token = jwt.encode(payload, self._secret(), algorithm=_TOKEN_ALGORITHM)
        return f"{self.public_base_url}/media/{token}"

    # PUBLIC_INTERFACE
    def exists(self, object_key: str) -> bool:
        try:
            return self._path(object_key).is_file()
        except NotFound:
            return False

    # PUBLIC_INTERFACE
    def delete(self, object_key: str) -> bool:
        try:
            path = self._path(object_key)
        except NotFound:
            return False
        if not path.is_file():
            return False
        try:
            path.unlink()
        except OSError as exc:
            logger.warning("storage_delete_failed: key=%s exc=%s", object_key, exc.__class__.__name__)
            return False
        logger.info("storage_object_deleted: key=%s", object_key)
        return True

    # PUBLIC_INTERFACE
    def resolve(self, token: str) -> Path:
        """
        Verify a presigned token and return the file it grants access to.

        Invalid, expired, and dangling tokens all raise NotFound so the media route
        does not reveal which of them it was.
        """
        try:
            payload = jwt.decode(token, self._secret(), algorithms=[_TOKEN_ALGORITHM])
        except JWTError:
            raise NotFound("media_not_found", "Media link is invalid or expired.")
        if payload.get("purpose") != _TOKEN_PURPOSE or not payload.get("key"):
            raise NotFound("media_not_found", "Media link is invalid or expired.")

        path = self._path(str(payload["key"]))
        if not path.is_file():
            logger.warning("media_missing_on_disk: key=%s resolved_path=%s", payload["key"], path)
            raise NotFound("object_not_found", "File missing on server.")
        return path
