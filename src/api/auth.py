"""
Bearer-token identity for the API.

Users are authenticated by a hosted identity provider; this service only verifies
the signed access tokens it issues and trusts `sub` as an opaque user id.

The frontend sends:
- Authorization: Bearer <token>
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from src.api.config import Settings
from src.api.errors import DependencyUnavailable, Unauthenticated

_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None


class IdentityProvider:
    """Verifies access tokens signed with the provider's shared secret."""

    def __init__(self, secret: Optional[str], algorithm: str = "HS256", audience: Optional[str] = None) -> None:
        self.secret = secret
        self.algorithm = algorithm
        self.audience = audience

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdentityProvider":
        return cls(settings.auth_jwt_secret, settings.auth_jwt_algorithm, settings.auth_jwt_audience)

    def _decode(self, token: str) -> Dict[str, Any]:
        if not self.secret:
            raise DependencyUnavailable("auth_misconfigured", "AUTH_JWT_SECRET is not configured.")
        options = {"verify_aud": self.audience is not None}
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm], audience=self.audience, options=options)
        except JWTError:
            raise Unauthenticated("invalid_token", "Invalid or expired token.")

    # PUBLIC_INTERFACE
    def verify(self, token: str) -> Identity:
        """Return the identity carried by `token` or raise Unauthenticated."""
        payload = self._decode(token)
        sub = payload.get("sub")
        if not sub:
            raise Unauthenticated("invalid_token", "Invalid token payload.")
        email = payload.get("email")
        return Identity(user_id=str(sub), email=str(email) if email else None)


# PUBLIC_INTERFACE
def get_current_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Identity:
    """
    FastAPI dependency that returns the authenticated caller.

    Raises 401 if the token is missing or invalid.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthenticated("not_authenticated", "Not authenticated.")
    provider: IdentityProvider = request.app.state.identity_provider
    return provider.verify(credentials.credentials)
