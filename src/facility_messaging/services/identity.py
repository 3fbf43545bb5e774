"""Identity providers exposing the current actor."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Protocol

from jose import JWTError, jwt

from facility_messaging.core.errors import AccessError
from facility_messaging.core.settings import settings
from facility_messaging.db.time import utcnow


class IdentityProvider(Protocol):
    """Source of the signed-in user's identity-provider subject."""

    def current_auth_id(self) -> str | None:
        """Return the subject, or None when nobody is signed in."""
        ...


class StaticIdentityProvider:
    """Identity provider returning a fixed subject."""

    def __init__(self, auth_id: str | None) -> None:
        self.auth_id = auth_id

    def current_auth_id(self) -> str | None:
        return self.auth_id


class JwtIdentityProvider:
    """Reads the subject from a signed access token."""

    def __init__(
        self,
        token: str,
        *,
        secret: str | None = None,
        algorithm: str | None = None,
        audience: str | None = None,
    ) -> None:
        self.token = token
        self.secret = secret or settings.jwt_secret
        self.algorithm = algorithm or settings.jwt_algorithm
        self.audience = audience if audience is not None else settings.jwt_audience

    def claims(self) -> dict[str, Any]:
        """Decode and verify the token.

        Raises:
            AccessError: If the token is invalid or expired.
        """
        options = {"verify_aud": self.audience is not None}
        try:
            return jwt.decode(
                self.token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options=options,
            )
        except JWTError as err:
            raise AccessError("Could not validate credentials") from err

    def current_auth_id(self) -> str | None:
        subject = self.claims().get("sub")
        return str(subject) if subject else None


def issue_token(
    subject: str,
    *,
    secret: str | None = None,
    algorithm: str | None = None,
    expires_in: timedelta = timedelta(hours=1),
    extra_claims: dict[str, Any] | None = None,
) -> str:
    """Create a signed access token for ``subject``."""
    now = utcnow()
    payload: dict[str, Any] = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
    }
    if extra_claims:
        payload.update(extra_claims)
    encoded: str = jwt.encode(
        payload,
        secret or settings.jwt_secret,
        algorithm=algorithm or settings.jwt_algorithm,
    )
    return encoded
