from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from photo_catalog.core.exceptions import Unauthenticated


class IdentityVerifier:
    """Resolves a bearer credential (HMAC-signed JWT) to the owner identity in its ``sub`` claim."""

    def __init__(self, secret: str, algorithm: str = "HS256", issuer: Optional[str] = None) -> None:
        if not secret:
            raise ValueError("JWT_SECRET must be configured")
        self._secret = secret
        self._algorithm = algorithm
        self._issuer = issuer or None

    def verify(self, credential: Optional[str]) -> str:
        if not credential:
            raise Unauthenticated("Missing bearer credential")
        try:
            payload = jwt.decode(
                credential,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise Unauthenticated("Credential has expired")
        except jwt.InvalidTokenError:
            raise Unauthenticated("Invalid credential")

        if payload.get("type", "access") != "access":
            raise Unauthenticated("Credential is not an access token")
        owner_id = str(payload["sub"]).strip()
        if not owner_id:
            raise Unauthenticated("Credential has no subject")
        return owner_id

    def issue(self, owner_id: str, ttl: timedelta = timedelta(hours=1)) -> str:
        """Mint a signed access token for ``owner_id`` that expires after ``ttl``."""
        now = datetime.now(timezone.utc)
        claims = {"sub": owner_id, "type": "access", "iat": now, "exp": now + ttl}
        if self._issuer:
            claims["iss"] = self._issuer
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)
