import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from starlette.requests import HTTPConnection

from tiktik.models import Viewer

logger = logging.getLogger(__name__)

# Security scheme for identity provider tokens
bearer_scheme = HTTPBearer(auto_error=False)


class IdentityService:
    """Verify identity provider JWTs and turn them into viewers"""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        issuer: str = "",
        audience: str = "",
    ):
        if not secret_key:
            raise ValueError("Identity secret key cannot be empty")

        self.secret_key = secret_key
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience

    def create_token(self, viewer: Viewer, expires_in: timedelta = timedelta(hours=1)) -> str:
        """Issue a token the way the identity provider does (used by local tooling)"""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": viewer.uid,
            "name": viewer.display_name,
            "picture": viewer.photo_url,
            "iat": now,
            "exp": now + expires_in,
        }
        if self.issuer:
            payload["iss"] = self.issuer
        if self.audience:
            payload["aud"] = self.audience
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Optional[Viewer]:
        """Return the viewer for a valid token, None otherwise"""
        options = {"require": ["sub", "exp"]}
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                issuer=self.issuer or None,
                audience=self.audience or None,
                options=options,
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Identity token expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid identity token: {e}")
            return None

        return Viewer(
            uid=payload["sub"],
            display_name=payload.get("name"),
            photo_url=payload.get("picture"),
        )


def get_identity_service(conn: HTTPConnection) -> Optional[IdentityService]:
    return getattr(conn.app.state, "identity", None)


async def get_optional_viewer(
    credentials: HTTPAuthorizationCredentials = Security(bearer_scheme),
    identity: Optional[IdentityService] = Depends(get_identity_service),
) -> Optional[Viewer]:
    """Signed-in viewer if a valid bearer token was sent"""
    if not credentials:
        return None

    if identity is None:
        logger.error("Identity service not configured. Cannot verify authentication.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable: Authentication service not configured",
        )

    viewer = identity.verify_token(credentials.credentials)
    if viewer is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized: Invalid or expired token",
        )
    return viewer


async def get_current_viewer(
    viewer: Optional[Viewer] = Depends(get_optional_viewer),
) -> Viewer:
    """Signed-in viewer, required"""
    if viewer is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized: No token provided",
        )
    return viewer
