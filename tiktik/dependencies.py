"""FastAPI dependencies for the services built in the application lifespan"""

from typing import Optional

from fastapi import HTTPException, status
from starlette.requests import HTTPConnection

from tiktik.analytics import AnalyticsService
from tiktik.live_view import LiveService
from tiktik.uploads import UploadSigner


def get_live_service(conn: HTTPConnection) -> LiveService:
    service = getattr(conn.app.state, "live_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Live service is starting up",
        )
    return service


def get_analytics(conn: HTTPConnection) -> Optional[AnalyticsService]:
    service = getattr(conn.app.state, "live_service", None)
    return service.analytics if service else None


def get_upload_signer(conn: HTTPConnection) -> UploadSigner:
    signer = getattr(conn.app.state, "upload_signer", None)
    if signer is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Upload service not configured",
        )
    return signer
