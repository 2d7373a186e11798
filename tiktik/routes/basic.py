from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from tiktik.analytics import AnalyticsService
from tiktik.config import settings
from tiktik.dependencies import get_analytics, get_live_service
from tiktik.live_view import LiveService

router = APIRouter()


@router.get("/")
async def root():
    return {"message": "TikTik Live API"}


@router.get("/health")
async def health_check(
    service: LiveService = Depends(get_live_service),
    analytics: Optional[AnalyticsService] = Depends(get_analytics),
):
    storage_status = await service.storage.health_check()
    if analytics is None:
        mongodb_status = "disabled"
        overall_healthy = storage_status
    else:
        mongodb_ok = await analytics.health_check()
        mongodb_status = "connected" if mongodb_ok else "disconnected"
        overall_healthy = storage_status and mongodb_ok

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "storage": "connected" if storage_status else "disconnected",
        "mongodb": mongodb_status,
    }


@router.get("/api/health")
async def api_health():
    return {
        "status": "ok",
        "identity": bool(settings.IDENTITY_SECRET),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/api/get-config")
async def get_client_config():
    """Configuration the browser client needs to sign in and upload"""
    if not settings.IDENTITY_ISSUER or not settings.IDENTITY_AUDIENCE:
        raise HTTPException(
            status_code=500,
            detail="Identity configuration not set. Please configure environment variables.",
        )

    return {
        "identity": {
            "issuer": settings.IDENTITY_ISSUER,
            "audience": settings.IDENTITY_AUDIENCE,
        },
        "storage": {
            "bucket": settings.STORAGE_BUCKET or None,
            "publicBaseUrl": settings.STORAGE_PUBLIC_BASE_URL,
        },
    }
