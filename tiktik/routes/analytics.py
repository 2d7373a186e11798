import logging
import traceback
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from tiktik.analytics import AnalyticsService
from tiktik.dependencies import get_analytics

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/analytics")


def _require_analytics(analytics: Optional[AnalyticsService]) -> AnalyticsService:
    if analytics is None:
        raise HTTPException(status_code=503, detail="Analytics is disabled")
    return analytics


@router.get("/streams/{stream_id}")
async def get_stream_stats(
    stream_id: str, analytics: Optional[AnalyticsService] = Depends(get_analytics)
):
    """Get aggregated watch statistics for a stream"""
    analytics = _require_analytics(analytics)
    try:
        stats = await analytics.get_stream_stats(stream_id)
        if not stats:
            raise HTTPException(
                status_code=404,
                detail=f"No analytics data found for stream {stream_id}",
            )
        return stats
    except HTTPException:
        raise  # Re-raise HTTP exceptions as-is
    except Exception as e:
        logger.error(
            f"Error getting stats for stream {stream_id}: {type(e).__name__}: {str(e)}"
        )
        logger.error(f"Traceback: {traceback.format_exc()}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/streams/{stream_id}/sessions")
async def get_stream_sessions(
    stream_id: str,
    limit: int = Query(50, ge=1, le=500),
    analytics: Optional[AnalyticsService] = Depends(get_analytics),
):
    """Get the most recent watch sessions of a stream"""
    analytics = _require_analytics(analytics)
    try:
        sessions = await analytics.get_recent_sessions(stream_id, limit)
        return {"stream_id": stream_id, "sessions": sessions, "count": len(sessions)}
    except Exception as e:
        logger.error(
            f"Error getting sessions for stream {stream_id}: {type(e).__name__}: {str(e)}"
        )
        raise HTTPException(status_code=500, detail="Internal server error")
