import logging
from fastapi import APIRouter, Depends, HTTPException

from tiktik.auth import get_current_viewer
from tiktik.dependencies import get_live_service
from tiktik.errors import TikTikError
from tiktik.live_view import LiveService
from tiktik.models import StartStreamRequest, Viewer

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/streams")


@router.post("")
async def start_stream(
    payload: StartStreamRequest,
    viewer: Viewer = Depends(get_current_viewer),
    service: LiveService = Depends(get_live_service),
):
    """Go live"""
    try:
        stream = await service.start_stream(
            viewer, payload.title, payload.description, payload.video_url
        )
        return stream
    except TikTikError:
        raise
    except Exception as e:
        logger.error(f"Error starting stream for {viewer.uid}: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/live")
async def get_live_streams(service: LiveService = Depends(get_live_service)):
    """Get all currently live streams"""
    live_streams = await service.list_live_streams()
    return {"live_streams": live_streams, "count": len(live_streams)}


@router.get("/{stream_id}")
async def get_stream(stream_id: str, service: LiveService = Depends(get_live_service)):
    return await service.get_stream(stream_id)


@router.post("/{stream_id}/end")
async def end_stream(
    stream_id: str,
    viewer: Viewer = Depends(get_current_viewer),
    service: LiveService = Depends(get_live_service),
):
    """End a live stream (owner only)"""
    capability = await service.capability_for(stream_id, viewer)
    stream = await service.end_stream(stream_id, capability)
    return {"message": "Stream ended successfully", "stream": stream}


@router.delete("/{stream_id}")
async def delete_stream(
    stream_id: str,
    viewer: Viewer = Depends(get_current_viewer),
    service: LiveService = Depends(get_live_service),
):
    """Delete a stream and its chat (owner only)"""
    capability = await service.capability_for(stream_id, viewer)
    removed = await service.delete_stream(stream_id, capability)
    return {"message": "Stream deleted successfully", "messages_deleted": removed}


@router.get("/{stream_id}/viewers")
async def get_viewers(stream_id: str, service: LiveService = Depends(get_live_service)):
    stream = await service.get_stream(stream_id)
    viewers = await service.presence.list_viewers(stream_id)
    return {
        "stream_id": stream_id,
        "current_viewers": stream.current_viewers,
        "peak_viewers": stream.peak_viewers,
        "viewers": viewers,
    }
