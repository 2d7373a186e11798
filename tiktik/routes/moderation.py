import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends

from tiktik.auth import get_current_viewer
from tiktik.dependencies import get_live_service
from tiktik.live_view import LiveService
from tiktik.models import BanRequest, SlowModeRequest, TimeoutRequest, Viewer

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/streams/{stream_id}/moderation")


@router.post("/ban")
async def ban_viewer(
    stream_id: str,
    payload: BanRequest,
    viewer: Viewer = Depends(get_current_viewer),
    service: LiveService = Depends(get_live_service),
):
    capability = await service.capability_for(stream_id, viewer)
    chat_settings = await service.moderation.ban(stream_id, payload.viewer_id, capability)
    return {"message": f"{payload.viewer_id} has been banned", "settings": chat_settings}


@router.post("/timeout")
async def timeout_viewer(
    stream_id: str,
    payload: TimeoutRequest,
    viewer: Viewer = Depends(get_current_viewer),
    service: LiveService = Depends(get_live_service),
):
    capability = await service.capability_for(stream_id, viewer)
    expires_at = service.moderation.timeout(
        stream_id, payload.viewer_id, capability, payload.duration_ms
    )
    return {
        "message": f"{payload.viewer_id} timed out",
        "expires_at": datetime.fromtimestamp(expires_at, timezone.utc).isoformat(),
    }


@router.post("/slow-mode")
async def set_slow_mode(
    stream_id: str,
    payload: SlowModeRequest,
    viewer: Viewer = Depends(get_current_viewer),
    service: LiveService = Depends(get_live_service),
):
    capability = await service.capability_for(stream_id, viewer)
    return await service.moderation.set_slow_mode(
        stream_id, payload.enabled, capability, payload.duration_ms
    )


@router.post("/slow-mode/toggle")
async def toggle_slow_mode(
    stream_id: str,
    viewer: Viewer = Depends(get_current_viewer),
    service: LiveService = Depends(get_live_service),
):
    capability = await service.capability_for(stream_id, viewer)
    return await service.moderation.toggle_slow_mode(stream_id, capability)
