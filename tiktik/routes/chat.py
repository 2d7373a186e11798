from fastapi import APIRouter, Depends, Query

from tiktik.dependencies import get_live_service
from tiktik.live_view import LiveService

router = APIRouter(prefix="/streams")


@router.get("/{stream_id}/chat")
async def get_recent_messages(
    stream_id: str,
    limit: int = Query(50, ge=1, le=100),
    service: LiveService = Depends(get_live_service),
):
    """Get the newest chat messages of a stream, oldest first"""
    await service.get_stream(stream_id)
    messages = await service.chat.recent(stream_id, limit)
    return {"stream_id": stream_id, "messages": messages, "count": len(messages)}


@router.get("/{stream_id}/chat/settings")
async def get_chat_settings(
    stream_id: str, service: LiveService = Depends(get_live_service)
):
    await service.get_stream(stream_id)
    return await service.moderation.load_settings(stream_id)
