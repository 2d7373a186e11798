"""WebSocket gateway: one connection is one live view.

Client frames are JSON objects with a ``type`` of ``chat``, ``super_chat``,
``ban``, ``timeout``, ``slow_mode``, ``toggle_slow_mode``, ``end_stream`` or
``delete_stream``. The server pushes ``welcome``, ``message``,
``viewer_count``, ``warning``, ``error`` and ``stream_ended`` frames.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from tiktik.auth import get_identity_service
from tiktik.errors import (
    BackendUnavailableError,
    PolicyViolation,
    StreamNotFoundError,
    TikTikError,
)
from tiktik.live_view import LiveView
from tiktik.models import MessageView, Viewer

logger = logging.getLogger(__name__)
router = APIRouter()

CLOSE_UNAUTHORIZED = 4401
CLOSE_NOT_FOUND = 4404
CLOSE_UNAVAILABLE = 1013


class ClientFrame(BaseModel):
    type: Literal[
        "chat",
        "super_chat",
        "ban",
        "timeout",
        "slow_mode",
        "toggle_slow_mode",
        "end_stream",
        "delete_stream",
    ]
    text: str = ""
    amount: float = 0
    viewer_id: Optional[str] = None
    duration_ms: Optional[int] = Field(default=None, gt=0)
    enabled: Optional[bool] = None


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json")


async def handle_frame(view: LiveView, frame: ClientFrame) -> Optional[Dict[str, Any]]:
    """Apply one client frame to the view; returns a reply frame, if any"""
    if frame.type in ("chat", "super_chat"):
        await view.send_message(
            frame.text, is_super_chat=frame.type == "super_chat", amount=frame.amount
        )
        return None

    if frame.type in ("ban", "timeout") and not frame.viewer_id:
        return {"type": "error", "message": "viewer_id is required"}

    if frame.type == "ban":
        chat_settings = await view.ban(frame.viewer_id)
        return {"type": "chat_settings", "settings": _dump(chat_settings)}
    if frame.type == "timeout":
        expires_at = view.timeout(frame.viewer_id, frame.duration_ms)
        return {"type": "timed_out", "viewer_id": frame.viewer_id, "expires_at": expires_at}
    if frame.type == "slow_mode":
        if frame.enabled is None:
            return {"type": "error", "message": "enabled is required"}
        chat_settings = await view.set_slow_mode(frame.enabled, frame.duration_ms)
        return {"type": "chat_settings", "settings": _dump(chat_settings)}
    if frame.type == "toggle_slow_mode":
        chat_settings = await view.toggle_slow_mode()
        return {"type": "chat_settings", "settings": _dump(chat_settings)}
    if frame.type == "end_stream":
        await view.end_stream()
        return {"type": "stream_ended", "stream_id": view.stream_id}

    await view.delete_stream()
    return {"type": "stream_ended", "stream_id": view.stream_id, "deleted": True}


async def _resolve_viewer(websocket: WebSocket, token: Optional[str]) -> Optional[Viewer]:
    if not token:
        return None
    identity = get_identity_service(websocket)
    if identity is None:
        logger.error("Identity service not configured. Cannot verify authentication.")
        return None
    return identity.verify_token(token)


@router.websocket("/live/{stream_id}/ws")
async def live_websocket(websocket: WebSocket, stream_id: str, token: Optional[str] = None):
    await websocket.accept()

    service = getattr(websocket.app.state, "live_service", None)
    if service is None:
        await websocket.close(code=CLOSE_UNAVAILABLE)
        return

    viewer = await _resolve_viewer(websocket, token)
    if token and viewer is None:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    outbox: asyncio.Queue = asyncio.Queue()

    def on_message(message: MessageView) -> None:
        outbox.put_nowait({"type": "message", "message": _dump(message)})

    def on_viewer_count(count: int) -> None:
        outbox.put_nowait({"type": "viewer_count", "count": count})

    try:
        view = await service.open_view(stream_id, viewer, on_message, on_viewer_count)
    except StreamNotFoundError:
        await websocket.close(code=CLOSE_NOT_FOUND)
        return
    except TikTikError as e:
        logger.error(f"Error opening live view for stream {stream_id}: {e}")
        await websocket.close(code=CLOSE_UNAVAILABLE)
        return

    async def sender() -> None:
        while True:
            frame = await outbox.get()
            await websocket.send_json(frame)

    viewer_id = viewer.uid if viewer else "anonymous"
    logger.info(f"Live view opened: stream {stream_id}, viewer {viewer_id}")

    sender_task: Optional[asyncio.Task] = None
    try:
        await websocket.send_json(
            {
                "type": "welcome",
                "stream": _dump(view.stream),
                "viewer_id": viewer.uid if viewer else None,
                "is_moderator": view.is_moderator,
                "can_chat": viewer is not None,
            }
        )
        sender_task = asyncio.create_task(sender())

        while True:
            raw = await websocket.receive_text()
            try:
                frame = ClientFrame.model_validate(json.loads(raw))
            except (ValueError, ValidationError):
                outbox.put_nowait({"type": "error", "message": "Malformed frame"})
                continue

            try:
                reply = await handle_frame(view, frame)
            except PolicyViolation as e:
                reply = {"type": "warning", "message": str(e)}
            except BackendUnavailableError as e:
                logger.error(f"Backend unavailable on stream {stream_id}: {e}")
                reply = {"type": "error", "message": "Something went wrong, please try again"}
            except TikTikError as e:
                reply = {"type": "error", "message": str(e)}

            if reply is not None:
                outbox.put_nowait(reply)
    except WebSocketDisconnect:
        logger.info(f"Live view closed: stream {stream_id}, viewer {viewer_id}")
    finally:
        if sender_task is not None:
            sender_task.cancel()
            try:
                await sender_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Live view sender stopped: {type(e).__name__}: {e}")
        await view.close()
