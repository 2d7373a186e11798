from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class Viewer(BaseModel):
    """Signed-in identity as reported by the identity provider"""

    uid: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = None


class Stream(BaseModel):
    """A single live broadcast"""

    id: str
    owner_id: str
    owner_name: str = "Channel"
    owner_avatar: str = ""
    title: str = "Live Stream"
    description: str = ""
    video_url: Optional[str] = None
    is_live: bool = True
    was_live: bool = False
    current_viewers: int = 0
    total_watch_time: int = 0  # seconds
    peak_viewers: int = 0
    started_at: datetime
    ended_at: Optional[datetime] = None


class PresenceRecord(BaseModel):
    """One viewer's attendance on one stream"""

    viewer_id: str
    display_name: str = "Anonymous"
    avatar: str = ""
    joined_at: datetime
    is_active: bool = True


# Shown for a chat sender without a display name
UNNAMED_SENDER = "User"


class ChatMessage(BaseModel):
    """Stored live chat message. seq and timestamp are assigned by storage."""

    id: str
    stream_id: str
    seq: int = 0
    sender_id: str
    sender_name: str = UNNAMED_SENDER
    sender_avatar: str = ""
    text: str
    timestamp: Optional[datetime] = None
    is_super_chat: bool = False
    super_chat_amount: float = 0
    highlight_color: Optional[str] = None


class ChatSettings(BaseModel):
    """Per-stream moderation settings, written by the owner only"""

    banned_users: List[str] = Field(default_factory=list)
    slow_mode_enabled: bool = False
    slow_mode_duration_ms: int = 5000


class MessageView(BaseModel):
    """A chat message as a live view displays it"""

    id: str
    seq: int
    sender_id: str
    avatar_initial: str
    display_name: str
    amount_badge: Optional[str] = None
    relative_time: str
    text: str
    is_super_chat: bool = False
    highlight_color: Optional[str] = None
    show_mod_actions: bool = False


class StartStreamRequest(BaseModel):
    title: str = "Live Stream"
    description: str = ""
    video_url: Optional[str] = None


class BanRequest(BaseModel):
    viewer_id: str


class TimeoutRequest(BaseModel):
    viewer_id: str
    duration_ms: Optional[int] = Field(default=None, gt=0)


class SlowModeRequest(BaseModel):
    enabled: bool
    duration_ms: Optional[int] = Field(default=None, gt=0)


class UploadUrlRequest(BaseModel):
    fileName: str
    fileType: str
    fileSize: Optional[int] = None
    kind: str = "video"  # "video", "short" or "livestream"


class UploadUrlResponse(BaseModel):
    uploadUrl: str
    publicUrl: str
    fileKey: str
    expiresAt: Optional[int] = None
    message: Optional[str] = None
