import logging
import time
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from tiktik.config import settings
from tiktik.errors import (
    BackendUnavailableError,
    CooldownError,
    InvalidSuperChatError,
    MessageLengthError,
    UnauthenticatedError,
)
from tiktik.models import UNNAMED_SENDER, ChatMessage, MessageView, Viewer
from tiktik.moderation import ModerationController
from tiktik.storage import StorageInterface
from tiktik.subscriptions import Handler, Subscription

logger = logging.getLogger(__name__)

# Highlight colour by minimum amount, highest tier first
SUPER_CHAT_TIERS = (
    (100, "#ff0000"),
    (50, "#ff6b00"),
    (20, "#ffaa00"),
    (10, "#00e5ff"),
    (5, "#1de9b6"),
)
DEFAULT_SUPER_CHAT_COLOR = "#4CAF50"


def super_chat_color(amount: float) -> str:
    """Highlight colour for a super chat of the given amount"""
    for threshold, color in SUPER_CHAT_TIERS:
        if amount >= threshold:
            return color
    return DEFAULT_SUPER_CHAT_COLOR


def format_timestamp(timestamp: Optional[datetime], now: datetime) -> str:
    """Relative time label shown next to a chat message"""
    if timestamp is None:
        return "Just now"
    seconds = int((now - timestamp).total_seconds())
    if seconds < 60:
        return "Just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return timestamp.strftime("%H:%M:%S")


def render_message(
    message: ChatMessage,
    viewer_id: Optional[str],
    is_moderator: bool,
    now: datetime,
) -> MessageView:
    amount_badge = None
    if message.is_super_chat and message.super_chat_amount:
        amount_badge = f"${message.super_chat_amount:g}"

    display_name = message.sender_name or UNNAMED_SENDER
    return MessageView(
        id=message.id,
        seq=message.seq,
        sender_id=message.sender_id,
        avatar_initial=display_name[0].upper(),
        display_name=display_name,
        amount_badge=amount_badge,
        relative_time=format_timestamp(message.timestamp, now),
        text=message.text,
        is_super_chat=message.is_super_chat,
        highlight_color=message.highlight_color,
        show_mod_actions=is_moderator and message.sender_id != viewer_id,
    )


class ChatStream:
    """Live chat for the streams one client has open.

    Cooldowns are tracked per client: the last accepted send time is kept
    here, not in storage.
    """

    def __init__(
        self,
        storage: StorageInterface,
        moderation: ModerationController,
        clock: Callable[[], float] = time.time,
        history_limit: int = settings.CHAT_HISTORY_LIMIT,
        max_length: int = settings.CHAT_MAX_LENGTH,
    ):
        self.storage = storage
        self.moderation = moderation
        self.clock = clock
        self.history_limit = history_limit
        self.max_length = max_length
        self._last_sent: Dict[Tuple[str, str], float] = {}

    async def subscribe(self, stream_id: str, on_message: Handler) -> Subscription:
        """Deliver the newest messages, then every new one, to on_message"""
        feed = await self.storage.subscribe_messages(stream_id, self.history_limit)
        return Subscription(feed, on_message, name=f"chat:{stream_id}")

    async def recent(self, stream_id: str, limit: int = 50) -> List[ChatMessage]:
        return await self.storage.get_recent_messages(stream_id, limit)

    async def send(
        self,
        stream_id: str,
        sender: Optional[Viewer],
        text: str,
        is_super_chat: bool = False,
        amount: float = 0,
    ) -> ChatMessage:
        if sender is None:
            raise UnauthenticatedError("Please sign in to chat")

        # Settings may have changed since the view opened
        await self.moderation.load_settings(stream_id)
        self.moderation.check_sender(stream_id, sender.uid)

        text = (text or "").strip()
        if not text or len(text) > self.max_length:
            raise MessageLengthError(self.max_length)
        if is_super_chat and amount < 1:
            raise InvalidSuperChatError()

        now = self.clock()
        key = (stream_id, sender.uid)
        if not is_super_chat:
            cooldown = self.moderation.cooldown_ms(stream_id) / 1000
            last_sent = self._last_sent.get(key)
            if last_sent is not None and now - last_sent < cooldown:
                raise CooldownError(cooldown - (now - last_sent))

        message = ChatMessage(
            id=str(uuid.uuid4()),
            stream_id=stream_id,
            sender_id=sender.uid,
            sender_name=sender.display_name or UNNAMED_SENDER,
            sender_avatar=sender.photo_url or "",
            text=text,
            is_super_chat=is_super_chat,
            super_chat_amount=amount if is_super_chat else 0,
            highlight_color=super_chat_color(amount) if is_super_chat else None,
        )

        try:
            stored = await self.storage.append_message(message)
        except BackendUnavailableError as e:
            logger.error(f"Error sending message to stream {stream_id}: {e}")
            raise

        self._last_sent[key] = now
        if is_super_chat:
            logger.info(f"Super Chat of ${amount:g} from {sender.uid} on stream {stream_id}")
        return stored

