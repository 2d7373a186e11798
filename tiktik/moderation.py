"""Per-stream chat moderation: bans, timeouts and slow mode.

Every check here runs in the sending view before a message is written.
Nothing on the storage write path enforces these rules, so a modified
client can bypass them.
"""

import logging
import time
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from tiktik.config import settings
from tiktik.errors import BannedError, NotModeratorError, TimedOutError
from tiktik.models import ChatSettings, Stream, Viewer
from tiktik.storage import StorageInterface

logger = logging.getLogger(__name__)


class ModeratorCapability(BaseModel):
    """Moderation rights of one viewer on one stream, decided once per view"""

    model_config = ConfigDict(frozen=True)

    stream_id: str
    viewer_id: Optional[str] = None
    is_moderator: bool = False

    @classmethod
    def for_viewer(
        cls, stream: Stream, viewer: Optional[Viewer]
    ) -> "ModeratorCapability":
        viewer_id = viewer.uid if viewer else None
        return cls(
            stream_id=stream.id,
            viewer_id=viewer_id,
            is_moderator=viewer_id is not None and viewer_id == stream.owner_id,
        )


class TimeoutRegistry:
    """Timeout expiries held in process memory only.

    Entries are never persisted; a restart clears every active timeout.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._expiries: Dict[Tuple[str, str], float] = {}

    def add(self, stream_id: str, viewer_id: str, duration_ms: int) -> float:
        expires_at = self.clock() + duration_ms / 1000
        self._expiries[(stream_id, viewer_id)] = expires_at
        return expires_at

    def remaining(self, stream_id: str, viewer_id: str) -> float:
        """Seconds left on a timeout, 0 when there is none"""
        key = (stream_id, viewer_id)
        expires_at = self._expiries.get(key)
        if expires_at is None:
            return 0.0
        remaining = expires_at - self.clock()
        if remaining <= 0:
            del self._expiries[key]
            return 0.0
        return remaining

    def clear_stream(self, stream_id: str) -> None:
        for key in [k for k in self._expiries if k[0] == stream_id]:
            del self._expiries[key]


class ModerationController:
    def __init__(
        self,
        storage: StorageInterface,
        timeouts: Optional[TimeoutRegistry] = None,
        clock: Callable[[], float] = time.time,
        default_cooldown_ms: int = settings.CHAT_DEFAULT_COOLDOWN_MS,
        default_timeout_ms: int = settings.DEFAULT_TIMEOUT_MS,
    ):
        self.storage = storage
        self.clock = clock
        self.timeouts = timeouts or TimeoutRegistry(clock)
        self.default_cooldown_ms = default_cooldown_ms
        self.default_timeout_ms = default_timeout_ms
        self._settings: Dict[str, ChatSettings] = {}

    def require_moderator(self, stream_id: str, capability: ModeratorCapability) -> None:
        if capability.stream_id != stream_id or not capability.is_moderator:
            raise NotModeratorError()

    async def load_settings(self, stream_id: str) -> ChatSettings:
        """Re-read the stream's chat settings from storage"""
        chat_settings = await self.storage.get_chat_settings(stream_id)
        self._settings[stream_id] = chat_settings
        return chat_settings

    def cached_settings(self, stream_id: str) -> ChatSettings:
        return self._settings.get(stream_id) or ChatSettings()

    def forget(self, stream_id: str) -> None:
        self._settings.pop(stream_id, None)
        self.timeouts.clear_stream(stream_id)

    def cooldown_ms(self, stream_id: str) -> int:
        """Minimum gap between one sender's ordinary messages"""
        chat_settings = self.cached_settings(stream_id)
        if chat_settings.slow_mode_enabled:
            return chat_settings.slow_mode_duration_ms
        return self.default_cooldown_ms

    def check_sender(self, stream_id: str, viewer_id: str) -> None:
        """Raise if the viewer may not post right now"""
        if viewer_id in self.cached_settings(stream_id).banned_users:
            raise BannedError()

        remaining = self.timeouts.remaining(stream_id, viewer_id)
        if remaining > 0:
            raise TimedOutError(remaining)

    async def ban(
        self, stream_id: str, viewer_id: str, capability: ModeratorCapability
    ) -> ChatSettings:
        self.require_moderator(stream_id, capability)
        await self.storage.add_banned_user(stream_id, viewer_id)
        logger.info(f"Banned {viewer_id} from stream {stream_id}")
        return await self.load_settings(stream_id)

    def timeout(
        self,
        stream_id: str,
        viewer_id: str,
        capability: ModeratorCapability,
        duration_ms: Optional[int] = None,
    ) -> float:
        """Mute a viewer for duration_ms, returning the expiry instant"""
        self.require_moderator(stream_id, capability)
        duration_ms = duration_ms or self.default_timeout_ms
        expires_at = self.timeouts.add(stream_id, viewer_id, duration_ms)
        logger.info(
            f"Timed out {viewer_id} on stream {stream_id} for {duration_ms / 1000:g}s"
        )
        return expires_at

    async def set_slow_mode(
        self,
        stream_id: str,
        enabled: bool,
        capability: ModeratorCapability,
        duration_ms: Optional[int] = None,
    ) -> ChatSettings:
        self.require_moderator(stream_id, capability)
        if duration_ms is None:
            current = await self.load_settings(stream_id)
            duration_ms = current.slow_mode_duration_ms

        await self.storage.set_slow_mode(stream_id, enabled, duration_ms)
        if enabled:
            logger.info(f"Slow mode enabled on stream {stream_id} ({duration_ms / 1000:g}s)")
        else:
            logger.info(f"Slow mode disabled on stream {stream_id}")
        return await self.load_settings(stream_id)

    async def toggle_slow_mode(
        self, stream_id: str, capability: ModeratorCapability
    ) -> ChatSettings:
        self.require_moderator(stream_id, capability)
        current = await self.load_settings(stream_id)
        return await self.set_slow_mode(
            stream_id,
            not current.slow_mode_enabled,
            capability,
            current.slow_mode_duration_ms,
        )
