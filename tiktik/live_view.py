"""Live stream views and the service that opens them.

A ``LiveService`` is built once by the application and owns the shared
collaborators. Each opened stream gets its own ``LiveView`` which joins
presence, follows chat and the viewer counter, and undoes all of it on
``close``.
"""

import inspect
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from tiktik.analytics import AnalyticsService
from tiktik.analytics_models import WatchSession
from tiktik.chat import ChatStream, render_message
from tiktik.errors import StreamNotFoundError, TikTikError
from tiktik.models import ChatMessage, ChatSettings, MessageView, Stream, Viewer
from tiktik.moderation import ModerationController, ModeratorCapability, TimeoutRegistry
from tiktik.presence import PresenceTracker, ViewerCountSubscription
from tiktik.storage import StorageInterface
from tiktik.subscriptions import Handler, Subscription

logger = logging.getLogger(__name__)


class LiveService:
    def __init__(
        self,
        storage: StorageInterface,
        analytics: Optional[AnalyticsService] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.analytics = analytics
        self.clock = clock
        self.timeouts = TimeoutRegistry(clock)
        self.moderation = ModerationController(storage, self.timeouts, clock)
        self.presence = PresenceTracker(storage, clock)
        # Shared chat reads only. Sends go through each view's own ChatStream
        # so cooldowns stay per client.
        self.chat = ChatStream(storage, self.moderation, clock)

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), timezone.utc)

    async def get_stream(self, stream_id: str) -> Stream:
        stream = await self.storage.get_stream(stream_id)
        if stream is None:
            raise StreamNotFoundError(stream_id)
        return stream

    async def list_live_streams(self) -> List[Stream]:
        streams = await self.storage.get_live_streams()
        return sorted(streams, key=lambda s: s.started_at, reverse=True)

    async def start_stream(
        self,
        owner: Viewer,
        title: str = "Live Stream",
        description: str = "",
        video_url: Optional[str] = None,
    ) -> Stream:
        """Create a live stream owned by the given viewer"""
        stream = Stream(
            id=str(uuid.uuid4()),
            owner_id=owner.uid,
            owner_name=owner.display_name or "Channel",
            owner_avatar=owner.photo_url or "",
            title=title or "Live Stream",
            description=description,
            video_url=video_url,
            started_at=self.now(),
        )
        await self.storage.create_stream(stream)
        logger.info(f"Stream {stream.id} started by {owner.uid}: {stream.title}")
        return stream

    async def capability_for(
        self, stream_id: str, viewer: Optional[Viewer]
    ) -> ModeratorCapability:
        stream = await self.get_stream(stream_id)
        return ModeratorCapability.for_viewer(stream, viewer)

    async def end_stream(self, stream_id: str, capability: ModeratorCapability) -> Stream:
        """Mark a stream as ended. It stays stored as a past broadcast."""
        self.moderation.require_moderator(stream_id, capability)
        stream = await self.storage.update_stream(
            stream_id, is_live=False, was_live=True, ended_at=self.now()
        )
        logger.info(f"Stream {stream_id} ended")
        return stream

    async def delete_stream(self, stream_id: str, capability: ModeratorCapability) -> int:
        """Delete a stream with its whole chat log; returns messages removed"""
        self.moderation.require_moderator(stream_id, capability)
        await self.storage.delete_stream(stream_id)
        removed = await self.storage.delete_messages(stream_id)
        await self.storage.delete_chat_settings(stream_id)
        self.moderation.forget(stream_id)
        logger.info(f"Stream {stream_id} deleted ({removed} chat messages removed)")
        return removed

    async def open_view(
        self,
        stream_id: str,
        viewer: Optional[Viewer],
        on_message: Optional[Handler] = None,
        on_viewer_count: Optional[Handler] = None,
    ) -> "LiveView":
        stream = await self.get_stream(stream_id)
        view = LiveView(self, stream, viewer, on_message, on_viewer_count)
        try:
            await view.open()
        except Exception:
            await view.close()
            raise
        return view


class LiveView:
    """One viewer's open live stream"""

    def __init__(
        self,
        service: LiveService,
        stream: Stream,
        viewer: Optional[Viewer],
        on_message: Optional[Handler] = None,
        on_viewer_count: Optional[Handler] = None,
    ):
        self.service = service
        self.stream = stream
        self.viewer = viewer
        self.capability = ModeratorCapability.for_viewer(stream, viewer)
        self.chat = ChatStream(service.storage, service.moderation, service.clock)
        self._on_message = on_message
        self._on_viewer_count = on_viewer_count
        self._chat_subscription: Optional[Subscription] = None
        self._viewer_subscription: Optional[ViewerCountSubscription] = None
        self.joined = False
        self.joined_at: Optional[float] = None
        self.messages_count = 0
        self.closed = False

    @property
    def stream_id(self) -> str:
        return self.stream.id

    @property
    def is_moderator(self) -> bool:
        return self.capability.is_moderator

    @property
    def peak_viewers(self) -> int:
        return self._viewer_subscription.peak if self._viewer_subscription else 0

    async def open(self) -> None:
        if self.viewer is not None:
            await self.service.presence.join(self.stream_id, self.viewer)
            self.joined = True
        self.joined_at = self.service.clock()

        await self.service.moderation.load_settings(self.stream_id)
        self._chat_subscription = await self.chat.subscribe(
            self.stream_id, self._deliver_message
        )
        self._viewer_subscription = await self.service.presence.subscribe_viewer_count(
            self.stream_id, self._deliver_viewer_count
        )

    async def close(self) -> None:
        """Release subscriptions, leave presence and save watch analytics"""
        if self.closed:
            return
        self.closed = True

        for subscription in (self._chat_subscription, self._viewer_subscription):
            if subscription is not None:
                await subscription.unsubscribe()

        if self.joined:
            try:
                await self.service.presence.leave(self.stream_id, self.viewer)
            except TikTikError as e:
                logger.error(f"Error leaving stream {self.stream_id}: {e}")
            self.joined = False

        await self._save_analytics()

    async def __aenter__(self) -> "LiveView":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _call(self, handler: Optional[Handler], item: Any) -> None:
        if handler is None:
            return
        result = handler(item)
        if inspect.isawaitable(result):
            await result

    async def _deliver_message(self, message: ChatMessage) -> None:
        await self._call(self._on_message, self.render(message))

    async def _deliver_viewer_count(self, count: int) -> None:
        await self._call(self._on_viewer_count, count)

    def render(self, message: ChatMessage) -> MessageView:
        viewer_id = self.viewer.uid if self.viewer else None
        return render_message(message, viewer_id, self.is_moderator, self.service.now())

    async def _save_analytics(self) -> None:
        if self.joined_at is None:
            return
        left_at = self.service.clock()
        watch_seconds = max(0, int(left_at - self.joined_at))

        try:
            if watch_seconds:
                await self.service.storage.increment_stream_counter(
                    self.stream_id, "total_watch_time", watch_seconds
                )
            if self.peak_viewers:
                await self.service.storage.raise_peak_viewers(
                    self.stream_id, self.peak_viewers
                )
        except TikTikError as e:
            logger.error(f"Error saving stream counters for {self.stream_id}: {e}")

        if self.service.analytics is None or self.viewer is None:
            return
        try:
            await self.service.analytics.record_watch_session(
                WatchSession(
                    stream_id=self.stream_id,
                    viewer_id=self.viewer.uid,
                    watch_seconds=watch_seconds,
                    messages_count=self.messages_count,
                    peak_viewers=self.peak_viewers,
                    joined_at=datetime.fromtimestamp(self.joined_at, timezone.utc),
                    left_at=datetime.fromtimestamp(left_at, timezone.utc),
                )
            )
        except Exception as e:
            logger.error(f"Error saving analytics for stream {self.stream_id}: {e}")

    async def send_message(
        self, text: str, is_super_chat: bool = False, amount: float = 0
    ) -> ChatMessage:
        message = await self.chat.send(
            self.stream_id, self.viewer, text, is_super_chat, amount
        )
        self.messages_count += 1
        return message

    async def ban(self, viewer_id: str) -> ChatSettings:
        return await self.service.moderation.ban(self.stream_id, viewer_id, self.capability)

    def timeout(self, viewer_id: str, duration_ms: Optional[int] = None) -> float:
        return self.service.moderation.timeout(
            self.stream_id, viewer_id, self.capability, duration_ms
        )

    async def set_slow_mode(
        self, enabled: bool, duration_ms: Optional[int] = None
    ) -> ChatSettings:
        return await self.service.moderation.set_slow_mode(
            self.stream_id, enabled, self.capability, duration_ms
        )

    async def toggle_slow_mode(self) -> ChatSettings:
        return await self.service.moderation.toggle_slow_mode(
            self.stream_id, self.capability
        )

    async def end_stream(self) -> Stream:
        self.stream = await self.service.end_stream(self.stream_id, self.capability)
        return self.stream

    async def delete_stream(self) -> int:
        return await self.service.delete_stream(self.stream_id, self.capability)
