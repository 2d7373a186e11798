import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from tiktik.models import PresenceRecord, Viewer
from tiktik.storage import StorageInterface
from tiktik.subscriptions import Handler, Subscription

logger = logging.getLogger(__name__)


class ViewerCountSubscription(Subscription):
    """Viewer counter updates plus the highest count seen so far"""

    def __init__(self, feed, handler: Optional[Handler] = None, name: str = "viewer-count"):
        self.current = 0
        self.peak = 0
        super().__init__(feed, handler, name=name)

    def _observe(self, count: int) -> int:
        self.current = count
        if count > self.peak:
            self.peak = count
        return count


class PresenceTracker:
    """Registers viewers on streams and keeps the shared viewer counter.

    There is no heartbeat: a viewer that disappears without calling
    ``leave`` keeps its presence record and stays counted.
    """

    def __init__(self, storage: StorageInterface, clock: Callable[[], float] = time.time):
        self.storage = storage
        self.clock = clock

    async def join(self, stream_id: str, viewer: Viewer) -> PresenceRecord:
        """Create or overwrite the viewer's presence record and count them in"""
        record = PresenceRecord(
            viewer_id=viewer.uid,
            display_name=viewer.display_name or "Anonymous",
            avatar=viewer.photo_url or "",
            joined_at=datetime.fromtimestamp(self.clock(), timezone.utc),
        )
        await self.storage.set_presence(stream_id, record)
        count = await self.storage.increment_stream_counter(
            stream_id, "current_viewers", 1
        )
        logger.info(f"Viewer {viewer.uid} joined stream {stream_id} ({count} watching)")
        return record

    async def leave(self, stream_id: str, viewer: Viewer) -> None:
        """Delete the viewer's presence record and count them out"""
        await self.storage.delete_presence(stream_id, viewer.uid)
        count = await self.storage.increment_stream_counter(
            stream_id, "current_viewers", -1
        )
        logger.info(f"Viewer {viewer.uid} left stream {stream_id} ({count} watching)")

    async def list_viewers(self, stream_id: str) -> List[PresenceRecord]:
        records = await self.storage.get_presence(stream_id)
        return sorted(records, key=lambda r: r.joined_at)

    async def subscribe_viewer_count(
        self, stream_id: str, callback: Optional[Handler] = None
    ) -> ViewerCountSubscription:
        """Follow the stream's viewer counter, starting with its current value"""
        feed = await self.storage.subscribe_viewer_count(stream_id)
        return ViewerCountSubscription(
            feed, callback, name=f"viewer-count:{stream_id}"
        )
