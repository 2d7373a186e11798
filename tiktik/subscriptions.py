import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from tiktik.errors import TikTikError
from tiktik.storage import Feed

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class Subscription:
    """Standing subscription over a storage feed.

    With a handler, a background task delivers every item to it until
    ``unsubscribe`` is called. Without one, iterate the subscription directly.
    """

    def __init__(self, feed: Feed, handler: Optional[Handler] = None, name: str = "feed"):
        self._feed = feed
        self._handler = handler
        self.name = name
        self._task: Optional[asyncio.Task] = None
        if handler is not None:
            self._task = asyncio.create_task(self._pump(), name=name)

    def _observe(self, item: Any) -> Any:
        return item

    async def __aiter__(self):
        async for item in self._feed:
            yield self._observe(item)

    async def _pump(self) -> None:
        try:
            async for item in self._feed:
                item = self._observe(item)
                try:
                    result = self._handler(item)
                    if inspect.isawaitable(result):
                        await result
                except TikTikError as e:
                    logger.warning(f"{self.name} handler rejected update: {e}")
                except Exception as e:
                    logger.error(f"Error in {self.name} handler: {type(e).__name__}: {e}")
        except TikTikError as e:
            logger.error(f"{self.name} feed failed: {e}")

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def unsubscribe(self) -> None:
        """Stop delivery and release the underlying feed"""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._feed.aclose()
