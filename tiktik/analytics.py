import logging
import asyncio
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorDatabase,
    AsyncIOMotorCollection,
)
import pymongo

from tiktik.config import settings
from tiktik.analytics_models import WatchSession

logger = logging.getLogger(__name__)


class AnalyticsService:
    def __init__(self):
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None
        self.sessions: Optional[AsyncIOMotorCollection] = None
        self.stats: Optional[AsyncIOMotorCollection] = None

    async def connect(self, max_retries: int = 5, retry_delay: int = 2):
        """Initialize MongoDB connection with retry logic"""
        for attempt in range(max_retries):
            try:
                logger.info(
                    f"Attempting MongoDB connection (attempt {attempt + 1}/{max_retries})"
                )
                # Log connection details (without exposing password)
                safe_url = (
                    settings.MONGODB_URL.replace(
                        settings.MONGODB_URL.split("@")[0].split("//")[1], "***:***"
                    )
                    if "@" in settings.MONGODB_URL
                    else settings.MONGODB_URL
                )
                logger.info(f"MongoDB URL: {safe_url}")

                self.client = AsyncIOMotorClient(
                    settings.MONGODB_URL,
                    serverSelectionTimeoutMS=5000,
                )
                self.db = self.client[settings.MONGODB_DATABASE]
                await self.client.admin.command("ping")

                self.sessions = self.db["watch_sessions"]
                self.stats = self.db["stream_stats"]
                await self._create_indexes()

                logger.info("MongoDB analytics service connected successfully")
                return

            except Exception as e:
                logger.error(
                    f"MongoDB connection attempt {attempt + 1} failed: {type(e).__name__}: {e}"
                )
                if attempt == max_retries - 1:
                    logger.error(
                        f"Failed to connect to MongoDB after {max_retries} attempts"
                    )
                    raise
                else:
                    logger.info(f"Retrying in {retry_delay} seconds...")
                    await asyncio.sleep(retry_delay)

    async def disconnect(self):
        """Close MongoDB connection"""
        if self.client:
            self.client.close()

    async def health_check(self) -> bool:
        """Check if MongoDB connection is healthy"""
        try:
            if self.client is None or self.db is None:
                return False
            await self.client.admin.command("ping")
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    async def _create_indexes(self):
        """Create necessary indexes for collections"""
        try:
            await self.sessions.create_index("stream_id")
            await self.sessions.create_index(
                [("stream_id", pymongo.ASCENDING), ("left_at", pymongo.DESCENDING)]
            )
            await self.sessions.create_index("viewer_id")
            await self.stats.create_index("stream_id", unique=True)
        except Exception as e:
            logger.warning(f"Failed to create some indexes: {e}")

    async def record_watch_session(self, session: WatchSession) -> str:
        """Store a finished watch session and fold it into the stream's stats"""
        if self.sessions is None or self.stats is None:
            raise RuntimeError("Analytics service not connected to MongoDB")

        result = await self.sessions.insert_one(session.model_dump(by_alias=True))

        now = datetime.now(timezone.utc)
        await self.stats.update_one(
            {"stream_id": session.stream_id},
            {
                "$inc": {
                    "total_sessions": 1,
                    "total_watch_seconds": session.watch_seconds,
                    "total_messages": session.messages_count,
                },
                "$max": {"peak_viewers": session.peak_viewers},
                "$set": {"updated_at": now},
                "$setOnInsert": {"first_seen_at": now},
            },
            upsert=True,
        )

        logger.debug(
            f"Recorded watch session for {session.viewer_id} on stream "
            f"{session.stream_id} ({session.watch_seconds}s)"
        )
        return str(result.inserted_id)

    async def get_stream_stats(self, stream_id: str) -> Optional[Dict[str, Any]]:
        """Get aggregated watch statistics for a stream"""
        if self.stats is None:
            raise RuntimeError("Analytics service not connected to MongoDB")

        stats = await self.stats.find_one({"stream_id": stream_id})
        if not stats:
            return None

        stats["_id"] = str(stats["_id"])
        sessions = stats.get("total_sessions", 0)
        stats["avg_watch_seconds"] = (
            round(stats.get("total_watch_seconds", 0) / sessions, 2) if sessions else 0.0
        )
        return stats

    async def get_recent_sessions(
        self, stream_id: str, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Get the most recent watch sessions of a stream"""
        if self.sessions is None:
            raise RuntimeError("Analytics service not connected to MongoDB")

        cursor = self.sessions.find(
            {"stream_id": stream_id},
            sort=[("left_at", -1)],
            limit=limit,
        )

        sessions = []
        async for session in cursor:
            session["_id"] = str(session["_id"])
            sessions.append(session)

        return sessions


analytics_service = AnalyticsService()
