from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set
import asyncio
import functools
import json
from datetime import datetime, timezone
import redis.asyncio as redis
from tiktik.config import settings
from tiktik.errors import BackendUnavailableError, StreamNotFoundError
from tiktik.models import ChatMessage, ChatSettings, PresenceRecord, Stream

# Numeric stream fields that are only ever changed through atomic increments
COUNTER_FIELDS = ("current_viewers", "total_watch_time", "peak_viewers")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Feed(ABC):
    """Push-based subscription channel.

    Yields the snapshot it was opened with first, then every later update.
    Iteration stops once ``aclose`` has been called.
    """

    def __aiter__(self):
        return self

    @abstractmethod
    async def __anext__(self) -> Any:
        pass

    @abstractmethod
    async def aclose(self) -> None:
        pass


class StorageInterface(ABC):
    """Abstract real-time document store"""

    @abstractmethod
    async def connect(self) -> None:
        """Connect to storage backend"""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from storage backend"""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check storage health"""
        pass

    @abstractmethod
    async def create_stream(self, stream: Stream) -> None:
        """Store a new stream document"""
        pass

    @abstractmethod
    async def get_stream(self, stream_id: str) -> Optional[Stream]:
        """Get a stream, counters included"""
        pass

    @abstractmethod
    async def get_live_streams(self) -> List[Stream]:
        """Get all streams that are currently live"""
        pass

    @abstractmethod
    async def update_stream(self, stream_id: str, **fields: Any) -> Stream:
        """Overwrite non-counter fields of a stream"""
        pass

    @abstractmethod
    async def delete_stream(self, stream_id: str) -> None:
        """Delete a stream document with its counters and presence records"""
        pass

    @abstractmethod
    async def increment_stream_counter(
        self, stream_id: str, field: str, amount: int
    ) -> int:
        """Atomically add amount to a counter field and return the new value"""
        pass

    @abstractmethod
    async def raise_peak_viewers(self, stream_id: str, value: int) -> int:
        """Set peak_viewers to value if it is higher, return the stored peak"""
        pass

    @abstractmethod
    async def subscribe_viewer_count(self, stream_id: str) -> Feed:
        """Feed of current_viewers values, starting with the current one"""
        pass

    @abstractmethod
    async def set_presence(self, stream_id: str, record: PresenceRecord) -> None:
        """Create or overwrite a viewer's presence record"""
        pass

    @abstractmethod
    async def delete_presence(self, stream_id: str, viewer_id: str) -> None:
        """Delete a viewer's presence record"""
        pass

    @abstractmethod
    async def get_presence(self, stream_id: str) -> List[PresenceRecord]:
        """Get all presence records for a stream"""
        pass

    @abstractmethod
    async def append_message(self, message: ChatMessage) -> ChatMessage:
        """Append a chat message, assigning its sequence number and timestamp"""
        pass

    @abstractmethod
    async def get_recent_messages(
        self, stream_id: str, limit: int = 100
    ) -> List[ChatMessage]:
        """Get the newest messages of a stream in append order"""
        pass

    @abstractmethod
    async def subscribe_messages(self, stream_id: str, limit: int = 100) -> Feed:
        """Feed of the newest `limit` messages followed by every new append"""
        pass

    @abstractmethod
    async def delete_messages(self, stream_id: str) -> int:
        """Delete a stream's whole chat log, returning the number removed"""
        pass

    @abstractmethod
    async def get_chat_settings(self, stream_id: str) -> ChatSettings:
        """Get chat settings, defaults if none were written"""
        pass

    @abstractmethod
    async def add_banned_user(self, stream_id: str, viewer_id: str) -> None:
        """Add a viewer to the stream's ban set"""
        pass

    @abstractmethod
    async def set_slow_mode(
        self, stream_id: str, enabled: bool, duration_ms: int
    ) -> None:
        """Persist slow mode flag and duration"""
        pass

    @abstractmethod
    async def delete_chat_settings(self, stream_id: str) -> None:
        """Delete a stream's chat settings"""
        pass


_CLOSED = object()


class MemoryFeed(Feed):
    """Feed backed by an asyncio.Queue, registered with its publisher"""

    def __init__(self, subscribers: List["MemoryFeed"], initial=()):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._subscribers = subscribers
        for item in initial:
            self._queue.put_nowait(item)
        subscribers.append(self)

    def push(self, item: Any) -> None:
        self._queue.put_nowait(item)

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any later reader
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        if self in self._subscribers:
            self._subscribers.remove(self)
            self._queue.put_nowait(_CLOSED)


class MemoryStorage(StorageInterface):
    """In-memory storage for testing and single-process deployments"""

    def __init__(self):
        self.streams: Dict[str, Stream] = {}
        self.presence: Dict[str, Dict[str, PresenceRecord]] = {}
        self.messages: Dict[str, List[ChatMessage]] = {}
        self.chat_settings: Dict[str, ChatSettings] = {}
        self._message_feeds: Dict[str, List[MemoryFeed]] = {}
        self._viewer_feeds: Dict[str, List[MemoryFeed]] = {}
        self._seq = 0
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def health_check(self) -> bool:
        return self.connected

    def _require_stream(self, stream_id: str) -> Stream:
        stream = self.streams.get(stream_id)
        if stream is None:
            raise StreamNotFoundError(stream_id)
        return stream

    async def create_stream(self, stream: Stream) -> None:
        self.streams[stream.id] = stream.model_copy()

    async def get_stream(self, stream_id: str) -> Optional[Stream]:
        stream = self.streams.get(stream_id)
        return stream.model_copy() if stream else None

    async def get_live_streams(self) -> List[Stream]:
        return [s.model_copy() for s in self.streams.values() if s.is_live]

    async def update_stream(self, stream_id: str, **fields: Any) -> Stream:
        stream = self._require_stream(stream_id)
        for name in COUNTER_FIELDS:
            fields.pop(name, None)
        updated = stream.model_copy(update=fields)
        self.streams[stream_id] = updated
        return updated.model_copy()

    async def delete_stream(self, stream_id: str) -> None:
        self.streams.pop(stream_id, None)
        self.presence.pop(stream_id, None)
        for feed in list(self._viewer_feeds.get(stream_id, [])):
            await feed.aclose()

    async def increment_stream_counter(
        self, stream_id: str, field: str, amount: int
    ) -> int:
        if field not in COUNTER_FIELDS:
            raise ValueError(f"{field} is not a counter field")
        stream = self._require_stream(stream_id)
        value = getattr(stream, field) + amount
        setattr(stream, field, value)
        if field == "current_viewers":
            for feed in self._viewer_feeds.get(stream_id, []):
                feed.push(value)
        return value

    async def raise_peak_viewers(self, stream_id: str, value: int) -> int:
        stream = self._require_stream(stream_id)
        if value > stream.peak_viewers:
            stream.peak_viewers = value
        return stream.peak_viewers

    async def subscribe_viewer_count(self, stream_id: str) -> Feed:
        stream = self._require_stream(stream_id)
        subscribers = self._viewer_feeds.setdefault(stream_id, [])
        return MemoryFeed(subscribers, initial=[stream.current_viewers])

    async def set_presence(self, stream_id: str, record: PresenceRecord) -> None:
        self.presence.setdefault(stream_id, {})[record.viewer_id] = record

    async def delete_presence(self, stream_id: str, viewer_id: str) -> None:
        self.presence.get(stream_id, {}).pop(viewer_id, None)

    async def get_presence(self, stream_id: str) -> List[PresenceRecord]:
        return list(self.presence.get(stream_id, {}).values())

    async def append_message(self, message: ChatMessage) -> ChatMessage:
        self._seq += 1
        stored = message.model_copy(update={"seq": self._seq, "timestamp": utc_now()})
        self.messages.setdefault(message.stream_id, []).append(stored)
        for feed in self._message_feeds.get(message.stream_id, []):
            feed.push(stored)
        return stored

    async def get_recent_messages(
        self, stream_id: str, limit: int = 100
    ) -> List[ChatMessage]:
        messages = self.messages.get(stream_id, [])
        return messages[-limit:] if limit > 0 else []

    async def subscribe_messages(self, stream_id: str, limit: int = 100) -> Feed:
        recent = await self.get_recent_messages(stream_id, limit)
        subscribers = self._message_feeds.setdefault(stream_id, [])
        return MemoryFeed(subscribers, initial=recent)

    async def delete_messages(self, stream_id: str) -> int:
        removed = self.messages.pop(stream_id, [])
        for feed in list(self._message_feeds.get(stream_id, [])):
            await feed.aclose()
        return len(removed)

    async def get_chat_settings(self, stream_id: str) -> ChatSettings:
        chat_settings = self.chat_settings.get(stream_id)
        return chat_settings.model_copy(deep=True) if chat_settings else ChatSettings()

    async def add_banned_user(self, stream_id: str, viewer_id: str) -> None:
        chat_settings = self.chat_settings.setdefault(stream_id, ChatSettings())
        if viewer_id not in chat_settings.banned_users:
            chat_settings.banned_users.append(viewer_id)

    async def set_slow_mode(
        self, stream_id: str, enabled: bool, duration_ms: int
    ) -> None:
        chat_settings = self.chat_settings.setdefault(stream_id, ChatSettings())
        chat_settings.slow_mode_enabled = enabled
        chat_settings.slow_mode_duration_ms = duration_ms

    async def delete_chat_settings(self, stream_id: str) -> None:
        self.chat_settings.pop(stream_id, None)


class RedisFeed(Feed):
    """Feed over a Redis pub/sub channel with a snapshot read after subscribing"""

    def __init__(
        self,
        pubsub,
        decode: Callable[[Any], Any],
        initial=(),
        accept: Optional[Callable[[Any], bool]] = None,
    ):
        self._pubsub = pubsub
        self._decode = decode
        self._buffer: Deque[Any] = deque(initial)
        self._accept = accept
        self._closed = False

    async def __anext__(self) -> Any:
        if self._buffer:
            return self._buffer.popleft()
        while not self._closed:
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message is None:
                continue
            item = self._decode(message["data"])
            if self._accept is None or self._accept(item):
                return item
        raise StopAsyncIteration

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe()
        finally:
            await self._pubsub.aclose()


def _redis_errors(func):
    """Report Redis failures as BackendUnavailableError"""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except redis.RedisError as e:
            raise BackendUnavailableError(f"Redis error: {e}") from e

    return wrapper


# Keeps peak_viewers a high-water mark without a read-modify-write race
_RAISE_PEAK_SCRIPT = """
local current = tonumber(redis.call('HGET', KEYS[1], 'peak_viewers') or '0')
local value = tonumber(ARGV[1])
if value > current then
    redis.call('HSET', KEYS[1], 'peak_viewers', value)
    return value
end
return current
"""

# Counter update and its publish run as one step so subscribers see
# values in the order they were written
_INCREMENT_COUNTER_SCRIPT = """
local value = redis.call('HINCRBY', KEYS[1], ARGV[1], ARGV[2])
if ARGV[3] ~= '' then
    redis.call('PUBLISH', ARGV[3], value)
end
return value
"""

# Sequence assignment, log append and publish run as one step so the
# channel carries messages in seq order. ARGV[1] is the message JSON
# without its seq, wrapped here in a {"seq", "message"} envelope.
_APPEND_MESSAGE_SCRIPT = """
local seq = redis.call('INCR', KEYS[2])
local entry = '{"seq":' .. seq .. ',"message":' .. ARGV[1] .. '}'
redis.call('ZADD', KEYS[1], seq, entry)
redis.call('PUBLISH', ARGV[2], entry)
return entry
"""


def _decode_chat_entry(entry: str) -> ChatMessage:
    data = json.loads(entry)
    return ChatMessage.model_validate({**data["message"], "seq": data["seq"]})


class RedisStorage(StorageInterface):
    """Redis storage implementation"""

    def __init__(self, client: Optional[redis.Redis] = None):
        # A client passed in is used as is, otherwise connect builds one from REDIS_URL
        self._injected_client = client
        self.redis_client: Optional[redis.Redis] = None
        self.streams_key = "tiktik:streams"
        self._raise_peak = None
        self._increment_counter = None
        self._append_message = None

    # Key layout
    def _counters_key(self, stream_id: str) -> str:
        return f"tiktik:stream:{stream_id}:counters"

    def _viewer_channel(self, stream_id: str) -> str:
        return f"tiktik:stream:{stream_id}:viewer_count"

    def _presence_key(self, stream_id: str) -> str:
        return f"tiktik:stream:{stream_id}:presence"

    def _chat_key(self, stream_id: str) -> str:
        return f"tiktik:chat:{stream_id}"

    def _chat_seq_key(self, stream_id: str) -> str:
        return f"tiktik:chat:{stream_id}:seq"

    def _chat_channel(self, stream_id: str) -> str:
        return f"tiktik:chat:{stream_id}:feed"

    def _settings_key(self, stream_id: str) -> str:
        return f"tiktik:chat_settings:{stream_id}"

    def _banned_key(self, stream_id: str) -> str:
        return f"tiktik:chat_settings:{stream_id}:banned"

    def _client(self) -> redis.Redis:
        if self.redis_client is None:
            raise BackendUnavailableError("Redis client not connected")
        return self.redis_client

    async def connect(self) -> None:
        client = self._injected_client
        if client is None:
            client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        await client.ping()
        self.redis_client = client
        self._raise_peak = client.register_script(_RAISE_PEAK_SCRIPT)
        self._increment_counter = client.register_script(_INCREMENT_COUNTER_SCRIPT)
        self._append_message = client.register_script(_APPEND_MESSAGE_SCRIPT)

    async def disconnect(self) -> None:
        if self.redis_client:
            await self.redis_client.aclose()

    async def health_check(self) -> bool:
        try:
            if self.redis_client:
                await self.redis_client.ping()
                return True
        except Exception:
            pass
        return False

    def _merge_counters(self, data: str, counters: Dict[str, str]) -> Stream:
        stream_data = json.loads(data)
        for name in COUNTER_FIELDS:
            stream_data[name] = int(counters.get(name, 0))
        return Stream(**stream_data)

    @_redis_errors
    async def create_stream(self, stream: Stream) -> None:
        client = self._client()
        stream_data = stream.model_dump(mode="json", exclude=set(COUNTER_FIELDS))
        counters = {name: getattr(stream, name) for name in COUNTER_FIELDS}
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(self.streams_key, stream.id, json.dumps(stream_data))
            pipe.hset(self._counters_key(stream.id), mapping=counters)
            await pipe.execute()

    @_redis_errors
    async def get_stream(self, stream_id: str) -> Optional[Stream]:
        client = self._client()
        data = await client.hget(self.streams_key, stream_id)
        if not data:
            return None
        counters = await client.hgetall(self._counters_key(stream_id))
        return self._merge_counters(data, counters)

    @_redis_errors
    async def get_live_streams(self) -> List[Stream]:
        client = self._client()
        all_stream_data = await client.hgetall(self.streams_key)
        live_streams = []

        for stream_id, data in all_stream_data.items():
            if not json.loads(data).get("is_live"):
                continue
            counters = await client.hgetall(self._counters_key(stream_id))
            live_streams.append(self._merge_counters(data, counters))

        return live_streams

    @_redis_errors
    async def update_stream(self, stream_id: str, **fields: Any) -> Stream:
        client = self._client()
        data = await client.hget(self.streams_key, stream_id)
        if not data:
            raise StreamNotFoundError(stream_id)

        for name in COUNTER_FIELDS:
            fields.pop(name, None)
        counters = await client.hgetall(self._counters_key(stream_id))
        updated = self._merge_counters(data, counters).model_copy(update=fields)

        stream_data = updated.model_dump(mode="json", exclude=set(COUNTER_FIELDS))
        await client.hset(self.streams_key, stream_id, json.dumps(stream_data))
        return updated

    @_redis_errors
    async def delete_stream(self, stream_id: str) -> None:
        client = self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.hdel(self.streams_key, stream_id)
            pipe.delete(self._counters_key(stream_id), self._presence_key(stream_id))
            await pipe.execute()

    @_redis_errors
    async def increment_stream_counter(
        self, stream_id: str, field: str, amount: int
    ) -> int:
        if field not in COUNTER_FIELDS:
            raise ValueError(f"{field} is not a counter field")
        client = self._client()
        if not await client.hexists(self.streams_key, stream_id):
            raise StreamNotFoundError(stream_id)

        channel = self._viewer_channel(stream_id) if field == "current_viewers" else ""
        value = await self._increment_counter(
            keys=[self._counters_key(stream_id)], args=[field, amount, channel]
        )
        return int(value)

    @_redis_errors
    async def raise_peak_viewers(self, stream_id: str, value: int) -> int:
        client = self._client()
        if not await client.hexists(self.streams_key, stream_id):
            raise StreamNotFoundError(stream_id)
        result = await self._raise_peak(keys=[self._counters_key(stream_id)], args=[value])
        return int(result)

    @_redis_errors
    async def subscribe_viewer_count(self, stream_id: str) -> Feed:
        client = self._client()
        if not await client.hexists(self.streams_key, stream_id):
            raise StreamNotFoundError(stream_id)

        # Subscribe before reading so no increment falls between the two
        pubsub = client.pubsub()
        await pubsub.subscribe(self._viewer_channel(stream_id))
        current = await client.hget(self._counters_key(stream_id), "current_viewers")
        return RedisFeed(pubsub, decode=int, initial=[int(current or 0)])

    @_redis_errors
    async def set_presence(self, stream_id: str, record: PresenceRecord) -> None:
        await self._client().hset(
            self._presence_key(stream_id), record.viewer_id, record.model_dump_json()
        )

    @_redis_errors
    async def delete_presence(self, stream_id: str, viewer_id: str) -> None:
        await self._client().hdel(self._presence_key(stream_id), viewer_id)

    @_redis_errors
    async def get_presence(self, stream_id: str) -> List[PresenceRecord]:
        records = await self._client().hgetall(self._presence_key(stream_id))
        return [PresenceRecord.model_validate_json(data) for data in records.values()]

    @_redis_errors
    async def append_message(self, message: ChatMessage) -> ChatMessage:
        self._client()  # raises when not connected
        stamped = message.model_copy(update={"timestamp": utc_now()})
        entry = await self._append_message(
            keys=[
                self._chat_key(message.stream_id),
                self._chat_seq_key(message.stream_id),
            ],
            args=[
                stamped.model_dump_json(exclude={"seq"}),
                self._chat_channel(message.stream_id),
            ],
        )
        return _decode_chat_entry(entry)

    @_redis_errors
    async def get_recent_messages(
        self, stream_id: str, limit: int = 100
    ) -> List[ChatMessage]:
        if limit <= 0:
            return []
        entries = await self._client().zrange(self._chat_key(stream_id), -limit, -1)
        return [_decode_chat_entry(entry) for entry in entries]

    @_redis_errors
    async def subscribe_messages(self, stream_id: str, limit: int = 100) -> Feed:
        client = self._client()
        pubsub = client.pubsub()
        await pubsub.subscribe(self._chat_channel(stream_id))
        recent = await self.get_recent_messages(stream_id, limit)

        last_seen = {"seq": recent[-1].seq if recent else 0}

        def accept(message: ChatMessage) -> bool:
            # The channel carries seq order, so anything at or below the
            # last delivered seq was already in the snapshot
            if message.seq <= last_seen["seq"]:
                return False
            last_seen["seq"] = message.seq
            return True

        return RedisFeed(
            pubsub,
            decode=_decode_chat_entry,
            initial=recent,
            accept=accept,
        )

    @_redis_errors
    async def delete_messages(self, stream_id: str) -> int:
        client = self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.zcard(self._chat_key(stream_id))
            pipe.delete(self._chat_key(stream_id), self._chat_seq_key(stream_id))
            count, _ = await pipe.execute()
        return int(count)

    @_redis_errors
    async def get_chat_settings(self, stream_id: str) -> ChatSettings:
        client = self._client()
        data = await client.hgetall(self._settings_key(stream_id))
        banned: Set[str] = await client.smembers(self._banned_key(stream_id))

        chat_settings = ChatSettings(banned_users=sorted(banned))
        if "slow_mode_enabled" in data:
            chat_settings.slow_mode_enabled = data["slow_mode_enabled"] == "1"
        if data.get("slow_mode_duration_ms"):
            chat_settings.slow_mode_duration_ms = int(data["slow_mode_duration_ms"])
        return chat_settings

    @_redis_errors
    async def add_banned_user(self, stream_id: str, viewer_id: str) -> None:
        await self._client().sadd(self._banned_key(stream_id), viewer_id)

    @_redis_errors
    async def set_slow_mode(
        self, stream_id: str, enabled: bool, duration_ms: int
    ) -> None:
        await self._client().hset(
            self._settings_key(stream_id),
            mapping={
                "slow_mode_enabled": "1" if enabled else "0",
                "slow_mode_duration_ms": duration_ms,
            },
        )

    @_redis_errors
    async def delete_chat_settings(self, stream_id: str) -> None:
        await self._client().delete(
            self._settings_key(stream_id), self._banned_key(stream_id)
        )


def create_storage(storage_type: Optional[str] = None) -> StorageInterface:
    """Build a storage backend for the configured type"""
    storage_type = (storage_type or settings.STORAGE_TYPE).lower()
    if storage_type == "redis":
        return RedisStorage()
    return MemoryStorage()
