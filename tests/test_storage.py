import asyncio

import fakeredis
import pytest

from tiktik.errors import BackendUnavailableError, StreamNotFoundError, TikTikError
from tiktik.models import ChatMessage, PresenceRecord
from tiktik.storage import MemoryStorage, RedisStorage, create_storage, utc_now
from tiktik.subscriptions import Subscription


@pytest.fixture(params=["memory", "redis"])
async def storage(request):
    if request.param == "redis":
        client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
        storage = RedisStorage(client=client)
    else:
        storage = MemoryStorage()
    await storage.connect()
    yield storage
    await storage.disconnect()


def message(stream_id, text):
    return ChatMessage(id=text, stream_id=stream_id, sender_id="alice", text=text)


async def take(feed, count, timeout=2.0):
    async def collect():
        items = []
        async for item in feed:
            items.append(item)
            if len(items) == count:
                break
        return items

    return await asyncio.wait_for(collect(), timeout)


def test_create_storage_by_type():
    assert isinstance(create_storage("memory"), MemoryStorage)
    assert isinstance(create_storage("REDIS"), RedisStorage)


async def test_health_follows_connection():
    storage = MemoryStorage()
    assert not await storage.health_check()
    await storage.connect()
    assert await storage.health_check()


async def test_update_stream_ignores_counters(storage, stream):
    await storage.increment_stream_counter(stream.id, "current_viewers", 3)
    updated = await storage.update_stream(stream.id, title="New title", current_viewers=0)

    assert updated.title == "New title"
    assert updated.current_viewers == 3


async def test_update_missing_stream(storage):
    with pytest.raises(StreamNotFoundError):
        await storage.update_stream("missing", title="x")


async def test_increment_rejects_plain_fields(storage, stream):
    with pytest.raises(ValueError):
        await storage.increment_stream_counter(stream.id, "title", 1)


async def test_returned_streams_are_copies(storage, stream):
    fetched = await storage.get_stream(stream.id)
    fetched.title = "changed locally"
    assert (await storage.get_stream(stream.id)).title == "Morning show"


async def test_raise_peak_only_goes_up(storage, stream):
    assert await storage.raise_peak_viewers(stream.id, 4) == 4
    assert await storage.raise_peak_viewers(stream.id, 2) == 4


async def test_append_assigns_increasing_seq(storage, stream):
    first = await storage.append_message(message(stream.id, "a"))
    second = await storage.append_message(message(stream.id, "b"))
    assert second.seq > first.seq
    assert first.timestamp is not None


async def test_delete_stream_removes_presence(storage, stream):
    record = PresenceRecord(viewer_id="alice", joined_at=utc_now())
    await storage.set_presence(stream.id, record)
    await storage.delete_stream(stream.id)

    assert await storage.get_stream(stream.id) is None
    assert await storage.get_presence(stream.id) == []


async def test_delete_messages_ends_memory_feeds():
    storage = MemoryStorage()
    await storage.connect()
    await storage.append_message(message("s1", "a"))
    feed = await storage.subscribe_messages("s1")

    assert await storage.delete_messages("s1") == 1
    items = [m.text async for m in feed]
    assert items == ["a"]


async def test_delete_messages_counts_log(storage, stream):
    for text in ("a", "b"):
        await storage.append_message(message(stream.id, text))
    assert await storage.delete_messages(stream.id) == 2
    assert await storage.get_recent_messages(stream.id) == []


async def test_recent_messages_keep_append_order(storage, stream):
    appended = [await storage.append_message(message(stream.id, t)) for t in "abcd"]

    recent = await storage.get_recent_messages(stream.id, limit=3)
    assert [m.text for m in recent] == ["b", "c", "d"]
    assert [m.seq for m in recent] == [m.seq for m in appended[1:]]
    assert recent[-1].timestamp == appended[-1].timestamp
    assert await storage.get_recent_messages(stream.id, limit=0) == []


async def test_message_feed_starts_with_snapshot(storage, stream):
    for text in ("a", "b"):
        await storage.append_message(message(stream.id, text))
    feed = await storage.subscribe_messages(stream.id)
    await storage.append_message(message(stream.id, "c"))

    items = await take(feed, 3)
    await feed.aclose()
    assert [m.text for m in items] == ["a", "b", "c"]


async def test_overlapping_sends_are_delivered_in_seq_order(storage, stream):
    feed = await storage.subscribe_messages(stream.id)
    texts = [f"m{i}" for i in range(20)]

    await asyncio.gather(*(storage.append_message(message(stream.id, t)) for t in texts))

    delivered = await take(feed, len(texts))
    await feed.aclose()
    stored = await storage.get_recent_messages(stream.id)
    seqs = [m.seq for m in delivered]
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == len(texts)
    assert [m.text for m in delivered] == [m.text for m in stored]


async def test_stalled_redis_sender_keeps_its_message():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    storage = RedisStorage(client=client)
    await storage.connect()

    gate = asyncio.Event()
    evalsha = client.evalsha

    async def stalled_evalsha(*args):
        if any('"id":"A"' in str(arg) for arg in args):
            await gate.wait()
        return await evalsha(*args)

    client.evalsha = stalled_evalsha
    feed = await storage.subscribe_messages("s1")

    send_a = asyncio.create_task(storage.append_message(message("s1", "A")))
    await asyncio.sleep(0)
    await storage.append_message(message("s1", "B"))
    gate.set()
    await send_a

    delivered = await take(feed, 2)
    await feed.aclose()
    stored = await storage.get_recent_messages("s1")
    assert [m.text for m in stored] == ["B", "A"]
    assert [m.text for m in delivered] == ["B", "A"]
    await storage.disconnect()


async def test_overlapping_increments_publish_in_order(storage, stream):
    feed = await storage.subscribe_viewer_count(stream.id)

    await asyncio.gather(
        *(storage.increment_stream_counter(stream.id, "current_viewers", 1) for _ in range(10))
    )

    counts = await take(feed, 11)
    await feed.aclose()
    assert counts == list(range(11))
    assert (await storage.get_stream(stream.id)).current_viewers == 10


async def test_other_counters_are_not_published(storage, stream):
    feed = await storage.subscribe_viewer_count(stream.id)
    assert await storage.increment_stream_counter(stream.id, "total_watch_time", 30) == 30
    await storage.increment_stream_counter(stream.id, "current_viewers", 2)

    assert await take(feed, 2) == [0, 2]
    await feed.aclose()
    assert (await storage.get_stream(stream.id)).total_watch_time == 30


async def test_increment_missing_stream(storage):
    with pytest.raises(StreamNotFoundError):
        await storage.increment_stream_counter("missing", "current_viewers", 1)
    with pytest.raises(StreamNotFoundError):
        await storage.subscribe_viewer_count("missing")


async def test_chat_settings_are_per_stream(storage):
    await storage.add_banned_user("s1", "alice")
    await storage.set_slow_mode("s1", True, 7000)

    s1 = await storage.get_chat_settings("s1")
    assert s1.banned_users == ["alice"]
    assert s1.slow_mode_enabled
    assert s1.slow_mode_duration_ms == 7000
    assert (await storage.get_chat_settings("s2")).banned_users == []

    await storage.delete_chat_settings("s1")
    assert not (await storage.get_chat_settings("s1")).slow_mode_enabled


async def test_subscription_iterates_without_handler(storage, stream):
    subscription = Subscription(await storage.subscribe_viewer_count(stream.id))
    await storage.increment_stream_counter(stream.id, "current_viewers", 1)

    seen = []
    async for count in subscription:
        seen.append(count)
        if len(seen) == 2:
            break
    await subscription.unsubscribe()
    assert seen == [0, 1]


async def test_handler_errors_do_not_stop_delivery(storage, stream, settle):
    seen = []

    def handler(item):
        seen.append(item.text)
        if item.text == "bad":
            raise TikTikError("rejected")
        if item.text == "worse":
            raise RuntimeError("boom")

    subscription = Subscription(await storage.subscribe_messages(stream.id), handler)
    for text in ("bad", "worse", "fine"):
        await storage.append_message(message(stream.id, text))
    await settle(lambda: len(seen) == 3)
    assert subscription.active

    await subscription.unsubscribe()
    assert not subscription.active
    assert seen == ["bad", "worse", "fine"]


async def test_redis_storage_requires_connection():
    storage = RedisStorage()
    assert not await storage.health_check()
    with pytest.raises(BackendUnavailableError):
        await storage.get_stream("s1")
