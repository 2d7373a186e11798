import asyncio

import pytest

from tiktik.live_view import LiveService
from tiktik.models import Viewer
from tiktik.storage import MemoryStorage


class FakeClock:
    """Manually advanced clock in epoch seconds"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def storage():
    storage = MemoryStorage()
    await storage.connect()
    yield storage
    await storage.disconnect()


@pytest.fixture
def service(storage, clock):
    return LiveService(storage, clock=clock)


@pytest.fixture
def owner():
    return Viewer(uid="owner-1", display_name="Streamer", photo_url="https://img/owner.png")


@pytest.fixture
def alice():
    return Viewer(uid="alice", display_name="alice")


@pytest.fixture
def bob():
    return Viewer(uid="bob", display_name="Bob")


@pytest.fixture
async def stream(service, owner):
    return await service.start_stream(owner, title="Morning show")


@pytest.fixture
def settle():
    """Wait until a condition holds while background deliveries run"""

    async def wait(predicate, timeout: float = 1.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached")
            await asyncio.sleep(0.01)

    return wait
