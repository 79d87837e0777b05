"""
Pytest configuration and shared fixtures.

Every test builds its own Settings, FakeBackend and TransportClient, so no
state is shared between tests.
"""

import asyncio

import httpx
import pytest
import pytest_asyncio

from chatsync.config import Settings, get_settings
from chatsync.schemas import ConversationKey
from chatsync.sync import ConversationSync
from chatsync.transport import TransportClient
from tests.fake_api import FakeBackend, create_app

# Settings read from the environment must not leak into tests
get_settings.cache_clear()

CURRENT_USER = "u1"
OTHER_USER = "u2"


class FakeSleep:
    """Records requested delays instead of waiting on a real timer."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)

    @property
    def delays_ms(self) -> list[int]:
        return [round(seconds * 1000) for seconds in self.delays]


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, REALTIME_MODE="manual")


@pytest.fixture
def backend() -> FakeBackend:
    backend = FakeBackend()
    backend.add_profile(CURRENT_USER, "Alice")
    backend.add_profile(OTHER_USER, "Bob")
    return backend


@pytest_asyncio.fixture
async def http_client(backend):
    """httpx client wired to the fake API, authenticated as CURRENT_USER."""
    transport = httpx.ASGITransport(app=create_app(backend))
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://testserver",
        headers={"X-User-Id": CURRENT_USER},
    ) as client:
        yield client


@pytest.fixture
def transport(settings, http_client) -> TransportClient:
    return TransportClient(settings, client=http_client)


@pytest.fixture
def conversation() -> ConversationKey:
    return ConversationKey(chat_group_id="g1")


@pytest_asyncio.fixture
async def sync(conversation, transport, settings):
    """Façade in manual mode: tests drive polling explicitly."""
    instance = ConversationSync(conversation, transport, settings)
    yield instance
    await instance.close()
