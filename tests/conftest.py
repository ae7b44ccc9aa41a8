"""Test fixtures — a fresh registry per test, fake connections, HTTP client.

Learn: The app-wide registry is swapped for a per-test instance through
FastAPI's dependency_overrides, so tests never see each other's streams.
ASGITransport doesn't run the lifespan, so Redis is never touched and
publishes take the local-broadcast path.

FakeConnection records every frame written to it and lets a test fail
writes, fail close(), or fire the close notification on demand.
"""

import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from channelcast.main import app
from channelcast.realtime.connection import ConnectionClosedError
from channelcast.realtime.registry import SubscriptionRegistry, get_registry
from channelcast.realtime.transform import make_image_proxy_transform

PROXY_BASE = "/api/v1/image-proxy"


class FakeConnection:
    def __init__(self, fail_writes: bool = False, fail_close: bool = False):
        self.frames: list[bytes] = []
        self.closed = False
        self.close_calls = 0
        self.fail_writes = fail_writes
        self.fail_close = fail_close
        self._callbacks = []

    def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise ConnectionResetError("broken pipe")
        if self.closed:
            raise ConnectionClosedError("connection is closed")
        self.frames.append(data)

    def close(self) -> None:
        self.close_calls += 1
        if self.fail_close:
            raise OSError("socket already torn down")
        self.closed = True

    def on_close(self, callback) -> None:
        self._callbacks.append(callback)

    def fire_close(self) -> None:
        """Simulate the transport noticing the client went away."""
        self.closed = True
        for callback in self._callbacks:
            callback()

    @property
    def messages(self) -> list[dict]:
        out = []
        for frame in self.frames:
            text = frame.decode("utf-8")
            assert text.startswith("data: ") and text.endswith("\n\n")
            out.append(json.loads(text[len("data: "):]))
        return out


def assert_consistent(registry: SubscriptionRegistry) -> None:
    """The three indexes agree with each other, and no address holds two streams."""
    for channel, members in registry._channels.items():
        assert members, f"empty channel entry left behind: {channel}"
        for sid in members:
            assert registry._subscribers[sid].channel == channel
    for address, members in registry._addresses.items():
        assert len(members) == 1, f"{address} bound to {len(members)} subscribers"
        for sid in members:
            assert registry._subscribers[sid].source_address == address
    for sid, sub in registry._subscribers.items():
        assert sid in registry._channels[sub.channel]
        assert sid in registry._addresses[sub.source_address]


@pytest.fixture()
def connection_factory():
    return FakeConnection


@pytest.fixture()
def events():
    """Captured (event, channel, context) tuples from the registry's log sink."""
    return []


@pytest.fixture()
def registry(events):
    def sink(event, channel, **context):
        events.append((event, channel, context))

    return SubscriptionRegistry(
        transform=make_image_proxy_transform(PROXY_BASE),
        log=sink,
    )


@pytest_asyncio.fixture()
async def client(registry):
    """HTTP client with the app's registry overridden for testing."""
    app.dependency_overrides[get_registry] = lambda: registry

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture()
def check_consistent():
    return assert_consistent
