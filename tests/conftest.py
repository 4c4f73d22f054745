import httpx
import pytest
from fastapi.testclient import TestClient

from manifest_proxy.core.config import Settings
from manifest_proxy.main import create_app
from manifest_proxy.services.segment_registry import SegmentRegistry
from manifest_proxy.services.upstream import UpstreamClient


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def mock_upstream(handler, **kwargs) -> UpstreamClient:
    kwargs.setdefault("retry_wait", 0)
    return UpstreamClient(transport=httpx.MockTransport(handler), **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return SegmentRegistry(ttl=60, max_entries=1000, clock=clock)


@pytest.fixture
def make_client(registry):
    clients = []

    def _make(handler, **overrides):
        settings = Settings(**{"RATE_LIMIT": "1000/minute", "CHANNELS": {}, **overrides})
        app = create_app(settings, registry=registry, upstream=mock_upstream(handler))
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)
