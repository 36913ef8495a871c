"""
Pytest configuration and fixtures for ChannelDeck tests.
"""
import httpx
import pytest
from fastapi.testclient import TestClient

from channeldeck.config import get_settings
from channeldeck.models.channel import ChannelIn
from channeldeck.services import playlists as playlists_module
from channeldeck.services import store as store_module
from channeldeck.services import tester as tester_module
from channeldeck.services.prober import ChannelProber
from channeldeck.services.store import ChannelStore


def channel_in(channel_id: str, name: str, url: str, **extra) -> ChannelIn:
    return ChannelIn(channel_id=channel_id, channel_name=name, channel_url=url, **extra)


def prober_for(handler, **kwargs) -> ChannelProber:
    return ChannelProber(transport=httpx.MockTransport(handler), **kwargs)


@pytest.fixture
def make_prober():
    """Factory for probers whose HTTP traffic goes to a handler instead of the network."""
    return prober_for


@pytest.fixture
async def store(tmp_path):
    """Fresh, initialized store in a temporary directory."""
    store = ChannelStore(str(tmp_path / "test_channeldeck.db"))
    await store.initialize()
    return store


@pytest.fixture
async def seeded_store(store):
    """Store holding three channels across two groups, one of them inactive."""
    await store.upsert_channels([
        channel_in("bbc1", "BBC One", "https://example.com/bbc1.m3u8", channel_group="UK", order=1),
        channel_in("itv1", "ITV 1", "https://example.com/itv1.m3u8", channel_group="UK", order=0,
                   tvg_logo="https://example.com/itv.png"),
        channel_in("cnn", "CNN", "https://example.com/cnn.m3u8", channel_group="News", is_active=False),
    ])
    return store


@pytest.fixture
def sample_m3u_content():
    """Sample M3U content for testing."""
    return """#EXTM3U
#EXTINF:-1 tvg-id="ABC.us@East" tvg-name="ABC East" tvg-logo="https://example.com/abc.png" group-title="News, Local",ABC East
http://example.com/abc-east.m3u8
#EXTINF:-1 tvg-id="CNN.us",CNN (1080p)
http://example.com/cnn.m3u8
#EXTINF:-1,Channel Without ID
http://example.com/no-id.m3u8
"""


@pytest.fixture
def ok_transport():
    """Every probe answers 200."""
    return httpx.MockTransport(lambda request: httpx.Response(200))


@pytest.fixture
def api(tmp_path, monkeypatch, ok_transport):
    """TestClient bound to a throwaway database, authenticated as admin."""
    settings = get_settings()
    monkeypatch.setattr(settings, "database_path", str(tmp_path / "api.db"))
    monkeypatch.setattr(store_module, "_store", None)
    monkeypatch.setattr(playlists_module, "_playlist_service", None)
    monkeypatch.setattr(tester_module, "_orchestrator", None)
    monkeypatch.setattr(tester_module, "ChannelProber", lambda: ChannelProber(transport=ok_transport))

    from channeldeck.main import app

    with TestClient(app) as client:
        client.headers["X-Admin-Key"] = settings.admin_api_key
        yield client
