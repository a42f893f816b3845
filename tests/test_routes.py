import httpx
import pytest
from fastapi.testclient import TestClient

from ifilm_proxy.configs import settings
from ifilm_proxy.handlers import StreamProxy
from ifilm_proxy.main import app
from ifilm_proxy.routes.stream import get_stream_proxy
from ifilm_proxy.schemas import UpstreamConfig
from ifilm_proxy.upstream.config_provider import StaticConfigProvider
from ifilm_proxy.upstream.jellyfin import JellyfinClient
from ifilm_proxy.upstream.resolver import TrackSourceResolver
from ifilm_proxy.utils.token_cache import SessionTokenCache

CONFIG = UpstreamConfig(server_url="http://jellyfin.local:8096", api_key="static-key")

ITEM = {
    "Id": "movie-42",
    "MediaSources": [
        {
            "Id": "src-1",
            "MediaStreams": [
                {"Type": "Audio", "Index": 1, "Language": "eng", "Codec": "aac", "DisplayTitle": "English"},
                {"Type": "Audio", "Index": 2, "Language": "fas", "Codec": "ac3", "DisplayTitle": "Persian"},
            ],
        }
    ],
}


def upstream(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/Users":
        return httpx.Response(200, json=[{"Id": "user-1"}])
    if path == "/Users/user-1/Items/movie-42":
        return httpx.Response(200, json=ITEM)
    if path == "/Videos/movie-42/master.m3u8":
        return httpx.Response(200, text="#EXTM3U\n#EXT-X-STREAM-INF:BANDWIDTH=1\nmain.m3u8?api_key=tok\n")
    if path == "/Videos/movie-42/hls1/main/0.ts":
        return httpx.Response(200, content=b"segment-bytes", headers={"content-type": "video/mp2t"})
    return httpx.Response(404)


async def authenticate(config):
    return "viewer-token"


@pytest.fixture
def client():
    def client_factory():
        return httpx.AsyncClient(transport=httpx.MockTransport(upstream))

    proxy = StreamProxy(
        StaticConfigProvider(CONFIG),
        SessionTokenCache(authenticate),
        TrackSourceResolver(JellyfinClient(client=client_factory())),
        client_factory=client_factory,
    )
    app.dependency_overrides[get_stream_proxy] = lambda: proxy
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def api_password(monkeypatch):
    monkeypatch.setattr(settings, "api_password", "secret")
    return "secret"


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_stream_info_uses_client_field_names(client):
    response = client.get(f"{settings.api_prefix}/movies/movie-42/stream")

    assert response.status_code == 200
    body = response.json()
    assert body["streamUrl"] == f"{settings.api_prefix}/stream/movie-42/master.m3u8"
    assert body["type"] == "hls"
    assert body["defaultMediaSourceId"] == "src-1"
    assert [(t["index"], t["name"], t["mediaSourceId"]) for t in body["audioTracks"]] == [
        (1, "English", "src-1"),
        (2, "Persian", "src-1"),
    ]


def test_stream_info_requires_password_when_configured(client, api_password):
    url = f"{settings.api_prefix}/movies/movie-42/stream"

    assert client.get(url).status_code == 403
    assert client.get(url, params={"api_password": api_password}).status_code == 200
    assert client.get(url, headers={"api_password": api_password}).status_code == 200


def test_stream_routes_do_not_require_password(client, api_password):
    response = client.get(f"{settings.api_prefix}/stream/movie-42")

    assert response.status_code == 200
    assert response.text.splitlines()[-1] == f"{settings.api_prefix}/stream/movie-42/main.m3u8"


def test_segment_is_streamed(client):
    response = client.get(
        f"{settings.api_prefix}/stream/movie-42/hls1/main/0.ts",
        params={"runtimeTicks": "0", "actualSegmentLengthTicks": "60000000"},
    )

    assert response.status_code == 200
    assert response.content == b"segment-bytes"
    assert response.headers["content-type"] == "video/mp2t"
    assert response.headers["access-control-allow-origin"] == "*"


def test_invalid_audio_track_is_a_bad_request(client):
    response = client.get(f"{settings.api_prefix}/stream/movie-42", params={"audioTrack": "first"})

    assert response.status_code == 400
    assert response.json()["message"] == "Failed to proxy stream"


def test_nan_range_is_rejected(client):
    response = client.get(f"{settings.api_prefix}/stream/movie-42/hls1/main/0.ts", headers={"Range": "bytes=NaN-NaN"})

    assert response.status_code == 416
