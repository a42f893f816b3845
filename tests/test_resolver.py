import httpx
import pytest

from ifilm_proxy.errors import AuthFailureError
from ifilm_proxy.schemas import UpstreamConfig
from ifilm_proxy.upstream.jellyfin import JellyfinClient
from ifilm_proxy.upstream.resolver import TrackSourceResolver

CONFIG = UpstreamConfig(server_url="http://jellyfin.local:8096", api_key="static-key")

ITEM = {
    "Id": "movie-42",
    "MediaSources": [
        {
            "Id": "src-1",
            "MediaStreams": [
                {"Type": "Video", "Index": 0, "Codec": "h264"},
                {"Type": "Audio", "Index": 1, "Language": "eng", "Codec": "aac", "DisplayTitle": "English - AAC"},
                {"Type": "Audio", "Index": 2, "Language": "fas", "Codec": "ac3"},
                {"Type": "Audio", "Index": 3, "Language": "eng", "Codec": "aac", "DisplayTitle": "English dup"},
            ],
        },
        {"Id": "src-2", "MediaStreams": [{"Type": "Audio", "Language": "fre", "Codec": "aac", "Title": "French"}]},
    ],
}


class UpstreamRecorder:
    def __init__(self, users=None, item=None, item_status=200):
        self.users = [{"Id": "user-1", "Name": "public"}] if users is None else users
        self.item = ITEM if item is None else item
        self.item_status = item_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/Users/AuthenticateByName":
            return httpx.Response(200, json={"AccessToken": "viewer-token", "User": {"Id": "user-1"}})
        if path == "/Users":
            return httpx.Response(200, json=self.users)
        if path.endswith("/Items/movie-42"):
            return httpx.Response(self.item_status, json=self.item)
        return httpx.Response(404)


@pytest.mark.asyncio
async def test_default_source_uses_user_context(mock_upstream):
    upstream = UpstreamRecorder()
    resolver = TrackSourceResolver(JellyfinClient(client=mock_upstream(upstream)))

    assert await resolver.resolve_default_source(CONFIG, "movie-42", "tok") == "src-1"

    paths = [r.url.path for r in upstream.requests]
    assert paths == ["/Users", "/Users/user-1/Items/movie-42"]
    assert all(r.headers["X-Emby-Token"] == "tok" for r in upstream.requests)


@pytest.mark.asyncio
async def test_results_are_cached_per_item(mock_upstream):
    upstream = UpstreamRecorder()
    resolver = TrackSourceResolver(JellyfinClient(client=mock_upstream(upstream)), ttl=300)

    await resolver.resolve_default_source(CONFIG, "movie-42", "tok")
    await resolver.list_audio_tracks(CONFIG, "movie-42", "tok")

    assert len(upstream.requests) == 2


@pytest.mark.asyncio
async def test_items_page_user_list_and_missing_user(mock_upstream):
    upstream = UpstreamRecorder(users={"Items": [{"Id": "user-9"}]})
    resolver = TrackSourceResolver(JellyfinClient(client=mock_upstream(upstream)))
    await resolver.resolve_default_source(CONFIG, "movie-42", "tok")
    assert upstream.requests[-1].url.path == "/Users/user-9/Items/movie-42"

    upstream = UpstreamRecorder(users=[])
    resolver = TrackSourceResolver(JellyfinClient(client=mock_upstream(upstream)))
    assert await resolver.resolve_default_source(CONFIG, "movie-42", "tok") == "src-1"
    assert upstream.requests[-1].url.path == "/Items/movie-42"


@pytest.mark.asyncio
async def test_lookup_failure_yields_nothing(mock_upstream):
    upstream = UpstreamRecorder(item_status=404)
    resolver = TrackSourceResolver(JellyfinClient(client=mock_upstream(upstream)))

    assert await resolver.resolve_default_source(CONFIG, "movie-42", "tok") is None
    assert await resolver.list_audio_tracks(CONFIG, "movie-42", "tok") == []


@pytest.mark.asyncio
async def test_audio_tracks_keep_native_index_and_dedupe(mock_upstream):
    resolver = TrackSourceResolver(JellyfinClient(client=mock_upstream(UpstreamRecorder())))

    tracks = await resolver.list_audio_tracks(CONFIG, "movie-42", "tok")

    assert [(t.index, t.language, t.codec) for t in tracks] == [(1, "eng", "aac"), (2, "fas", "ac3"), (2, "fre", "aac")]
    assert [t.name for t in tracks] == ["English - AAC", "fas (ac3)", "French"]
    assert [t.media_source_id for t in tracks] == ["src-1", "src-1", "src-2"]


@pytest.mark.asyncio
async def test_authenticate_viewer(mock_upstream):
    upstream = UpstreamRecorder()
    client = JellyfinClient(client=mock_upstream(upstream))

    assert await client.authenticate_viewer(CONFIG) == "viewer-token"

    request = upstream.requests[0]
    assert request.method == "POST"
    assert request.headers["X-Emby-Client"] == "iFilm"
    assert b'"Username"' in request.content


@pytest.mark.asyncio
async def test_rejected_login_raises_auth_failure(mock_upstream):
    client = JellyfinClient(client=mock_upstream(lambda request: httpx.Response(401)))

    with pytest.raises(AuthFailureError):
        await client.authenticate_viewer(CONFIG)
