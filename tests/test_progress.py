import asyncio
import json

import httpx
import pytest

from conftest import FakeSurface
from ifilm_proxy.player.progress import ProgressReporter, ProgressStore, WatchHistoryStore


class RecordingStore(ProgressStore):
    def __init__(self, fail=False):
        self.fail = fail
        self.saves = []

    async def get_progress(self, item_id):
        return 0.0

    async def save_progress(self, item_id, seconds, duration):
        self.saves.append((item_id, seconds, duration))
        if self.fail:
            raise RuntimeError("storage offline")


@pytest.mark.asyncio
async def test_watch_history_round_trip(mock_upstream):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, json={"progress": 754})
        return httpx.Response(201, json={})

    store = WatchHistoryStore("http://ifilm.test/api/", client=mock_upstream(handler), auth_token="jwt")

    assert await store.get_progress("movie-42") == 754.0
    await store.save_progress("movie-42", 812.7, 5400.2)

    assert requests[0].url.path == "/api/watch-history/progress/movie-42"
    assert requests[1].url.path == "/api/watch-history/progress"
    assert requests[1].headers["authorization"] == "Bearer jwt"
    assert json.loads(requests[1].content) == {
        "mediaId": "movie-42",
        "mediaType": "movie",
        "progress": 812,
        "duration": 5400,
    }


@pytest.mark.asyncio
async def test_watch_history_failures_degrade(mock_upstream):
    store = WatchHistoryStore("http://ifilm.test/api", client=mock_upstream(lambda request: httpx.Response(404)))

    assert await store.get_progress("movie-42") == 0.0
    await store.save_progress("movie-42", 10, 100)


@pytest.mark.asyncio
async def test_missing_progress_field_is_zero(mock_upstream):
    store = WatchHistoryStore("http://ifilm.test/api", client=mock_upstream(lambda request: httpx.Response(200, json={})))

    assert await store.get_progress("movie-42") == 0.0


@pytest.mark.asyncio
async def test_flush_skips_small_moves_and_start_position():
    surface = FakeSurface()
    store = RecordingStore()
    reporter = ProgressReporter(store, "movie-42", surface, min_delta=1.0)

    assert not await reporter.flush()

    surface.current_time = 30.0
    assert await reporter.flush()
    surface.current_time = 30.5
    assert not await reporter.flush()
    surface.current_time = 31.5
    assert await reporter.flush()

    assert store.saves == [("movie-42", 30.0, 3600.0), ("movie-42", 31.5, 3600.0)]


@pytest.mark.asyncio
async def test_save_errors_never_escape():
    surface = FakeSurface()
    surface.current_time = 12.0
    reporter = ProgressReporter(RecordingStore(fail=True), "movie-42", surface)

    assert await reporter.flush()


@pytest.mark.asyncio
async def test_periodic_saves_only_while_playing():
    surface = FakeSurface()
    store = RecordingStore()
    reporter = ProgressReporter(store, "movie-42", surface, interval=0.01)

    surface.current_time = 50.0
    reporter.start()
    await asyncio.sleep(0.05)
    assert store.saves == []

    await surface.play()
    await asyncio.sleep(0.05)
    assert store.saves == [("movie-42", 50.0, 3600.0)]

    await reporter.stop()
    assert not reporter.running


@pytest.mark.asyncio
async def test_stop_performs_final_save():
    surface = FakeSurface()
    store = RecordingStore()
    reporter = ProgressReporter(store, "movie-42", surface, interval=60)
    reporter.start()
    surface.current_time = 99.0

    await reporter.stop()

    assert store.saves == [("movie-42", 99.0, 3600.0)]
    assert not reporter.running
