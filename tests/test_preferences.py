import asyncio
import json

import pytest

from ifilm_proxy.player.preferences import PlayerPreferences, PreferenceStore


@pytest.fixture
def store(tmp_path):
    return PreferenceStore(tmp_path / "player" / "preferences.json")


@pytest.mark.asyncio
async def test_defaults_without_a_file(store):
    assert await store.get("movie-42") == PlayerPreferences()
    assert await store.get_volume() == 1.0
    assert await store.get_muted() is False


@pytest.mark.asyncio
async def test_save_merges_per_item(store):
    await store.save("movie-42", audio_track=1)
    await store.save("movie-42", playback_speed=1.25)
    await store.save("movie-7", quality="720")

    prefs = await store.get("movie-42")
    assert prefs.audio_track == 1
    assert prefs.playback_speed == 1.25
    assert prefs.quality == "auto"
    assert prefs.last_watched > 0
    assert (await store.get("movie-7")).quality == "720"


@pytest.mark.asyncio
async def test_volume_is_clamped_and_global(store):
    await store.set_volume(1.7)
    assert await store.get_volume() == 1.0
    await store.set_volume(-3)
    assert await store.get_volume() == 0.0

    await store.set_muted(True)
    await store.save("movie-42", audio_track=0)
    assert await store.get_muted() is True

    data = json.loads(store.path.read_text())
    assert set(data) == {"items", "volume", "muted"}


@pytest.mark.asyncio
async def test_concurrent_saves_are_not_lost(store):
    await asyncio.gather(*(store.save(f"movie-{i}", audio_track=i) for i in range(10)))

    for i in range(10):
        assert (await store.get(f"movie-{i}")).audio_track == i


@pytest.mark.asyncio
async def test_corrupt_file_yields_defaults(store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{not json")

    assert await store.get("movie-42") == PlayerPreferences()

    assert await store.save("movie-42", audio_track=2)
    assert (await store.get("movie-42")).audio_track == 2


@pytest.mark.asyncio
async def test_invalid_item_entry_yields_defaults(store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text(json.dumps({"items": {"movie-42": {"playback_speed": "fast"}}}))

    assert await store.get("movie-42") == PlayerPreferences()
