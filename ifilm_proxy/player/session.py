import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Coroutine, List, Optional, Set, Tuple, Union

from ifilm_proxy.errors import (
    CodecFatalError,
    ManifestMismatchError,
    SessionCancelledError,
    StreamError,
    UpstreamUnreachableError,
)
from ifilm_proxy.player.engine import (
    AUTO_LEVEL,
    AdaptiveEngine,
    EngineError,
    EngineEvent,
    EngineFactory,
    ErrorType,
    QualityLevel,
    RenderSurface,
)
from ifilm_proxy.player.preferences import PreferenceStore
from ifilm_proxy.player.progress import PROGRESS_INTERVAL, ProgressReporter, ProgressStore
from ifilm_proxy.player.stream_client import StreamClient
from ifilm_proxy.schemas import AudioTrackDescriptor, StreamInfo
from ifilm_proxy.utils.http_utils import DownloadError
from ifilm_proxy.utils.m3u8_processor import normalize_item_id

logger = logging.getLogger(__name__)

AUTO_QUALITY = "auto"

SETTLE_DELAY = 0.1
RESTORE_ATTEMPTS = 5
RESTORE_BACKOFF = 0.2
MAX_NETWORK_RETRIES = 3

# A saved position is not resumed this close to either end of the item.
RESUME_MIN_POSITION = 5.0
RESUME_END_MARGIN = 10.0

_STREAM_ID_PATTERN = re.compile(r"/stream/([^/?]+)")

Quality = Union[str, int]


class PlaybackState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    PLAYING = "playing"
    PAUSED = "paused"
    SWITCHING = "switching"
    ERROR = "error"
    DESTROYED = "destroyed"


ACTIVE_STATES = (PlaybackState.READY, PlaybackState.PLAYING, PlaybackState.PAUSED)


@dataclass
class PlaybackSession:
    item_id: str
    selected_audio_track: Optional[int] = None  # position in the track list, never sent upstream
    media_source_id: Optional[str] = None
    playback_speed: float = 1.0
    quality: Quality = AUTO_QUALITY
    current_time: float = 0.0
    is_playing: bool = True
    has_resumed: bool = False


def normalize_quality(quality: Quality) -> Quality:
    """Accept ``"auto"``, a height, or a label such as ``"720p"``."""
    if isinstance(quality, str):
        value = quality.strip().lower()
        if value == AUTO_QUALITY:
            return AUTO_QUALITY
        value = value[:-1] if value.endswith("p") else value
        if not value.isdigit():
            raise ValueError(f"Unknown quality: {quality!r}")
        quality = int(value)
    if quality <= 0:
        raise ValueError(f"Unknown quality: {quality!r}")
    return quality


class PlaybackController:
    """
    Owns the decode pipeline of one item and drives it through its playback states.

    The upstream server cannot switch audio tracks or forced qualities inside a running
    transcode, so every such change tears the engine down and loads a new master playlist.
    Each load runs under a new generation number; callbacks and tasks of an older generation
    never touch the session. A new engine is only attached after the previous one has been
    fully destroyed.
    """

    def __init__(
        self,
        item_id: str,
        engine_factory: EngineFactory,
        surface: RenderSurface,
        stream_client: StreamClient,
        progress_store: Optional[ProgressStore] = None,
        preferences: Optional[PreferenceStore] = None,
        settle_delay: float = SETTLE_DELAY,
        restore_attempts: int = RESTORE_ATTEMPTS,
        restore_backoff: float = RESTORE_BACKOFF,
        max_network_retries: int = MAX_NETWORK_RETRIES,
        progress_interval: float = PROGRESS_INTERVAL,
    ):
        self.session = PlaybackSession(item_id=item_id)
        self.engine_factory = engine_factory
        self.surface = surface
        self.stream_client = stream_client
        self.progress_store = progress_store
        self.preferences = preferences
        self.settle_delay = settle_delay
        self.restore_attempts = restore_attempts
        self.restore_backoff = restore_backoff
        self.max_network_retries = max_network_retries

        self.state = PlaybackState.IDLE
        self.generation = 0
        self.engine: Optional[AdaptiveEngine] = None
        self.stream_info: Optional[StreamInfo] = None
        self.levels: List[QualityLevel] = []
        self.error: Optional[Exception] = None

        self._listeners: List[Tuple[EngineEvent, Callable]] = []
        self._teardown: Optional[asyncio.Task] = None
        self._load_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._state_listeners: List[Callable[[PlaybackState], None]] = []
        self._pending_position: Optional[float] = None
        self._has_played = False
        self._resume_position: Optional[float] = None
        self._preferences_loaded = False
        self._network_retries = 0
        self._media_recovered = False
        self._media_reloaded = False

        self.reporter = (
            ProgressReporter(progress_store, item_id, surface, interval=progress_interval) if progress_store else None
        )

    # State

    def add_state_listener(self, listener: Callable[[PlaybackState], None]) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, state: PlaybackState) -> None:
        if state == self.state:
            return
        logger.debug(f"Playback {self.session.item_id}: {self.state.value} -> {state.value}")
        self.state = state
        for listener in list(self._state_listeners):
            listener(state)

    def _check(self, generation: int) -> None:
        if generation != self.generation or self.state == PlaybackState.DESTROYED:
            raise SessionCancelledError("Playback session moved on")

    @property
    def audio_tracks(self) -> List[AudioTrackDescriptor]:
        return self.stream_info.audio_tracks if self.stream_info else []

    @property
    def selected_track(self) -> Optional[AudioTrackDescriptor]:
        position = self.session.selected_audio_track
        if position is None or not 0 <= position < len(self.audio_tracks):
            return None
        return self.audio_tracks[position]

    def manifest_url(self) -> str:
        """Master playlist URL for the current selection; the track's upstream index is sent, not its position."""
        track = self.selected_track
        media_source_id = self.session.media_source_id or (track.media_source_id if track else None)
        if media_source_id is None and self.stream_info:
            media_source_id = self.stream_info.default_media_source_id
        quality = self.session.quality
        return self.stream_client.manifest_url(
            self.stream_info.stream_url,
            audio_index=track.index if track else None,
            media_source_id=media_source_id,
            max_height=None if quality == AUTO_QUALITY else quality,
        )

    # Task plumbing

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exception = task.exception()
        if exception is not None and not isinstance(exception, SessionCancelledError):
            logger.error(f"Playback task failed for {self.session.item_id}: {exception!r}")

    def _cancel_pending(self) -> None:
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        self._load_task = None
        for task in list(self._tasks):
            task.cancel()

    async def _run_load(self, coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        self._load_task = task
        await asyncio.wait({task})
        if task.cancelled():
            return
        exception = task.exception()
        if exception is not None and not isinstance(exception, SessionCancelledError):
            raise exception

    async def wait_settled(self) -> None:
        """Wait until no load, teardown or callback task of this session is pending."""
        while True:
            pending = {t for t in self._tasks if not t.done()}
            for task in (self._load_task, self._teardown):
                if task is not None and not task.done():
                    pending.add(task)
            if not pending:
                return
            await asyncio.wait(pending)

    # Pipeline lifecycle

    def _listen(self, engine: AdaptiveEngine, event: EngineEvent, handler: Callable) -> None:
        generation = self.generation

        def guarded(*args):
            if generation != self.generation or self.engine is not engine:
                logger.debug(f"Ignoring stale {event.value} callback")
                return
            handler(engine, generation, *args)

        engine.on(event, guarded)
        self._listeners.append((event, guarded))

    def _begin_teardown(self) -> None:
        engine, self.engine = self.engine, None
        listeners, self._listeners = self._listeners, []
        previous = self._teardown
        if engine is not None:
            for event, listener in listeners:
                engine.off(event, listener)
            engine.detach_media()
        self._teardown = asyncio.create_task(self._finish_teardown(previous, engine))

    async def _finish_teardown(self, previous: Optional[asyncio.Task], engine: Optional[AdaptiveEngine]) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        if engine is not None:
            try:
                await engine.destroy()
            except Exception as e:
                logger.warning(f"Engine teardown for {self.session.item_id} raised: {e!r}")
        self.surface.clear_source()

    async def _await_teardown(self) -> None:
        if self._teardown is not None:
            await asyncio.shield(self._teardown)

    async def _load(self, generation: int, url: str, settle: bool) -> None:
        await self._await_teardown()
        if settle and self.settle_delay:
            await asyncio.sleep(self.settle_delay)
        self._check(generation)

        engine = self.engine_factory()
        self.engine = engine
        self._media_recovered = False
        self._listen(engine, EngineEvent.MANIFEST_PARSED, self._on_manifest_parsed)
        self._listen(engine, EngineEvent.ERROR, self._on_error)
        self._set_state(PlaybackState.LOADING)
        logger.info(f"Loading {url}")
        engine.load_source(url)
        engine.attach_media(self.surface)

    def _on_manifest_parsed(self, engine: AdaptiveEngine, generation: int, *args) -> None:
        self._spawn(self._enter_ready(engine, generation))

    async def _enter_ready(self, engine: AdaptiveEngine, generation: int) -> None:
        self._check(generation)
        self.levels = list(engine.levels)
        self._apply_quality(engine)
        self._network_retries = 0
        self._set_state(PlaybackState.READY)

        position, self._pending_position = self._pending_position, None
        if position is not None:
            await self._restore_position(generation, position)
        elif self._resume_position is not None:
            self.resume(self._resume_position)
        self._check(generation)
        self._has_played = True

        # Intent may have changed while the pipeline was reloading.
        self.surface.playback_rate = self.session.playback_speed
        if self.session.is_playing:
            await self.surface.play()
            self._check(generation)
            self._set_state(PlaybackState.PLAYING)
        else:
            self.surface.pause()
            self._set_state(PlaybackState.PAUSED)

        if self.reporter is not None:
            self.reporter.start()

    def _apply_quality(self, engine: AdaptiveEngine) -> None:
        quality = self.session.quality
        if quality == AUTO_QUALITY:
            engine.current_level = AUTO_LEVEL
            return
        match = next((i for i, level in enumerate(self.levels) if level.height == quality), None)
        if match is None:
            logger.info(f"No {quality}p rendition for {self.session.item_id}, using automatic selection")
            engine.current_level = AUTO_LEVEL
        else:
            engine.current_level = match

    async def _restore_position(self, generation: int, position: float) -> bool:
        for attempt in range(self.restore_attempts):
            self._check(generation)
            if self.surface.can_seek():
                self.surface.seek(position)
                self.session.current_time = position
                return True
            await asyncio.sleep(self.restore_backoff * (2**attempt))
        logger.warning(f"Could not restore position {position:.1f}s after {self.restore_attempts} attempts")
        return False

    def resume(self, position: float) -> bool:
        """
        Seek to a saved position, at most once per session.

        Returns:
            bool: Whether a seek was performed.
        """
        if self.session.has_resumed:
            return False
        self.session.has_resumed = True
        duration = self.surface.duration or 0.0
        if position < RESUME_MIN_POSITION or (duration and position > duration - RESUME_END_MARGIN):
            return False
        self.surface.seek(position)
        self.session.current_time = position
        logger.info(f"Resumed {self.session.item_id} at {position:.1f}s")
        return True

    def _on_error(self, engine: AdaptiveEngine, generation: int, error: EngineError, *args) -> None:
        if not error.fatal:
            logger.debug(f"Non-fatal {error.type.value} error: {error.details}")
            return

        if error.type == ErrorType.NETWORK:
            if self._network_retries < self.max_network_retries:
                self._network_retries += 1
                logger.warning(f"Fatal network error, restarting load ({self._network_retries}): {error.details}")
                engine.start_load()
                return
            self._fail(generation, UpstreamUnreachableError(f"Stream unreachable: {error.details}"))
        elif error.type == ErrorType.MEDIA:
            if not self._media_recovered:
                self._media_recovered = True
                logger.warning(f"Fatal media error, attempting recovery: {error.details}")
                engine.recover_media_error()
                return
            if not self._media_reloaded:
                self._media_reloaded = True
                logger.warning(f"Media recovery failed, reloading the pipeline: {error.details}")
                self._spawn(self._reload(generation))
                return
            self._fail(generation, CodecFatalError(f"Stream cannot be decoded: {error.details}"))
        else:
            self._fail(generation, StreamError(f"Playback failed: {error.details}"))

    def _take_snapshot(self) -> None:
        """Remember the position to restore after a reload; the first snapshot of a reload chain wins."""
        if self._pending_position is None and self._has_played:
            self._pending_position = self.surface.current_time or 0.0
            self.session.current_time = self._pending_position

    async def _reload(self, generation: int) -> None:
        self._check(generation)
        self.generation += 1
        generation = self.generation
        self.surface.pause()
        self._take_snapshot()
        self._begin_teardown()
        await self._load(generation, self.manifest_url(), settle=True)

    def _fail(self, generation: int, error: Exception) -> None:
        if generation != self.generation or self.state == PlaybackState.DESTROYED:
            return
        logger.error(f"Playback of {self.session.item_id} failed: {error}")
        self.generation += 1
        if self.surface.current_time:
            self.session.current_time = self.surface.current_time
        self.error = error
        self._begin_teardown()
        self._set_state(PlaybackState.ERROR)

    # Public operations

    async def open(self) -> None:
        """Start playback of the item: fetch its stream info, restore preferences and load the master playlist."""
        if self.state != PlaybackState.IDLE:
            raise RuntimeError(f"Cannot open a session in state {self.state.value}")
        self.generation += 1
        self.error = None
        self._network_retries = 0
        self._media_reloaded = False
        self._set_state(PlaybackState.LOADING)
        await self._run_load(self._open(self.generation))

    async def _open(self, generation: int) -> None:
        try:
            info = await self.stream_client.get_stream_info(self.session.item_id)
        except (DownloadError, StreamError, ValueError) as e:
            self._fail(generation, e)
            return
        self._check(generation)

        match = _STREAM_ID_PATTERN.search(info.stream_url)
        if not match or normalize_item_id(match.group(1)) != normalize_item_id(self.session.item_id):
            self._fail(
                generation,
                ManifestMismatchError(f"Stream URL {info.stream_url} does not address item {self.session.item_id}"),
            )
            return
        self.stream_info = info

        if not self._preferences_loaded:
            await self._load_preferences()
            self._check(generation)
        await self._prepare_resume(generation)
        await self._load(generation, self.manifest_url(), settle=False)

    async def _prepare_resume(self, generation: int) -> None:
        if self._resume_position is None and not self.session.has_resumed and self.progress_store is not None:
            self._resume_position = await self._load_saved_progress()
            self._check(generation)

    async def _load_selection(self, generation: int) -> None:
        # A switch may have cancelled the initial open before the saved position arrived.
        await self._prepare_resume(generation)
        await self._load(generation, self.manifest_url(), settle=True)

    async def _load_preferences(self) -> None:
        self._preferences_loaded = True
        if self.preferences is None:
            return
        prefs = await self.preferences.get(self.session.item_id)
        if self.session.selected_audio_track is None and prefs.audio_track is not None:
            if 0 <= prefs.audio_track < len(self.audio_tracks):
                self.session.selected_audio_track = prefs.audio_track
        self.session.playback_speed = prefs.playback_speed
        try:
            self.session.quality = normalize_quality(prefs.quality)
        except ValueError:
            self.session.quality = AUTO_QUALITY
        self.surface.volume = await self.preferences.get_volume()
        self.surface.muted = await self.preferences.get_muted()

    async def _load_saved_progress(self) -> float:
        try:
            return await self.progress_store.get_progress(self.session.item_id)
        except Exception as e:
            logger.warning(f"Saved progress for {self.session.item_id} unavailable: {e}")
            return 0.0

    async def retry(self) -> None:
        """Leave the error state and load the item again from scratch."""
        if self.state != PlaybackState.ERROR:
            return
        if self.session.current_time:
            self._pending_position = self.session.current_time
        self._set_state(PlaybackState.IDLE)
        await self.open()

    async def switch_audio_track(self, position: int) -> None:
        """
        Select the audio track at ``position`` in ``audio_tracks`` and reload the pipeline.

        Args:
            position (int): Position in the track list shown to the user.
        """
        tracks = self.audio_tracks
        if not 0 <= position < len(tracks):
            raise IndexError(f"No audio track at position {position}")
        if position == self.session.selected_audio_track and self.state in ACTIVE_STATES:
            return
        self.session.selected_audio_track = position
        self.session.media_source_id = tracks[position].media_source_id
        if self.preferences is not None:
            await self.preferences.save(self.session.item_id, audio_track=position)
        await self._switch()

    async def set_quality(self, quality: Quality) -> None:
        quality = normalize_quality(quality)
        if quality == self.session.quality:
            return
        self.session.quality = quality
        if self.preferences is not None:
            await self.preferences.save(self.session.item_id, quality=str(quality))
        await self._switch()

    async def _switch(self) -> None:
        if self.state in (PlaybackState.IDLE, PlaybackState.ERROR, PlaybackState.DESTROYED):
            return
        if self.stream_info is None:
            # The initial load has not resolved the stream yet; it picks up the new selection itself.
            return

        self.generation += 1
        generation = self.generation
        self._cancel_pending()

        self.surface.pause()
        self._take_snapshot()
        self._begin_teardown()
        self._network_retries = 0
        self._media_reloaded = False
        self._set_state(PlaybackState.SWITCHING)

        await self._run_load(self._load_selection(generation))

    async def play(self) -> None:
        self.session.is_playing = True
        if self.state in (PlaybackState.READY, PlaybackState.PAUSED):
            await self.surface.play()
            self._set_state(PlaybackState.PLAYING)

    def pause(self) -> None:
        self.session.is_playing = False
        if self.state in (PlaybackState.READY, PlaybackState.PLAYING):
            self.surface.pause()
            self._set_state(PlaybackState.PAUSED)

    def seek(self, position: float) -> None:
        if self.state not in ACTIVE_STATES:
            return
        duration = self.surface.duration or 0.0
        position = max(0.0, min(position, duration) if duration else position)
        self.surface.seek(position)
        self.session.current_time = position

    async def set_playback_speed(self, speed: float) -> None:
        self.session.playback_speed = speed
        if self.state in ACTIVE_STATES:
            self.surface.playback_rate = speed
        if self.preferences is not None:
            await self.preferences.save(self.session.item_id, playback_speed=speed)

    async def set_volume(self, volume: float) -> None:
        self.surface.volume = max(0.0, min(1.0, volume))
        if self.preferences is not None:
            await self.preferences.set_volume(self.surface.volume)

    async def set_muted(self, muted: bool) -> None:
        self.surface.muted = muted
        if self.preferences is not None:
            await self.preferences.set_muted(muted)

    async def destroy(self) -> None:
        """Release the pipeline, detach every listener and stop progress reporting."""
        if self.state == PlaybackState.DESTROYED:
            return
        self.generation += 1
        if self.surface.current_time:
            self.session.current_time = self.surface.current_time
        self._cancel_pending()
        self._set_state(PlaybackState.DESTROYED)
        self._state_listeners.clear()
        # The final save must see the position before the surface source is cleared.
        if self.reporter is not None:
            await self.reporter.stop()
        self._begin_teardown()
        await self._await_teardown()
