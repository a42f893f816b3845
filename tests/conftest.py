"""
Pytest configuration and shared fakes.

The upstream media server is simulated with httpx.MockTransport; the adaptive engine and
the render surface with in-memory fakes that record every call made on them.
"""

import asyncio
from pathlib import Path
from typing import Callable, Dict, List

import httpx
import pytest
from dotenv import load_dotenv

from ifilm_proxy.player.engine import (
    AUTO_LEVEL,
    AdaptiveEngine,
    EngineError,
    EngineEvent,
    ErrorType,
    QualityLevel,
    RenderSurface,
)

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeSurface(RenderSurface):
    def __init__(self, duration: float = 3600.0, seekable_after: int = 0):
        self.current_time = 0.0
        self.duration = duration
        self.paused = True
        self.playback_rate = 1.0
        self.volume = 1.0
        self.muted = False
        self.seeks: List[float] = []
        self.play_calls = 0
        self.clear_calls = 0
        self.events: List[str] = []
        self._seekable_after = seekable_after
        self._can_seek_calls = 0

    def can_seek(self) -> bool:
        self._can_seek_calls += 1
        return self._can_seek_calls > self._seekable_after

    async def play(self) -> None:
        self.play_calls += 1
        self.paused = False
        self.events.append("play")

    def pause(self) -> None:
        self.paused = True
        self.events.append("pause")

    def seek(self, position: float) -> None:
        self.seeks.append(position)
        self.current_time = position

    def clear_source(self) -> None:
        self.clear_calls += 1
        self.current_time = 0.0
        self.events.append("clear_source")


class FakeEngine(AdaptiveEngine):
    def __init__(self, registry: "EngineRegistry"):
        self.registry = registry
        self.sources: List[str] = []
        self.attach_calls = 0
        self.detach_calls = 0
        self.destroyed = False
        self.start_load_calls = 0
        self.recover_calls = 0
        self._levels = [QualityLevel(1080, 1920), QualityLevel(720, 1280), QualityLevel(480, 854)]
        self._current_level = AUTO_LEVEL
        self.listeners: Dict[EngineEvent, List[Callable]] = {}

    def load_source(self, url: str) -> None:
        self.sources.append(url)
        self.registry.events.append(f"load:{url}")

    def attach_media(self, surface) -> None:
        self.attach_calls += 1
        self.registry.events.append("attach")
        behaviour = self.registry.behaviour
        if behaviour == "parse":
            self.emit(EngineEvent.MANIFEST_PARSED, {"levels": self._levels})
        elif behaviour == "network_error":
            self.emit(EngineEvent.ERROR, EngineError(ErrorType.NETWORK, True, "manifestLoadError"))
        elif behaviour == "media_error":
            self.emit(EngineEvent.ERROR, EngineError(ErrorType.MEDIA, True, "bufferAppendError"))

    def detach_media(self) -> None:
        self.detach_calls += 1

    async def destroy(self) -> None:
        await asyncio.sleep(self.registry.destroy_delay)
        self.destroyed = True
        self.registry.events.append("destroyed")

    @property
    def levels(self) -> List[QualityLevel]:
        return self._levels

    @property
    def current_level(self) -> int:
        return self._current_level

    @current_level.setter
    def current_level(self, value: int) -> None:
        self._current_level = value

    def start_load(self) -> None:
        self.start_load_calls += 1
        if self.registry.behaviour == "network_error":
            self.emit(EngineEvent.ERROR, EngineError(ErrorType.NETWORK, True, "manifestLoadError"))

    def recover_media_error(self) -> None:
        self.recover_calls += 1
        if self.registry.behaviour == "media_error":
            self.emit(EngineEvent.ERROR, EngineError(ErrorType.MEDIA, True, "bufferAppendError"))

    def on(self, event: EngineEvent, listener: Callable) -> None:
        self.listeners.setdefault(event, []).append(listener)

    def off(self, event: EngineEvent, listener: Callable) -> None:
        self.listeners.get(event, []).remove(listener)

    def listener_count(self) -> int:
        return sum(len(v) for v in self.listeners.values())

    def emit(self, event: EngineEvent, *args) -> None:
        for listener in list(self.listeners.get(event, [])):
            listener(*args)


class EngineRegistry:
    """Engine factory that remembers every engine it built."""

    def __init__(self, behaviour: str = "parse", destroy_delay: float = 0):
        self.behaviour = behaviour
        self.destroy_delay = destroy_delay
        self.engines: List[FakeEngine] = []
        self.events: List[str] = []

    def __call__(self) -> FakeEngine:
        engine = FakeEngine(self)
        self.engines.append(engine)
        return engine

    @property
    def attach_calls(self) -> int:
        return sum(engine.attach_calls for engine in self.engines)


@pytest.fixture
def surface():
    return FakeSurface()


@pytest.fixture
def engine_registry():
    return EngineRegistry()


@pytest.fixture
def mock_upstream():
    """
    Factory fixture returning an httpx.AsyncClient whose requests are answered by ``handler``.

    Usage:
        def test_something(mock_upstream):
            client = mock_upstream(lambda request: httpx.Response(200, text="ok"))
    """

    def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _client
