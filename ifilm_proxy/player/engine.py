"""Capability contracts of the adaptive playback engine and the surface it renders into."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List

AUTO_LEVEL = -1


class EngineEvent(str, Enum):
    MANIFEST_PARSED = "manifest_parsed"
    ERROR = "error"


class ErrorType(str, Enum):
    NETWORK = "network"
    MEDIA = "media"
    OTHER = "other"


@dataclass(frozen=True)
class QualityLevel:
    height: int
    width: int = 0
    bitrate: int = 0


@dataclass
class EngineError:
    type: ErrorType
    fatal: bool
    details: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


EngineListener = Callable[..., Any]


class AdaptiveEngine(ABC):
    """
    An adaptive bitrate engine bound to one manifest URL.

    Instances are single use: once destroyed they are never reattached; a new source or a new
    audio track always means a new engine.
    """

    @abstractmethod
    def load_source(self, url: str) -> None:
        pass

    @abstractmethod
    def attach_media(self, surface: "RenderSurface") -> None:
        pass

    @abstractmethod
    def detach_media(self) -> None:
        pass

    @abstractmethod
    async def destroy(self) -> None:
        """Abort network loads and release buffers; completes once nothing is left running."""
        pass

    @property
    @abstractmethod
    def levels(self) -> List[QualityLevel]:
        pass

    @property
    @abstractmethod
    def current_level(self) -> int:
        """Index into ``levels``, or AUTO_LEVEL when bitrate selection is automatic."""
        pass

    @current_level.setter
    @abstractmethod
    def current_level(self, value: int) -> None:
        pass

    @abstractmethod
    def start_load(self) -> None:
        pass

    @abstractmethod
    def recover_media_error(self) -> None:
        pass

    @abstractmethod
    def on(self, event: EngineEvent, listener: EngineListener) -> None:
        pass

    @abstractmethod
    def off(self, event: EngineEvent, listener: EngineListener) -> None:
        pass


class RenderSurface(ABC):
    """The element media is decoded into; outlives any single engine."""

    current_time: float
    duration: float
    paused: bool
    playback_rate: float
    volume: float
    muted: bool

    @abstractmethod
    def can_seek(self) -> bool:
        """Whether the surface has buffered enough metadata to accept a seek."""
        pass

    @abstractmethod
    async def play(self) -> None:
        pass

    @abstractmethod
    def pause(self) -> None:
        pass

    @abstractmethod
    def seek(self, position: float) -> None:
        pass

    @abstractmethod
    def clear_source(self) -> None:
        """Drop the media source so no buffered data from a previous engine survives."""
        pass


EngineFactory = Callable[[], AdaptiveEngine]
