from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ifilm_proxy.const import MASTER_PLAYLIST_NAME, PLAYLIST_EXTENSION


class GenericParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UpstreamConfig(GenericParams):
    server_url: str = Field(..., description="Base URL of the upstream media server.", alias="serverUrl")
    api_key: str = Field(..., description="Static API key for the upstream media server.", alias="apiKey")

    @property
    def base_url(self) -> str:
        return self.server_url.rstrip("/")


class AudioTrackDescriptor(GenericParams):
    index: int = Field(..., description="Upstream-native audio stream index.")
    language: str = Field("Unknown", description="Language code of the track.")
    name: str = Field(..., description="Display label of the track.")
    codec: str = Field("Unknown", description="Audio codec.")
    media_source_id: str = Field(..., description="Media source the track belongs to.", alias="mediaSourceId")


class StreamInfo(GenericParams):
    stream_url: str = Field(..., description="Proxy-relative URL of the master playlist.", alias="streamUrl")
    type: str = Field("hls", description="Streaming protocol.")
    audio_tracks: List[AudioTrackDescriptor] = Field(default_factory=list, alias="audioTracks")
    default_media_source_id: Optional[str] = Field(None, alias="defaultMediaSourceId")


class StreamRequest(GenericParams):
    item_id: str = Field(..., description="Opaque upstream item identifier.")
    relative_path: str = Field("", description="Empty for the master playlist, else variant playlist or segment.")
    audio_stream_index: Optional[int] = Field(None, description="Upstream-native audio stream index.")
    media_source_id: Optional[str] = Field(None, description="Requested media source.")
    max_height: Optional[int] = Field(None, description="Forced maximum vertical resolution.")
    runtime_ticks: Optional[str] = None
    actual_segment_length_ticks: Optional[str] = None
    passthrough: Dict[str, str] = Field(
        default_factory=dict, description="Upstream session parameters carried on variant playlist URLs."
    )

    @property
    def is_master(self) -> bool:
        return self.relative_path in ("", MASTER_PLAYLIST_NAME)

    @property
    def is_playlist(self) -> bool:
        return self.is_master or self.relative_path.lower().endswith(PLAYLIST_EXTENSION)


class MediaStreamInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    Type: Optional[str] = None
    Index: Optional[int] = None
    Language: Optional[str] = None
    LanguageTag: Optional[str] = None
    Codec: Optional[str] = None
    DisplayTitle: Optional[str] = None
    Title: Optional[str] = None


class MediaSourceInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    Id: str
    MediaStreams: List[MediaStreamInfo] = Field(default_factory=list)


class ItemDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    Id: Optional[str] = None
    MediaSources: List[MediaSourceInfo] = Field(default_factory=list)
