import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from ifilm_proxy.configs import settings
from ifilm_proxy.errors import StreamError
from ifilm_proxy.schemas import AudioTrackDescriptor, MediaSourceInfo, UpstreamConfig
from ifilm_proxy.upstream.jellyfin import JellyfinClient
from ifilm_proxy.utils.http_utils import DownloadError

logger = logging.getLogger(__name__)


class TrackSourceResolver:
    """
    Resolves media sources and audio tracks of an item from upstream metadata.

    Lookups never raise: any failure is logged and reported as "nothing known", which the
    proxy handles by leaving the media source out of the forwarded request. Successful
    lookups are cached per item for ``ttl`` seconds.
    """

    def __init__(
        self,
        client: JellyfinClient,
        ttl: float = settings.media_source_cache_ttl,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.ttl = ttl
        self._clock = clock
        self._cache: Dict[Tuple[str, str], Tuple[float, List[MediaSourceInfo]]] = {}

    async def get_media_sources(self, config: UpstreamConfig, item_id: str, token: str) -> List[MediaSourceInfo]:
        key = (config.base_url, item_id)
        cached = self._cache.get(key)
        if cached and self._clock() - cached[0] < self.ttl:
            return cached[1]

        try:
            details = await self.client.get_item_details(config, item_id, token)
        except (StreamError, DownloadError, ValueError) as e:
            logger.warning(f"Failed to look up media sources for item {item_id}, continuing without: {e}")
            return []

        self._cache[key] = (self._clock(), details.MediaSources)
        return details.MediaSources

    async def resolve_default_source(self, config: UpstreamConfig, item_id: str, token: str) -> Optional[str]:
        """
        Return the first media source id of an item.

        Args:
            config (UpstreamConfig): Active upstream configuration.
            item_id (str): Upstream item identifier.
            token (str): Credential to present.

        Returns:
            Optional[str]: The media source id, or None when it cannot be determined.
        """
        sources = await self.get_media_sources(config, item_id, token)
        if not sources:
            return None
        logger.debug(f"Default media source for item {item_id}: {sources[0].Id}")
        return sources[0].Id

    async def list_audio_tracks(self, config: UpstreamConfig, item_id: str, token: str) -> List[AudioTrackDescriptor]:
        """
        Enumerate the audio tracks of every media source, one per (language, codec) pair.

        The upstream-native stream index is kept as ``index``; when the upstream omits it the
        position in the resulting list is used instead.
        """
        tracks: List[AudioTrackDescriptor] = []
        seen = set()
        for source in await self.get_media_sources(config, item_id, token):
            for stream in source.MediaStreams:
                if (stream.Type or "").lower() != "audio":
                    continue
                language = stream.Language or stream.LanguageTag or "Unknown"
                codec = stream.Codec or "Unknown"
                if (language, codec) in seen:
                    continue
                seen.add((language, codec))
                tracks.append(
                    AudioTrackDescriptor(
                        index=stream.Index if stream.Index is not None else len(tracks),
                        language=language,
                        name=stream.DisplayTitle or stream.Title or f"{language} ({codec})",
                        codec=codec,
                        media_source_id=source.Id,
                    )
                )
        return tracks
