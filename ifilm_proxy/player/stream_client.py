import logging
from typing import Optional

import httpx

from ifilm_proxy.configs import settings
from ifilm_proxy.schemas import StreamInfo
from ifilm_proxy.utils.http_utils import append_query, create_httpx_client, request_with_retry

logger = logging.getLogger(__name__)


def build_manifest_url(
    stream_url: str,
    audio_index: Optional[int] = None,
    media_source_id: Optional[str] = None,
    max_height: Optional[int] = None,
) -> str:
    """
    Build the master playlist URL for a negotiation.

    Args:
        stream_url (str): The proxied master playlist URL returned by the stream-info endpoint.
        audio_index (int, optional): Upstream-native audio stream index of the selected track.
        media_source_id (str, optional): Media source the track belongs to.
        max_height (int, optional): Forced vertical resolution; None leaves quality automatic.

    Returns:
        str: The URL, without a dangling '?' when nothing is selected.
    """
    return append_query(
        stream_url,
        {"audioTrack": audio_index, "mediaSourceId": media_source_id, "maxHeight": max_height},
    )


class StreamClient:
    """Client of the stream-info endpoint."""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, api_password: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or create_httpx_client()
        self.api_password = api_password

    async def get_stream_info(self, item_id: str) -> StreamInfo:
        headers = {"api_password": self.api_password} if self.api_password else {}
        response = await request_with_retry(
            self.client, "GET", f"{self.base_url}{settings.api_prefix}/movies/{item_id}/stream", headers
        )
        info = StreamInfo.model_validate(response.json())
        logger.debug(f"Stream info for {item_id}: {len(info.audio_tracks)} audio tracks")
        return info

    def manifest_url(self, stream_url: str, *args, **kwargs) -> str:
        """Absolute master playlist URL; ``stream_url`` is proxy-relative."""
        if "://" not in stream_url:
            stream_url = f"{self.base_url}{stream_url}"
        return build_manifest_url(stream_url, *args, **kwargs)

    async def close(self):
        await self.client.aclose()
