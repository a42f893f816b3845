import logging
from typing import Callable, Mapping, Optional

import httpx
import tenacity
from fastapi import Response
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask

from ifilm_proxy.configs import settings
from ifilm_proxy.const import (
    AUDIO_TRACK_PARAMS,
    CONTENT_TYPES_BY_EXTENSION,
    CORS_HEADERS,
    CREDENTIAL_PARAMS,
    DEFAULT_CONTENT_TYPE,
    MASTER_PLAYLIST_NAME,
    MAX_HEIGHT_PARAMS,
    MEDIA_SOURCE_PARAMS,
    PLAYLIST_CACHE_HEADERS,
    PLAYLIST_CONTENT_TYPE,
    RUNTIME_TICKS_PARAM,
    SEGMENT_LENGTH_PARAM,
    SUPPORTED_RESPONSE_HEADERS,
    UPSTREAM_AUDIO_STREAM_PARAM,
    UPSTREAM_CREDENTIAL_PARAM,
    UPSTREAM_MAX_HEIGHT_PARAM,
    UPSTREAM_MEDIA_PATH,
    UPSTREAM_MEDIA_SOURCE_PARAM,
    UPSTREAM_RUNTIME_TICKS_PARAM,
    UPSTREAM_SEGMENT_LENGTH_PARAM,
    UPSTREAM_TOKEN_HEADER,
)
from ifilm_proxy.errors import AuthFailureError, InvalidStreamPathError, NotConfiguredError, StreamError
from ifilm_proxy.schemas import StreamInfo, StreamRequest, UpstreamConfig
from ifilm_proxy.upstream.config_provider import ConfigProvider
from ifilm_proxy.upstream.jellyfin import JellyfinClient
from ifilm_proxy.upstream.resolver import TrackSourceResolver
from ifilm_proxy.utils.http_utils import (
    DownloadError,
    EnhancedStreamingResponse,
    ProxyRequestHeaders,
    Streamer,
    append_query,
    create_httpx_client,
    redact_url,
)
from ifilm_proxy.utils.m3u8_processor import M3U8Processor, remove_credential_params
from ifilm_proxy.utils.token_cache import SessionTokenCache, UpstreamCredential

logger = logging.getLogger(__name__)

# Query parameters that are consumed by the proxy and never passed through.
_CONTROL_PARAMS = (
    AUDIO_TRACK_PARAMS
    + MEDIA_SOURCE_PARAMS
    + MAX_HEIGHT_PARAMS
    + CREDENTIAL_PARAMS
    + (RUNTIME_TICKS_PARAM, SEGMENT_LENGTH_PARAM, "api_password")
)


def _parse_int(name: str, value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise InvalidStreamPathError(f"Query parameter {name} must be an integer, got {value!r}")


def parse_stream_request(item_id: str, relative_path: str = "", query_params: Mapping[str, str] = None) -> StreamRequest:
    """
    Build a StreamRequest from the inbound path and query.

    Args:
        item_id (str): The ``{itemId}`` path component.
        relative_path (str): Everything after ``/stream/{itemId}/``; empty for the master playlist.
        query_params (Mapping[str, str]): Inbound query parameters; names are matched case-insensitively.

    Returns:
        StreamRequest: The parsed request.

    Raises:
        InvalidStreamPathError: If the path is malformed or a numeric parameter is not a number.
    """
    item_id = (item_id or "").strip()
    if not item_id or item_id in (".", "..") or "/" in item_id or "\\" in item_id:
        raise InvalidStreamPathError(f"Invalid item identifier: {item_id!r}")

    relative_path = (relative_path or "").strip()
    segments = relative_path.split("/") if relative_path else []
    if relative_path.startswith("/") or "\\" in relative_path or any(s in ("", ".", "..") for s in segments):
        raise InvalidStreamPathError(f"Invalid stream path: {relative_path!r}")

    lowered = {}
    passthrough = {}
    for key, value in (query_params or {}).items():
        name = key.lower()
        lowered[name] = value
        if name not in _CONTROL_PARAMS:
            passthrough[key] = value

    def first(names):
        return next((lowered[n] for n in names if lowered.get(n)), None)

    return StreamRequest(
        item_id=item_id,
        relative_path=relative_path,
        audio_stream_index=_parse_int("audioTrack", first(AUDIO_TRACK_PARAMS)),
        media_source_id=first(MEDIA_SOURCE_PARAMS),
        max_height=_parse_int("maxHeight", first(MAX_HEIGHT_PARAMS)),
        runtime_ticks=lowered.get(RUNTIME_TICKS_PARAM) or None,
        actual_segment_length_ticks=lowered.get(SEGMENT_LENGTH_PARAM) or None,
        passthrough=passthrough,
    )


def build_upstream_url(
    config: UpstreamConfig, stream_request: StreamRequest, token: str, media_source_id: Optional[str] = None
) -> str:
    """
    Build the upstream target URL for a stream request.

    Master and variant playlists carry the negotiation parameters (media source, audio stream,
    forced height); segments only carry what addresses the segment inside the transcode.

    Args:
        config (UpstreamConfig): Active upstream configuration.
        stream_request (StreamRequest): The parsed request.
        token (str): Credential to present upstream.
        media_source_id (str, optional): Media source to request; omitted when None.

    Returns:
        str: The upstream URL, without a dangling '?' when no parameter applies.
    """
    base = f"{config.base_url}{UPSTREAM_MEDIA_PATH}{stream_request.item_id}"

    if stream_request.is_master:
        return append_query(
            f"{base}/{MASTER_PLAYLIST_NAME}",
            {
                UPSTREAM_CREDENTIAL_PARAM: token,
                UPSTREAM_MEDIA_SOURCE_PARAM: media_source_id,
                UPSTREAM_AUDIO_STREAM_PARAM: stream_request.audio_stream_index,
                UPSTREAM_MAX_HEIGHT_PARAM: stream_request.max_height,
            },
        )

    url = f"{base}/{stream_request.relative_path}"
    if stream_request.is_playlist:
        params = dict(stream_request.passthrough)
        params.update(
            {
                UPSTREAM_CREDENTIAL_PARAM: token,
                UPSTREAM_MEDIA_SOURCE_PARAM: media_source_id,
                UPSTREAM_AUDIO_STREAM_PARAM: stream_request.audio_stream_index,
                UPSTREAM_MAX_HEIGHT_PARAM: stream_request.max_height,
            }
        )
        return append_query(url, params)

    return append_query(
        url,
        {
            UPSTREAM_CREDENTIAL_PARAM: token,
            UPSTREAM_RUNTIME_TICKS_PARAM: stream_request.runtime_ticks,
            UPSTREAM_SEGMENT_LENGTH_PARAM: stream_request.actual_segment_length_ticks,
            UPSTREAM_MEDIA_SOURCE_PARAM: media_source_id,
        },
    )


def content_type_for(path: str) -> str:
    lowered = path.lower().split("?", 1)[0]
    for extension, content_type in CONTENT_TYPES_BY_EXTENSION.items():
        if lowered.endswith(extension):
            return content_type
    return DEFAULT_CONTENT_TYPE


def prepare_response_headers(original_headers, proxy_response_headers) -> dict:
    """
    Prepare response headers for the proxy response.

    Args:
        original_headers (httpx.Headers): The original headers from the upstream response.
        proxy_response_headers (dict): Additional headers to be included in the proxy response.

    Returns:
        dict: The prepared headers for the proxy response.
    """
    response_headers = {k: v for k, v in original_headers.multi_items() if k in SUPPORTED_RESPONSE_HEADERS}
    response_headers.update(proxy_response_headers)
    return response_headers


def handle_exceptions(exception: Exception, target: Optional[str] = None) -> Response:
    """
    Handle exceptions and return appropriate HTTP responses.

    Args:
        exception (Exception): The exception that was raised.
        target (str, optional): Upstream URL being fetched when the failure happened.

    Returns:
        Response: A JSON error response; the target URL is redacted.
    """
    upstream_status = None
    if isinstance(exception, StreamError):
        logger.error(f"Stream error: {redact_url(exception.message)}")
        status_code, error, upstream_status = exception.status_code, exception.message, exception.upstream_status
    elif isinstance(exception, DownloadError):
        logger.error(f"Error fetching upstream content: {redact_url(exception.message)}")
        status_code, error, upstream_status = exception.status_code, exception.message, exception.status_code
    elif isinstance(exception, httpx.HTTPStatusError):
        logger.error(f"Upstream service error while handling request: {redact_url(str(exception))}")
        upstream_status = exception.response.status_code
        status_code, error = upstream_status, f"Upstream service error: {exception}"
    elif isinstance(exception, tenacity.RetryError):
        last = exception.last_attempt.exception()
        logger.error(f"Max retries exceeded: {redact_url(str(last))}")
        status_code, error = 502, f"Max retries exceeded: {last}"
        upstream_status = getattr(last, "status_code", None)
    else:
        logger.exception(f"Internal server error while handling request: {exception}")
        status_code, error = 502, f"Internal server error: {exception}"

    content = {"message": "Failed to proxy stream", "error": redact_url(error), "status": upstream_status}
    if target:
        content["target"] = redact_url(target)
    return JSONResponse(content, status_code=status_code, headers=CORS_HEADERS)


def default_client_factory() -> httpx.AsyncClient:
    return create_httpx_client(timeout=httpx.Timeout(settings.upstream_stream_timeout))


class StreamProxy:
    """
    Proxies master playlists, variant playlists and segments of upstream items.

    Every emitted playlist line points below ``{stream_base}/{item_id}``; credentials never
    reach the client. One upstream authentication failure per request triggers a forced
    token refresh and a single retry.
    """

    def __init__(
        self,
        config_provider: ConfigProvider,
        token_cache: SessionTokenCache,
        resolver: TrackSourceResolver,
        client_factory: Callable[[], httpx.AsyncClient] = default_client_factory,
        stream_base: Optional[str] = None,
    ):
        self.config_provider = config_provider
        self.token_cache = token_cache
        self.resolver = resolver
        self.client_factory = client_factory
        self.stream_base = (stream_base if stream_base is not None else f"{settings.api_prefix}/stream").rstrip("/")

    def proxy_base(self, item_id: str) -> str:
        return f"{self.stream_base}/{item_id}"

    async def load_config(self) -> UpstreamConfig:
        config = await self.config_provider.load_active_config()
        if config is None:
            raise NotConfiguredError("Upstream media server is not configured")
        return config

    async def handle(self, method: str, stream_request: StreamRequest, proxy_headers: ProxyRequestHeaders) -> Response:
        """
        Serve one proxied request.

        Args:
            method (str): The HTTP method (GET or HEAD).
            stream_request (StreamRequest): The parsed request.
            proxy_headers (ProxyRequestHeaders): Client headers to forward.

        Returns:
            Response: A rewritten playlist, a streamed segment, or a JSON error response.
        """
        target = None
        try:
            config = await self.load_config()
            credential = await self.token_cache.get_token(config)
            media_source_id = stream_request.media_source_id or await self.resolver.resolve_default_source(
                config, stream_request.item_id, credential.token
            )

            target = build_upstream_url(config, stream_request, credential.token, media_source_id)
            try:
                return await self.fetch(method, target, stream_request, proxy_headers, credential)
            except DownloadError as e:
                if not e.is_auth_failure:
                    raise
                logger.warning(f"Upstream rejected the credential ({e.status_code}), refreshing it and retrying once")

            self.token_cache.invalidate(credential.token)
            credential = await self.token_cache.get_token(config)
            target = build_upstream_url(config, stream_request, credential.token, media_source_id)
            try:
                return await self.fetch(method, target, stream_request, proxy_headers, credential)
            except DownloadError as e:
                if not e.is_auth_failure:
                    raise
                raise AuthFailureError(
                    f"Upstream rejected the credential after a refresh: {e.message}",
                    status_code=502,
                    upstream_status=e.status_code,
                ) from e
        except Exception as e:
            return handle_exceptions(e, target)

    async def fetch(
        self,
        method: str,
        url: str,
        stream_request: StreamRequest,
        proxy_headers: ProxyRequestHeaders,
        credential: UpstreamCredential,
    ) -> Response:
        headers = dict(proxy_headers.request)
        headers[UPSTREAM_TOKEN_HEADER] = credential.token
        headers.setdefault("user-agent", settings.user_agent)

        name = stream_request.relative_path or MASTER_PLAYLIST_NAME
        logger.info(f"Proxying {name} of item {stream_request.item_id} to {redact_url(url)}")
        if stream_request.is_playlist:
            return await self.fetch_and_process_m3u8(method, url, stream_request, headers)
        return await self.stream_file(method, url, stream_request, headers, proxy_headers.response)

    async def fetch_and_process_m3u8(self, method: str, url: str, stream_request: StreamRequest, headers: dict):
        """
        Fetch a playlist and rewrite it so that every URL line resolves through the proxy.

        Raises:
            ManifestMismatchError: If the playlist addresses a different item.
        """
        # Playlists are small; range requests make no sense for them.
        headers.pop("range", None)
        headers.pop("if-range", None)

        streamer = Streamer(self.client_factory())
        try:
            content = await streamer.get_text(url, headers)
        finally:
            await streamer.close()

        processor = M3U8Processor(self.proxy_base(stream_request.item_id), stream_request.item_id)
        content = remove_credential_params(processor.process_m3u8(content))

        response_headers = {"content-type": PLAYLIST_CONTENT_TYPE}
        response_headers.update(PLAYLIST_CACHE_HEADERS)
        response_headers.update(CORS_HEADERS)
        if method == "HEAD":
            response_headers["content-length"] = str(len(content.encode("utf-8")))
            return Response(headers=response_headers, status_code=200)
        return Response(content=content, headers=response_headers, status_code=200)

    async def stream_file(
        self, method: str, url: str, stream_request: StreamRequest, headers: dict, extra_response_headers: dict
    ) -> Response:
        streamer = Streamer(self.client_factory())
        try:
            await streamer.create_streaming_response(url, headers)
        except tenacity.RetryError as e:
            await streamer.close()
            raise e.last_attempt.result()
        except Exception:
            await streamer.close()
            raise

        response_headers = prepare_response_headers(streamer.response.headers, extra_response_headers)
        response_headers.setdefault("content-type", content_type_for(stream_request.relative_path))
        response_headers.update(CORS_HEADERS)

        if method == "HEAD":
            await streamer.close()
            return Response(headers=response_headers, status_code=streamer.response.status_code)
        return EnhancedStreamingResponse(
            streamer.stream_content(),
            status_code=streamer.response.status_code,
            headers=response_headers,
            background=BackgroundTask(streamer.close),
        )

    async def get_stream_info(self, item_id: str) -> StreamInfo:
        """
        Describe how a client should start playing an item.

        Args:
            item_id (str): Upstream item identifier.

        Returns:
            StreamInfo: Master playlist URL, audio tracks and the default media source.

        Raises:
            NotConfiguredError: If no upstream server is configured.
        """
        config = await self.load_config()
        credential = await self.token_cache.get_token(config)
        audio_tracks = await self.resolver.list_audio_tracks(config, item_id, credential.token)
        default_source = await self.resolver.resolve_default_source(config, item_id, credential.token)
        return StreamInfo(
            stream_url=f"{self.proxy_base(item_id)}/{MASTER_PLAYLIST_NAME}",
            audio_tracks=audio_tracks,
            default_media_source_id=default_source,
        )


def build_stream_proxy(config_provider: ConfigProvider, jellyfin_client=None, **kwargs) -> StreamProxy:
    """Wire a StreamProxy with its token cache and resolver sharing one upstream metadata client."""
    jellyfin_client = jellyfin_client or JellyfinClient()
    token_cache = SessionTokenCache(jellyfin_client.authenticate_viewer)
    resolver = TrackSourceResolver(jellyfin_client)
    return StreamProxy(config_provider, token_cache, resolver, **kwargs)
