import logging
import re
import typing
from dataclasses import dataclass, field
from functools import partial
from urllib import parse

import anyio
import h11
import httpx
from fastapi import Response
from starlette.background import BackgroundTask
from starlette.concurrency import iterate_in_threadpool
from starlette.requests import Request
from starlette.types import Receive, Send, Scope
import tenacity
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential
from tqdm.asyncio import tqdm as tqdm_asyncio

from ifilm_proxy.configs import settings
from ifilm_proxy.const import CREDENTIAL_PARAMS, SUPPORTED_REQUEST_HEADERS

logger = logging.getLogger(__name__)

# Statuses that may succeed when the same request is sent again shortly after.
TRANSIENT_STATUS_CODES = (502, 503)

REDACTED = "***"
_CREDENTIAL_QUERY_PATTERN = re.compile(
    r"(?<![\w-])(?P<key>(?:%s))=(?P<value>[^&#\s]*)" % "|".join(re.escape(p) for p in CREDENTIAL_PARAMS), re.IGNORECASE
)


class DownloadError(Exception):
    def __init__(self, status_code, message, timeout: bool = False):
        self.status_code = status_code
        self.message = message
        self.timeout = timeout
        super().__init__(message)

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code in (401, 403)


def is_transient_error(exception: BaseException) -> bool:
    """Connection failures and 502/503 answers are retried; timeouts and client errors are not."""
    return (
        isinstance(exception, DownloadError)
        and not exception.timeout
        and exception.status_code in TRANSIENT_STATUS_CODES
    )


def redact_url(url: str) -> str:
    """
    Replace credential values in a URL (or any text holding query strings) with a placeholder.

    Args:
        url (str): The URL to redact.

    Returns:
        str: The URL with every credential parameter value masked.
    """
    if not url:
        return url
    return _CREDENTIAL_QUERY_PATTERN.sub(lambda m: f"{m.group('key')}={REDACTED}", str(url))


def create_httpx_client(follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient honouring the configured transport routes.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional AsyncClient keyword arguments.

    Returns:
        httpx.AsyncClient: Configured client.
    """
    kwargs.setdefault("timeout", settings.transport_config.timeout)
    if "transport" not in kwargs:
        kwargs.setdefault("mounts", settings.transport_config.get_mounts())
    return httpx.AsyncClient(follow_redirects=follow_redirects, **kwargs)


def _to_download_error(exception: Exception, url: str) -> DownloadError:
    safe_url = redact_url(url)
    if isinstance(exception, httpx.TimeoutException):
        logger.warning(f"Timeout while requesting {safe_url}")
        return DownloadError(504, f"Timeout while requesting {safe_url}", timeout=True)
    if isinstance(exception, httpx.HTTPStatusError):
        status = exception.response.status_code
        logger.error(f"HTTP error {status} while requesting {safe_url}")
        return DownloadError(status, f"HTTP error {status} while requesting {safe_url}")
    logger.error(f"Network error while requesting {safe_url}: {exception}")
    return DownloadError(502, f"Network error while requesting {safe_url}: {type(exception).__name__}")


@retry(
    stop=stop_after_attempt(settings.upstream_retry_attempts),
    wait=wait_exponential(multiplier=settings.upstream_retry_backoff, max=4),
    retry=retry_if_exception(is_transient_error),
)
async def fetch_with_retry(client, method, url, headers, follow_redirects=True, **kwargs):
    """
    Fetch a URL with retry logic for transient failures.

    Args:
        client (httpx.AsyncClient): HTTP client to use for the request.
        method (str): HTTP method (e.g., GET, POST).
        url (str): Target URL.
        headers (dict): Request headers.
        follow_redirects (bool): Whether to follow redirects.
        **kwargs: Additional request arguments.

    Returns:
        httpx.Response: HTTP response.

    Raises:
        DownloadError: If the request fails.
    """
    try:
        response = await client.request(method, url, headers=headers, follow_redirects=follow_redirects, **kwargs)
        response.raise_for_status()
        return response
    except (httpx.HTTPStatusError, httpx.RequestError) as e:
        raise _to_download_error(e, url) from e


async def request_with_retry(client, method: str, url: str, headers: dict, **kwargs) -> httpx.Response:
    """
    Send an HTTP request with retry logic.

    Args:
        client (httpx.AsyncClient): HTTP client to use for the request.
        method (str): HTTP method.
        url (str): Target URL.
        headers (dict): Request headers.
        **kwargs: Additional request arguments.

    Returns:
        httpx.Response: HTTP response.

    Raises:
        DownloadError: If the request fails after retries.
    """
    try:
        return await fetch_with_retry(client, method, url, headers, **kwargs)
    except tenacity.RetryError as e:
        raise e.last_attempt.result()


class Streamer:
    def __init__(self, client):
        """
        Initialize a Streamer with a configured HTTP client.

        Args:
            client (httpx.AsyncClient): The HTTP client to use for streaming.
        """
        self.client = client
        self.response = None
        self.progress_bar = None
        self.bytes_transferred = 0
        self.start_byte = 0
        self.end_byte = 0
        self.total_size = 0

    @retry(
        stop=stop_after_attempt(settings.upstream_retry_attempts),
        wait=wait_exponential(multiplier=settings.upstream_retry_backoff, max=4),
        retry=retry_if_exception(is_transient_error),
    )
    async def create_streaming_response(self, url: str, headers: dict):
        """
        Create and send a streaming request.

        Args:
            url (str): Source URL for the streaming content.
            headers (dict): Request headers.
        """
        try:
            request = self.client.build_request("GET", url, headers=headers)
            self.response = await self.client.send(request, stream=True, follow_redirects=True)
            self.response.raise_for_status()
        except (httpx.HTTPStatusError, httpx.RequestError) as e:
            if self.response is not None:
                await self.response.aclose()
                self.response = None
            raise _to_download_error(e, url) from e

    async def stream_content(self) -> typing.AsyncGenerator[bytes, None]:
        """
        Stream response content as an async byte generator.
        """
        if not self.response:
            raise RuntimeError("No response available for streaming")

        try:
            self.parse_content_range()

            if settings.enable_streaming_progress:
                with tqdm_asyncio(
                    total=self.total_size,
                    initial=self.start_byte,
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc="Streaming",
                    ncols=100,
                    mininterval=1,
                ) as self.progress_bar:
                    async for chunk in self.response.aiter_bytes():
                        yield chunk
                        chunk_size = len(chunk)
                        self.bytes_transferred += chunk_size
                        self.progress_bar.set_postfix_str(f"{self.format_bytes(self.bytes_transferred)}", refresh=False)
                        self.progress_bar.update(chunk_size)
            else:
                async for chunk in self.response.aiter_bytes():
                    yield chunk
                    self.bytes_transferred += len(chunk)

        except httpx.TimeoutException:
            logger.warning("Timeout while streaming segment")
            raise DownloadError(504, "Timeout while streaming", timeout=True)
        except httpx.RemoteProtocolError as e:
            if self.bytes_transferred > 0:
                logger.warning(
                    f"Upstream closed the connection after {self.bytes_transferred} bytes, ending segment early: {e}"
                )
                return
            raise DownloadError(502, f"Upstream closed the connection before sending data: {e}")
        except GeneratorExit:
            logger.info("Streaming session stopped by the client")

    @staticmethod
    def format_bytes(size) -> str:
        power = 2**10
        n = 0
        units = {0: "B", 1: "KB", 2: "MB", 3: "GB", 4: "TB"}
        while size > power and n < 4:
            size /= power
            n += 1
        return f"{size:.2f} {units[n]}"

    def parse_content_range(self):
        """
        Parse Content-Range/Content-Length headers to compute byte positions and total size.
        """
        content_range = self.response.headers.get("Content-Range", "")
        match = re.match(r"bytes (\d+)-(\d+)/(\d+)", content_range)
        if match:
            self.start_byte, self.end_byte, self.total_size = map(int, match.groups())
        else:
            self.start_byte = 0
            self.total_size = int(self.response.headers.get("Content-Length", 0) or 0)
            self.end_byte = self.total_size - 1 if self.total_size > 0 else 0

    async def get_text(self, url: str, headers: dict) -> str:
        """
        Send a GET request and return the decoded response body.

        Args:
            url (str): Target URL.
            headers (dict): Request headers.

        Returns:
            str: Response text.
        """
        try:
            self.response = await fetch_with_retry(self.client, "GET", url, headers)
        except tenacity.RetryError as e:
            raise e.last_attempt.result()
        return self.response.text

    async def close(self):
        """
        Close HTTP response and client resources.
        """
        if self.response:
            await self.response.aclose()
        if self.progress_bar:
            self.progress_bar.close()
        await self.client.aclose()


@dataclass
class ProxyRequestHeaders:
    request: dict
    response: dict = field(default_factory=dict)


def get_proxy_headers(request: Request) -> ProxyRequestHeaders:
    """
    Extract the client headers worth forwarding upstream (range requests, negotiation).

    Args:
        request (Request): Incoming HTTP request.

    Returns:
        ProxyRequestHeaders: Request headers to forward and an empty response header set.
    """
    request_headers = {k: v for k, v in request.headers.items() if k in SUPPORTED_REQUEST_HEADERS}
    if request_headers.get("range", "").strip() == "":
        request_headers.pop("range", None)
    if request_headers.get("if-range", "").strip() == "":
        request_headers.pop("if-range", None)
    return ProxyRequestHeaders(request_headers)


def build_query(params: typing.Mapping[str, typing.Optional[typing.Any]]) -> str:
    """Encode the non-empty parameters; returns an empty string when nothing applies."""
    present = {k: str(v) for k, v in params.items() if v is not None and str(v) != ""}
    return parse.urlencode(present) if present else ""


def append_query(url: str, params: typing.Mapping[str, typing.Optional[typing.Any]]) -> str:
    """Append parameters to a URL without ever leaving a dangling '?' or '&'."""
    query = build_query(params)
    if not query:
        return url
    separator = "&" if "?" in url else "?"
    if url.endswith(("?", "&")):
        separator = ""
    return f"{url}{separator}{query}"


class EnhancedStreamingResponse(Response):
    body_iterator: typing.AsyncIterable[typing.Any]

    def __init__(
        self,
        content: typing.Union[typing.AsyncIterable[typing.Any], typing.Iterable[typing.Any]],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        media_type: typing.Optional[str] = None,
        background: typing.Optional[BackgroundTask] = None,
    ) -> None:
        if isinstance(content, typing.AsyncIterable):
            self.body_iterator = content
        else:
            self.body_iterator = iterate_in_threadpool(content)
        self.status_code = status_code
        self.media_type = self.media_type if media_type is None else media_type
        self.background = background
        self.init_headers(headers)
        self.actual_content_length = 0

    @staticmethod
    async def listen_for_disconnect(receive: Receive) -> None:
        """
        Listen for client disconnect events to stop streaming gracefully.
        """
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                logger.debug("Client disconnected")
                break

    async def stream_response(self, send: Send) -> None:
        """
        Stream the segment body, finishing cleanly when upstream stops after partial data.
        """
        headers = list(self.raw_headers)

        # Upstream may close early; a fixed content-length would then become a protocol error.
        if any(name.lower() == b"content-length" for name, _ in headers):
            headers = [h for h in headers if h[0].lower() != b"content-length"]
            headers.append((b"transfer-encoding", b"chunked"))

        await send({"type": "http.response.start", "status": self.status_code, "headers": headers})

        data_sent = False
        try:
            async for chunk in self.body_iterator:
                if not isinstance(chunk, (bytes, memoryview)):
                    chunk = chunk.encode(self.charset)
                try:
                    await send({"type": "http.response.body", "body": chunk, "more_body": True})
                except (ConnectionResetError, anyio.BrokenResourceError):
                    logger.info("Client disconnected during streaming")
                    return
                data_sent = True
                self.actual_content_length += len(chunk)
        except (httpx.RemoteProtocolError, h11.LocalProtocolError, DownloadError) as e:
            if not data_sent:
                raise
            logger.warning(f"Upstream error after {self.actual_content_length} bytes, finalizing response: {e}")

        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI entrypoint: run streaming and disconnect listener concurrently.
        """
        async with anyio.create_task_group() as task_group:

            async def wrap(func: typing.Callable[[], typing.Awaitable[None]]) -> None:
                try:
                    await func()
                finally:
                    task_group.cancel_scope.cancel()

            task_group.start_soon(wrap, partial(self.stream_response, send))
            await wrap(partial(self.listen_for_disconnect, receive))

        if self.background is not None:
            await self.background()
