from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request

from ifilm_proxy.errors import StreamError
from ifilm_proxy.handlers import StreamProxy, handle_exceptions, parse_stream_request
from ifilm_proxy.schemas import StreamInfo
from ifilm_proxy.utils.http_utils import ProxyRequestHeaders, get_proxy_headers

stream_router = APIRouter()
media_router = APIRouter()


def get_stream_proxy(request: Request) -> StreamProxy:
    return request.app.state.stream_proxy


@stream_router.head("/stream/{item_id}")
@stream_router.get("/stream/{item_id}")
@stream_router.head("/stream/{item_id}/{relative_path:path}")
@stream_router.get("/stream/{item_id}/{relative_path:path}")
async def proxy_stream_endpoint(
    request: Request,
    proxy_headers: Annotated[ProxyRequestHeaders, Depends(get_proxy_headers)],
    stream_proxy: Annotated[StreamProxy, Depends(get_stream_proxy)],
    item_id: str,
    relative_path: str = "",
):
    """
    Proxify master playlist, variant playlist and segment requests of an upstream item.

    Args:
        request (Request): The incoming HTTP request.
        proxy_headers (ProxyRequestHeaders): The headers to include in the upstream request.
        stream_proxy (StreamProxy): The application's stream proxy.
        item_id (str): Upstream item identifier.
        relative_path (str): Empty for the master playlist, otherwise a variant playlist or segment path.

    Returns:
        Response: The rewritten playlist or the streamed segment.
    """
    if "nan" in proxy_headers.request.get("range", "").casefold():
        # Handle invalid range requests "bytes=NaN-NaN"
        raise HTTPException(status_code=416, detail="Invalid Range Header")

    try:
        stream_request = parse_stream_request(item_id, relative_path, request.query_params)
    except StreamError as e:
        return handle_exceptions(e)
    return await stream_proxy.handle(request.method, stream_request, proxy_headers)


@media_router.get("/movies/{item_id}/stream", response_model=StreamInfo, response_model_by_alias=True)
async def stream_info_endpoint(
    stream_proxy: Annotated[StreamProxy, Depends(get_stream_proxy)],
    item_id: str,
):
    """
    Return the proxied master playlist URL and the audio tracks of an item.
    """
    try:
        return await stream_proxy.get_stream_info(item_id)
    except StreamError as e:
        return handle_exceptions(e)
