from .stream import media_router, stream_router

__all__ = ["stream_router", "media_router"]
