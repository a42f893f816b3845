SUPPORTED_RESPONSE_HEADERS = [
    "accept-ranges",
    "content-type",
    "content-length",
    "content-range",
    "last-modified",
    "etag",
    "cache-control",
    "expires",
]

SUPPORTED_REQUEST_HEADERS = [
    "accept",
    "accept-encoding",
    "accept-language",
    "range",
    "if-range",
    "user-agent",
]

PLAYLIST_EXTENSION = ".m3u8"
MASTER_PLAYLIST_NAME = "master.m3u8"

# Path segment under which the upstream server exposes item streams: /Videos/{item_id}/...
UPSTREAM_MEDIA_PATH = "/Videos/"

PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
CONTENT_TYPES_BY_EXTENSION = {
    ".m3u8": PLAYLIST_CONTENT_TYPE,
    ".ts": "video/mp2t",
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
    ".aac": "audio/aac",
    ".vtt": "text/vtt",
}

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET, HEAD, OPTIONS",
    "access-control-allow-headers": "Content-Type, Range",
}

PLAYLIST_CACHE_HEADERS = {
    "cache-control": "no-cache, no-store, must-revalidate",
    "pragma": "no-cache",
    "expires": "0",
}

# Inbound query parameters, compared case-insensitively.
AUDIO_TRACK_PARAMS = ("audiotrack", "audiostreamindex")
MEDIA_SOURCE_PARAMS = ("mediasourceid",)
RUNTIME_TICKS_PARAM = "runtimeticks"
SEGMENT_LENGTH_PARAM = "actualsegmentlengthticks"
MAX_HEIGHT_PARAMS = ("maxheight",)
CREDENTIAL_PARAMS = ("api_key", "apikey", "x-emby-token", "pw")

# Parameter names understood by the upstream server.
UPSTREAM_CREDENTIAL_PARAM = "api_key"
UPSTREAM_MEDIA_SOURCE_PARAM = "MediaSourceId"
UPSTREAM_AUDIO_STREAM_PARAM = "AudioStreamIndex"
UPSTREAM_MAX_HEIGHT_PARAM = "MaxHeight"
UPSTREAM_RUNTIME_TICKS_PARAM = "runtimeTicks"
UPSTREAM_SEGMENT_LENGTH_PARAM = "actualSegmentLengthTicks"
UPSTREAM_TOKEN_HEADER = "X-Emby-Token"
