from typing import Optional


class StreamError(Exception):
    """Base exception for streaming failures that map onto an HTTP status."""

    status_code = 502

    def __init__(self, message: str, status_code: Optional[int] = None, upstream_status: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.upstream_status = upstream_status
        super().__init__(message)


class NotConfiguredError(StreamError):
    """No active upstream server configuration."""

    status_code = 503


class InvalidStreamPathError(StreamError):
    status_code = 400


class AuthFailureError(StreamError):
    """The upstream server rejected the credential."""

    status_code = 401


class UpstreamUnreachableError(StreamError):
    """Network-level failure or timeout talking to the upstream server."""

    status_code = 502


class ManifestMismatchError(StreamError):
    """A playlist addresses a different item than the one requested."""

    status_code = 502


class CodecFatalError(StreamError):
    """The decode pipeline cannot accept the stream."""


class SessionCancelledError(StreamError):
    """The playback session was torn down while an operation was in flight."""

    status_code = 499
