"""Error taxonomy shared by the proxy core and its HTTP surface.

Every failure the core raises on purpose derives from :class:`ProxyError`, so the
route layer can map it to a JSON error body without inspecting concrete types.
Network-level failures are left as ``aiohttp.ClientError`` /
``asyncio.TimeoutError`` and are treated as retry-eligible by the chat service.
"""
from __future__ import annotations


class ProxyError(RuntimeError):
    """Base class for failures surfaced to API callers.

    Attributes:
        code: machine readable error code.
        message: human readable description.
        http_status: status used when the error reaches the HTTP layer.
    """

    code = "proxy_error"
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UpstreamRequestFailed(ProxyError):
    """The provider answered with an error payload."""

    code = "upstream_request_failed"
    http_status = 502


class AuthFailure(UpstreamRequestFailed):
    """The provider rejected the credential as unauthenticated."""


class FileURLInvalid(ProxyError):
    code = "file_url_invalid"
    http_status = 400


class FileExceedsSize(ProxyError):
    code = "file_exceeds_size"
    http_status = 400


class FileUploadFailed(ProxyError):
    code = "file_upload_failed"
    http_status = 502


class FileUploadTimeout(ProxyError):
    code = "file_upload_timeout"
    http_status = 504


class StreamDecodeError(ProxyError):
    """A frame payload in the provider stream could not be decoded."""

    code = "stream_decode_error"
    http_status = 502
