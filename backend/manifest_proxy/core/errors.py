"""
Error taxonomy for the proxy.

Every error carries the HTTP status it is surfaced with; the application
exception handler in main.py renders them as ``{"detail": ...}``.
"""
from typing import Optional


class ProxyError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidRequest(ProxyError):
    """Missing or malformed target URL, or unusable request parameters."""
    status_code = 400


class ChannelNotFound(ProxyError):
    status_code = 404


class SegmentNotFound(ProxyError):
    status_code = 404


class SegmentExpired(ProxyError):
    status_code = 410


class UpstreamUnavailable(ProxyError):
    """Network failure, upstream status >= 400 or an unusable upstream body."""
    status_code = 502

    def __init__(self, detail: str, upstream_status: Optional[int] = None):
        super().__init__(detail)
        self.upstream_status = upstream_status


class ManifestError(UpstreamUnavailable):
    """Upstream manifest could not be parsed or expanded."""


class UpstreamTimeout(ProxyError):
    status_code = 504
