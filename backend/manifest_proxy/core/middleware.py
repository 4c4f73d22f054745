from starlette.datastructures import Headers, MutableHeaders
from starlette.middleware.gzip import GZipMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

# Manifests, text and JSON shrink well; media segments are already compressed
COMPRESSIBLE_TYPES = (
    "text/",
    "application/json",
    "application/xml",
    "application/dash+xml",
    "application/vnd.apple.mpegurl",
    "application/x-mpegurl",
    "audio/mpegurl",
    "audio/x-mpegurl",
)

# GZipMiddleware passes through any response that already declares an encoding
SKIP_MARKER = "identity"


def is_compressible(content_type: str) -> bool:
    media_type = content_type.partition(";")[0].strip().lower()
    return media_type.startswith(COMPRESSIBLE_TYPES) or media_type.endswith(("+xml", "+json"))


class RangeAwareGZipMiddleware:
    """
    Gzip manifest and text responses, except for requests carrying a Range header.

    A compressed body would no longer match the byte offsets of the
    upstream Content-Range. Media segments are relayed untouched.
    """

    def __init__(self, app: ASGIApp, minimum_size: int = 1024):
        self.app = app
        self.gzip = GZipMiddleware(self._mark_incompressible, minimum_size=minimum_size)

    async def _mark_incompressible(self, scope: Scope, receive: Receive, send: Send):
        async def send_marked(message: Message):
            if message["type"] == "http.response.start":
                headers = MutableHeaders(raw=message["headers"])
                if "content-encoding" not in headers and not is_compressible(headers.get("content-type", "")):
                    headers["content-encoding"] = SKIP_MARKER
            await send(message)

        await self.app(scope, receive, send_marked)

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http" or "range" in Headers(scope=scope):
            await self.app(scope, receive, send)
            return

        async def send_unmarked(message: Message):
            if message["type"] == "http.response.start":
                headers = MutableHeaders(raw=message["headers"])
                if headers.get("content-encoding") == SKIP_MARKER:
                    del headers["content-encoding"]
            await send(message)

        await self.gzip(scope, receive, send_unmarked)
