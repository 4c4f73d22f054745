"""
Request-scoped glue shared by the endpoints: target validation, registry
resolution, streaming relay of upstream bodies and manifest rewriting.
"""
import re
import logging
from typing import Optional
import httpx
from fastapi import Request, Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from manifest_proxy.core.errors import InvalidRequest, ManifestError, SegmentExpired, SegmentNotFound
from manifest_proxy.services.rewriter import MANIFEST_TYPES, ManifestRewriter, detect_kind
from manifest_proxy.services.segment_registry import LookupStatus, SegmentRegistry
from manifest_proxy.services.upstream import UpstreamClient, forward_headers, response_headers

logger = logging.getLogger(__name__)

HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)
CACHEABLE_MEDIA = re.compile(r"video|audio|application/octet-stream|mp2t|mp4|dash|mssegment|mpegurl", re.IGNORECASE)
MEDIA_CACHE_CONTROL = "public, max-age=60, stale-while-revalidate=30"
MANIFEST_HEADERS = {"Cache-Control": "no-cache"}


def validate_target(url: Optional[str]) -> str:
    if not url:
        raise InvalidRequest("Missing ?u=<full URL>")
    if not HTTP_URL.match(url):
        raise InvalidRequest("Only http/https URLs supported")
    return url


def resolve_segment(registry: SegmentRegistry, segment_id: str) -> str:
    result = registry.lookup(segment_id)
    if result.status is LookupStatus.EXPIRED:
        raise SegmentExpired(f"Segment {segment_id} has expired")
    if result.status is LookupStatus.NOT_FOUND:
        raise SegmentNotFound(f"Unknown segment {segment_id}")
    return result.url


async def _iter_body(response: httpx.Response, url: str):
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.HTTPError as e:
        # Headers are already on the wire; all that is left is to end the body
        logger.error(f"Upstream stream for {url} broke off: {e!r}")


async def relay(upstream: UpstreamClient, url: str, request: Request) -> Response:
    """Stream an upstream resource back to the client, mirroring status and safe headers."""
    method = request.method
    headers = forward_headers(request.headers)
    content = None
    if method not in ("GET", "HEAD"):
        content = request.stream()
        if request.headers.get("content-type"):
            headers["content-type"] = request.headers["content-type"]

    response = await upstream.open(url, method=method, headers=headers, content=content)

    out_headers = response_headers(response.headers)
    if CACHEABLE_MEDIA.search(response.headers.get("content-type", "")) and "cache-control" not in response.headers:
        out_headers["cache-control"] = MEDIA_CACHE_CONTROL

    if method == "HEAD":
        await response.aclose()
        return Response(status_code=response.status_code, headers=out_headers)

    return StreamingResponse(
        _iter_body(response, url),
        status_code=response.status_code,
        headers=out_headers,
        background=BackgroundTask(response.aclose),
    )


async def serve_manifest(
    upstream: UpstreamClient,
    rewriter: ManifestRewriter,
    url: str,
    request: Request,
) -> Response:
    """Fetch an HLS or DASH manifest and return it rewritten to point at this proxy."""
    headers = forward_headers(request.headers)
    headers.pop("range", None)
    fetched = await upstream.fetch(url, headers=headers)

    kind = detect_kind(fetched.body, fetched.content_type, fetched.url)
    if kind is None:
        raise ManifestError(f"Upstream response from {url} is not an HLS or DASH manifest")

    body = rewriter.rewrite(kind, fetched.body, fetched.url)
    logger.info(f"Rewrote {kind} manifest {fetched.url} ({len(body)} bytes)")
    return Response(content=body, media_type=MANIFEST_TYPES[kind], headers=MANIFEST_HEADERS)
