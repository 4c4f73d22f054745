from typing import Optional
from fastapi import APIRouter, Depends, Request

from manifest_proxy.api.deps import get_registry, get_rewriter, get_upstream
from manifest_proxy.api.proxying import relay, resolve_segment, serve_manifest, validate_target
from manifest_proxy.services.rewriter import ManifestRewriter
from manifest_proxy.services.segment_registry import SegmentRegistry
from manifest_proxy.services.upstream import UpstreamClient

router = APIRouter()


@router.api_route("/segment/{segment_id}.ts", methods=["GET", "HEAD"])
async def registered_segment(
    segment_id: str,
    request: Request,
    registry: SegmentRegistry = Depends(get_registry),
    upstream: UpstreamClient = Depends(get_upstream),
):
    """
    Stream the upstream resource registered under ``segment_id``.

    404 for ids that were never issued or were swept, 410 for ids that
    outlived the registry TTL.
    """
    url = resolve_segment(registry, segment_id)
    return await relay(upstream, url, request)


@router.api_route("/segment", methods=["GET", "HEAD"])
async def direct_segment(
    request: Request,
    u: Optional[str] = None,
    upstream: UpstreamClient = Depends(get_upstream),
):
    return await relay(upstream, validate_target(u), request)


@router.get("/playlist/{segment_id}.m3u8")
async def registered_playlist(
    segment_id: str,
    request: Request,
    registry: SegmentRegistry = Depends(get_registry),
    upstream: UpstreamClient = Depends(get_upstream),
    rewriter: ManifestRewriter = Depends(get_rewriter),
):
    """Child playlist of a rewritten master playlist, rewritten in turn."""
    url = resolve_segment(registry, segment_id)
    return await serve_manifest(upstream, rewriter, url, request)
