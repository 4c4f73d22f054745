from typing import Optional
from urllib.parse import quote, urljoin
from fastapi import APIRouter, Depends, Request, Response

from manifest_proxy.api.deps import get_rewriter, get_settings, get_upstream
from manifest_proxy.api.proxying import MANIFEST_HEADERS, relay, serve_manifest, validate_target
from manifest_proxy.core.config import Settings
from manifest_proxy.core.errors import InvalidRequest
from manifest_proxy.services.mpd_to_hls import build_master_playlist, build_media_playlist, parse_mpd
from manifest_proxy.services.rewriter import MANIFEST_TYPES, HLS, ManifestRewriter
from manifest_proxy.services.upstream import UpstreamClient, forward_headers

router = APIRouter()


@router.api_route("/proxy", methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"])
async def passthrough(
    request: Request,
    u: Optional[str] = None,
    upstream: UpstreamClient = Depends(get_upstream),
):
    """
    Generic pass-through: /proxy?u=<FULL_ENCODED_URL>

    Status, safe headers and body are mirrored; Range is forwarded so
    players can seek inside segments.
    """
    return await relay(upstream, validate_target(u), request)


@router.api_route("/base/{path:path}", methods=["GET", "HEAD"])
async def base_passthrough(
    path: str,
    request: Request,
    settings: Settings = Depends(get_settings),
    upstream: UpstreamClient = Depends(get_upstream),
):
    """Pass-through relative to the fixed BASE_URL origin."""
    if not settings.BASE_URL:
        raise InvalidRequest("BASE_URL not configured")
    target = urljoin(settings.BASE_URL, path)
    if request.url.query:
        target = f"{target}?{request.url.query}"
    return await relay(upstream, target, request)


@router.get("/manifest")
async def rewritten_manifest(
    request: Request,
    u: Optional[str] = None,
    upstream: UpstreamClient = Depends(get_upstream),
    rewriter: ManifestRewriter = Depends(get_rewriter),
):
    return await serve_manifest(upstream, rewriter, validate_target(u), request)


@router.get("/proxy.m3u8")
async def dash_as_hls(
    request: Request,
    u: Optional[str] = None,
    rep: Optional[str] = None,
    upstream: UpstreamClient = Depends(get_upstream),
    rewriter: ManifestRewriter = Depends(get_rewriter),
):
    """
    Convert an MPD into HLS.

    Without ``rep`` the master playlist is returned; each variant links back
    here with ``rep`` set, which yields that representation's media playlist
    with segment URLs hidden behind registry ids.
    """
    url = validate_target(u)
    headers = forward_headers(request.headers)
    headers.pop("range", None)
    fetched = await upstream.fetch(url, headers=headers)
    doc = parse_mpd(fetched.body, fetched.url)

    if rep is None:
        encoded = quote(url, safe="")
        content = build_master_playlist(
            doc,
            lambda rep_id: rewriter.local_url(f"/proxy.m3u8?u={encoded}&rep={quote(rep_id, safe='')}"),
        )
    else:
        playlist = build_media_playlist(doc, rep)
        content = rewriter.rewrite_hls(playlist, fetched.url, rewrite_tag_uris=True)

    return Response(content=content, media_type=MANIFEST_TYPES[HLS], headers=MANIFEST_HEADERS)
