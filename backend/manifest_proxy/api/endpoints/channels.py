from fastapi import APIRouter, Depends, Request

from manifest_proxy.api.deps import get_rewriter, get_settings, get_upstream
from manifest_proxy.api.proxying import serve_manifest
from manifest_proxy.core.config import Settings
from manifest_proxy.core.errors import ChannelNotFound
from manifest_proxy.services.rewriter import ManifestRewriter
from manifest_proxy.services.upstream import UpstreamClient

router = APIRouter()


def channel_url(channel: str, settings: Settings) -> str:
    url = settings.CHANNELS.get(channel)
    if not url:
        raise ChannelNotFound(f"Unknown channel: {channel}")
    return url


@router.get("/{channel}/playlist.m3u8")
async def channel_playlist(
    channel: str,
    request: Request,
    settings: Settings = Depends(get_settings),
    upstream: UpstreamClient = Depends(get_upstream),
    rewriter: ManifestRewriter = Depends(get_rewriter),
):
    """Fetch the channel's configured manifest and rewrite its segment references."""
    return await serve_manifest(upstream, rewriter, channel_url(channel, settings), request)


@router.get("/{channel}/manifest.mpd")
async def channel_manifest(
    channel: str,
    request: Request,
    settings: Settings = Depends(get_settings),
    upstream: UpstreamClient = Depends(get_upstream),
    rewriter: ManifestRewriter = Depends(get_rewriter),
):
    return await serve_manifest(upstream, rewriter, channel_url(channel, settings), request)
