from fastapi import Request

from manifest_proxy.core.config import Settings
from manifest_proxy.services.rewriter import ManifestRewriter
from manifest_proxy.services.segment_registry import SegmentRegistry
from manifest_proxy.services.upstream import UpstreamClient


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> SegmentRegistry:
    return request.app.state.registry


def get_rewriter(request: Request) -> ManifestRewriter:
    return request.app.state.rewriter


def get_upstream(request: Request) -> UpstreamClient:
    return request.app.state.upstream
