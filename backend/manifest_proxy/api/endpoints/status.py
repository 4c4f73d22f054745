from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from manifest_proxy.api.deps import get_registry
from manifest_proxy.schemas import RegistryStats
from manifest_proxy.services.segment_registry import SegmentRegistry

router = APIRouter()

@router.get("/health", response_class=PlainTextResponse)
async def health_check():
    return "ok"

@router.get("/stats", response_model=RegistryStats)
async def registry_stats(registry: SegmentRegistry = Depends(get_registry)):
    """Current size and bounds of the segment registry."""
    return RegistryStats(**registry.stats())
