from fastapi import APIRouter
from manifest_proxy.api.endpoints import status, proxy, segments, channels

api_router = APIRouter()
api_router.include_router(status.router, tags=["status"])
api_router.include_router(proxy.router, tags=["proxy"])
api_router.include_router(segments.router, tags=["segments"])
# Channel routes are catch-all on the first path segment, keep them last
api_router.include_router(channels.router, tags=["channels"])
