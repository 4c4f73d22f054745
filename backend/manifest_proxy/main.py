import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
from manifest_proxy.api.api import api_router
from manifest_proxy.core.config import Settings, settings as default_settings
from manifest_proxy.core.errors import ProxyError, UpstreamTimeout, UpstreamUnavailable
from manifest_proxy.core.middleware import RangeAwareGZipMiddleware
from manifest_proxy.services.rewriter import ManifestRewriter
from manifest_proxy.services.segment_registry import SegmentRegistry, run_periodic_sweep
from manifest_proxy.services.upstream import UpstreamClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Startup
    sweeper = asyncio.create_task(
        run_periodic_sweep(app.state.registry, app.state.settings.SEGMENT_SWEEP_INTERVAL)
    )
    logger.info(f"{app.state.settings.PROJECT_NAME} started with {len(app.state.settings.CHANNELS)} channels")
    yield
    # Shutdown - stop the sweeper and release upstream connections
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await app.state.upstream.aclose()


async def proxy_error_handler(request: Request, exc: ProxyError):
    if isinstance(exc, (UpstreamUnavailable, UpstreamTimeout)):
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[SegmentRegistry] = None,
    upstream: Optional[UpstreamClient] = None,
) -> FastAPI:
    settings = settings or default_settings

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        lifespan=lifespan,
    )

    # One registry per process, shared by every request handler
    app.state.settings = settings
    app.state.registry = registry or SegmentRegistry(
        ttl=settings.SEGMENT_TTL,
        max_entries=settings.SEGMENT_MAX_ENTRIES,
        strategy=settings.SEGMENT_ID_STRATEGY,
    )
    app.state.rewriter = ManifestRewriter(
        app.state.registry,
        public_base_url=settings.PUBLIC_BASE_URL,
        follow_variants=settings.HLS_FOLLOW_VARIANTS,
        rewrite_tag_uris=settings.HLS_REWRITE_TAG_URIS,
    )
    app.state.upstream = upstream or UpstreamClient(
        timeout=settings.UPSTREAM_TIMEOUT,
        retries=settings.UPSTREAM_RETRIES,
        retry_wait=settings.UPSTREAM_RETRY_WAIT,
    )

    # Per-IP rate limit
    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[settings.RATE_LIMIT],
        enabled=settings.RATE_LIMIT_ENABLED,
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(ProxyError, proxy_error_handler)

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(RangeAwareGZipMiddleware, minimum_size=settings.GZIP_MINIMUM_SIZE)

    # CORS for web players
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["Range", "Content-Type", "Authorization", "Accept"],
        expose_headers=["Accept-Ranges", "Content-Length", "Content-Range"],
    )

    # Trust proxy headers (X-Forwarded-For) so rate limiting sees the real client
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])

    app.include_router(api_router)
    return app


logging.basicConfig(
    level=default_settings.LOG_LEVEL.upper(),
    format="%(asctime)s [%(name)s] [%(levelname)s] %(message)s",
)

app = create_app()
