from pydantic_settings import BaseSettings
from typing import Dict, List, Literal, Optional

class Settings(BaseSettings):
    PROJECT_NAME: str = "Manifest Proxy"
    VERSION: str = "1.0.0"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    LOG_LEVEL: str = "INFO"

    # Upstreams
    # JSON mapping, e.g. CHANNELS='{"news": "https://origin/news/playlist.m3u8"}'
    CHANNELS: Dict[str, str] = {}
    # Fixed origin for /base/<path> passthrough
    BASE_URL: Optional[str] = None
    # Prefix for rewritten links; empty means root-relative paths
    PUBLIC_BASE_URL: str = ""

    # Segment registry
    SEGMENT_TTL: float = 60.0
    SEGMENT_MAX_ENTRIES: int = 1000
    SEGMENT_SWEEP_INTERVAL: float = 30.0
    SEGMENT_ID_STRATEGY: Literal["random", "deterministic"] = "deterministic"

    # HLS rewriting
    HLS_FOLLOW_VARIANTS: bool = False
    HLS_REWRITE_TAG_URIS: bool = False

    # Upstream fetch
    UPSTREAM_TIMEOUT: float = 10.0
    UPSTREAM_RETRIES: int = 2
    UPSTREAM_RETRY_WAIT: float = 0.3

    # HTTP plumbing
    RATE_LIMIT: str = "300/minute"
    RATE_LIMIT_ENABLED: bool = True
    GZIP_MINIMUM_SIZE: int = 1024
    CORS_ORIGINS: List[str] = ["*"]

    class Config:
        env_file = ".env"

settings = Settings()
