"""Application configuration via environment variables.

Uses pydantic-settings to load config from env vars with CHANNELCAST_ prefix.
No YAML files, no file-based config — just env vars (12-factor app style).

Learn: Every index the server keeps is transient, so there is nothing here
about storage. Redis is optional: leave CHANNELCAST_REDIS_URL empty and the
server runs as a single self-contained process.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All app configuration. Set via CHANNELCAST_* env vars."""

    # Server
    environment: str = "development"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000

    # CORS
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Redis (empty = no cross-process relay, no rate limiting)
    redis_url: str = ""

    # Rate limiting
    rate_limit_rpm: int = 100  # requests per minute per IP
    rate_limit_stream_rpm: int = 30  # stream (re)connects per minute per IP

    # Streams
    stream_queue_size: int = 256  # pending frames before a client counts as dead
    keepalive_seconds: float = 15.0
    trust_forwarded_for: bool = False  # behind a reverse proxy: key streams by X-Forwarded-For

    # Image proxy
    image_proxy_url: str = "/api/v1/image-proxy"  # empty disables URL rewriting
    public_base_url: str = ""  # e.g. https://cast.example.com when displays are served from another origin
    image_proxy_allowed_hosts: list[str] = []  # empty = any host
    image_proxy_timeout_seconds: float = 10.0
    image_proxy_max_bytes: int = 10 * 1024 * 1024

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = {"env_prefix": "CHANNELCAST_"}

    @model_validator(mode="after")
    def validate_stream_settings(self):
        """Reject limits that would make every stream or image fetch fail."""
        if self.stream_queue_size < 1:
            raise ValueError("CHANNELCAST_STREAM_QUEUE_SIZE must be at least 1")
        if self.keepalive_seconds <= 0:
            raise ValueError("CHANNELCAST_KEEPALIVE_SECONDS must be positive")
        if self.image_proxy_max_bytes < 1:
            raise ValueError("CHANNELCAST_IMAGE_PROXY_MAX_BYTES must be at least 1")
        return self

    @property
    def image_proxy_base(self) -> str:
        """Proxy URL written into views.

        A relative image_proxy_url resolves against the page that shows the
        view, so it only works when that page is served by this server.
        Set public_base_url to make rewritten URLs absolute.
        """
        if not self.image_proxy_url or not self.public_base_url:
            return self.image_proxy_url
        if "://" in self.image_proxy_url:
            return self.image_proxy_url
        return self.public_base_url.rstrip("/") + "/" + self.image_proxy_url.lstrip("/")


# Singleton — import this everywhere
settings = Settings()
