"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Everything lives under /api/v1. There is no auth layer here;
deploy behind a gateway that restricts who may POST to /channels/*/messages.
"""

from fastapi import APIRouter

from channelcast.api.channels import router as channels_router
from channelcast.api.health import router as health_router
from channelcast.api.image_proxy import router as image_proxy_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(channels_router, tags=["channels"])
api_router.include_router(image_proxy_router, tags=["image-proxy"])
