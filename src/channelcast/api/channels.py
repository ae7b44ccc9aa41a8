"""Channel API routes — stream, publish, inspect.

Learn: GET /channels/{channel}/stream is the only long-lived route. It
hands the registry a QueueConnection and returns a StreamingResponse that
drains it. When the client disconnects, the response generator finishes
and the connection's close notification retires the subscriber. When the
same address opens a new stream, the registry closes this one and the
generator finishes from our side instead.

Publishing never fails because of a subscriber: dead streams are dropped
inside broadcast() and show up only in the logs.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from channelcast.config import settings
from channelcast.events.types import CONNECTED
from channelcast.realtime.connection import QueueConnection, encode_event, make_client_id
from channelcast.realtime.registry import SubscriptionRegistry, get_registry
from channelcast.realtime.relay import publish_message, relay_enabled
from channelcast.schemas.channel import (
    ChannelStats,
    PublishMessage,
    PublishResult,
    SubscriberView,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/channels")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering if present
}


def client_address(request: Request) -> str:
    """Source address used for the one-stream-per-address rule."""
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


# ─── Inspection ───────────────────────────────────────────


@router.get("/stats", response_model=dict[str, ChannelStats])
async def channel_stats(registry: SubscriptionRegistry = Depends(get_registry)):
    """Per-channel subscriber counts and client details."""
    return registry.channel_stats()


@router.get("/clients", response_model=list[SubscriberView])
async def list_clients(
    channel: Optional[str] = Query(None, description="Only this channel"),
    registry: SubscriptionRegistry = Depends(get_registry),
):
    """Connected clients, optionally filtered to one channel."""
    return registry.list_subscribers(channel)


# ─── Stream ───────────────────────────────────────────────


@router.get("/{channel:path}/stream")
async def stream_channel(
    channel: str,
    request: Request,
    registry: SubscriptionRegistry = Depends(get_registry),
):
    """Open a Server-Sent Events stream on a channel.

    The first frame is a ``connected`` message carrying the client id.
    Any earlier stream from the same address is closed.
    """
    ip = client_address(request)
    client_id = make_client_id(ip)
    connection = QueueConnection(max_pending=settings.stream_queue_size)
    connection.write(encode_event({"type": CONNECTED, "channel": channel, "client_id": client_id}))

    registry.subscribe(channel, connection, client_id, ip)

    return StreamingResponse(
        connection.stream(
            keepalive_seconds=settings.keepalive_seconds,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# ─── Publish ──────────────────────────────────────────────


@router.post("/{channel:path}/messages", response_model=PublishResult, status_code=202)
async def publish(
    channel: str,
    body: PublishMessage,
    registry: SubscriptionRegistry = Depends(get_registry),
):
    """Publish a message to every subscriber of a channel.

    With the Redis relay enabled the message goes through Redis so streams
    on every server process receive it; otherwise it is broadcast here.
    """
    message = body.model_dump()
    logger.info("channel.publish_requested", channel=channel, message_type=body.type)

    if relay_enabled():
        try:
            receivers = await publish_message(channel, message)
            return PublishResult(channel=channel, relayed=True, relayed_to=receivers)
        except Exception as e:
            logger.warning("relay.publish_failed", channel=channel, error=str(e))

    delivered = registry.broadcast(channel, message)
    return PublishResult(channel=channel, relayed=False, delivered=delivered)
