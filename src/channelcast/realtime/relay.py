"""Redis relay — publish once, deliver from every server process.

Learn: The registry only knows the streams connected to *this* process.
When several uvicorn workers sit behind a load balancer, a message
POSTed to worker A must also reach displays streaming from worker B.

With CHANNELCAST_REDIS_URL set:
1. The publish route → Redis PUBLISH channelcast:channels:{channel}
2. Every process runs a RelayListener → PSUBSCRIBE channelcast:channels:*
   → registry.broadcast() to its own local streams

Redis pub/sub is fire-and-forget: if a process isn't listening, it
misses the message. That matches the delivery model of the streams
themselves. Without Redis, the route broadcasts locally and this module
stays idle.

The one-stream-per-address rule is enforced per process.
"""

import asyncio
import json
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog

from channelcast.config import settings
from channelcast.realtime.registry import SubscriptionRegistry

logger = structlog.get_logger()

CHANNEL_PREFIX = "channelcast:channels:"

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis(url: Optional[str] = None) -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


def relay_enabled() -> bool:
    return _redis is not None


def redis_channel(channel: str) -> str:
    return f"{CHANNEL_PREFIX}{channel}"


async def publish_message(channel: str, message: dict[str, Any]) -> int:
    """Publish a message to a channel's Redis topic.

    Returns the number of server processes that received it.
    """
    r = get_redis()
    payload = json.dumps(message, default=str)
    return await r.publish(redis_channel(channel), payload)


class RelayListener:
    """Forward Redis channel messages into the local registry."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        redis: Optional[aioredis.Redis] = None,
        retry_initial: float = 0.5,
        retry_max: float = 30.0,
    ):
        self.registry = registry
        self._redis = redis
        self._running = False
        self.relayed = 0
        self.failures = 0
        self._subscribed = False
        self.retry_initial = retry_initial
        self.retry_max = retry_max

    def handle(self, raw: dict[str, Any]) -> int:
        """Broadcast one pub/sub message. Returns local deliveries."""
        if raw.get("type") != "pmessage":
            return 0
        topic = raw.get("channel") or ""
        if not topic.startswith(CHANNEL_PREFIX):
            return 0
        channel = topic[len(CHANNEL_PREFIX):]
        try:
            message = json.loads(raw.get("data") or "")
        except (TypeError, json.JSONDecodeError) as e:
            logger.warning("relay.malformed_payload", channel=channel, error=str(e))
            return 0
        if not isinstance(message, dict):
            logger.warning("relay.malformed_payload", channel=channel, error="not an object")
            return 0
        self.relayed += 1
        return self.registry.broadcast(channel, message)

    async def run_loop(self) -> None:
        """Listen until cancelled, re-subscribing after connection failures.

        Learn: A dropped pub/sub connection surfaces as an exception from
        listen(). The loop logs it, waits (doubling up to retry_max) and
        subscribes again, so streams on this process resume receiving
        relayed messages once Redis is back. A listen() that simply ends
        means the subscription was closed on purpose; the loop returns.
        """
        r = self._redis or get_redis()
        delay = self.retry_initial
        while True:
            self._subscribed = False
            try:
                await self._listen_once(r)
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures += 1
                if self._subscribed:
                    delay = self.retry_initial
                logger.error(
                    "relay.listener_failed",
                    error=str(e) or type(e).__name__,
                    retry_in=delay,
                    failures=self.failures,
                )
            await asyncio.sleep(delay)
            delay = min(max(delay * 2, 0.1), self.retry_max)

    async def _listen_once(self, r: aioredis.Redis) -> None:
        pubsub = r.pubsub()
        try:
            await pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
            self._running = self._subscribed = True
            logger.info("relay.listening", pattern=f"{CHANNEL_PREFIX}*")
            async for raw in pubsub.listen():
                try:
                    self.handle(raw)
                except Exception as e:
                    logger.error("relay.handle_failed", error=str(e))
        finally:
            self._running = False
            try:
                await pubsub.punsubscribe()
                await pubsub.aclose()
            except Exception as e:
                logger.debug("relay.pubsub_close_failed", error=str(e))

    @property
    def running(self) -> bool:
        return self._running


async def stop_listener(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
