"""Subscription registry — who is listening to which channel.

Learn: Three indexes, always mutated together under one lock:

    _channels     channel name   → {subscriber id}
    _subscribers  subscriber id  → Subscriber (connection + diagnostics)
    _addresses    source address → {subscriber id}

Subscribers are keyed by an integer id handed out at subscribe time, not
by the connection object. A subscriber leaves the registry in exactly one
way, _retire(), whichever trigger gets there first:

1. the connection's close notification (client went away)
2. a failed write during broadcast (dead or slow client)
3. eviction, when a newer subscription arrives from the same address

Later triggers for the same id find nothing and do nothing.

Nothing here raises to the caller. Delivery problems show up only in
the log stream.
"""

import functools
import itertools
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from channelcast.config import settings
from channelcast.log import log_channel
from channelcast.realtime.connection import Connection, encode_event
from channelcast.realtime.transform import (
    Transform,
    apply_transform,
    make_image_proxy_transform,
)
from channelcast.schemas.channel import ChannelStats, SubscriberView

SubscriberId = int


@dataclass
class Subscriber:
    id: SubscriberId
    connection: Connection
    client_id: str
    channel: str
    source_address: str


def parse_connected_at(client_id: str) -> tuple[Optional[int], Optional[datetime]]:
    """Read the epoch-ms suffix of a client id. (None, None) if it isn't one."""
    last = client_id.rsplit("-", 1)[-1]
    try:
        timestamp = int(last)
    except ValueError:
        return None, None
    if timestamp <= 0:
        return None, None
    try:
        connected_at = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None, None
    return timestamp, connected_at


def _view(sub: Subscriber) -> SubscriberView:
    timestamp, connected_at = parse_connected_at(sub.client_id)
    return SubscriberView(
        client_id=sub.client_id,
        channel=sub.channel,
        ip=sub.source_address,
        connected_at=connected_at,
        connected_at_timestamp=timestamp,
    )


class SubscriptionRegistry:
    """Channel fan-out with one live subscription per source address."""

    def __init__(
        self,
        transform: Optional[Transform] = None,
        serializer: Callable[[dict[str, Any]], bytes] = encode_event,
        log: Callable[..., None] = log_channel,
    ):
        # Re-entrant: a transport may fire its close notification synchronously
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._channels: dict[str, set[SubscriberId]] = {}
        self._subscribers: dict[SubscriberId, Subscriber] = {}
        self._addresses: dict[str, set[SubscriberId]] = {}
        self._transform = transform or (lambda view: view)
        self._serialize = serializer
        self._log = log

    # ─── Lifecycle ─────────────────────────────────────────

    def subscribe(
        self,
        channel: str,
        connection: Connection,
        client_id: str,
        source_address: str,
    ) -> SubscriberId:
        """Register a stream, evicting any earlier stream from the same address."""
        with self._lock:
            evicted = self._evict_address(source_address)
            subscriber_id = next(self._ids)
            self._subscribers[subscriber_id] = Subscriber(
                id=subscriber_id,
                connection=connection,
                client_id=client_id,
                channel=channel,
                source_address=source_address,
            )
            self._channels.setdefault(channel, set()).add(subscriber_id)
            self._addresses.setdefault(source_address, set()).add(subscriber_id)
            total = len(self._channels[channel])

        if evicted:
            self._emit(
                "channel.existing_connections_closed",
                channel,
                ip=source_address,
                client_id=client_id,
                closed=len(evicted),
            )
        for old in evicted:
            self._close_quietly(old)

        self._emit(
            "channel.client_subscribed",
            channel,
            client_id=client_id,
            ip=source_address,
            total_clients=total,
        )

        connection.on_close(functools.partial(self.unsubscribe, channel, subscriber_id))
        return subscriber_id

    def unsubscribe(self, channel: str, subscriber_id: SubscriberId) -> None:
        """Retire a subscriber. Unknown or already-retired ids are a no-op.

        The subscriber's own channel is authoritative; ``channel`` is only
        reported when it disagrees.
        """
        sub = self._drop(subscriber_id, reason="disconnect")
        if sub is not None and sub.channel != channel:
            self._emit(
                "channel.unsubscribe_channel_mismatch",
                sub.channel,
                level="debug",
                requested_channel=channel,
                client_id=sub.client_id,
            )

    def close_all(self) -> int:
        """Close every stream and empty the registry (server shutdown)."""
        with self._lock:
            subs = list(self._subscribers.values())
            self._channels.clear()
            self._subscribers.clear()
            self._addresses.clear()
        for sub in subs:
            self._close_quietly(sub)
        return len(subs)

    # ─── Delivery ──────────────────────────────────────────

    def broadcast(self, channel: str, message: dict[str, Any]) -> int:
        """Write ``message`` to every current subscriber of ``channel``.

        Returns the number of successful writes. Failed subscribers are
        retired; the rest still get the message.
        """
        with self._lock:
            targets = list(self._channels.get(channel, ()))
        if not targets:
            return 0

        self._emit(
            "channel.message_published",
            channel,
            level="debug",
            message_type=message.get("type"),
            subscribers=len(targets),
        )

        try:
            outgoing = apply_transform(message, self._transform)
        except Exception as e:
            self._emit(
                "channel.transform_failed",
                channel,
                level="error",
                message_type=message.get("type"),
                error=str(e),
            )
            outgoing = message
        frame = self._serialize(outgoing)

        delivered = 0
        for subscriber_id in targets:
            with self._lock:
                sub = self._subscribers.get(subscriber_id)
            if sub is None:
                continue  # retired since the snapshot
            try:
                sub.connection.write(frame)
            except Exception as e:
                self._emit(
                    "channel.send_failed",
                    channel,
                    level="warning",
                    client_id=sub.client_id,
                    ip=sub.source_address,
                    error=str(e) or type(e).__name__,
                )
                self._drop(subscriber_id, reason="write_failed")
                continue
            delivered += 1
        return delivered

    # ─── Read-only views ───────────────────────────────────

    def list_subscribers(self, channel: Optional[str] = None) -> list[SubscriberView]:
        with self._lock:
            if channel is None:
                subs = list(self._subscribers.values())
            else:
                subs = [
                    self._subscribers[sid]
                    for sid in self._channels.get(channel, ())
                    if sid in self._subscribers
                ]
            return [_view(sub) for sub in subs]

    def channel_stats(self) -> dict[str, ChannelStats]:
        with self._lock:
            return {
                channel: ChannelStats(
                    client_count=len(members),
                    clients=[_view(self._subscribers[sid]) for sid in members],
                )
                for channel, members in self._channels.items()
            }

    def subscriber_count(self, channel: Optional[str] = None) -> int:
        with self._lock:
            if channel is None:
                return len(self._subscribers)
            return len(self._channels.get(channel, ()))

    def channels(self) -> list[str]:
        with self._lock:
            return list(self._channels)

    def is_active(self, subscriber_id: SubscriberId) -> bool:
        with self._lock:
            return subscriber_id in self._subscribers

    # ─── Internals ─────────────────────────────────────────

    def _retire(self, subscriber_id: SubscriberId) -> Optional[Subscriber]:
        """Remove one subscriber from all three indexes. Caller holds the lock."""
        sub = self._subscribers.pop(subscriber_id, None)
        if sub is None:
            return None
        members = self._channels.get(sub.channel)
        if members is not None:
            members.discard(subscriber_id)
            if not members:
                del self._channels[sub.channel]
        bound = self._addresses.get(sub.source_address)
        if bound is not None:
            bound.discard(subscriber_id)
            if not bound:
                del self._addresses[sub.source_address]
        return sub

    def _drop(self, subscriber_id: SubscriberId, reason: str) -> Optional[Subscriber]:
        with self._lock:
            sub = self._retire(subscriber_id)
            if sub is None:
                return None
            remaining = len(self._channels.get(sub.channel, ()))
        self._emit(
            "channel.client_unsubscribed",
            sub.channel,
            client_id=sub.client_id,
            ip=sub.source_address,
            reason=reason,
            remaining_clients=remaining,
        )
        return sub

    def _evict_address(self, source_address: str) -> list[Subscriber]:
        """Retire every subscriber bound to an address. Caller holds the lock."""
        evicted = []
        for subscriber_id in list(self._addresses.get(source_address, ())):
            sub = self._retire(subscriber_id)
            if sub is not None:
                evicted.append(sub)
        self._addresses.pop(source_address, None)
        return evicted

    def _close_quietly(self, sub: Subscriber) -> None:
        try:
            if not sub.connection.closed:
                sub.connection.close()
        except Exception as e:
            self._emit(
                "channel.close_failed",
                sub.channel,
                level="debug",
                client_id=sub.client_id,
                error=str(e),
            )

    def _emit(self, event: str, channel: str, **context) -> None:
        try:
            self._log(event, channel, **context)
        except Exception:  # noqa: BLE001
            pass


# App-wide instance; routes reach it through get_registry()
registry = SubscriptionRegistry(
    transform=make_image_proxy_transform(settings.image_proxy_base),
)


def get_registry() -> SubscriptionRegistry:
    """FastAPI dependency — override in tests."""
    return registry
