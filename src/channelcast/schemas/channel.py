"""Pydantic schemas for channels, subscribers and publishing."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


# ─── Subscribers ──────────────────────────────────────────


class SubscriberView(BaseModel):
    """Diagnostic projection of one live stream."""

    client_id: str
    channel: str
    ip: str
    connected_at: Optional[datetime] = None
    connected_at_timestamp: Optional[int] = None


class ChannelStats(BaseModel):
    client_count: int
    clients: list[SubscriberView]


# ─── Publishing ───────────────────────────────────────────


class PublishMessage(BaseModel):
    """A message for a channel. Any fields beyond ``type`` are passed through."""

    type: str = Field(..., min_length=1, max_length=100)

    model_config = {"extra": "allow"}


class PublishResult(BaseModel):
    """Outcome of a publish.

    Direct mode fills ``delivered`` (local streams written). Relay mode
    fills ``relayed_to`` (server processes that received the message).
    """

    channel: str
    relayed: bool
    delivered: Optional[int] = None
    relayed_to: Optional[int] = None
