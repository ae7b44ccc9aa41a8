"""channelcast — channel-scoped Server-Sent Events fan-out.

Clients open a long-lived SSE stream on a named channel and receive every
message published to that channel afterwards. One live stream per client
address: a newer subscription from the same address evicts the older one.
"""

__version__ = "0.1.0"
