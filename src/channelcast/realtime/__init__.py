"""Real-time infrastructure — channel registry + SSE streams + Redis relay.

Learn: Messages flow one way:
1. Publisher → POST /channels/{channel}/messages (optionally via Redis)
2. SubscriptionRegistry.broadcast → each stream's QueueConnection
3. QueueConnection.stream() → text/event-stream → display

The registry is the only place that knows who is listening.
"""
