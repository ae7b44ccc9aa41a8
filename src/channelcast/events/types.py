"""Message kind constants.

Learn: Centralizing message kinds as constants prevents typos and
makes it easy to discover every kind the server treats specially.
Publishers may send any other kind; those are relayed verbatim.
"""

# ─── View messages (payload carries a "view" field) ─────

INITIAL_VIEW = "initial_view"
VIEW_CHANGE = "view_change"

VIEW_FIELD = "view"

# Kinds whose view is passed through the content transform before delivery
TRANSFORMABLE_KINDS = frozenset({INITIAL_VIEW, VIEW_CHANGE})

# ─── Stream lifecycle ────────────────────────────────────

CONNECTED = "connected"

# SSE comment frame; ignored by EventSource, keeps proxies from idling out
KEEPALIVE_FRAME = b": keepalive\n\n"
