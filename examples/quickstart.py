#!/usr/bin/env python3
"""
channelcast Quickstart — one subscriber, a few publishes, one eviction.

Opens an SSE stream on a channel, publishes messages to it, shows the
rewritten image URLs, then opens a second stream from the same machine
to show the first one being evicted.
Run with: python examples/quickstart.py

Requires: pip install httpx
Server must be running: channelcast serve
"""

import json
import sys
import threading
import time
import uuid

import httpx

BASE = "http://localhost:8000/api/v1"


def read_stream(channel: str, label: str, received: list, ready: threading.Event):
    """Print every data frame from a channel stream until the server ends it."""
    with httpx.stream("GET", f"{BASE}/channels/{channel}/stream", timeout=None) as resp:
        for line in resp.iter_lines():
            if not line.startswith("data: "):
                continue
            message = json.loads(line[len("data: "):])
            received.append(message)
            print(f"   [{label}] {message['type']}: {json.dumps(message)}")
            if message["type"] == "connected":
                ready.set()
    print(f"   [{label}] stream closed by server")


def main():
    channel = f"demo-{uuid.uuid4().hex[:6]}"
    client = httpx.Client(base_url=BASE, timeout=10)

    # ── Health check ──────────────────────────────────────────────
    print("Checking server health...")
    try:
        health = client.get("/health").json()
    except httpx.ConnectError:
        print(f"Server not reachable at {BASE}")
        sys.exit(1)
    print(f"   Redis: {health['redis']}")

    # ── Subscribe ─────────────────────────────────────────────────
    print(f"\n1. Subscribing to {channel}...")
    first_msgs: list = []
    first_ready = threading.Event()
    first = threading.Thread(
        target=read_stream, args=(channel, "first", first_msgs, first_ready), daemon=True,
    )
    first.start()
    if not first_ready.wait(5):
        print("   No connected frame after 5s")
        sys.exit(1)

    # ── Publish ───────────────────────────────────────────────────
    print("\n2. Publishing a plain message...")
    resp = client.post(f"/channels/{channel}/messages", json={"type": "score", "home": 2, "away": 1})
    assert resp.status_code == 202, f"Failed: {resp.text}"
    print(f"   Result: {resp.json()}")

    print("\n3. Publishing an initial_view with images...")
    resp = client.post(f"/channels/{channel}/messages", json={
        "type": "initial_view",
        "view": {
            "title": "Halftime",
            "background": "https://cdn.example.com/stadium.jpg",
            "players": [{"name": "Ada", "avatar": "https://cdn.example.com/ada.png"}],
        },
    })
    assert resp.status_code == 202, f"Failed: {resp.text}"
    time.sleep(0.5)

    # ── Inspect ───────────────────────────────────────────────────
    print("\n4. Connected clients:")
    for cl in client.get("/channels/clients", params={"channel": channel}).json():
        print(f"   {cl['client_id']}  ip={cl['ip']}  since={cl['connected_at']}")

    # ── Evict ─────────────────────────────────────────────────────
    print("\n5. Opening a second stream from the same address...")
    second_msgs: list = []
    second_ready = threading.Event()
    threading.Thread(
        target=read_stream, args=(channel, "second", second_msgs, second_ready), daemon=True,
    ).start()
    second_ready.wait(5)
    first.join(5)

    stats = client.get("/channels/stats").json()
    print(f"   {channel}: {stats[channel]['client_count']} client(s)")
    print(f"\nDone. First stream saw {len(first_msgs)} frame(s).")


if __name__ == "__main__":
    main()
