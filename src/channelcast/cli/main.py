"""channelcast CLI — run the server, publish to channels, watch streams.

Usage:
    channelcast serve --port 8000                        # Run the API server
    channelcast publish lobby view_change --view '{...}' # Publish a message
    channelcast listen lobby                             # Print a channel's stream
    channelcast clients --channel lobby                  # Connected clients
    channelcast stats                                    # Per-channel counts
    channelcast health                                   # Server + relay status
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional
from urllib.parse import quote

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("CHANNELCAST_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the channelcast server."""
    return httpx.AsyncClient(base_url=_api_url(), timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No running loop — normal CLI invocation
        return asyncio.run(coro)
    else:
        # Already inside an event loop (e.g. test runner) — run in a thread
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _channel_path(channel: str, action: str) -> str:
    """Route for one channel; the name is escaped so /, ? and # stay part of it."""
    return f"/api/v1/channels/{quote(channel, safe='')}/{action}"


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _parse_json_option(name: str, raw: Optional[str]):
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        click.secho(f"Error: --{name} is not valid JSON ({e})", fg="red", err=True)
        sys.exit(1)


def _print_clients(clients: list[dict]):
    for cl in clients:
        connected = cl.get("connected_at") or "—"
        click.echo(f"  {cl['client_id']:40s}  {cl['ip']:20s}  {connected}")


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="channelcast")
def main():
    """channelcast — channel-scoped Server-Sent Events fan-out."""


# ---------------------------------------------------------------------------
# channelcast serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=None, help="Bind address (default: CHANNELCAST_HOST)")
@click.option("--port", "-p", type=int, default=None, help="Port (default: CHANNELCAST_PORT)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the API server with uvicorn."""
    import uvicorn

    from channelcast.config import settings

    uvicorn.run(
        "channelcast.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_config=None,
    )


# ---------------------------------------------------------------------------
# channelcast publish
# ---------------------------------------------------------------------------


@main.command()
@click.argument("channel")
@click.argument("message_type")
@click.option("--view", help="JSON view payload (for initial_view / view_change)")
@click.option("--data", help="JSON object merged into the message")
def publish(channel: str, message_type: str, view: Optional[str], data: Optional[str]):
    """Publish a message of MESSAGE_TYPE to CHANNEL."""
    message: dict = {}
    extra = _parse_json_option("data", data)
    if extra is not None:
        if not isinstance(extra, dict):
            click.secho("Error: --data must be a JSON object", fg="red", err=True)
            sys.exit(1)
        message.update(extra)
    view_payload = _parse_json_option("view", view)
    if view_payload is not None:
        message["view"] = view_payload
    message["type"] = message_type
    _run(_publish_impl(channel, message))


async def _publish_impl(channel: str, message: dict):
    async with _client() as c:
        r = await c.post(_channel_path(channel, "messages"), json=message)
        if r.status_code == 422:
            click.secho(f"Rejected: {r.json().get('detail')}", fg="red", err=True)
            sys.exit(1)
        r.raise_for_status()
        result = r.json()

    if result["relayed"]:
        click.secho(
            f"Relayed '{message['type']}' to {result['relayed_to']} server process(es)",
            fg="green",
        )
    else:
        click.secho(
            f"Delivered '{message['type']}' to {result['delivered']} client(s) on {channel}",
            fg="green",
        )


# ---------------------------------------------------------------------------
# channelcast listen
# ---------------------------------------------------------------------------


@main.command()
@click.argument("channel")
@click.option("--count", "-n", type=int, default=0, help="Exit after N messages (0 = forever)")
@click.option("--raw", is_flag=True, help="Print frames as received, no pretty JSON")
def listen(channel: str, count: int, raw: bool):
    """Subscribe to CHANNEL and print every message.

    Note: opening a stream evicts any other stream from this machine's address.
    """
    try:
        _run(_listen_impl(channel, count, raw))
    except KeyboardInterrupt:
        pass


async def _listen_impl(channel: str, count: int, raw: bool):
    received = 0
    async with _client() as c:
        async with c.stream(
            "GET", _channel_path(channel, "stream"), timeout=None,
        ) as r:
            r.raise_for_status()
            async for line in r.aiter_lines():
                if not line.startswith("data: "):
                    continue
                payload = line[len("data: "):]
                try:
                    message = json.loads(payload)
                except json.JSONDecodeError:
                    message = None
                if raw or not isinstance(message, dict):
                    click.echo(payload)
                else:
                    click.echo(_pretty_json(message))
                if isinstance(message, dict) and message.get("type") == "connected":
                    continue
                received += 1
                if count and received >= count:
                    break
    click.secho(f"Stream ended after {received} message(s)", fg="yellow", err=True)


# ---------------------------------------------------------------------------
# channelcast clients
# ---------------------------------------------------------------------------


@main.command()
@click.option("--channel", "-c", help="Only this channel")
def clients(channel: Optional[str]):
    """List connected clients."""
    _run(_clients_impl(channel))


async def _clients_impl(channel: Optional[str]):
    params = {"channel": channel} if channel else {}
    async with _client() as c:
        r = await c.get("/api/v1/channels/clients", params=params)
        r.raise_for_status()
        found = r.json()

    if not found:
        click.echo("No connected clients.")
        return

    click.secho(f"Clients ({len(found)}):", bold=True)
    by_channel: dict[str, list[dict]] = {}
    for cl in found:
        by_channel.setdefault(cl["channel"], []).append(cl)
    for name, members in sorted(by_channel.items()):
        click.secho(f"\n{name}", fg="cyan")
        _print_clients(members)


# ---------------------------------------------------------------------------
# channelcast stats
# ---------------------------------------------------------------------------


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the raw JSON response")
def stats(as_json: bool):
    """Show subscriber counts per channel."""
    _run(_stats_impl(as_json))


async def _stats_impl(as_json: bool):
    async with _client() as c:
        r = await c.get("/api/v1/channels/stats")
        r.raise_for_status()
        data = r.json()

    if as_json:
        click.echo(_pretty_json(data))
        return
    if not data:
        click.echo("No active channels.")
        return

    header = f"{'CHANNEL':30s}  CLIENTS"
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for name, entry in sorted(data.items()):
        click.echo(f"{name:30s}  {entry['client_count']}")


# ---------------------------------------------------------------------------
# channelcast health
# ---------------------------------------------------------------------------


@main.command()
def health():
    """Check server health."""
    _run(_health_impl())


async def _health_impl():
    async with _client() as c:
        try:
            r = await c.get("/api/v1/health")
        except httpx.ConnectError:
            click.secho(f"Server not reachable at {_api_url()}", fg="red", err=True)
            sys.exit(1)
        data = r.json()

    color = "green" if data.get("status") == "healthy" else "yellow"
    click.secho(f"Status: {data.get('status')}", fg=color, bold=True)
    click.echo(f"  Version:     {data.get('version')}")
    click.echo(f"  Redis:       {data.get('redis')}")
    click.echo(f"  Channels:    {data.get('channels')}")
    click.echo(f"  Subscribers: {data.get('subscribers')}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
