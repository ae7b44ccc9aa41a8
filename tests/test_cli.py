"""CLI tests — click's CliRunner against an httpx.MockTransport server.

Learn: Every command builds its HTTP client through _client(), so swapping
that one function routes the whole CLI at a canned handler.
"""

import json

import httpx
import pytest
from click.testing import CliRunner

from channelcast.cli import main as cli


@pytest.fixture()
def serve_with(monkeypatch):
    """Point the CLI at a handler; returns the list of requests it saw."""
    seen: list[httpx.Request] = []

    def install(handler):
        def recording(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return handler(request)

        monkeypatch.setattr(
            cli,
            "_client",
            lambda: httpx.AsyncClient(transport=httpx.MockTransport(recording), base_url="http://test"),
        )
        return seen

    return install


def invoke(*args):
    return CliRunner().invoke(cli.main, list(args))


# ─── publish ──────────────────────────────────────────────


def test_publish_builds_message_and_reports_delivery(serve_with):
    seen = serve_with(lambda req: httpx.Response(
        202, json={"channel": "lobby", "relayed": False, "delivered": 3, "relayed_to": None},
    ))

    result = invoke(
        "publish", "lobby", "view_change",
        "--view", '{"image": "https://cdn.example.com/a.png"}',
        "--data", '{"seq": 7}',
    )

    assert result.exit_code == 0, result.output
    assert "Delivered 'view_change' to 3 client(s) on lobby" in result.output
    (req,) = seen
    assert req.method == "POST"
    assert req.url.path == "/api/v1/channels/lobby/messages"
    assert json.loads(req.content) == {
        "seq": 7,
        "view": {"image": "https://cdn.example.com/a.png"},
        "type": "view_change",
    }


def test_publish_reports_relay(serve_with):
    serve_with(lambda req: httpx.Response(
        202, json={"channel": "lobby", "relayed": True, "delivered": None, "relayed_to": 2},
    ))

    result = invoke("publish", "lobby", "tick")

    assert result.exit_code == 0
    assert "Relayed 'tick' to 2 server process(es)" in result.output


def test_publish_rejects_bad_json_before_sending(serve_with):
    seen = serve_with(lambda req: httpx.Response(500))

    result = invoke("publish", "lobby", "tick", "--view", "{nope")

    assert result.exit_code == 1
    assert seen == []


def test_publish_exits_on_validation_error(serve_with):
    serve_with(lambda req: httpx.Response(422, json={"detail": "type too long"}))

    result = invoke("publish", "lobby", "x")

    assert result.exit_code == 1


def test_publish_escapes_channel_name(serve_with):
    seen = serve_with(lambda req: httpx.Response(
        202, json={"channel": "team/a?b#c", "relayed": False, "delivered": 0, "relayed_to": None},
    ))

    result = invoke("publish", "team/a?b#c", "tick")

    assert result.exit_code == 0, result.output
    (req,) = seen
    assert req.url.raw_path == b"/api/v1/channels/team%2Fa%3Fb%23c/messages"
    assert not req.url.query


# ─── listen ───────────────────────────────────────────────


def test_listen_prints_messages_until_count(serve_with):
    body = (
        b'data: {"type":"connected","channel":"lobby","client_id":"127.0.0.1-1"}\n\n'
        b": keepalive\n\n"
        b'data: {"type":"score","home":1}\n\n'
        b'data: {"type":"score","home":2}\n\n'
    )
    serve_with(lambda req: httpx.Response(200, content=body, headers={"content-type": "text/event-stream"}))

    result = invoke("listen", "lobby", "-n", "1", "--raw")

    assert result.exit_code == 0, result.output
    assert '{"type":"score","home":1}' in result.output
    assert '"home":2' not in result.output
    assert "Stream ended after 1 message(s)" in result.output


# ─── clients / stats ──────────────────────────────────────


def test_clients_groups_by_channel(serve_with):
    seen = serve_with(lambda req: httpx.Response(200, json=[
        {"client_id": "10.0.0.1-1", "channel": "b", "ip": "10.0.0.1",
         "connected_at": None, "connected_at_timestamp": None},
        {"client_id": "10.0.0.2-1", "channel": "a", "ip": "10.0.0.2",
         "connected_at": None, "connected_at_timestamp": None},
    ]))

    result = invoke("clients", "--channel", "a")

    assert result.exit_code == 0
    assert "Clients (2):" in result.output
    assert result.output.index("\na\n") < result.output.index("\nb\n")
    assert seen[0].url.params["channel"] == "a"


def test_clients_empty(serve_with):
    serve_with(lambda req: httpx.Response(200, json=[]))
    assert "No connected clients." in invoke("clients").output


def test_stats_table_and_json(serve_with):
    payload = {"lobby": {"client_count": 2, "clients": []}}
    serve_with(lambda req: httpx.Response(200, json=payload))

    table = invoke("stats")
    assert "CHANNEL" in table.output
    assert "lobby" in table.output

    raw = invoke("stats", "--json")
    assert json.loads(raw.output) == payload


def test_stats_empty(serve_with):
    serve_with(lambda req: httpx.Response(200, json={}))
    assert "No active channels." in invoke("stats").output


# ─── health ───────────────────────────────────────────────


def test_health_ok(serve_with):
    serve_with(lambda req: httpx.Response(200, json={
        "status": "healthy", "server": "ok", "version": "0.1.0",
        "redis": "disabled", "channels": 1, "subscribers": 4,
    }))

    result = invoke("health")

    assert result.exit_code == 0
    assert "Status: healthy" in result.output
    assert "Subscribers: 4" in result.output


def test_health_unreachable(serve_with):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    serve_with(refuse)

    result = invoke("health")

    assert result.exit_code == 1
