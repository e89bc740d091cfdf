from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx

from honey.client import RECOVERED_HEADER, HoneyClient, honey_key_for, lookup_session_id, render_turns


EMPTY_TEXT = "## Recent Context (recovered from Honey)\n\n## No recent context available\n\n---\n\n"


def _client(handler) -> HoneyClient:
    return HoneyClient(base_url="http://honey.test", timeout_s=2, transport=httpx.MockTransport(handler))


def test_honey_key_for() -> None:
    assert honey_key_for("agent:main:telegram", "3f2a9c1e-7b44-4d0e") == "oc-3f2a9c1e"
    assert honey_key_for("agent:main:telegram") == "telegram"
    assert honey_key_for("loose-key") == "loose-key"
    assert honey_key_for("") == "default"


def test_lookup_session_id(tmp_path: Path) -> None:
    index = tmp_path / "sessions.json"
    index.write_text(json.dumps({"agent:main:main": {"sessionId": "abcdef0123456789"}}), encoding="utf-8")

    assert lookup_session_id(index, "agent:main:main") == "abcdef0123456789"
    assert lookup_session_id(index, "agent:main:other") is None
    assert lookup_session_id(tmp_path / "missing.json", "agent:main:main") is None


def test_render_turns_empty_sentinel() -> None:
    assert render_turns([]) == EMPTY_TEXT


def test_recover_ok() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={
                "session_key": "oc-abcdef01",
                "turns": [
                    {"turn_type": "user", "content": "where were we?", "timestamp": 1_700_000_000_000},
                    {"turn_type": "assistant", "content": "on the migration", "timestamp": 1_700_000_060_000},
                ],
            },
        )

    async def main() -> None:
        async with _client(handler) as client:
            rc = await client.recover("oc-abcdef01", limit=5)
        assert seen["params"] == {"session_key": "oc-abcdef01", "limit": "5"}
        assert rc.status == "ok"
        assert rc.available is True
        assert len(rc.turns) == 2
        assert rc.text.startswith(RECOVERED_HEADER)
        assert "User [" in rc.text
        assert "] where were we?" in rc.text
        assert "Assistant [" in rc.text
        assert rc.text.endswith("\n\n---\n\n")

    asyncio.run(main())


def test_recover_empty_and_unavailable_share_text_but_not_status() -> None:
    def empty(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"turns": []})

    def down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "boom"})

    async def main() -> None:
        async with _client(empty) as client:
            e = await client.recover("oc-x")
        async with _client(down) as client:
            d = await client.recover("oc-x")
        async with _client(broken) as client:
            b = await client.recover("oc-x")

        assert e.text == d.text == b.text == EMPTY_TEXT
        assert e.status == "empty"
        assert d.status == "unavailable"
        assert b.status == "unavailable"
        assert d.available is False
        assert "connection refused" in (d.error or "")

    asyncio.run(main())


def test_recover_for_session_uses_sessions_index(tmp_path: Path) -> None:
    index = tmp_path / "sessions.json"
    index.write_text(json.dumps({"agent:main:main": {"sessionId": "deadbeefcafe"}}), encoding="utf-8")
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.params["session_key"])
        return httpx.Response(200, json={"turns": []})

    async def main() -> None:
        async with _client(handler) as client:
            await client.recover_for_session("agent:main:main", sessions_file=index)
            await client.recover_for_session("agent:main:discord", sessions_file=index)

    asyncio.run(main())
    assert seen == ["oc-deadbeef", "discord"]


def test_capture_and_health() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(200, json={"status": "ok", "storage": "sqlite"})
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True, "timestamp": 1, "id": 1, "storage": "sqlite"})

    def down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def main() -> None:
        async with _client(handler) as client:
            assert await client.capture("oc-1", "user", "hello there") is True
            health = await client.health()
        assert bodies == [{"session_key": "oc-1", "turn_type": "user", "content": "hello there"}]
        assert health == {"connected": True, "status": "ok", "storage": "sqlite"}

        async with _client(down) as client:
            assert await client.capture("oc-1", "user", "hello there") is False
            assert (await client.health())["connected"] is False

    asyncio.run(main())
