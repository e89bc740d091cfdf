from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from honey.gateway import create_app
from honey.service import HoneyService
from honey.storage.jsonl import JsonlBackend


class _FailingReads(JsonlBackend):
    async def query_recent(self, session_key, since_ms, limit):
        raise OSError("disk read failed")


@pytest.fixture
def client(tmp_path: Path):
    service = HoneyService(data_dir=tmp_path / "data", database_url="", watcher_enabled=False)
    with TestClient(create_app(service)) as c:
        yield c


@pytest.fixture
def flat_client(tmp_path: Path):
    service = HoneyService(backend=JsonlBackend(tmp_path / "honey.jsonl"), watcher_enabled=False)
    with TestClient(create_app(service)) as c:
        yield c


def _capture(c: TestClient, session_key: str, content: str, turn_type: str = "user") -> dict:
    r = c.post("/capture", json={"session_key": session_key, "turn_type": turn_type, "content": content})
    assert r.status_code == 200, r.text
    return r.json()


def test_capture_then_context(client: TestClient) -> None:
    body = _capture(client, "oc-1", "Hello world")
    assert body["ok"] is True
    assert body["storage"] == "sqlite"
    assert isinstance(body["timestamp"], int)
    assert isinstance(body["id"], int)

    r = client.get("/context", params={"session_key": "oc-1"})
    assert r.status_code == 200
    data = r.json()
    assert data["session_key"] == "oc-1"
    assert data["count"] == 1
    assert data["total_tokens"] == 3
    [turn] = data["turns"]
    assert turn["content"] == "Hello world"
    assert turn["turn_type"] == "user"
    assert turn["timestamp"] == body["timestamp"]


def test_context_is_chronological_and_limited(client: TestClient) -> None:
    for i in range(4):
        _capture(client, "oc-1", f"message {i}")
    data = client.get("/context", params={"session_key": "oc-1", "limit": 2}).json()
    assert [t["content"] for t in data["turns"]] == ["message 2", "message 3"]


def test_context_unknown_session_is_empty(client: TestClient) -> None:
    r = client.get("/context", params={"session_key": "nobody"})
    assert r.status_code == 200
    assert r.json()["turns"] == []
    assert r.json()["count"] == 0


def test_missing_fields_are_400(client: TestClient) -> None:
    r = client.get("/context")
    assert r.status_code == 400
    assert r.json() == {"error": "Missing session_key parameter"}

    r = client.post("/capture", json={"session_key": "oc-1", "turn_type": "user"})
    assert r.status_code == 400
    assert "content" in r.json()["error"]

    r = client.post("/capture", content=b"not json", headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert "error" in r.json()


def test_unknown_route_and_method_are_404(client: TestClient) -> None:
    r = client.get("/nope")
    assert r.status_code == 404
    assert r.json() == {"error": "Not found"}

    r = client.get("/capture")
    assert r.status_code == 404
    assert r.json() == {"error": "Not found"}


def test_health_and_status(client: TestClient) -> None:
    _capture(client, "oc-1", "Hello world")
    for path in ("/health", "/status"):
        data = client.get(path).json()
        assert data["status"] == "ok"
        assert data["total_turns"] == 1
        assert data["storage"] == "sqlite"
        assert data["persistent"] is True
        assert data["uptime"] >= 0


def test_sessions_and_stats(client: TestClient) -> None:
    _capture(client, "oc-b", "second session text")
    _capture(client, "oc-a", "first session text")
    _capture(client, "oc-a", "more first session")

    assert client.get("/sessions").json() == {"sessions": ["oc-a", "oc-b"]}

    st = client.get("/stats").json()
    assert st["storage"] == "sqlite"
    assert st["total_turns"] == 3
    assert st["total_sessions"] == 2
    assert st["total_tokens"] > 0
    assert st["persistent"] is True


def test_cleanup(client: TestClient) -> None:
    _capture(client, "oc-1", "recent enough to survive")

    data = client.post("/cleanup", params={"days": 7}).json()
    assert data["deleted"] == 0
    assert isinstance(data["cutoff"], int)
    assert client.get("/context", params={"session_key": "oc-1"}).json()["count"] == 1

    time.sleep(0.01)
    # a zero-day horizon drops everything captured before now
    assert client.post("/cleanup", params={"days": 0}).json()["deleted"] == 1
    assert client.get("/context", params={"session_key": "oc-1"}).json()["count"] == 0


def test_fresh_and_formatted(client: TestClient) -> None:
    _capture(client, "oc-1", "what did we decide?")
    _capture(client, "oc-1", "We picked option B.", turn_type="assistant")

    fresh = client.get("/fresh", params={"session_key": "oc-1"}).json()
    assert fresh["ok"] is True
    assert fresh["count"] == 2
    assert fresh["window_ms"] == 3_600_000
    assert [t["turn_type"] for t in fresh["turns"]] == ["user", "assistant"]

    fc = client.get("/context/formatted", params={"session_key": "oc-1"}).json()
    assert fc["status"] == "ok"
    assert fc["count"] == 2
    assert fc["context"].startswith("## Recent Conversation (2 turns")
    assert "🤖 Assistant:\nWe picked option B." in fc["context"]

    empty = client.get("/context/formatted", params={"session_key": "nobody"}).json()
    assert empty["status"] == "empty"
    assert empty["context"] == "## No recent context available"


def test_search_on_sqlite(client: TestClient) -> None:
    if not getattr(client.app.state.service.backend, "_fts", False):
        pytest.skip("SQLite build lacks FTS5")
    _capture(client, "oc-1", "the deployment finished at noon")
    _capture(client, "oc-2", "lunch was late")

    r = client.get("/search", params={"q": "deployment"})
    assert r.status_code == 200
    data = r.json()
    assert data["query"] == "deployment"
    assert data["count"] == 1
    assert data["results"][0]["session_key"] == "oc-1"

    assert client.get("/search").status_code == 400


def test_search_unavailable_on_flat_file(flat_client: TestClient) -> None:
    _capture(flat_client, "oc-1", "some text to look for")
    r = flat_client.get("/search", params={"q": "text"})
    assert r.status_code == 501
    assert "error" in r.json()

    health = flat_client.get("/health").json()
    assert health["storage"] == "jsonl"
    assert health["persistent"] is False


def test_storage_failure_is_500(tmp_path: Path) -> None:
    service = HoneyService(backend=_FailingReads(tmp_path / "honey.jsonl"), watcher_enabled=False)
    with TestClient(create_app(service)) as c:
        r = c.get("/context", params={"session_key": "oc-1"})
        assert r.status_code == 500
        assert "disk read failed" in r.json()["error"]


def test_unexpected_error_is_500(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service = HoneyService(backend=JsonlBackend(tmp_path / "honey.jsonl"), watcher_enabled=False)

    def boom() -> float:
        raise ZeroDivisionError("clock broke")

    with TestClient(create_app(service), raise_server_exceptions=False) as c:
        monkeypatch.setattr(service, "uptime_s", boom)
        r = c.get("/health")
        assert r.status_code == 500
        assert r.json() == {"error": "clock broke"}


class _SlowStorage(JsonlBackend):
    async def insert(self, turn):
        await asyncio.sleep(5)
        return await super().insert(turn)

    async def query_recent(self, session_key, since_ms, limit):
        await asyncio.sleep(5)
        return await super().query_recent(session_key, since_ms, limit)


def test_slow_storage_is_500_not_a_hang(tmp_path: Path) -> None:
    service = HoneyService(backend=_SlowStorage(tmp_path / "honey.jsonl"), watcher_enabled=False, timeout_s=0.1)
    with TestClient(create_app(service)) as c:
        r = c.post("/capture", json={"session_key": "oc-1", "turn_type": "user", "content": "hello there"})
        assert r.status_code == 500
        assert "timed out" in r.json()["error"]

        r = c.get("/context", params={"session_key": "oc-1"})
        assert r.status_code == 500
        assert "timed out" in r.json()["error"]
