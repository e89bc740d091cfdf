"""
Client used by the agent side: captures turns and recovers context after compaction.

Recovery is best-effort. A fetch failure never raises; it degrades to the same
"no context" text as an empty window, and `status` tells the two apart.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from honey import config
from honey.context import NO_CONTEXT
from honey.watcher import derive_session_key


logger = logging.getLogger(__name__)

RECOVERED_HEADER = "## Recent Context (recovered from Honey)"


@dataclass
class RecoveredContext:
    text: str
    status: str  # "ok" | "empty" | "unavailable"
    turns: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.status != "unavailable"


def lookup_session_id(sessions_file: Path, session_key: str) -> Optional[str]:
    """Find the transcript session id for an agent session key in a sessions.json index."""
    try:
        data = json.loads(Path(sessions_file).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    entry = data.get(session_key) if isinstance(data, dict) else None
    if isinstance(entry, dict) and entry.get("sessionId"):
        return str(entry["sessionId"])
    return None


def honey_key_for(session_key: str, session_id: Optional[str] = None, *, prefix: Optional[str] = None) -> str:
    """
    Lookup key for an agent session. With a transcript session id this is the
    watcher's derivation; otherwise the channel segment of "agent:main:<channel>".
    """
    if session_id:
        return derive_session_key(session_id, prefix=prefix if prefix is not None else config.watcher_session_prefix())
    parts = (session_key or "").split(":")
    return parts[2] if len(parts) > 2 else (session_key or "default")


def render_turns(turns: List[Dict[str, Any]], *, user_name: str = "User", assistant_name: str = "Assistant") -> str:
    if not turns:
        return f"{RECOVERED_HEADER}\n\n{NO_CONTEXT}\n\n---\n\n"
    lines = []
    for t in turns:
        role = user_name if t.get("turn_type") == "user" else assistant_name
        ts = int(t.get("timestamp", 0) or 0)
        label = datetime.fromtimestamp(ts / 1000.0).strftime("%I:%M %p").lstrip("0")
        lines.append(f"{role} [{label}] {t.get('content', '')}")
    return f"{RECOVERED_HEADER}\n\n" + "\n".join(lines) + "\n\n---\n\n"


class HoneyClient:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.client_url()).rstrip("/")
        self.timeout_s = float(timeout_s if timeout_s is not None else config.client_timeout_s())
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout_s, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HoneyClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def health(self) -> Dict[str, Any]:
        """Returns the /health payload plus connected=True, or connected=False with the error."""
        try:
            resp = await self._client.get("/health")
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            return {"connected": False, "error": str(e)}
        return {"connected": True, **(data if isinstance(data, dict) else {})}

    async def capture(
        self,
        session_key: str,
        turn_type: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        body: Dict[str, Any] = {"session_key": session_key, "turn_type": turn_type, "content": content}
        if metadata:
            body["metadata"] = metadata
        try:
            resp = await self._client.post("/capture", json=body)
        except httpx.HTTPError as e:
            logger.warning("Capture failed for %s: %s", session_key, e)
            return False
        return resp.status_code == 200

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    async def sessions(self) -> List[str]:
        return list((await self._get_json("/sessions")).get("sessions") or [])

    async def stats(self) -> Dict[str, Any]:
        return await self._get_json("/stats")

    async def search(self, query: str, *, limit: int = 10, session_key: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"q": query, "limit": limit}
        if session_key:
            params["session_key"] = session_key
        return list((await self._get_json("/search", params)).get("results") or [])

    async def recover(self, honey_key: str, *, limit: Optional[int] = None) -> RecoveredContext:
        limit = int(limit if limit is not None else config.turns_per_injection())
        try:
            resp = await self._client.get("/context", params={"session_key": honey_key, "limit": limit})
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.info("Honey context unavailable for %s: %s", honey_key, e)
            return RecoveredContext(text=render_turns([]), status="unavailable", error=str(e))

        turns = data.get("turns") if isinstance(data, dict) else None
        turns = [t for t in (turns or []) if isinstance(t, dict)]
        text = render_turns(
            turns,
            user_name=config.display_user_name(),
            assistant_name=config.display_assistant_name(),
        )
        return RecoveredContext(text=text, status="ok" if turns else "empty", turns=turns)

    async def recover_for_session(
        self,
        session_key: str,
        *,
        session_id: Optional[str] = None,
        sessions_file: Optional[Path] = None,
        limit: Optional[int] = None,
    ) -> RecoveredContext:
        if not session_id and sessions_file is not None:
            session_id = lookup_session_id(sessions_file, session_key)
        key = honey_key_for(session_key, session_id)
        logger.info("Looking up context for %s (from session %s)", key, session_key)
        return await self.recover(key, limit=limit)
