"""
Data models for captured conversation turns.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


CHARS_PER_TOKEN = 4


def estimate_tokens(text: Optional[str]) -> int:
    return int(math.ceil(len(text or "") / CHARS_PER_TOKEN))


@dataclass(frozen=True)
class Turn:
    """One captured message unit. Immutable once written."""
    session_key: str
    turn_type: str
    content: str
    created_at: int
    token_estimate: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_key": self.session_key,
            "turn_type": self.turn_type,
            "content": self.content,
            "timestamp": self.created_at,
            "token_estimate": self.token_estimate,
            "metadata": dict(self.metadata or {}),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Turn":
        content = str(data.get("content", "") or "")
        token_estimate = data.get("token_estimate")
        return cls(
            id=data.get("id"),
            session_key=str(data.get("session_key", "") or ""),
            turn_type=str(data.get("turn_type", "") or ""),
            content=content,
            created_at=int(data.get("timestamp", 0) or 0),
            token_estimate=int(token_estimate) if token_estimate is not None else estimate_tokens(content),
            metadata=decode_metadata(data.get("metadata")),
        )

    def with_id(self, turn_id: int) -> "Turn":
        return Turn(
            id=turn_id,
            session_key=self.session_key,
            turn_type=self.turn_type,
            content=self.content,
            created_at=self.created_at,
            token_estimate=self.token_estimate,
            metadata=self.metadata,
        )

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def decode_metadata(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, (str, bytes)):
        try:
            obj = json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return {}
        return obj if isinstance(obj, dict) else {}
    return {}


@dataclass(frozen=True)
class InsertResult:
    id: int
    created_at: int


@dataclass
class StorageStats:
    tier: str
    total_turns: int
    total_sessions: Optional[int] = None
    total_tokens: int = 0
    oldest: Optional[int] = None
    newest: Optional[int] = None
    db_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "total_turns": self.total_turns,
            "total_sessions": self.total_sessions,
            "total_tokens": self.total_tokens,
            "oldest": self.oldest,
            "newest": self.newest,
            "storage": self.tier,
        }
        if self.db_path:
            out["db_path"] = self.db_path
        return out
