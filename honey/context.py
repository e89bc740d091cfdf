"""
Context retrieval: a token-budgeted, time-windowed slice of recent turns.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from honey import config
from honey.errors import ReadError
from honey.models import Turn
from honey.storage.base import TurnBackend, guarded


NO_CONTEXT = "## No recent context available"
SEPARATOR = "\n\n---\n\n"


@dataclass
class ContextWindow:
    session_key: str
    entries: List[Turn] = field(default_factory=list)
    total_tokens: int = 0
    cutoff: int = 0
    window_ms: Optional[int] = None

    @property
    def count(self) -> int:
        return len(self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_key": self.session_key,
            "turns": [t.to_dict() for t in self.entries],
            "count": self.count,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class FormattedContext:
    context: str
    total_tokens: int
    count: int
    status: str  # "ok" | "empty"


def pack_by_budget(newest_first: Sequence[Turn], max_tokens: int) -> Tuple[List[Turn], int]:
    """
    Walk newest -> oldest, stop at the first turn that would push the total
    past max_tokens, and return the kept turns in chronological order.
    """
    kept: List[Turn] = []
    total = 0
    for turn in newest_first:
        tokens = max(0, int(turn.token_estimate))
        if total + tokens > max_tokens:
            break
        kept.append(turn)
        total += tokens
    kept.reverse()
    return kept, total


def display_prefix(turn_type: str, *, user_name: str = "User", assistant_name: str = "Assistant") -> str:
    prefixes = {
        "user": f"👤 {user_name}",
        "assistant": f"🤖 {assistant_name}",
        "thinking": "💭 Thinking",
        "action": "⚡ Action",
        "memory_recall": "🧠 Memory",
    }
    return prefixes.get(turn_type, turn_type)


def time_label(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000.0).strftime("%H:%M")


def format_entries(
    entries: Sequence[Turn],
    total_tokens: int,
    *,
    user_name: str = "User",
    assistant_name: str = "Assistant",
) -> str:
    if not entries:
        return NO_CONTEXT
    lines = [
        f"[{time_label(t.created_at)}] "
        f"{display_prefix(t.turn_type, user_name=user_name, assistant_name=assistant_name)}:\n{t.content}"
        for t in entries
    ]
    header = f"## Recent Conversation ({len(entries)} turns, ~{total_tokens} tokens)"
    return f"{header}\n\n{SEPARATOR.join(lines)}"


class ContextRetriever:
    def __init__(
        self,
        backend: TurnBackend,
        *,
        timeout_s: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.backend = backend
        self.timeout_s = float(timeout_s if timeout_s is not None else config.storage_timeout_s())
        self._clock = clock or time.time

    async def get_context(
        self,
        session_key: str,
        window_ms: Optional[int] = None,
        max_tokens: Optional[int] = None,
        limit: Optional[int] = None,
        *,
        since_ms: Optional[int] = None,
    ) -> ContextWindow:
        """
        Newest turns of one session that fit max_tokens, oldest first.

        since_ms, when given, replaces the trailing window as the exclusive lower bound.
        """
        if max_tokens is None:
            max_tokens = config.max_context_tokens()
        if since_ms is not None:
            cutoff = int(since_ms)
            window_ms = None
        else:
            if window_ms is None:
                window_ms = config.fresh_window_ms()
            cutoff = int(self._clock() * 1000) - int(window_ms)

        rows = await guarded(
            self.backend.query_recent(session_key, cutoff, limit),
            error=ReadError,
            timeout_s=self.timeout_s,
            what=f"query on {self.backend.name}",
        )
        entries, total = pack_by_budget(rows, int(max_tokens))
        return ContextWindow(
            session_key=session_key,
            entries=entries,
            total_tokens=total,
            cutoff=cutoff,
            window_ms=window_ms,
        )

    async def get_formatted_context(
        self,
        session_key: str,
        window_ms: Optional[int] = None,
        max_tokens: Optional[int] = None,
        limit: Optional[int] = None,
        *,
        since_ms: Optional[int] = None,
    ) -> FormattedContext:
        win = await self.get_context(session_key, window_ms, max_tokens, limit, since_ms=since_ms)
        text = format_entries(
            win.entries,
            win.total_tokens,
            user_name=config.display_user_name(),
            assistant_name=config.display_assistant_name(),
        )
        return FormattedContext(
            context=text,
            total_tokens=win.total_tokens,
            count=win.count,
            status="ok" if win.entries else "empty",
        )
