from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Dict, List, Optional, Set, Type, TypeVar

from honey.errors import HoneyError, SearchUnavailableError
from honey.models import InsertResult, StorageStats, Turn


T = TypeVar("T")


class TurnBackend:
    """
    Persistence contract shared by every storage tier.

    query_recent() returns newest-first; callers reverse to chronological order.
    An unknown session yields an empty list, never an error.
    """

    name = "base"
    persistent = True

    async def open(self) -> None:
        """Probe the tier and prepare its schema. Raises StorageUnavailableError."""
        raise NotImplementedError

    async def close(self) -> None:
        return

    async def insert(self, turn: Turn) -> InsertResult:
        raise NotImplementedError

    async def query_recent(self, session_key: str, since_ms: int, limit: Optional[int]) -> List[Turn]:
        raise NotImplementedError

    async def list_sessions(self) -> Set[str]:
        raise NotImplementedError

    async def stats(self) -> StorageStats:
        raise NotImplementedError

    async def prune_older_than(self, session_key: str, keep_count: int) -> int:
        """Delete all but the newest keep_count turns of one session. Returns rows removed."""
        raise NotImplementedError

    async def delete_older_than(self, cutoff_ms: int) -> int:
        raise NotImplementedError

    async def search(self, query: str, *, limit: int = 10, session_key: Optional[str] = None) -> List[Dict[str, Any]]:
        raise SearchUnavailableError(f"Full-text search is not available on the {self.name} storage tier")


async def guarded(aw: Awaitable[T], *, error: Type[HoneyError], timeout_s: float, what: str) -> T:
    """
    Await a storage call with a bounded timeout, translating backend failures into `error`.
    HoneyError subclasses raised by the backend pass through untouched.
    """
    try:
        return await asyncio.wait_for(aw, timeout=timeout_s)
    except HoneyError:
        raise
    except asyncio.TimeoutError as e:
        raise error(f"{what} timed out after {timeout_s:g}s") from e
    except Exception as e:
        raise error(f"{what} failed: {e}") from e
