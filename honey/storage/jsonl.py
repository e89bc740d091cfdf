from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import List, Optional, Set

import aiofiles

from honey.errors import StorageUnavailableError
from honey.models import InsertResult, StorageStats, Turn
from honey.storage.base import TurnBackend


logger = logging.getLogger(__name__)


class JsonlBackend(TurnBackend):
    """
    Last-resort flat-file tier: one append-only JSONL file, no indexing.

    Every mutation goes through a single asyncio.Lock so read-modify-write
    rewrites never lose a concurrent append. Rewrites go to a temp file and
    are renamed into place, so readers see either the old or the new file.
    """

    name = "jsonl"
    persistent = False

    def __init__(self, path: Path, *, total_cap: int = 5000):
        self.path = Path(path)
        self.total_cap = int(total_cap)
        self._lock = asyncio.Lock()
        self._next_id = 1
        self._count = 0

    async def open(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self.path.write_text("", encoding="utf-8")
            turns = await self._read_all()
        except Exception as e:
            raise StorageUnavailableError(f"flat file unavailable at {self.path}: {e}") from e
        self._count = len(turns)
        self._next_id = max((t.id or 0 for t in turns), default=0) + 1

    async def _read_all(self) -> List[Turn]:
        if not self.path.exists():
            return []
        out: List[Turn] = []
        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            async for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    out.append(Turn.from_dict(json.loads(line)))
                except (json.JSONDecodeError, TypeError, ValueError, AttributeError):
                    # Torn tail from an interrupted append.
                    continue
        return out

    async def _rewrite(self, turns: List[Turn]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write("".join(t.to_json_line() + "\n" for t in turns))
            await f.flush()
        os.replace(tmp, self.path)
        self._count = len(turns)

    async def insert(self, turn: Turn) -> InsertResult:
        async with self._lock:
            stored = turn.with_id(self._next_id)
            async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                await f.write(stored.to_json_line() + "\n")
            self._next_id += 1
            self._count += 1
            if self.total_cap > 0 and self._count > self.total_cap:
                turns = await self._read_all()
                await self._rewrite(turns[-self.total_cap:])
        return InsertResult(id=int(stored.id or 0), created_at=stored.created_at)

    async def query_recent(self, session_key: str, since_ms: int, limit: Optional[int]) -> List[Turn]:
        since_ms = int(since_ms or 0)
        turns = [t for t in await self._read_all() if t.session_key == session_key and t.created_at > since_ms]
        turns.sort(key=lambda t: (t.created_at, t.id or 0), reverse=True)
        if limit is not None:
            turns = turns[: max(0, int(limit))]
        return turns

    async def list_sessions(self) -> Set[str]:
        return {t.session_key for t in await self._read_all()}

    async def stats(self) -> StorageStats:
        turns = await self._read_all()
        stamps = [t.created_at for t in turns]
        return StorageStats(
            tier=self.name,
            total_turns=len(turns),
            total_sessions=len({t.session_key for t in turns}),
            total_tokens=sum(t.token_estimate for t in turns),
            oldest=min(stamps) if stamps else None,
            newest=max(stamps) if stamps else None,
            db_path=str(self.path),
        )

    async def prune_older_than(self, session_key: str, keep_count: int) -> int:
        keep_count = max(0, int(keep_count))
        async with self._lock:
            turns = await self._read_all()
            mine = [t for t in turns if t.session_key == session_key]
            excess = len(mine) - keep_count
            if excess <= 0:
                return 0
            mine.sort(key=lambda t: (t.created_at, t.id or 0))
            drop = {id(t) for t in mine[:excess]}
            await self._rewrite([t for t in turns if id(t) not in drop])
            return excess

    async def delete_older_than(self, cutoff_ms: int) -> int:
        cutoff_ms = int(cutoff_ms)
        async with self._lock:
            turns = await self._read_all()
            kept = [t for t in turns if t.created_at >= cutoff_ms]
            deleted = len(turns) - len(kept)
            if deleted:
                await self._rewrite(kept)
            return deleted
