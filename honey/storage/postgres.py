"""
Cloud relational tier: PostgreSQL through an asyncpg pool.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import asyncpg

from honey.errors import StorageUnavailableError
from honey.models import InsertResult, StorageStats, Turn, decode_metadata
from honey.storage.base import TurnBackend


logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS honey_turns (
  id BIGSERIAL PRIMARY KEY,
  session_key VARCHAR(255) NOT NULL,
  turn_type VARCHAR(50) NOT NULL,
  content TEXT NOT NULL,
  token_estimate INT NOT NULL,
  created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
  metadata JSONB NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_honey_turns_created_at ON honey_turns(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_honey_turns_session_time ON honey_turns(session_key, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_honey_turns_content_search ON honey_turns USING gin(to_tsvector('english', content));
"""


def _to_dt(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def _to_ms(dt: Optional[datetime]) -> Optional[int]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def _rowcount(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 3".
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0


def _row_to_turn(row: asyncpg.Record) -> Turn:
    return Turn(
        id=int(row["id"]),
        session_key=str(row["session_key"]),
        turn_type=str(row["turn_type"]),
        content=str(row["content"]),
        created_at=_to_ms(row["created_at"]) or 0,
        token_estimate=int(row["token_estimate"] or 0),
        metadata=decode_metadata(row["metadata"]),
    )


class PostgresBackend(TurnBackend):
    name = "postgres"
    persistent = True

    def __init__(self, dsn: str, *, connect_timeout_s: float = 5.0, max_pool_size: int = 5):
        self.dsn = dsn
        self.connect_timeout_s = float(connect_timeout_s)
        self.max_pool_size = int(max_pool_size)
        self._pool: Optional[asyncpg.Pool] = None

    async def open(self) -> None:
        try:
            self._pool = await asyncio.wait_for(
                asyncpg.create_pool(self.dsn, min_size=1, max_size=self.max_pool_size),
                timeout=self.connect_timeout_s,
            )
            async with self._pool.acquire() as con:
                await con.execute("SELECT 1")
                # Keep statements single-purpose; asyncpg runs them one by one.
                for stmt in [s.strip() for s in SCHEMA.split(";") if s.strip()]:
                    await con.execute(stmt)
        except Exception as e:
            await self.close()
            raise StorageUnavailableError(f"postgres probe failed: {e}") from e

    async def close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("postgres backend is not open")
        return self._pool

    async def insert(self, turn: Turn) -> InsertResult:
        pool = self._require_pool()
        row = await pool.fetchrow(
            """
            INSERT INTO honey_turns (session_key, turn_type, content, token_estimate, created_at, metadata)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb)
            RETURNING id, created_at
            """,
            turn.session_key,
            turn.turn_type,
            turn.content,
            turn.token_estimate,
            _to_dt(turn.created_at),
            json.dumps(turn.metadata or {}, ensure_ascii=False),
        )
        return InsertResult(id=int(row["id"]), created_at=_to_ms(row["created_at"]) or turn.created_at)

    async def query_recent(self, session_key: str, since_ms: int, limit: Optional[int]) -> List[Turn]:
        pool = self._require_pool()
        rows = await pool.fetch(
            """
            SELECT id, session_key, turn_type, content, token_estimate, created_at, metadata
            FROM honey_turns
            WHERE session_key = $1 AND created_at > $2
            ORDER BY created_at DESC, id DESC
            LIMIT $3
            """,
            session_key,
            _to_dt(int(since_ms or 0)),
            int(limit) if limit is not None else None,
        )
        return [_row_to_turn(r) for r in rows]

    async def list_sessions(self) -> Set[str]:
        pool = self._require_pool()
        rows = await pool.fetch("SELECT DISTINCT session_key FROM honey_turns")
        return {str(r["session_key"]) for r in rows}

    async def stats(self) -> StorageStats:
        pool = self._require_pool()
        row = await pool.fetchrow(
            """
            SELECT
              COUNT(*) AS total_turns,
              COUNT(DISTINCT session_key) AS total_sessions,
              COALESCE(SUM(token_estimate), 0) AS total_tokens,
              MIN(created_at) AS oldest,
              MAX(created_at) AS newest
            FROM honey_turns
            """
        )
        return StorageStats(
            tier=self.name,
            total_turns=int(row["total_turns"] or 0),
            total_sessions=int(row["total_sessions"] or 0),
            total_tokens=int(row["total_tokens"] or 0),
            oldest=_to_ms(row["oldest"]),
            newest=_to_ms(row["newest"]),
        )

    async def prune_older_than(self, session_key: str, keep_count: int) -> int:
        pool = self._require_pool()
        status = await pool.execute(
            """
            DELETE FROM honey_turns
            WHERE session_key = $1 AND id NOT IN (
              SELECT id FROM honey_turns
              WHERE session_key = $1
              ORDER BY created_at DESC, id DESC
              LIMIT $2
            )
            """,
            session_key,
            max(0, int(keep_count)),
        )
        return _rowcount(status)

    async def delete_older_than(self, cutoff_ms: int) -> int:
        pool = self._require_pool()
        status = await pool.execute("DELETE FROM honey_turns WHERE created_at < $1", _to_dt(int(cutoff_ms)))
        return _rowcount(status)

    async def search(self, query: str, *, limit: int = 10, session_key: Optional[str] = None) -> List[Dict[str, Any]]:
        pool = self._require_pool()
        sql = """
            SELECT id, session_key, turn_type, content, token_estimate, created_at, metadata,
                   ts_rank(to_tsvector('english', content), plainto_tsquery('english', $1)) AS rank
            FROM honey_turns
            WHERE to_tsvector('english', content) @@ plainto_tsquery('english', $1)
        """
        params: List[Any] = [query]
        if session_key:
            params.append(session_key)
            sql += f" AND session_key = ${len(params)}"
        params.append(int(limit))
        sql += f" ORDER BY rank DESC, created_at DESC LIMIT ${len(params)}"
        rows = await pool.fetch(sql, *params)
        out: List[Dict[str, Any]] = []
        for r in rows:
            item = _row_to_turn(r).to_dict()
            item["rank"] = float(r["rank"] or 0.0)
            out.append(item)
        return out
