from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import aiosqlite

from honey.errors import StorageUnavailableError
from honey.models import InsertResult, StorageStats, Turn, decode_metadata
from honey.storage.base import TurnBackend


logger = logging.getLogger(__name__)


def _row_to_turn(r: aiosqlite.Row) -> Turn:
    return Turn(
        id=int(r["id"]),
        session_key=str(r["session_key"]),
        turn_type=str(r["turn_type"]),
        content=str(r["content"]),
        created_at=int(r["timestamp"] or 0),
        token_estimate=int(r["token_estimate"] or 0),
        metadata=decode_metadata(r["metadata"]),
    )


def _fts_query(query: str) -> str:
    # Quote every term so FTS5 operators in user input are taken literally; terms are ANDed.
    terms = [t for t in re.split(r"\s+", (query or "").strip()) if t]
    return " ".join('"' + t.replace('"', '""') + '"' for t in terms)


class SqliteBackend(TurnBackend):
    """
    Embedded transactional tier:
    - turns table indexed by (session_key, timestamp DESC)
    - FTS5 shadow table kept in sync by triggers, when the SQLite build has FTS5
    """

    name = "sqlite"
    persistent = True

    def __init__(self, path: Path):
        self.path = Path(path)
        self._con: aiosqlite.Connection | None = None
        self._fts = False
        self._write_lock = asyncio.Lock()

    async def open(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            con = await aiosqlite.connect(str(self.path))
        except Exception as e:
            raise StorageUnavailableError(f"sqlite open failed: {e}") from e
        self._con = con
        try:
            con.row_factory = aiosqlite.Row
            await con.execute("PRAGMA journal_mode=WAL")
            await con.execute("PRAGMA synchronous=NORMAL")
            await con.execute(
                """
                CREATE TABLE IF NOT EXISTS turns (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  session_key TEXT NOT NULL,
                  turn_type TEXT NOT NULL,
                  content TEXT NOT NULL,
                  token_estimate INTEGER NOT NULL DEFAULT 0,
                  timestamp INTEGER NOT NULL,
                  metadata TEXT NOT NULL DEFAULT '{}'
                )
                """
            )
            await con.execute("CREATE INDEX IF NOT EXISTS idx_session_time ON turns(session_key, timestamp DESC)")
            await con.execute("CREATE INDEX IF NOT EXISTS idx_turns_time ON turns(timestamp DESC)")
            await con.commit()
        except Exception as e:
            await self.close()
            raise StorageUnavailableError(f"sqlite schema setup failed: {e}") from e
        self._fts = await self._init_fts()

    async def _init_fts(self) -> bool:
        con = self._require_con()
        try:
            await con.execute(
                """
                CREATE VIRTUAL TABLE IF NOT EXISTS turns_fts
                USING fts5(content, content='turns', content_rowid='id')
                """
            )
            await con.executescript(
                """
                CREATE TRIGGER IF NOT EXISTS turns_ai AFTER INSERT ON turns BEGIN
                  INSERT INTO turns_fts(rowid, content) VALUES (new.id, new.content);
                END;
                CREATE TRIGGER IF NOT EXISTS turns_ad AFTER DELETE ON turns BEGIN
                  INSERT INTO turns_fts(turns_fts, rowid, content) VALUES('delete', old.id, old.content);
                END;
                """
            )
            await con.commit()
            return True
        except Exception as e:
            logger.warning("SQLite FTS5 unavailable, search disabled: %s", e)
            await con.rollback()
            return False

    async def close(self) -> None:
        con, self._con = self._con, None
        if con is not None:
            await con.close()

    def _require_con(self) -> aiosqlite.Connection:
        if self._con is None:
            raise RuntimeError("sqlite backend is not open")
        return self._con

    async def _write(self, sql: str, params: tuple) -> aiosqlite.Cursor:
        """
        Execute and commit one statement as a unit on the shared connection.
        A write that fails or is cancelled midway is rolled back, so a later
        commit from another caller never persists it.
        """
        con = self._require_con()
        async with self._write_lock:
            try:
                cur = await con.execute(sql, params)
                await con.commit()
            except BaseException:
                await con.rollback()
                raise
            return cur

    async def insert(self, turn: Turn) -> InsertResult:
        cur = await self._write(
            """
            INSERT INTO turns (session_key, turn_type, content, token_estimate, timestamp, metadata)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                turn.session_key,
                turn.turn_type,
                turn.content,
                turn.token_estimate,
                turn.created_at,
                json.dumps(turn.metadata or {}, ensure_ascii=False),
            ),
        )
        return InsertResult(id=int(cur.lastrowid), created_at=turn.created_at)

    async def query_recent(self, session_key: str, since_ms: int, limit: Optional[int]) -> List[Turn]:
        con = self._require_con()
        cur = await con.execute(
            """
            SELECT id, session_key, turn_type, content, token_estimate, timestamp, metadata
            FROM turns
            WHERE session_key = ? AND timestamp > ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
            """,
            (session_key, int(since_ms or 0), int(limit) if limit is not None else -1),
        )
        rows = await cur.fetchall()
        return [_row_to_turn(r) for r in rows]

    async def list_sessions(self) -> Set[str]:
        con = self._require_con()
        cur = await con.execute("SELECT DISTINCT session_key FROM turns")
        return {str(r["session_key"]) for r in await cur.fetchall()}

    async def stats(self) -> StorageStats:
        con = self._require_con()
        cur = await con.execute(
            """
            SELECT COUNT(*) AS n, COUNT(DISTINCT session_key) AS sessions,
                   COALESCE(SUM(token_estimate), 0) AS tokens,
                   MIN(timestamp) AS oldest, MAX(timestamp) AS newest
            FROM turns
            """
        )
        row = await cur.fetchone()
        return StorageStats(
            tier=self.name,
            total_turns=int(row["n"] or 0),
            total_sessions=int(row["sessions"] or 0),
            total_tokens=int(row["tokens"] or 0),
            oldest=row["oldest"],
            newest=row["newest"],
            db_path=str(self.path),
        )

    async def prune_older_than(self, session_key: str, keep_count: int) -> int:
        cur = await self._write(
            """
            DELETE FROM turns WHERE session_key = ? AND id NOT IN (
              SELECT id FROM turns WHERE session_key = ? ORDER BY timestamp DESC, id DESC LIMIT ?
            )
            """,
            (session_key, session_key, max(0, int(keep_count))),
        )
        return max(0, cur.rowcount)

    async def delete_older_than(self, cutoff_ms: int) -> int:
        cur = await self._write("DELETE FROM turns WHERE timestamp < ?", (int(cutoff_ms),))
        return max(0, cur.rowcount)

    async def search(self, query: str, *, limit: int = 10, session_key: Optional[str] = None) -> List[Dict[str, Any]]:
        if not self._fts:
            return await super().search(query, limit=limit, session_key=session_key)
        fts_query = _fts_query(query)
        if not fts_query:
            return []
        con = self._require_con()
        sql = """
            SELECT t.id, t.session_key, t.turn_type, t.content, t.token_estimate, t.timestamp, t.metadata,
                   bm25(turns_fts) AS score
            FROM turns_fts
            JOIN turns t ON t.id = turns_fts.rowid
            WHERE turns_fts MATCH ?
        """
        params: List[Any] = [fts_query]
        if session_key:
            sql += " AND t.session_key = ?"
            params.append(session_key)
        sql += " ORDER BY score, t.timestamp DESC LIMIT ?"
        params.append(int(limit))
        cur = await con.execute(sql, tuple(params))
        out: List[Dict[str, Any]] = []
        for r in await cur.fetchall():
            item = _row_to_turn(r).to_dict()
            # bm25() is lower-is-better; flip it so higher rank means a better match.
            item["rank"] = -float(r["score"] or 0.0)
            out.append(item)
        return out
