from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from honey.errors import SearchUnavailableError, WriteError
from honey.ingest import TurnIngestor
from honey.models import Turn, estimate_tokens
from honey.storage.base import guarded
from honey.storage.sqlite import SqliteBackend, _fts_query


def _turn(session: str, content: str, ts: int, turn_type: str = "user") -> Turn:
    return Turn(
        session_key=session,
        turn_type=turn_type,
        content=content,
        created_at=ts,
        token_estimate=estimate_tokens(content),
        metadata={"source": "test"},
    )


def test_insert_and_query_newest_first(tmp_path: Path) -> None:
    async def main() -> None:
        backend = SqliteBackend(tmp_path / "honey.db")
        await backend.open()
        try:
            first = await backend.insert(_turn("s1", "first", 100))
            await backend.insert(_turn("s1", "second", 200))
            await backend.insert(_turn("s1", "same time", 200))
            await backend.insert(_turn("s2", "elsewhere", 150))

            assert first.id >= 1
            assert first.created_at == 100

            rows = await backend.query_recent("s1", 0, None)
            assert [r.content for r in rows] == ["same time", "second", "first"]
            assert rows[-1].metadata == {"source": "test"}

            assert [r.content for r in await backend.query_recent("s1", 100, 10)] == ["same time", "second"]
            assert len(await backend.query_recent("s1", 0, 1)) == 1
            assert await backend.query_recent("unknown", 0, 10) == []

            assert await backend.list_sessions() == {"s1", "s2"}

            st = await backend.stats()
            assert st.tier == "sqlite"
            assert st.total_turns == 4
            assert st.total_sessions == 2
            assert st.oldest == 100
            assert st.newest == 200
        finally:
            await backend.close()

    asyncio.run(main())


def test_turns_survive_reopen(tmp_path: Path) -> None:
    async def main() -> None:
        backend = SqliteBackend(tmp_path / "honey.db")
        await backend.open()
        await backend.insert(_turn("s1", "persisted", 100))
        await backend.close()

        again = SqliteBackend(tmp_path / "honey.db")
        await again.open()
        try:
            assert [r.content for r in await again.query_recent("s1", 0, 10)] == ["persisted"]
        finally:
            await again.close()

    asyncio.run(main())


def test_prune_and_delete_older_than(tmp_path: Path) -> None:
    async def main() -> None:
        backend = SqliteBackend(tmp_path / "honey.db")
        await backend.open()
        try:
            for i in range(5):
                await backend.insert(_turn("s1", f"a{i}", 100 + i))
            await backend.insert(_turn("s2", "b0", 50))

            assert await backend.prune_older_than("s1", 3) == 2
            assert [r.content for r in await backend.query_recent("s1", 0, None)] == ["a4", "a3", "a2"]
            assert len(await backend.query_recent("s2", 0, None)) == 1

            assert await backend.delete_older_than(103) == 2
            assert [r.content for r in await backend.query_recent("s1", 0, None)] == ["a4", "a3"]
            assert await backend.query_recent("s2", 0, None) == []
        finally:
            await backend.close()

    asyncio.run(main())


def test_retention_cap_removes_the_oldest_turn(tmp_path: Path, tick) -> None:
    async def main() -> None:
        backend = SqliteBackend(tmp_path / "honey.db")
        await backend.open()
        try:
            ingestor = TurnIngestor(backend, retention_cap=500, clock=tick)
            for i in range(501):
                await ingestor.capture("s1", "user", f"turn {i}")
            await ingestor.capture("s2", "user", "untouched")

            rows = await backend.query_recent("s1", 0, None)
            assert len(rows) == 500
            contents = {r.content for r in rows}
            assert "turn 0" not in contents
            assert "turn 1" in contents
            assert "turn 500" in contents
            assert len(await backend.query_recent("s2", 0, None)) == 1
        finally:
            await backend.close()

    asyncio.run(main())


def test_fts_query_quotes_terms() -> None:
    assert _fts_query('deploy "prod" now') == '"deploy" """prod""" "now"'
    assert _fts_query("   ") == ""


def test_search(tmp_path: Path) -> None:
    async def main() -> bool:
        backend = SqliteBackend(tmp_path / "honey.db")
        await backend.open()
        try:
            if not backend._fts:
                return False
            await backend.insert(_turn("s1", "we deployed the honey service", 100))
            await backend.insert(_turn("s2", "the honey tasted sweet", 200))
            await backend.insert(_turn("s1", "unrelated chatter", 300))

            hits = await backend.search("honey", limit=10)
            assert {h["content"] for h in hits} == {"we deployed the honey service", "the honey tasted sweet"}
            assert all("rank" in h for h in hits)

            scoped = await backend.search("honey", limit=10, session_key="s2")
            assert [h["content"] for h in scoped] == ["the honey tasted sweet"]

            # pruned rows leave the index too
            await backend.delete_older_than(150)
            assert [h["content"] for h in await backend.search("deployed")] == []
            return True
        finally:
            await backend.close()

    if not asyncio.run(main()):
        pytest.skip("SQLite build lacks FTS5")


def test_search_without_fts_raises(tmp_path: Path) -> None:
    async def main() -> None:
        backend = SqliteBackend(tmp_path / "honey.db")
        await backend.open()
        backend._fts = False
        try:
            with pytest.raises(SearchUnavailableError):
                await backend.search("anything")
        finally:
            await backend.close()

    asyncio.run(main())


def test_timed_out_insert_is_not_committed_later(tmp_path: Path) -> None:
    async def stuck_commit() -> None:
        await asyncio.sleep(5)

    async def main() -> None:
        backend = SqliteBackend(tmp_path / "honey.db")
        await backend.open()
        try:
            con = backend._con
            con.commit = stuck_commit
            with pytest.raises(WriteError, match="timed out"):
                await guarded(
                    backend.insert(_turn("s1", "abandoned", 100)), error=WriteError, timeout_s=0.1, what="insert"
                )
            del con.commit

            await backend.insert(_turn("s1", "kept", 200))
            assert [r.content for r in await backend.query_recent("s1", 0, None)] == ["kept"]
        finally:
            await backend.close()

    asyncio.run(main())
