from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from honey.errors import StorageUnavailableError
from honey.storage.base import TurnBackend


logger = logging.getLogger(__name__)

SQLITE_FILENAME = "honey.db"
JSONL_FILENAME = "honey.jsonl"


def _postgres(dsn: str, timeout_s: float) -> TurnBackend:
    try:
        from honey.storage.postgres import PostgresBackend
    except ImportError as e:
        raise StorageUnavailableError(f"asyncpg is not installed: {e}") from e
    return PostgresBackend(dsn, connect_timeout_s=timeout_s)


def _sqlite(data_dir: Path) -> TurnBackend:
    # aiosqlite needs the interpreter's native _sqlite3 module.
    try:
        from honey.storage.sqlite import SqliteBackend
    except ImportError as e:
        raise StorageUnavailableError(f"sqlite support is not available: {e}") from e
    return SqliteBackend(data_dir / SQLITE_FILENAME)


def _jsonl(data_dir: Path, total_cap: int) -> TurnBackend:
    from honey.storage.jsonl import JsonlBackend

    return JsonlBackend(data_dir / JSONL_FILENAME, total_cap=total_cap)


def probe_chain(
    *,
    data_dir: Path,
    database_url: Optional[str] = None,
    timeout_s: float = 5.0,
    flat_total_cap: int = 5000,
) -> List[Tuple[str, Callable[[], TurnBackend]]]:
    """
    Ordered tier candidates, most durable first. The cloud tier is only
    tried when a connection string is configured.
    """
    chain: List[Tuple[str, Callable[[], TurnBackend]]] = []
    if database_url:
        chain.append(("postgres", lambda: _postgres(database_url, timeout_s)))
    chain.append(("sqlite", lambda: _sqlite(data_dir)))
    chain.append(("jsonl", lambda: _jsonl(data_dir, flat_total_cap)))
    return chain


async def select_backend(
    *,
    data_dir: Path,
    database_url: Optional[str] = None,
    timeout_s: float = 5.0,
    flat_total_cap: int = 5000,
) -> TurnBackend:
    """
    Open the first tier whose probe succeeds. Called once per process;
    there is no re-selection at runtime.
    """
    errors: List[str] = []
    chain = probe_chain(
        data_dir=Path(data_dir),
        database_url=database_url,
        timeout_s=timeout_s,
        flat_total_cap=flat_total_cap,
    )
    for name, factory in chain:
        try:
            backend = factory()
            await backend.open()
        except StorageUnavailableError as e:
            logger.warning("Storage tier %s unavailable, falling back: %s", name, e)
            errors.append(f"{name}: {e}")
            continue
        logger.info("Storage tier selected: %s", backend.name)
        return backend
    raise StorageUnavailableError("No storage tier available (" + "; ".join(errors) + ")")
