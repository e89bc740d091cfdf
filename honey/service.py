from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from honey import config
from honey.context import ContextRetriever
from honey.errors import ReadError, ValidationError, WriteError
from honey.ingest import TurnIngestor
from honey.storage.base import TurnBackend, guarded
from honey.storage.select import select_backend
from honey.watcher import TranscriptWatcher


logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


class HoneyService:
    """
    Process-scoped owner of the storage handle, ingestion, retrieval and the
    transcript watcher. Passed explicitly to the HTTP layer.
    """

    def __init__(
        self,
        *,
        backend: Optional[TurnBackend] = None,
        data_dir: Optional[Path] = None,
        database_url: Optional[str] = None,
        sessions_dir: Optional[Path] = None,
        watcher_enabled: Optional[bool] = None,
        timeout_s: Optional[float] = None,
        retention_cap: Optional[int] = None,
    ):
        self._backend = backend
        self._data_dir = data_dir
        self._database_url = database_url
        self._sessions_dir = sessions_dir
        self._watcher_enabled = watcher_enabled
        self.timeout_s = float(timeout_s if timeout_s is not None else config.storage_timeout_s())
        self.retention_cap = retention_cap
        self.ingestor: Optional[TurnIngestor] = None
        self.retriever: Optional[ContextRetriever] = None
        self.watcher: Optional[TranscriptWatcher] = None
        self.started_at = time.time()

    @property
    def backend(self) -> TurnBackend:
        if self._backend is None:
            raise RuntimeError("HoneyService has not been started")
        return self._backend

    async def start(self) -> None:
        self.started_at = time.time()
        if self._backend is None:
            self._backend = await select_backend(
                data_dir=self._data_dir or config.data_dir(),
                database_url=self._database_url if self._database_url is not None else config.database_url(),
                timeout_s=self.timeout_s,
                flat_total_cap=config.flat_file_total_cap(),
            )
        else:
            await self._backend.open()
        self.ingestor = TurnIngestor(self._backend, retention_cap=self.retention_cap, timeout_s=self.timeout_s)
        self.retriever = ContextRetriever(self._backend, timeout_s=self.timeout_s)

        enabled = self._watcher_enabled if self._watcher_enabled is not None else config.watcher_enabled()
        if enabled:
            self.watcher = TranscriptWatcher(self.ingestor, self._sessions_dir or config.sessions_dir())
            self.watcher.start()
        logger.info("Honey service started (storage=%s)", self._backend.name)

    async def shutdown(self) -> None:
        logger.info("Honey service shutting down...")
        if self.watcher is not None:
            await self.watcher.shutdown()
            self.watcher = None
        if self._backend is not None:
            try:
                await self._backend.close()
            except Exception:
                logger.exception("Error closing %s storage", self._backend.name)

    def uptime_s(self) -> float:
        return time.time() - self.started_at

    async def stats(self) -> Dict[str, Any]:
        st = await guarded(self.backend.stats(), error=ReadError, timeout_s=self.timeout_s, what="stats")
        out = st.to_dict()
        out["persistent"] = self.backend.persistent
        return out

    async def list_sessions(self) -> List[str]:
        sessions = await guarded(
            self.backend.list_sessions(), error=ReadError, timeout_s=self.timeout_s, what="list sessions"
        )
        return sorted(sessions)

    async def search(self, query: str, *, limit: int = 10, session_key: Optional[str] = None) -> List[Dict[str, Any]]:
        if not (query or "").strip():
            raise ValidationError("query parameter q required")
        return await guarded(
            self.backend.search(query, limit=limit, session_key=session_key),
            error=ReadError,
            timeout_s=self.timeout_s,
            what="search",
        )

    async def cleanup(self, days: int) -> Dict[str, Any]:
        """Delete every turn older than `days` days, across all sessions."""
        if days < 0:
            raise ValidationError("days must be >= 0")
        cutoff = int(time.time() * 1000) - int(days) * DAY_MS
        deleted = await guarded(
            self.backend.delete_older_than(cutoff), error=WriteError, timeout_s=self.timeout_s, what="cleanup"
        )
        logger.info("Cleanup removed %d turns older than %d days", deleted, days)
        return {"deleted": deleted, "cutoff": cutoff}
