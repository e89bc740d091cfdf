from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from honey import config
from honey.errors import ValidationError, WriteError
from honey.models import Turn, estimate_tokens
from honey.storage.base import TurnBackend, guarded


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureResult:
    ok: bool
    timestamp: int
    id: int

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "timestamp": self.timestamp, "id": self.id}


def _required(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing required field: {name}")
    return value


class TurnIngestor:
    """
    Validates a turn, stamps it, writes it through the active tier and
    then trims the session back to its retention cap.
    """

    def __init__(
        self,
        backend: TurnBackend,
        *,
        retention_cap: Optional[int] = None,
        max_chars: Optional[int] = None,
        timeout_s: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.backend = backend
        self.retention_cap = int(retention_cap if retention_cap is not None else config.retention_per_session())
        self.max_chars = int(max_chars if max_chars is not None else config.capture_max_chars())
        self.timeout_s = float(timeout_s if timeout_s is not None else config.storage_timeout_s())
        self._clock = clock or time.time
        self._last_ms = 0

    def _now_ms(self) -> int:
        # Never hand out a timestamp older than one already assigned.
        now = int(self._clock() * 1000)
        if now < self._last_ms:
            now = self._last_ms
        self._last_ms = now
        return now

    async def capture(
        self,
        session_key: Any,
        turn_type: Any,
        content: Any,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CaptureResult:
        session_key = _required("session_key", session_key)
        turn_type = _required("turn_type", turn_type)
        content = _required("content", content)
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")

        if self.max_chars > 0 and len(content) > self.max_chars:
            content = content[: self.max_chars]

        turn = Turn(
            session_key=session_key,
            turn_type=turn_type,
            content=content,
            created_at=self._now_ms(),
            token_estimate=estimate_tokens(content),
            metadata=dict(metadata or {}),
        )
        res = await guarded(
            self.backend.insert(turn),
            error=WriteError,
            timeout_s=self.timeout_s,
            what=f"insert into {self.backend.name}",
        )

        if self.retention_cap > 0:
            try:
                removed = await guarded(
                    self.backend.prune_older_than(session_key, self.retention_cap),
                    error=WriteError,
                    timeout_s=self.timeout_s,
                    what=f"prune on {self.backend.name}",
                )
                if removed:
                    logger.debug("Pruned %d old turns for %s", removed, session_key)
            except WriteError as e:
                logger.warning("Retention prune failed for %s: %s", session_key, e)

        return CaptureResult(ok=True, timestamp=res.created_at, id=res.id)
