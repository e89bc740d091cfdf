"""
Transcript watcher: tails append-only JSONL transcripts and forwards new
user/assistant messages to ingestion.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import aiofiles
from watchfiles import Change, awatch

from honey import config
from honey.errors import HoneyError, ParseError
from honey.ingest import TurnIngestor


logger = logging.getLogger(__name__)

TRANSCRIPT_SUFFIX = ".jsonl"
FORWARDED_ROLES = ("user", "assistant")


def derive_session_key(file_name: str, *, prefix: str = "oc-", length: int = 8) -> str:
    """
    Map a transcript file name (an opaque session id) onto a session key:
    prefix + the first `length` characters of the id.

    Lossy: ids sharing a prefix collide. The injection client relies on the
    exact same mapping to look context up, so both sides must change together.
    """
    stem = Path(file_name).name
    if stem.endswith(TRANSCRIPT_SUFFIX):
        stem = stem[: -len(TRANSCRIPT_SUFFIX)]
    return f"{prefix}{stem[:length]}"


def extract_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(c.get("text", "") or "")
            for c in content
            if isinstance(c, dict) and c.get("type") == "text"
        ]
        return "\n".join(p for p in parts if p)
    return ""


def parse_record(line: str) -> Optional[Tuple[str, str, Any]]:
    """
    Returns (role, text, original_timestamp) for a message entry, None for
    entries of any other kind. Raises ParseError on undecodable input.
    """
    try:
        entry = json.loads(line)
    except (json.JSONDecodeError, ValueError) as e:
        raise ParseError(f"invalid JSON: {e}") from e
    if not isinstance(entry, dict):
        raise ParseError("record is not an object")
    if entry.get("type") != "message" or not isinstance(entry.get("message"), dict):
        return None
    msg = entry["message"]
    return str(msg.get("role", "") or ""), extract_text(msg.get("content")), entry.get("timestamp")


class TranscriptWatcher:
    """
    Per-file states: unwatched -> baseline offset set -> watching -> reading -> watching.

    Offsets live only in this process. A fresh start baselines every file at
    its current size, so history is never replayed.
    """

    def __init__(
        self,
        ingestor: TurnIngestor,
        directory: Path,
        *,
        session_prefix: Optional[str] = None,
        min_chars: Optional[int] = None,
    ):
        self.ingestor = ingestor
        self.directory = Path(directory).expanduser().absolute()
        self.session_prefix = session_prefix if session_prefix is not None else config.watcher_session_prefix()
        self.min_chars = int(min_chars if min_chars is not None else config.watcher_min_chars())
        self.offsets: Dict[Path, int] = {}
        self._locks: Dict[Path, asyncio.Lock] = {}
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    def _lock_for(self, path: Path) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = self._locks[path] = asyncio.Lock()
        return lock

    @staticmethod
    def is_transcript(path: Path) -> bool:
        return path.suffix == TRANSCRIPT_SUFFIX

    async def observe(self, path: Path) -> bool:
        """Start tracking a file at its current size. Returns False if already tracked."""
        path = Path(path)
        if path in self.offsets:
            return False
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        self.offsets[path] = size
        logger.info("Watching %s", path.name)
        return True

    async def scan(self) -> int:
        if not self.directory.is_dir():
            return 0
        added = 0
        for p in sorted(self.directory.glob(f"*{TRANSCRIPT_SUFFIX}")):
            if await self.observe(p):
                added += 1
        return added

    async def process(self, path: Path) -> int:
        """
        Read the bytes appended since the last offset and forward qualifying
        records. Returns the number of turns forwarded.
        """
        path = Path(path)
        async with self._lock_for(path):
            if path not in self.offsets:
                await self.observe(path)
                return 0
            offset = self.offsets[path]
            try:
                size = path.stat().st_size
            except OSError as e:
                logger.error("Error processing %s: %s", path.name, e)
                return 0
            if size < offset:
                logger.info("%s shrank (%d -> %d bytes), re-baselining", path.name, offset, size)
                self.offsets[path] = size
                return 0
            if size == offset:
                return 0
            try:
                async with aiofiles.open(path, "rb") as f:
                    await f.seek(offset)
                    data = await f.read(size - offset)
            except OSError as e:
                logger.error("Error processing %s: %s", path.name, e)
                return 0
            self.offsets[path] = offset + len(data)

        return await self._forward_lines(path, data.decode("utf-8", errors="replace"))

    async def _forward_lines(self, path: Path, text: str) -> int:
        session_key = derive_session_key(path.name, prefix=self.session_prefix)
        forwarded = 0
        for line in text.split("\n"):
            line = line.strip()
            if not line:
                continue
            try:
                parsed = parse_record(line)
            except ParseError as e:
                logger.debug("Skipping malformed line in %s: %s", path.name, e)
                continue
            if parsed is None:
                continue
            role, content, original_ts = parsed
            if role not in FORWARDED_ROLES:
                continue
            if len(content.strip()) < self.min_chars:
                continue
            try:
                await self.ingestor.capture(
                    session_key,
                    role,
                    content,
                    {"source": "transcript-watcher", "file": path.name, "originalTimestamp": original_ts},
                )
            except HoneyError as e:
                logger.error("Failed to capture %s turn from %s: %s", role, path.name, e)
                continue
            forwarded += 1
            logger.info("Captured %s turn for %s (%d chars)", role, session_key, len(content))
        return forwarded

    async def _handle_change(self, change: Change, path: Path) -> None:
        if not self.is_transcript(path):
            return
        if change == Change.deleted:
            self.offsets.pop(path, None)
            self._locks.pop(path, None)
            return
        if path not in self.offsets:
            await self.observe(path)
            return
        if change == Change.modified:
            await self.process(path)

    async def run(self) -> None:
        count = await self.scan()
        logger.info("Monitoring %d transcript files in %s", count, self.directory)
        async for changes in awatch(self.directory, stop_event=self._stop, recursive=False):
            for change, path_str in sorted(changes, key=lambda c: c[1]):
                try:
                    await self._handle_change(change, Path(path_str))
                except Exception:
                    logger.exception("Watcher failed handling %s", path_str)

    def start(self) -> Optional[asyncio.Task]:
        if not self.directory.is_dir():
            logger.info("Transcript directory not found: %s", self.directory)
            return None
        self._stop.clear()
        self._task = asyncio.create_task(self.run())
        return self._task

    async def shutdown(self) -> None:
        self._stop.set()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Watcher task ended with an error")
        logger.info("Watcher stopped (%d files tracked)", len(self.offsets))
