from __future__ import annotations

from pathlib import Path

import pytest

from honey import config


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("HONEY_CONFIG", str(tmp_path / "missing-honey.json"))
    monkeypatch.setenv("HONEY_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("HONEY_SESSIONS_DIR", str(tmp_path / "sessions"))
    monkeypatch.setenv("HONEY_WATCHER", "false")
    for name in ("DATABASE_URL", "HONEY_LIMIT", "HONEY_WINDOW_MS", "HONEY_MAX_TOKENS", "HONEY_URL"):
        monkeypatch.delenv(name, raising=False)
    config.load_config.cache_clear()
    yield
    config.load_config.cache_clear()


class Tick:
    """Deterministic clock: each call advances by `step` seconds."""

    def __init__(self, start: float = 1_700_000_000.0, step: float = 0.01):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


@pytest.fixture
def tick() -> Tick:
    return Tick()
