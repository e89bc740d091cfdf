from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional


def config_path() -> str:
    return os.getenv("HONEY_CONFIG", "honey.json")


@lru_cache(maxsize=1)
def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    p = Path(path or config_path())
    if not p.exists():
        return {}
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except Exception:
        return {}


def _get(cfg: Dict[str, Any], *path: str, default: Any = None) -> Any:
    cur: Any = cfg
    for k in path:
        if not isinstance(cur, dict) or k not in cur:
            return default
        cur = cur[k]
    return cur


def _setting(env: Optional[str], *path: str, default: Any = None) -> Any:
    """
    Environment first, then honey.json, then the default.
    """
    if env:
        v = os.getenv(env)
        if v is not None and v.strip() != "":
            return v
    return _get(load_config(), *path, default=default)


def _int(env: Optional[str], *path: str, default: int) -> int:
    try:
        return int(_setting(env, *path, default=default))
    except Exception:
        return default


def _float(env: Optional[str], *path: str, default: float) -> float:
    try:
        return float(_setting(env, *path, default=default))
    except Exception:
        return default


def _bool(env: Optional[str], *path: str, default: bool) -> bool:
    v = _setting(env, *path, default=default)
    if isinstance(v, str):
        return v.strip().lower() not in ("0", "false", "no", "off")
    return bool(v)


def server_host() -> str:
    return str(_setting("HONEY_HOST", "server", "host", default="127.0.0.1"))


def server_port() -> int:
    return _int("HONEY_PORT", "server", "port", default=7779)


def database_url() -> Optional[str]:
    v = _setting("DATABASE_URL", "storage", "database_url", default=None)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def data_dir() -> Path:
    p = Path(str(_setting("HONEY_DATA_DIR", "storage", "data_dir", default="./data")))
    p.mkdir(parents=True, exist_ok=True)
    return p


def storage_timeout_s() -> float:
    return _float("HONEY_STORAGE_TIMEOUT_S", "storage", "timeout_s", default=5.0)


def turns_per_injection() -> int:
    return _int("HONEY_LIMIT", "context", "limit", default=30)


def fresh_window_ms() -> int:
    return _int("HONEY_WINDOW_MS", "context", "window_ms", default=60 * 60 * 1000)


def max_context_tokens() -> int:
    return _int("HONEY_MAX_TOKENS", "context", "max_tokens", default=20000)


def retention_per_session() -> int:
    return _int(None, "retention", "per_session", default=500)


def flat_file_total_cap() -> int:
    return _int(None, "retention", "flat_file_total", default=5000)


def capture_max_chars() -> int:
    return _int(None, "capture", "max_chars", default=2000)


def sessions_dir() -> Path:
    v = _setting("HONEY_SESSIONS_DIR", "watcher", "dir", default="~/.openclaw/agents/main/sessions")
    return Path(str(v)).expanduser()


def watcher_enabled() -> bool:
    return _bool("HONEY_WATCHER", "watcher", "enabled", default=True)


def watcher_session_prefix() -> str:
    return str(_setting(None, "watcher", "session_prefix", default="oc-"))


def watcher_min_chars() -> int:
    return _int(None, "watcher", "min_chars", default=10)


def display_user_name() -> str:
    return str(_setting(None, "display", "user_name", default="User") or "User")


def display_assistant_name() -> str:
    return str(_setting(None, "display", "assistant_name", default="Assistant") or "Assistant")


def client_url() -> str:
    return str(_setting("HONEY_URL", "client", "url", default="http://localhost:7779")).rstrip("/")


def client_timeout_s() -> float:
    return _float(None, "client", "timeout_s", default=2.0)
