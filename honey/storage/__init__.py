from .base import TurnBackend, guarded
from .jsonl import JsonlBackend
from .select import probe_chain, select_backend

__all__ = ["TurnBackend", "guarded", "JsonlBackend", "probe_chain", "select_backend"]
