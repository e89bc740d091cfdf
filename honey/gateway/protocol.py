"""
HTTP request bodies and response helpers.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel


class CaptureRequest(BaseModel):
    """Body of POST /capture. Presence of the required fields is checked by ingestion."""
    session_key: Optional[str] = None
    turn_type: Optional[str] = None
    content: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


def error_body(message: str) -> dict:
    return {"error": message}
