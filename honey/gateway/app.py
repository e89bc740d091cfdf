from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from honey import config
from honey.errors import HoneyError, SearchUnavailableError, ValidationError
from honey.gateway.protocol import CaptureRequest, error_body
from honey.service import HoneyService


logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def _required_param(name: str, value: Optional[str]) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"Missing {name} parameter")
    return value


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content=error_body(str(exc)))

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        parts = []
        for err in exc.errors():
            loc = ".".join(str(x) for x in err.get("loc", ()) if x not in ("body", "query"))
            parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        return JSONResponse(status_code=400, content=error_body("; ".join(parts) or "Invalid request"))

    @app.exception_handler(StarletteHTTPException)
    async def _http(request: Request, exc: StarletteHTTPException):
        if exc.status_code in (404, 405):
            return JSONResponse(status_code=404, content=error_body("Not found"))
        return JSONResponse(status_code=exc.status_code, content=error_body(str(exc.detail)))

    @app.exception_handler(SearchUnavailableError)
    async def _search_unavailable(request: Request, exc: SearchUnavailableError):
        return JSONResponse(status_code=501, content=error_body(str(exc)))

    @app.exception_handler(HoneyError)
    async def _honey(request: Request, exc: HoneyError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content=error_body(str(exc)))

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=error_body(str(exc) or exc.__class__.__name__))


def create_app(service: Optional[HoneyService] = None) -> FastAPI:
    service = service or HoneyService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.shutdown()

    app = FastAPI(title="Honey Memory Service", version=VERSION, lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)

    async def _health():
        stats = await service.stats()
        return {
            "status": "ok",
            "uptime": round(service.uptime_s(), 3),
            "total_turns": stats["total_turns"],
            "storage": service.backend.name,
            "persistent": service.backend.persistent,
        }

    app.add_api_route("/health", _health, methods=["GET"])
    app.add_api_route("/status", _health, methods=["GET"])

    @app.post("/capture")
    async def capture(body: CaptureRequest):
        res = await service.ingestor.capture(body.session_key, body.turn_type, body.content, body.metadata)
        return {"ok": res.ok, "timestamp": res.timestamp, "id": res.id, "storage": service.backend.name}

    @app.get("/context")
    async def context(
        session_key: Optional[str] = Query(None),
        limit: Optional[int] = Query(None, ge=1),
        since: int = Query(0, ge=0),
        max_tokens: Optional[int] = Query(None, ge=0),
    ):
        key = _required_param("session_key", session_key)
        win = await service.retriever.get_context(
            key,
            max_tokens=max_tokens,
            limit=limit if limit is not None else config.turns_per_injection(),
            since_ms=since,
        )
        out = win.to_dict()
        out["storage"] = service.backend.name
        return out

    @app.get("/fresh")
    async def fresh(
        session_key: Optional[str] = Query(None),
        window_ms: Optional[int] = Query(None, ge=0),
        max_tokens: Optional[int] = Query(None, ge=0),
        limit: Optional[int] = Query(None, ge=1),
    ):
        key = _required_param("session_key", session_key)
        win = await service.retriever.get_context(key, window_ms, max_tokens, limit)
        return {
            "ok": True,
            "session_key": key,
            "turns": [t.to_dict() for t in win.entries],
            "total_tokens": win.total_tokens,
            "count": win.count,
            "window_ms": win.window_ms,
            "cutoff": win.cutoff,
            "storage": service.backend.name,
        }

    @app.get("/context/formatted")
    async def context_formatted(
        session_key: Optional[str] = Query(None),
        window_ms: Optional[int] = Query(None, ge=0),
        max_tokens: Optional[int] = Query(None, ge=0),
        limit: Optional[int] = Query(None, ge=1),
    ):
        key = _required_param("session_key", session_key)
        fc = await service.retriever.get_formatted_context(key, window_ms, max_tokens, limit)
        return {
            "ok": True,
            "context": fc.context,
            "total_tokens": fc.total_tokens,
            "count": fc.count,
            "status": fc.status,
        }

    @app.get("/sessions")
    async def sessions():
        return {"sessions": await service.list_sessions()}

    @app.get("/stats")
    async def stats():
        return await service.stats()

    @app.get("/search")
    async def search(
        q: Optional[str] = Query(None),
        limit: int = Query(10, ge=1),
        session_key: Optional[str] = Query(None),
    ):
        query = _required_param("q", q)
        results = await service.search(query, limit=limit, session_key=session_key or None)
        return {"results": results, "count": len(results), "query": query}

    @app.post("/cleanup")
    async def cleanup(days: int = Query(7, ge=0)):
        return await service.cleanup(days)

    return app
