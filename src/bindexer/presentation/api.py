"""
Read-only HTTP façade over the event store.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..errors import BindexerError, InvalidQueryError
from ..log import get_logger
from ..ports.storage import EventStore

logger = get_logger(__name__)

_RESERVED = {"eventName", "limit", "offset", "orderBy", "orderDirection"}


def _render(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _coerce(value: str) -> Any:
    if value.isdigit():
        return int(value)
    if value in ("true", "false"):
        return value == "true"
    return value


def _int_param(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise InvalidQueryError(f"{name} must be an integer, got {raw!r}") from e


def create_app(store: EventStore, event_names: Sequence[str] | None = None, *, cors: bool = True) -> FastAPI:
    app = FastAPI(title="bindexer", docs_url=None, redoc_url=None)
    if cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "OPTIONS"],
            allow_headers=["Content-Type"],
        )

    @app.exception_handler(InvalidQueryError)
    async def _bad_query(_: Request, exc: InvalidQueryError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"success": False, "error": exc.message})

    @app.exception_handler(BindexerError)
    async def _failed(_: Request, exc: BindexerError) -> JSONResponse:
        logger.error("api_error", code=exc.code, error=exc.message)
        return JSONResponse(status_code=500, content={"success": False, "error": exc.message})

    @app.get("/api/events")
    def list_events(request: Request) -> dict[str, Any]:
        params = request.query_params
        filters = {k: _coerce(v) for k, v in params.items() if k not in _RESERVED}
        rows = store.query(
            params.get("eventName", ""),
            filters=filters or None,
            limit=_int_param(request, "limit", 100),
            offset=_int_param(request, "offset", 0),
            order_by=params.get("orderBy", "timestamp"),
            order_direction=params.get("orderDirection", "DESC"),
        )
        return {"success": True, "data": [{k: _render(v) for k, v in r.items()} for r in rows]}

    @app.get("/api/event-types")
    def event_types() -> dict[str, Any]:
        names = list(event_names) if event_names else store.list_event_names()
        return {"success": True, "data": names}

    @app.get("/health")
    def health() -> dict[str, Any]:
        counts = {}
        for name in store.list_event_names():
            counts[name] = store.count(name)
        return {"status": "ok", "events": counts}

    return app
