"""
main.py — FastAPI application for the Offering Engine

Mounts the pricing and line-item routers, configures logging at startup,
tags every request with an X-Request-ID and turns engine errors into
structured JSON responses.

Business Rules:
- ValidationError → 400, NotFoundError → 404, ConflictError → 409,
  PolicyViolationError / ComputationError → 422
- BatchError → 409 when any item failed on a stale version, 400 when
  every item failed validation or lookup, 422 otherwise
- Schema is managed by Alembic; the app never creates tables
- Unhandled exceptions are logged with the request id and return a
  generic 500

Called by: uvicorn offering_engine.main:app
Depends on: routers/*, logging_config, exceptions
"""

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .exceptions import (
    BatchError,
    ComputationError,
    ConflictError,
    EngineError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from .logging_config import setup_logging
from .routers import line_items, pricing
from .schemas.errors import ErrorResponse

_STATUS_FOR_ERROR = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    PolicyViolationError: 422,
    ComputationError: 422,
}

_BATCH_INPUT_ERRORS = {"ValidationError", "NotFoundError"}


def _status_for(exc: EngineError) -> int:
    if isinstance(exc, BatchError):
        if "ConflictError" in exc.failure_types:
            return 409
        return 400 if exc.failure_types <= _BATCH_INPUT_ERRORS else 422
    return next(
        (code for cls, code in _STATUS_FOR_ERROR.items() if isinstance(exc, cls)), 400
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info(f"Offering Engine {__version__} starting")
    yield
    logger.info("Offering Engine shutting down")


app = FastAPI(title="Offering Engine", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
    request.state.request_id = request_id
    with logger.contextualize(request_id=request_id):
        response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "")


# ── Error Handlers ───────────────────────────────────────────────────


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    status_code = _status_for(exc)
    if status_code == 409:
        logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    detail = exc.to_dict()
    body = ErrorResponse(
        error=exc.message,
        status_code=status_code,
        error_type=type(exc).__name__,
        retryable=exc.retryable,
        request_id=_request_id(request),
        detail={k: v for k, v in detail.items() if k in ("details", "failures")},
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    body = ErrorResponse(
        error=str(exc.detail),
        status_code=exc.status_code,
        error_type="HTTPException",
        request_id=_request_id(request),
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    body = ErrorResponse(
        error="Request validation failed",
        status_code=422,
        error_type="RequestValidationError",
        request_id=_request_id(request),
        detail=[
            {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
            for e in exc.errors()
        ],
    )
    return JSONResponse(status_code=422, content=body.model_dump())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    body = ErrorResponse(
        error="Internal server error",
        status_code=500,
        error_type=type(exc).__name__,
        request_id=_request_id(request),
    )
    return JSONResponse(status_code=500, content=body.model_dump())


# ── Routers ──────────────────────────────────────────────────────────

app.include_router(pricing.router)
app.include_router(line_items.router)


@app.get("/health")
def health():
    return {"status": "ok", "version": __version__}
