"""FastAPI application for the action plan engine.

Wires settings, storage, the engine singleton, error bodies and routers.
Run locally with ``python -m plan_engine.main``.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .database import close_db_pool, init_db
from .database_pool import get_db
from .errors import (
    BaseError,
    ErrorCode,
    NotFoundError,
    ValidationError,
    error_log_record,
    handle_api_error,
    map_error_to_http_status,
)
from .errors.exceptions import SystemError as EngineSystemError
from .routers import RouterRegistry, get_all_routers
from .services.foundation.logging_config import setup_logging
from .services.foundation.settings import get_settings
from .services.plans.plan_service import get_plan_engine, reset_plan_engine

logger = logging.getLogger("plan_engine.main")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging()
    settings = get_settings()
    init_db()
    with get_db() as conn:
        check = conn.execute("PRAGMA quick_check").fetchone()
    logger.info(
        "Plan engine %s up: registry %s, validation timeout %.1fs, queue timeout %.1fs, SSE at %s",
        __version__,
        check[0] if check else "unknown",
        settings.mutation_validation_timeout,
        settings.mutation_queue_timeout,
        ", ".join(RouterRegistry.streaming_paths()) or "-",
    )
    get_plan_engine()
    try:
        yield
    finally:
        reset_plan_engine()
        close_db_pool()
        logger.info("Plan engine stopped")


app = FastAPI(
    title="Action Plan Engine",
    description="Task dependency graph, ordering, progress tracking and history for action plans",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in get_settings().cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["ETag", "Location"],
)


def _error_json(error: BaseError, status_code: int, include_debug: bool = False) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=handle_api_error(error, include_debug=include_debug))


@app.exception_handler(BaseError)
async def engine_error_handler(_request: Request, exc: BaseError):
    return _error_json(exc, map_error_to_http_status(exc))


@app.exception_handler(RequestValidationError)
async def request_schema_handler(_request: Request, exc: RequestValidationError):
    error = ValidationError(
        message="Request does not match the API schema",
        error_code=ErrorCode.SCHEMA_VALIDATION_FAILED,
        context={"errors": exc.errors()},
    )
    return _error_json(error, 422)


@app.exception_handler(StarletteHTTPException)
async def routing_error_handler(request: Request, exc: StarletteHTTPException):
    where = {"method": request.method, "path": request.url.path}
    if exc.status_code == 404:
        error: BaseError = NotFoundError(
            f"Nothing served at {request.url.path}", error_code=ErrorCode.PLAN_NOT_FOUND, **where
        )
    elif exc.status_code == 405:
        error = ValidationError(
            message=f"{request.method} is not supported here",
            error_code=ErrorCode.INVALID_FIELD_FORMAT,
            context=where,
        )
    else:
        error = EngineSystemError(
            message=str(exc.detail or exc.status_code),
            error_code=ErrorCode.INTERNAL_SERVER_ERROR,
            context=where,
        )
    return _error_json(error, exc.status_code)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    error = EngineSystemError(
        message="Internal server error",
        error_code=ErrorCode.INTERNAL_SERVER_ERROR,
        cause=exc,
        context={"method": request.method, "path": request.url.path},
    )
    logger.error("Unhandled %s on %s", type(exc).__name__, request.url.path, extra=error_log_record(error))
    return _error_json(error, 500, include_debug=get_settings().api_debug)


for router in get_all_routers():
    app.include_router(router)


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "Action Plan Engine", "version": __version__}


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("plan_engine.main:app", host=settings.backend_host, port=settings.backend_port, reload=True)
