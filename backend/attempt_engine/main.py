"""
Attempt Engine - FastAPI entry point.

Wires the engine's HTTP surface together: JSON logging, a request-id
middleware that also tags log entries with the attempt a request is
about, the mapping from engine errors to HTTP status codes, and the
template, attempt and hosted-session routers. Hosted sessions are
flushed and their clocks stopped when the app shuts down.

Layout:
- core/: in-memory engine (clock, timer, answers, state machine, sync)
- services/: SQL and HTTP persistence boundaries, grading, session registry
- routes/: REST handlers
- models/: SQLAlchemy tables behind the persistence boundary
"""

import re
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from attempt_engine.logging_config import (
    setup_logging, get_logger, log_with_context,
    request_id_var, generate_request_id
)
from attempt_engine.errors import AttemptEngineError
from attempt_engine.routes import attempts, sessions, templates
from attempt_engine.database import DATABASE_URL, create_tables
from attempt_engine.services.sessions import get_registry

setup_logging()
logger = get_logger("http")

if DATABASE_URL.startswith("sqlite"):
    logger.info("Using SQLite, creating tables directly")
    create_tables()

ATTEMPT_PATH = re.compile(r"^/api/(?:attempts|sessions)/([^/]+)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Flush and stop every hosted clock so no attempt loses its last seconds
    app.dependency_overrides.get(get_registry, get_registry)().shutdown()


app = FastAPI(
    title="Attempt Engine",
    description=(
        "Timed multi-section test attempts: per-section countdowns, answer "
        "capture, review marks, periodic progress sync and idempotent "
        "final submission with grading."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"]
)


def _request_context(request: Request, req_id: str) -> dict:
    context = {"request_id": req_id}
    match = ATTEMPT_PATH.match(request.url.path)
    if match and match.group(1) != "start":
        context["attempt_id"] = match.group(1)
    return context


# ──────────────────────────────────────────────────────────────
# Request ID middleware
#
# Reuses the caller's X-Request-ID (remote engines send one per flush)
# or mints a UUID, binds it for every log entry of the request and
# echoes it back.
# ──────────────────────────────────────────────────────────────
@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID") or generate_request_id()
    request_id_var.set(req_id)
    context = _request_context(request, req_id)
    started = time.time()

    log_with_context(logger, "DEBUG",
        "{} {} received".format(request.method, request.url.path),
        context=context,
        extra_data={
            "ip": request.client.host if request.client else "unknown",
            "query_params": dict(request.query_params)
        })

    response = await call_next(request)

    response.headers["X-Request-ID"] = req_id
    log_with_context(logger, "INFO" if response.status_code < 500 else "ERROR",
        "{} {} -> {}".format(request.method, request.url.path, response.status_code),
        context=context,
        extra_data={
            "duration_ms": round((time.time() - started) * 1000, 2),
            "status_code": response.status_code
        })
    return response


# ──────────────────────────────────────────────────────────────
# Engine errors → HTTP
#
# StaleAttemptState → 409, InvalidOperation → 400, NotFound → 404,
# PersistenceFailure → 503 (retryable)
# ──────────────────────────────────────────────────────────────
@app.exception_handler(AttemptEngineError)
async def engine_error_handler(request: Request, exc: AttemptEngineError):
    level = "ERROR" if exc.status_code >= 500 else "WARNING"
    log_with_context(logger, level,
        f"{type(exc).__name__}: {exc.message}",
        context=_request_context(request, request_id_var.get("")),
        extra_data={"path": request.url.path, "status_code": exc.status_code})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


for router, tag in ((templates.router, "Templates"),
                    (attempts.router, "Attempts"),
                    (sessions.router, "Sessions")):
    app.include_router(router, tags=[tag])


@app.get("/health", tags=["Health"])
def health_check():
    return {"status": "healthy", "service": "attempt-engine", "version": "1.0.0"}


@app.get("/", tags=["Root"])
def root():
    """Service name and a map of the endpoints."""
    return {
        "service": "Attempt Engine",
        "version": app.version,
        "docs": app.docs_url,
        "health": "/health",
        "endpoints": {
            "create_template": "POST /api/templates",
            "list_attempts": "GET /api/attempts",
            "start_attempt": "POST /api/attempts/start",
            "get_attempt": "GET /api/attempts/{id}",
            "save_progress": "PATCH /api/attempts/{id}/save-progress",
            "submit": "POST /api/attempts/{id}/submit",
            "open_session": "POST /api/sessions",
            "session_intents": "POST /api/sessions/{id}/answer|review|navigate|end-section|submit|pause|resume|flush|cancel",
            "close_session": "DELETE /api/sessions/{id}"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("attempt_engine.main:app", host="0.0.0.0", port=8000)
