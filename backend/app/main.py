from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from psycopg import errors as pg_errors
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import uuid
from datetime import datetime, timezone
from .config import settings
from .db import close_pools, db_ping
from .logs import json_log
from .routers.auth import router as auth_router
from .routers.config import router as config_router
from .routers.clients import router as clients_router
from .routers.devis import router as devis_router
from .routers.ordres import router as ordres_router
from .routers.factures import router as factures_router
from .routers.paiements import router as paiements_router
from .routers.annulations import router as annulations_router
from .routers.caisse import router as caisse_router

SERVICE_NAME = "logistiga-billing"

app = FastAPI(title="Logistiga Billing API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_response(status_code: int, detail: str, exc: Exception) -> JSONResponse:
    content = {"detail": detail}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=status_code, content=content)


# Constraint and cast errors from Postgres become 4xx instead of generic 500s.
@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    # e.g. a malformed uuid in a path parameter
    return _error_response(400, "invalid value", exc)


@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    return _error_response(400, "invalid reference", exc)


@app.exception_handler(pg_errors.UniqueViolation)
def _unique_violation(_req: Request, exc: Exception):
    # Most likely two writers racing for the same document number.
    return _error_response(409, "conflict", exc)


@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    return _error_response(400, "constraint violation", exc)


@app.exception_handler(pg_errors.LockNotAvailable)
@app.exception_handler(pg_errors.DeadlockDetected)
@app.exception_handler(pg_errors.SerializationFailure)
def _busy(req: Request, exc: Exception):
    json_log("warning", "db.lock_contention", request_id=_current_request_id(req), path=req.url.path, error=str(exc))
    return _error_response(409, "document is being updated by another request; retry", exc)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(StarletteHTTPException)
async def _http_exception(req: Request, exc: StarletteHTTPException):
    # Raised 5xx (e.g. numbering exhausted) are server faults even though they are handled.
    if exc.status_code >= 500:
        json_log(
            "error",
            "http.request.failed",
            request_id=_current_request_id(req),
            method=req.method,
            path=req.url.path,
            status_code=exc.status_code,
            detail=exc.detail,
        )
    return await http_exception_handler(req, exc)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = request.client.host if request.client else None

    try:
        response = await call_next(request)
    except Exception as exc:
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=int((time.time() - started) * 1000),
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if path != "/health":
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=int((time.time() - started) * 1000),
        )
    return response

# The admin frontend runs on another origin.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router)
app.include_router(config_router)
app.include_router(clients_router)
app.include_router(devis_router)
app.include_router(ordres_router)
app.include_router(factures_router)
app.include_router(paiements_router)
app.include_router(annulations_router)
app.include_router(caisse_router)


@app.on_event("startup")
def _startup():
    ok, err = db_ping()
    if ok:
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    else:
        json_log("warning", "startup.db_probe_failed", env=settings.env, error=err)


@app.on_event("shutdown")
def _shutdown():
    close_pools()


@app.get("/health")
def health(req: Request):
    ok, err = db_ping()
    content = {
        "status": "ok" if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": _current_request_id(req),
    }
    if ok:
        return content
    if settings.env in {"local", "dev"}:
        content["error"] = err
    return JSONResponse(status_code=503, content=content)


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
