from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .routers.auth import router as auth_router
from .routers.parties import router as parties_router
from .routers.sales import router as sales_router
from .routers.payments import router as payments_router
from .routers.payables import router as payables_router
from .routers.posting_groups import router as posting_groups_router
from .routers.bank_reconciliations import router as bank_reconciliations_router
from .routers.platform import router as platform_router
from .routers.dev_tenants import router as dev_tenants_router
from .allocation import AllocationError
from .config import settings
from .deps import require_tenant_access
from .db import get_admin_conn, close_pools
from .logs import json_log
from .roles import Role
from .statement_matching import ReconciliationStateError, StatementLineError

app = FastAPI(title="Farm ERP API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)
SERVICE_NAME = "farm-erp-api"


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_content(detail: str, exc: Exception) -> dict:
    content = {"detail": detail}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return content


# Map common DB constraint/cast errors to 4xx so clients get actionable responses
# instead of generic 500s.
@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    # e.g. a malformed uuid in a path parameter
    return JSONResponse(status_code=400, content=_error_content("invalid value", exc))


@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_error_content("invalid reference", exc))


@app.exception_handler(pg_errors.UniqueViolation)
def _unique_violation(_req: Request, exc: Exception):
    # Two posts racing on one idempotency key, or a double clear/match, land here.
    return JSONResponse(status_code=409, content=_error_content("conflict", exc))


@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_error_content("constraint violation", exc))


# Domain rule violations that escape a router still surface as client errors.
@app.exception_handler(AllocationError)
def _allocation_error(_req: Request, exc: AllocationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(StatementLineError)
def _statement_line_error(_req: Request, exc: StatementLineError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ReconciliationStateError)
def _reconciliation_state_error(_req: Request, exc: ReconciliationStateError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


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
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if not path.startswith("/health"):
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=dur_ms,
        )
    return response


# Dev CORS: the web app runs on a different port during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router)
app.include_router(parties_router, dependencies=[Depends(require_tenant_access)])
app.include_router(sales_router, dependencies=[Depends(require_tenant_access)])
app.include_router(payments_router, dependencies=[Depends(require_tenant_access)])
app.include_router(payables_router, dependencies=[Depends(require_tenant_access)])
app.include_router(posting_groups_router, dependencies=[Depends(require_tenant_access)])
app.include_router(bank_reconciliations_router, dependencies=[Depends(require_tenant_access)])
app.include_router(platform_router)
# Dev-only helpers (route handlers self-disable unless dev tools are enabled).
app.include_router(dev_tenants_router)


@app.on_event("startup")
def _startup():
    try:
        with get_admin_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    except Exception as exc:
        json_log("warning", "startup.db_probe_failed", env=settings.env, error=str(exc))


@app.on_event("shutdown")
def _shutdown():
    close_pools()


@app.get("/")
def root():
    return {"status": "ok", "service": SERVICE_NAME}


def _db_health():
    try:
        with get_admin_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, str(exc)


def _probe_response(req: Request, ready_label: str, **extra):
    ok, err = _db_health()
    content = {
        "status": ready_label if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "request_id": _current_request_id(req),
        **extra,
    }
    if ok:
        return content
    if settings.env in {"local", "dev"}:
        content["error"] = err
    return JSONResponse(status_code=503, content=content)


@app.get("/health")
def health(req: Request):
    return _probe_response(req, "ok", started_at=STARTED_AT_UTC.isoformat())


@app.get("/health/live")
def health_live(req: Request):
    # Process liveness only; the database is not consulted.
    return {"status": "ok", "env": settings.env, "service": SERVICE_NAME, "request_id": _current_request_id(req)}


@app.get("/health/ready")
def health_ready(req: Request):
    return _probe_response(req, "ready")


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "dev_tools": settings.dev_tools_enabled,
        "roles": [r.value for r in Role],
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
