"""
TaskForge Auth API - FastAPI application
"""
import json
import logging
import os
import time
import uuid
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import Response

# Load environment variables from the project .env if present.
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")

from .auth_routes import router as auth_router
from .config import _env_bool, _env_int, _normalize_base_url, debug_enabled
from .dependencies import get_account_guard
from .schemas.api_response import (
    error_from_detail,
    error_payload,
    is_api_response_payload,
    success_payload,
)
from .services.account_store import FirestoreAccountStore
from .utils.firestore_client import firebase_status


logging.basicConfig(
    level=logging.DEBUG if debug_enabled() else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _startup_snapshot() -> dict:
    return {
        "debug": debug_enabled(),
        "email_provider": (os.getenv("EMAIL_PROVIDER") or "auto").strip().lower(),
        "frontend_app_url": _normalize_base_url(os.getenv("FRONTEND_APP_URL") or ""),
        "account_store_backend": (os.getenv("ACCOUNT_STORE_BACKEND") or "auto").strip().lower(),
        "cors_origins": _get_cors_origins(),
        "has_token_secret": bool((os.getenv("TOKEN_SECRET") or os.getenv("JWT_SECRET") or "").strip()),
        "has_admin_invite_token": bool((os.getenv("ADMIN_INVITE_TOKEN") or "").strip()),
        "firebase_credential_source": firebase_status()["credential_source"],
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("[Startup] TaskForge Auth API starting")
    try:
        logger.info(json.dumps({"event": "startup_checklist", **_startup_snapshot()}))
    except Exception as exc:
        logger.warning("[Startup] Could not generate startup snapshot: %s", exc)

    # Fail fast on missing secrets rather than on the first login.
    guard = _account_guard()
    logger.info("[Startup] Account store: %s", type(guard.store).__name__)
    if _env_bool("BACKFILL_EMAIL_LOWER") and isinstance(guard.store, FirestoreAccountStore):
        await guard.store.backfill_email_lower()

    yield

    logger.info("[Shutdown] complete")


app = FastAPI(
    title="TaskForge Auth API",
    description="Registration, OTP email verification, login and password reset",
    version="1.0.0",
    lifespan=lifespan,
)


def _account_guard():
    factory = app.dependency_overrides.get(get_account_guard, get_account_guard)
    return factory()


def _request_id_from_request(request: Request) -> str | None:
    from_state = getattr(request.state, "request_id", None)
    if isinstance(from_state, str) and from_state.strip():
        return from_state.strip()
    from_header = (request.headers.get("x-request-id") or "").strip()
    return from_header or None


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=error_from_detail(exc.detail, request_id=_request_id_from_request(request)),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content=error_payload(
            message="Validation error",
            data={"errors": json.loads(json.dumps(exc.errors(), default=str))},
            request_id=_request_id_from_request(request),
        ),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = _request_id_from_request(request)
    logger.exception(
        "[UnhandledError] request_id=%s path=%s error=%s: %s",
        request_id,
        request.url.path,
        type(exc).__name__,
        exc,
    )
    return JSONResponse(
        status_code=500,
        content=error_payload(
            message="Server error",
            data={"error": "internal_server_error"},
            request_id=request_id,
        ),
    )


@app.middleware("http")
async def api_response_envelope_middleware(request: Request, call_next):
    response = await call_next(request)

    path = request.url.path
    if (
        not path.startswith("/api")
        or request.method == "OPTIONS"
        or response.status_code >= 400
    ):
        return response

    content_type = (response.headers.get("content-type") or "").lower()
    if "application/json" not in content_type:
        return response

    raw_body = b""
    async for chunk in response.body_iterator:
        raw_body += chunk

    headers = {
        header: value
        for header, value in response.headers.items()
        if header.lower() not in {"content-length", "content-type"}
    }
    try:
        decoded = json.loads(raw_body) if raw_body else None
    except Exception:
        return Response(
            content=raw_body,
            status_code=response.status_code,
            headers=headers,
            media_type="application/json",
        )

    if is_api_response_payload(decoded):
        payload = decoded
        request_id = _request_id_from_request(request)
        if request_id:
            payload.setdefault("requestId", request_id)
    else:
        payload = success_payload(data=decoded, request_id=_request_id_from_request(request))

    return JSONResponse(status_code=response.status_code, content=payload, headers=headers)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    if _env_bool("ENABLE_HSTS", not debug_enabled()):
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    if request.url.path.startswith("/api"):
        response.headers["Cache-Control"] = "no-store"
    return response


_max_request_body_bytes = _env_int("MAX_REQUEST_BODY_BYTES", 1_048_576)

_auth_rate_limit_enabled = _env_bool("AUTH_RATE_LIMIT_ENABLED", True)
_auth_rate_limit_max = _env_int("AUTH_RATE_LIMIT_MAX", 10)
_auth_rate_limit_window = _env_int("AUTH_RATE_LIMIT_WINDOW_SECONDS", 300)
_auth_rate_limit_store = defaultdict(deque)
_auth_rate_limited_paths = {
    "/api/auth/register",
    "/api/auth/login",
    "/api/auth/verify-otp",
    "/api/auth/resend-otp",
    "/api/auth/resend-verification-old-users",
    "/api/auth/forgot-password",
}
_auth_rate_limit_last_sweep = 0.0


def _auth_rate_limit_allows(key: str, now: float) -> bool:
    global _auth_rate_limit_last_sweep
    window_start = now - _auth_rate_limit_window
    # Drop idle clients at most once per window.
    if now - _auth_rate_limit_last_sweep >= _auth_rate_limit_window:
        idle = [
            bucket_key
            for bucket_key, timestamps in _auth_rate_limit_store.items()
            if not timestamps or timestamps[-1] <= window_start
        ]
        for bucket_key in idle:
            del _auth_rate_limit_store[bucket_key]
        _auth_rate_limit_last_sweep = now

    bucket = _auth_rate_limit_store[key]
    while bucket and bucket[0] <= window_start:
        bucket.popleft()
    if len(bucket) >= _auth_rate_limit_max:
        return False
    bucket.append(now)
    return True


@app.middleware("http")
async def request_size_limit_middleware(request: Request, call_next):
    if request.method in {"POST", "PUT", "PATCH"} and request.url.path.startswith("/api"):
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                if int(content_length) > _max_request_body_bytes:
                    return JSONResponse(
                        status_code=413,
                        content=error_payload(
                            message="Request payload too large",
                            request_id=_request_id_from_request(request),
                        ),
                    )
            except ValueError:
                return JSONResponse(
                    status_code=400,
                    content=error_payload(
                        message="Invalid Content-Length header",
                        request_id=_request_id_from_request(request),
                    ),
                )
    return await call_next(request)


@app.middleware("http")
async def auth_rate_limit_middleware(request: Request, call_next):
    # Per-IP guard in front of the per-account OTP counters.
    if not _auth_rate_limit_enabled or request.method != "POST":
        return await call_next(request)

    path = request.url.path
    if path not in _auth_rate_limited_paths:
        return await call_next(request)

    client_host = request.client.host if request.client else "unknown"
    if not _auth_rate_limit_allows(f"{client_host}:{path}", time.time()):
        return JSONResponse(
            status_code=429,
            content=error_payload(
                message="Too many auth requests. Please wait and retry.",
                request_id=_request_id_from_request(request),
            ),
            headers={"Retry-After": str(_auth_rate_limit_window)},
        )
    return await call_next(request)


# Registered last so it runs first and every other middleware sees the id.
@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = (request.headers.get("x-request-id") or "").strip() or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _get_cors_origins():
    if _env_bool("CORS_ALLOW_ALL"):
        return ["*"]
    raw = os.getenv("CORS_ORIGINS", "")
    if raw:
        return [origin.strip() for origin in raw.split(",") if origin.strip()]
    if not debug_enabled():
        frontend_app_url = _normalize_base_url(os.getenv("FRONTEND_APP_URL") or "")
        return [frontend_app_url] if frontend_app_url else []
    # Local dev defaults
    return [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


_cors_allow_all = _env_bool("CORS_ALLOW_ALL")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=not _cors_allow_all,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=_env_int("CORS_MAX_AGE_SECONDS", 86400),
)

app.include_router(auth_router)


@app.get("/")
async def root():
    return {
        "message": "TaskForge Auth API",
        "version": "1.0.0",
        "status": "online",
        "endpoints": {
            "docs": "/docs",
            "register": "/api/auth/register",
            "verify_otp": "/api/auth/verify-otp",
            "login": "/api/auth/login",
        },
    }


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/health")
async def api_health():
    guard = _account_guard()
    return {
        "status": "healthy",
        "account_store": "firestore" if isinstance(guard.store, FirestoreAccountStore) else "memory",
        "email_configured": bool(getattr(guard.mailer, "email_configured", False)),
        "firebase": firebase_status() if debug_enabled() else "hidden",
    }
