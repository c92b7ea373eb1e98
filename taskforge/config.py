"""Environment-driven settings.

Values are read at call time so that tests and long-running workers pick up
changes to the process environment without a restart.
"""
from __future__ import annotations

import os
from datetime import timedelta


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except Exception:
        return default
    return parsed if parsed > 0 else default


def _normalize_base_url(value: str) -> str:
    candidate = (value or "").strip()
    if not candidate:
        return ""
    if not candidate.startswith("http://") and not candidate.startswith("https://"):
        candidate = f"https://{candidate}"
    return candidate.rstrip("/")


def debug_enabled() -> bool:
    return _env_bool("DEBUG", False)


def app_name() -> str:
    return (os.getenv("APP_NAME") or "TaskForge").strip() or "TaskForge"


def token_secret() -> str:
    secret = (os.getenv("TOKEN_SECRET") or os.getenv("JWT_SECRET") or "").strip()
    if secret:
        return secret
    if debug_enabled():
        return "taskforge-dev-secret"
    raise RuntimeError("TOKEN_SECRET must be configured.")


def session_token_ttl() -> timedelta:
    return timedelta(days=_env_int("SESSION_TOKEN_TTL_DAYS", 100))


def password_reset_token_ttl() -> timedelta:
    return timedelta(minutes=_env_int("PASSWORD_RESET_TOKEN_TTL_MINUTES", 5))


def otp_ttl() -> timedelta:
    return timedelta(minutes=_env_int("OTP_TTL_MINUTES", 5))


def otp_lockout_duration() -> timedelta:
    return timedelta(minutes=_env_int("OTP_LOCKOUT_MINUTES", 5))


def otp_max_failed_attempts() -> int:
    return _env_int("OTP_MAX_FAILED_ATTEMPTS", 5)


def otp_max_resends() -> int:
    return _env_int("OTP_MAX_RESENDS", 5)


def frontend_app_url() -> str:
    explicit = _normalize_base_url(os.getenv("FRONTEND_APP_URL") or "")
    if explicit:
        return explicit
    if debug_enabled():
        return "http://localhost:5173"
    raise RuntimeError("FRONTEND_APP_URL must be configured.")


def admin_invite_token() -> str:
    return (os.getenv("ADMIN_INVITE_TOKEN") or "").strip()


def account_store_backend() -> str:
    return (os.getenv("ACCOUNT_STORE_BACKEND") or "auto").strip().lower()


def accounts_collection() -> str:
    return (os.getenv("ACCOUNTS_COLLECTION") or "users").strip() or "users"
