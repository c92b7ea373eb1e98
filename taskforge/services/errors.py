"""Failures raised by the account guard.

Every error carries an HTTP status, a message that is safe to show to the
user, and optional structured data for the response envelope.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Dict, Optional


class AuthError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None, *, data: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.data = data
        super().__init__(self.message)


class NotFoundError(AuthError):
    status_code = 404
    default_message = "User not found"


class AlreadyVerifiedError(AuthError):
    default_message = "User already verified"


class NoActiveOtpError(AuthError):
    default_message = "OTP not found or expired"


class OtpExpiredError(AuthError):
    default_message = "OTP expired. Please request a new one."


class InvalidOtpError(AuthError):
    default_message = "Invalid OTP"


class InvalidCredentialsError(AuthError):
    status_code = 401
    default_message = "Invalid email or password"


class InvalidOrExpiredTokenError(AuthError):
    default_message = "Invalid or expired token"


class AccountExistsError(AuthError):
    default_message = "User already exists"


class UnverifiedAccountError(AuthError):
    status_code = 401
    default_message = "Your account is unverified. Please verify your email."

    def __init__(self, email: str):
        self.email = email
        self.action = "resend_verification"
        super().__init__(data={"action": self.action, "email": email})


class RateLimitedError(AuthError):
    status_code = 429
    default_message = "Too many attempts. Please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        blocked_until: datetime,
        now: datetime,
        include_blocked_until: bool = False,
    ):
        self.blocked_until = blocked_until
        self.wait_seconds = remaining_wait_seconds(blocked_until, now)
        self.wait_minutes = remaining_wait_minutes(blocked_until, now)
        data: Dict[str, Any] = {"waitMinutes": self.wait_minutes}
        if include_blocked_until:
            data["blockedUntil"] = blocked_until.isoformat()
        super().__init__(message, data=data)


class StoreUnavailableError(AuthError):
    status_code = 500
    default_message = "Server error"


class DeliveryFailedError(AuthError):
    status_code = 502
    default_message = "Unable to send email right now."

    def __init__(self, message: Optional[str] = None, *, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


def remaining_wait_seconds(blocked_until: datetime, now: datetime) -> float:
    return max(0.0, (blocked_until - now).total_seconds())


def remaining_wait_minutes(blocked_until: datetime, now: datetime) -> int:
    """Remaining block time, rounded up to whole minutes."""
    return math.ceil(remaining_wait_seconds(blocked_until, now) / 60)


def format_wait_clock(wait_seconds: float) -> str:
    """Render a remaining wait as ``m:ss``."""
    total = int(wait_seconds)
    return f"{total // 60}:{total % 60:02d}"
