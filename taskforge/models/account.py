from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class VerificationState(str, Enum):
    UNVERIFIED_NO_LOCKOUT = "unverified_no_lockout"
    UNVERIFIED_LOCKED = "unverified_locked"
    VERIFIED = "verified"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise TypeError(f"Unsupported timestamp value: {value!r}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Account:
    """A user record as kept in the ``users`` collection."""

    email: str
    name: str
    password_hash: str
    id: Optional[str] = None
    role: str = "user"
    profile_image_url: str = ""
    is_verified: bool = False
    otp: Optional[str] = None
    otp_expires_at: Optional[datetime] = None
    otp_failed_count: int = 0
    otp_resend_count: int = 0
    otp_blocked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def state(self, now: datetime) -> VerificationState:
        if self.is_verified:
            return VerificationState.VERIFIED
        if self.is_blocked(now):
            return VerificationState.UNVERIFIED_LOCKED
        return VerificationState.UNVERIFIED_NO_LOCKOUT

    def is_blocked(self, now: datetime) -> bool:
        # A past block is treated as cleared; nothing resets it eagerly.
        return self.otp_blocked_until is not None and now < self.otp_blocked_until

    def has_active_otp(self) -> bool:
        return bool(self.otp) and self.otp_expires_at is not None

    def set_otp(self, code: str, expires_at: datetime) -> None:
        self.otp = code
        self.otp_expires_at = expires_at

    def block_until(self, until: datetime) -> None:
        self.otp_blocked_until = until

    def mark_verified(self) -> None:
        self.is_verified = True
        self.otp = None
        self.otp_expires_at = None
        self.otp_failed_count = 0
        self.otp_resend_count = 0
        self.otp_blocked_until = None

    def summary(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "profileImageUrl": self.profile_image_url,
            "isVerified": self.is_verified,
        }

    def to_document(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "emailLower": self.email.lower(),
            "password": self.password_hash,
            "role": self.role,
            "profileImageUrl": self.profile_image_url,
            "isVerified": self.is_verified,
            "otp": self.otp,
            "otpExpiresAt": self.otp_expires_at,
            "otpFailedCount": self.otp_failed_count,
            "otpResendCount": self.otp_resend_count,
            "otpBlockedUntil": self.otp_blocked_until,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Account":
        profile_image = data.get("profileImageUrl") or ""
        if isinstance(profile_image, dict):
            profile_image = profile_image.get("url") or ""
        return cls(
            id=doc_id,
            email=str(data.get("email") or ""),
            name=str(data.get("name") or ""),
            password_hash=str(data.get("password") or ""),
            role=str(data.get("role") or "user"),
            profile_image_url=str(profile_image),
            is_verified=bool(data.get("isVerified", False)),
            otp=data.get("otp") or None,
            otp_expires_at=_as_utc(data.get("otpExpiresAt")),
            otp_failed_count=int(data.get("otpFailedCount") or 0),
            otp_resend_count=int(data.get("otpResendCount") or 0),
            otp_blocked_until=_as_utc(data.get("otpBlockedUntil")),
            created_at=_as_utc(data.get("createdAt")) or utc_now(),
            updated_at=_as_utc(data.get("updatedAt")) or utc_now(),
        )
