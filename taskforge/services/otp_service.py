"""One-time verification codes."""
from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta
from typing import Optional

from ..config import otp_ttl
from ..models.account import Account


OTP_MIN = 100_000
OTP_MAX = 999_999


def generate_otp() -> str:
    """Return a uniformly random code in 100000-999999."""
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def issue_otp(account: Account, now: datetime, ttl: Optional[timedelta] = None) -> str:
    """Attach a fresh code to ``account`` and return it in plaintext.

    The caller persists the account.
    """
    code = generate_otp()
    account.set_otp(code, now + (ttl or otp_ttl()))
    return code


def otp_matches(stored: Optional[str], submitted: Optional[str]) -> bool:
    # Codes are compared as text: "007123" never equals "7123".
    stored_code = str(stored or "").strip()
    entered_code = str(submitted or "").strip()
    if not stored_code or not entered_code:
        return False
    return hmac.compare_digest(stored_code.encode("utf-8"), entered_code.encode("utf-8"))
