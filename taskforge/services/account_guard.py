"""
Account verification and access guard.

Each public coroutine is one transition of the account verification state
machine (see ``VerificationState``):

    UNVERIFIED_NO_LOCKOUT --verify ok--------------> VERIFIED
    UNVERIFIED_NO_LOCKOUT --5th wrong code---------> UNVERIFIED_LOCKED
    UNVERIFIED_NO_LOCKOUT --6th resend-------------> UNVERIFIED_LOCKED
    UNVERIFIED_LOCKED     --block time passes------> UNVERIFIED_NO_LOCKOUT

Lockouts expire lazily: ``otp_blocked_until`` is compared with the clock when
an account is read, and nothing clears it in the background.

Counter updates are read-modify-write against the store. Two concurrent wrong
guesses may both persist the same count, so a lockout can trigger at most one
attempt late per race.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..config import (
    admin_invite_token,
    otp_lockout_duration,
    otp_max_failed_attempts,
    otp_max_resends,
)
from ..models.account import Account, VerificationState, utc_now
from . import email_templates
from .account_store import AccountStore
from .errors import (
    AccountExistsError,
    AlreadyVerifiedError,
    DeliveryFailedError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidOtpError,
    NoActiveOtpError,
    NotFoundError,
    OtpExpiredError,
    RateLimitedError,
    UnverifiedAccountError,
    format_wait_clock,
    remaining_wait_minutes,
    remaining_wait_seconds,
)
from .mail_delivery_service import MailDeliveryError, sanitize_email
from .otp_service import issue_otp, otp_matches
from .passwords import hash_password_async, verify_password_async
from .token_service import TokenService


logger = logging.getLogger(__name__)

PUBLIC_RESET_MESSAGE = "If an account exists for this email, a password reset link has been sent."

_DELIVERY_STATUS_BY_CATEGORY = {
    "rate_limited": 429,
    "invalid_recipient": 400,
    "sender_not_verified": 503,
    "auth_failed": 503,
}


class AccountGuard:
    def __init__(
        self,
        store: AccountStore,
        mailer: Any,
        tokens: TokenService,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.mailer = mailer
        self.tokens = tokens
        self.clock = clock

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(
        self,
        *,
        name: str,
        email: str,
        password: str,
        profile_image_url: Optional[str] = None,
        admin_invite: Optional[str] = None,
    ) -> Dict[str, Any]:
        email = sanitize_email(email)
        if await self.store.find_by_email(email) is not None:
            raise AccountExistsError()

        expected_invite = admin_invite_token()
        role = "admin" if expected_invite and admin_invite == expected_invite else "user"

        account = Account(
            email=email,
            name=name.strip(),
            password_hash=await hash_password_async(password),
            role=role,
            profile_image_url=profile_image_url or "",
        )
        code = issue_otp(account, self.clock())
        account = await self.store.save(account)
        logger.info("[AUTH] Registered %s (role=%s)", email, role)

        subject, text_body, html_body = email_templates.build_registration_email(
            account.name, account.email, code
        )
        await self._deliver(
            account,
            subject,
            text_body,
            html_body,
            flow="verification",
            failure_message=(
                "Account created, but the verification email could not be sent. "
                "Please request a new code."
            ),
        )
        return {"message": "User registered! Please verify your email."}

    # ------------------------------------------------------------------
    # OTP verification
    # ------------------------------------------------------------------

    async def verify_otp(self, email: str, submitted_code: str) -> Dict[str, Any]:
        account = await self._load_unverified(email)
        now = self.clock()

        # Lockout is checked before the code is even looked at.
        if account.state(now) is VerificationState.UNVERIFIED_LOCKED:
            wait_minutes = remaining_wait_minutes(account.otp_blocked_until, now)
            logger.info("[AUTH] OTP verify blocked for %s (%s min left)", account.email, wait_minutes)
            raise RateLimitedError(
                f"Too many failed attempts. Please wait {wait_minutes} minute(s) "
                "before trying again.",
                blocked_until=account.otp_blocked_until,
                now=now,
            )

        if not account.has_active_otp():
            raise NoActiveOtpError()
        if now > account.otp_expires_at:
            logger.info("[AUTH] Expired OTP submitted for %s", account.email)
            raise OtpExpiredError()

        if not otp_matches(account.otp, submitted_code):
            account.otp_failed_count += 1
            logger.info(
                "[AUTH] Invalid OTP for %s (attempt %s)", account.email, account.otp_failed_count
            )
            if account.otp_failed_count >= otp_max_failed_attempts():
                account.block_until(now + otp_lockout_duration())
                account.otp_failed_count = 0
                logger.warning("[AUTH] OTP lockout for %s until %s", account.email, account.otp_blocked_until)
            await self.store.save(account)
            raise InvalidOtpError()

        account.mark_verified()
        account = await self.store.save(account)
        logger.info("[AUTH] Verified %s", account.email)
        return {
            "message": "Email verified successfully!",
            "user": account.summary(),
            "token": self.tokens.issue_session_token(account.id),
        }

    # ------------------------------------------------------------------
    # Resend
    # ------------------------------------------------------------------

    async def resend_otp(self, email: str) -> Dict[str, Any]:
        account = await self._load_unverified(email)
        now = self.clock()
        if account.is_blocked(now):
            raise RateLimitedError(
                "You have reached maximum resend attempts. Please wait "
                f"{remaining_wait_minutes(account.otp_blocked_until, now)} minute(s) "
                "before trying again.",
                blocked_until=account.otp_blocked_until,
                now=now,
            )

        await self._count_resend(
            account,
            now,
            message=(
                "You have reached maximum resend attempts. "
                f"Please wait {self._lockout_minutes()} minutes before trying again."
            ),
            include_blocked_until=False,
        )

        code = issue_otp(account, now)
        account = await self.store.save(account)
        subject, text_body, html_body = email_templates.build_resend_otp_email(account.name, code)
        await self._deliver(account, subject, text_body, html_body, flow="verification")
        logger.info("[AUTH] OTP resent to %s (resend %s)", account.email, account.otp_resend_count)
        return {"message": "OTP resent successfully!"}

    async def resend_verification(self, email: str) -> Dict[str, Any]:
        """Resend for accounts created before OTP verification existed.

        Same contract as ``resend_otp``; a rate-limited response also carries
        ``blockedUntil`` so the client can render a countdown.
        """
        account = await self._load_unverified(email)
        now = self.clock()
        if account.is_blocked(now):
            wait_clock = format_wait_clock(remaining_wait_seconds(account.otp_blocked_until, now))
            raise RateLimitedError(
                f"Too many attempts. Please wait {wait_clock} minutes before trying again.",
                blocked_until=account.otp_blocked_until,
                now=now,
                include_blocked_until=True,
            )

        await self._count_resend(
            account,
            now,
            message=(
                f"Too many attempts. Please wait {self._lockout_minutes()} minutes "
                "before trying again."
            ),
            include_blocked_until=True,
        )

        code = issue_otp(account, now)
        account = await self.store.save(account)
        subject, text_body, html_body = email_templates.build_legacy_verification_email(
            account.name, account.email, code
        )
        await self._deliver(account, subject, text_body, html_body, flow="verification")
        logger.info("[AUTH] Verification email sent to %s", account.email)
        return {"message": "Verification email sent successfully!"}

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        account = await self.store.find_by_email(sanitize_email(email))
        if account is None:
            raise InvalidCredentialsError()
        if not account.is_verified:
            raise UnverifiedAccountError(account.email)
        if not await verify_password_async(password, account.password_hash):
            raise InvalidCredentialsError()

        logger.info("[AUTH] Login for %s", account.email)
        return {
            "message": "Login successful",
            "user": account.summary(),
            "token": self.tokens.issue_session_token(account.id),
        }

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    async def request_password_reset(self, email: str) -> Dict[str, Any]:
        email = sanitize_email(email)
        account = await self.store.find_by_email(email)
        if account is None:
            # Avoid user enumeration by returning the generic response.
            logger.info("[AUTH] Password reset requested for unknown email: %s", email)
            return {"message": PUBLIC_RESET_MESSAGE}

        token = self.tokens.issue_password_reset_token(account.id)
        subject, text_body, html_body = email_templates.build_password_reset_email(
            account.name, token
        )
        await self._deliver(account, subject, text_body, html_body, flow="password reset")
        logger.info("[AUTH] Password reset email sent to %s", account.email)
        return {"message": PUBLIC_RESET_MESSAGE}

    async def consume_reset_token(self, token: str, new_password: str) -> Dict[str, Any]:
        # TODO: record consumed tokens so a reset link works only once.
        account_id = self.tokens.account_id_from_reset(token)
        account = await self.store.find_by_id(account_id)
        if account is None:
            raise InvalidOrExpiredTokenError()

        account.password_hash = await hash_password_async(new_password)
        await self.store.save(account)
        logger.info("[AUTH] Password reset completed for %s", account.email)
        return {"message": "Password updated successfully!"}

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def get_profile(self, account_id: str) -> Dict[str, Any]:
        account = await self.store.find_by_id(account_id)
        if account is None:
            raise NotFoundError()
        return account.summary()

    async def update_profile(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        profile_image_url: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Dict[str, Any]:
        account = await self.store.find_by_id(account_id)
        if account is None:
            raise NotFoundError()

        if name and name.strip():
            account.name = name.strip()
        if email:
            new_email = sanitize_email(email)
            if new_email != account.email:
                existing = await self.store.find_by_email(new_email)
                if existing is not None and existing.id != account.id:
                    raise AccountExistsError("Email is already in use")
                account.email = new_email
        if profile_image_url:
            account.profile_image_url = profile_image_url
        if password:
            account.password_hash = await hash_password_async(password)

        account = await self.store.save(account)
        return {
            "message": "Profile updated successfully",
            "user": account.summary(),
            "token": self.tokens.issue_session_token(account.id),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_unverified(self, email: str) -> Account:
        account = await self.store.find_by_email(sanitize_email(email))
        if account is None:
            raise NotFoundError()
        if account.state(self.clock()) is VerificationState.VERIFIED:
            raise AlreadyVerifiedError()
        return account

    async def _count_resend(
        self,
        account: Account,
        now: datetime,
        *,
        message: str,
        include_blocked_until: bool,
    ) -> None:
        account.otp_resend_count += 1
        if account.otp_resend_count <= otp_max_resends():
            return

        account.block_until(now + otp_lockout_duration())
        account.otp_resend_count = 0
        await self.store.save(account)
        logger.warning("[AUTH] Resend lockout for %s until %s", account.email, account.otp_blocked_until)
        raise RateLimitedError(
            message,
            blocked_until=account.otp_blocked_until,
            now=now,
            include_blocked_until=include_blocked_until,
        )

    async def _deliver(
        self,
        account: Account,
        subject: str,
        text_body: str,
        html_body: str,
        *,
        flow: str,
        failure_message: Optional[str] = None,
    ) -> None:
        # State is already persisted; a failed send never rolls it back.
        try:
            await self.mailer.send_email(
                to_email=account.email,
                subject=subject,
                text_body=text_body,
                html_body=html_body,
            )
        except Exception as exc:
            logger.error("[AUTH] %s email send failed for %s: %s", flow, account.email, exc)
            error = DeliveryFailedError(
                failure_message or f"Unable to send {flow} email right now.",
                cause=exc,
            )
            if isinstance(exc, MailDeliveryError):
                error.status_code = _DELIVERY_STATUS_BY_CATEGORY.get(exc.category, 502)
            raise error from exc

    @staticmethod
    def _lockout_minutes() -> int:
        return int(otp_lockout_duration().total_seconds() // 60)
