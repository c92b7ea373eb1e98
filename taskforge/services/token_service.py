"""Signed, expiring tokens for sessions and password resets."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from itsdangerous import BadData, TimestampSigner, URLSafeTimedSerializer

from ..config import password_reset_token_ttl, session_token_ttl, token_secret
from ..models.account import utc_now
from .errors import InvalidOrExpiredTokenError


SESSION_SALT = "taskforge.session"
PASSWORD_RESET_SALT = "taskforge.password-reset"


class ClockedTimestampSigner(TimestampSigner):
    """``TimestampSigner`` that reads time from an injectable clock."""

    def __init__(self, *args: Any, clock: Callable[[], datetime] = utc_now, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._clock = clock

    def get_timestamp(self) -> int:
        return int(self._clock().timestamp())


class TokenSigner:
    """Signs JSON payloads; a token is valid for ``ttl`` after signing.

    The salt scopes a signer to one purpose: a token signed for sessions
    never verifies as a reset token.
    """

    def __init__(
        self,
        secret: str,
        *,
        salt: str,
        ttl: Callable[[], timedelta],
        clock: Callable[[], datetime] = utc_now,
    ):
        self._serializer = URLSafeTimedSerializer(
            secret,
            salt=salt,
            signer=ClockedTimestampSigner,
            signer_kwargs={"clock": clock},
        )
        self._ttl = ttl

    def sign(self, payload: Dict[str, Any]) -> str:
        return self._serializer.dumps(payload)

    def verify(self, token: str) -> Dict[str, Any]:
        try:
            claims = self._serializer.loads(token or "", max_age=self._ttl().total_seconds())
        except BadData as exc:
            # SignatureExpired is a BadData too.
            raise InvalidOrExpiredTokenError() from exc
        if not isinstance(claims, dict):
            raise InvalidOrExpiredTokenError()
        return claims


class TokenService:
    def __init__(
        self,
        secret: Optional[str] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        secret = secret or token_secret()
        self.session_signer = TokenSigner(
            secret, salt=SESSION_SALT, ttl=session_token_ttl, clock=clock
        )
        self.reset_signer = TokenSigner(
            secret, salt=PASSWORD_RESET_SALT, ttl=password_reset_token_ttl, clock=clock
        )

    def issue_session_token(self, account_id: str) -> str:
        return self.session_signer.sign({"id": account_id})

    def issue_password_reset_token(self, account_id: str) -> str:
        return self.reset_signer.sign({"id": account_id})

    def account_id_from_session(self, token: str) -> str:
        return self._account_id(self.session_signer.verify(token))

    def account_id_from_reset(self, token: str) -> str:
        return self._account_id(self.reset_signer.verify(token))

    @staticmethod
    def _account_id(claims: Dict[str, Any]) -> str:
        account_id = claims.get("id")
        if not isinstance(account_id, str) or not account_id:
            raise InvalidOrExpiredTokenError()
        return account_id
