from typing import Optional

from fastapi import Depends, Header, HTTPException

from .dependencies import get_account_guard
from .services.account_guard import AccountGuard
from .services.errors import InvalidOrExpiredTokenError


def _bearer_token(authorization: Optional[str]) -> str:
    raw = (authorization or "").strip()
    scheme, _, token = raw.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Not authorized, no token")
    return token.strip()


async def get_current_account_id(
    authorization: Optional[str] = Header(None),
    guard: AccountGuard = Depends(get_account_guard),
) -> str:
    token = _bearer_token(authorization)
    try:
        return guard.tokens.account_id_from_session(token)
    except InvalidOrExpiredTokenError:
        raise HTTPException(status_code=401, detail="Not authorized, token failed")
