import logging
from typing import Any, Awaitable, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from .config import debug_enabled
from .dependencies import get_account_guard
from .security import get_current_account_id
from .services.account_guard import AccountGuard
from .services.errors import AuthError, DeliveryFailedError, StoreUnavailableError


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(_CamelModel):
    name: str = Field(min_length=1, max_length=120)
    email: EmailStr
    password: str = Field(min_length=1)
    profile_image_url: Optional[str] = Field(default=None, alias="profileImageUrl")
    admin_invite_token: Optional[str] = Field(default=None, alias="adminInviteToken")


class VerifyOtpRequest(BaseModel):
    email: EmailStr
    otp: str = Field(min_length=1, max_length=32)


class EmailRequest(BaseModel):
    email: EmailStr


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class ResetPasswordRequest(_CamelModel):
    new_password: str = Field(min_length=1, alias="newPassword")


class ProfileUpdateRequest(_CamelModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    profile_image_url: Optional[str] = Field(default=None, alias="profileImageUrl")
    password: Optional[str] = None


def _auth_http_error(exc: AuthError) -> HTTPException:
    detail: Dict[str, Any] = {"message": exc.message}
    if exc.data:
        detail.update(exc.data)
    if isinstance(exc, DeliveryFailedError) and debug_enabled() and exc.cause is not None:
        detail["cause"] = str(exc.cause)
    return HTTPException(status_code=exc.status_code, detail=detail)


async def _run(operation: str, call: Awaitable[Dict[str, Any]]) -> Dict[str, Any]:
    try:
        return await call
    except StoreUnavailableError as exc:
        logger.error("[AUTH] %s failed: account store unavailable", operation)
        raise _auth_http_error(exc)
    except AuthError as exc:
        logger.info("[AUTH] %s rejected: %s (%s)", operation, type(exc).__name__, exc.status_code)
        raise _auth_http_error(exc)


@router.post("/register", status_code=201)
async def register(payload: RegisterRequest, guard: AccountGuard = Depends(get_account_guard)):
    return await _run(
        "register",
        guard.register(
            name=payload.name,
            email=payload.email,
            password=payload.password,
            profile_image_url=payload.profile_image_url,
            admin_invite=payload.admin_invite_token,
        ),
    )


@router.post("/verify-otp")
async def verify_otp(payload: VerifyOtpRequest, guard: AccountGuard = Depends(get_account_guard)):
    return await _run("verify-otp", guard.verify_otp(payload.email, payload.otp))


@router.post("/resend-otp")
async def resend_otp(payload: EmailRequest, guard: AccountGuard = Depends(get_account_guard)):
    return await _run("resend-otp", guard.resend_otp(payload.email))


@router.post("/resend-verification-old-users")
async def resend_verification_old_users(
    payload: EmailRequest, guard: AccountGuard = Depends(get_account_guard)
):
    return await _run("resend-verification", guard.resend_verification(payload.email))


@router.post("/login")
async def login(payload: LoginRequest, guard: AccountGuard = Depends(get_account_guard)):
    return await _run("login", guard.login(payload.email, payload.password))


@router.post("/forgot-password")
async def forgot_password(payload: EmailRequest, guard: AccountGuard = Depends(get_account_guard)):
    return await _run("forgot-password", guard.request_password_reset(payload.email))


@router.post("/reset-password/{token}")
async def reset_password(
    token: str,
    payload: ResetPasswordRequest,
    guard: AccountGuard = Depends(get_account_guard),
):
    return await _run("reset-password", guard.consume_reset_token(token, payload.new_password))


@router.get("/profile")
async def get_profile(
    account_id: str = Depends(get_current_account_id),
    guard: AccountGuard = Depends(get_account_guard),
):
    return await _run("get-profile", guard.get_profile(account_id))


@router.put("/profile")
async def update_profile(
    payload: ProfileUpdateRequest,
    account_id: str = Depends(get_current_account_id),
    guard: AccountGuard = Depends(get_account_guard),
):
    return await _run(
        "update-profile",
        guard.update_profile(
            account_id,
            name=payload.name,
            email=payload.email,
            profile_image_url=payload.profile_image_url,
            password=payload.password,
        ),
    )
