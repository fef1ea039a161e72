from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from micropost.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirmRequest,
    RefreshRequest,
    RegisterRequest,
    TokenOut,
    UserOut,
)
from micropost.service.auth import AuthResult
from micropost.service.errors import ForbiddenError, MissingTokenError
from micropost.service.runtime import get_runtime
from micropost.service.tokens import strip_bearer
from micropost.storage.models import Role, User

router = APIRouter(prefix="/auth", tags=["auth"])


def _ok(data) -> Envelope:
    return Envelope(success=True, data=data)


def _user_payload(user: User) -> dict:
    return UserOut.model_validate(user.to_public()).model_dump(by_alias=True)


def _auth_payload(result: AuthResult) -> dict:
    return {
        "user": _user_payload(result.user),
        "tokens": TokenOut.model_validate(result.tokens).model_dump(exclude_none=True),
    }


def _device_info(request: Request) -> Optional[str]:
    agent = request.headers.get("user-agent")
    return agent[:256] if agent else None


async def get_bearer_token(authorization: Optional[str] = Header(None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise MissingTokenError()
    token = strip_bearer(authorization)
    if not token:
        raise MissingTokenError()
    return token


async def get_current_user(token: str = Depends(get_bearer_token)) -> User:
    return await get_runtime().auth.get_user_from_token(token)


def require_role(required: Role):
    """Dependency factory rejecting users below ``required`` in the role hierarchy."""

    async def _dependency(user: User = Depends(get_current_user)) -> User:
        if not get_runtime().auth.has_role(user, required.value):
            raise ForbiddenError(detail={"required": required.value})
        return user

    return _dependency


@router.post(
    "/register", response_model=Envelope, response_model_exclude_none=True, status_code=201
)
async def register(body: RegisterRequest, request: Request):
    result = await get_runtime().auth.register(
        body.name, body.email, body.password, device_info=_device_info(request)
    )
    return _ok(_auth_payload(result))


@router.post("/login", response_model=Envelope, response_model_exclude_none=True)
async def login(body: LoginRequest, request: Request):
    result = await get_runtime().auth.login(
        body.email, body.password, device_info=_device_info(request)
    )
    return _ok(_auth_payload(result))


@router.post("/logout", response_model=Envelope, response_model_exclude_none=True)
async def logout(
    token: str = Depends(get_bearer_token),
    user: User = Depends(get_current_user),
):
    result = await get_runtime().auth.logout(token)
    return _ok({"message": result["message"]})


@router.post("/logout-all", response_model=Envelope, response_model_exclude_none=True)
async def logout_all(
    token: str = Depends(get_bearer_token),
    user: User = Depends(get_current_user),
):
    auth = get_runtime().auth
    result = await auth.logout_all_devices(user.id)
    # the presented access token goes too, otherwise it outlives the sessions
    await auth.logout(token)
    data = {"message": result["message"]}
    if "revoked" in result:
        data["revoked"] = result["revoked"]
    return _ok(data)


@router.get("/me", response_model=Envelope, response_model_exclude_none=True)
async def me(user: User = Depends(get_current_user)):
    return _ok({"user": _user_payload(user)})


@router.put("/password", response_model=Envelope, response_model_exclude_none=True)
async def change_password(body: PasswordChangeRequest, user: User = Depends(get_current_user)):
    result = await get_runtime().auth.change_password(
        user.id, body.current_password, body.new_password
    )
    return _ok({"message": result["message"]})


@router.post("/forgot-password", response_model=Envelope, response_model_exclude_none=True)
async def forgot_password(body: ForgotPasswordRequest):
    # same answer whether or not the account exists
    result = await get_runtime().auth.forgot_password(body.email)
    return _ok({"message": result["message"]})


@router.post("/reset-password", response_model=Envelope, response_model_exclude_none=True)
async def reset_password(body: PasswordResetConfirmRequest):
    result = await get_runtime().auth.reset_password(body.token, body.new_password)
    return _ok({"message": result["message"]})


@router.post("/refresh", response_model=Envelope, response_model_exclude_none=True)
async def refresh(body: RefreshRequest):
    result = await get_runtime().auth.refresh_access_token(body.refresh_token)
    return _ok(_auth_payload(result))


@router.get("/users/{user_id}", response_model=Envelope, response_model_exclude_none=True)
async def get_user(
    user_id: str = Path(..., min_length=1, max_length=128),
    _admin: User = Depends(require_role(Role.READONLY_ADMIN)),
):
    user = await get_runtime().auth.get_user_by_id(user_id)
    return _ok({"user": _user_payload(user)})


@router.get("/token-stats", response_model=Envelope, response_model_exclude_none=True)
async def token_stats(_admin: User = Depends(require_role(Role.READONLY_ADMIN))):
    return _ok(get_runtime().token_stats())


@router.get("/health", response_model=Envelope, response_model_exclude_none=True)
async def health():
    runtime = get_runtime()
    return _ok(
        {
            "status": "ok",
            "provider": runtime.settings.auth_provider.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )
