from __future__ import annotations

from dataclasses import asdict
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from authcore.api.schemas import (
    AuthenticatorCodeRequest,
    AuthenticatorSetupResponse,
    AuthenticatorStatusResponse,
    ChangePasswordRequest,
    ConfirmEmailRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    PageResponse,
    RefreshRequest,
    RegisterRequest,
    ResendConfirmationRequest,
    ResendTwoFactorRequest,
    ResetPasswordRequest,
    SessionResponse,
    VerifyTwoFactorRequest,
)
from authcore.logging import get_correlation_id, get_logger
from authcore.service.auth import AuthContext
from authcore.service.errors import AuthenticationError
from authcore.service.runtime import get_runtime
from authcore.storage.models import SessionTokens, TwoFactorChallenge

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


def _session_response(result) -> SessionResponse:
    if isinstance(result, TwoFactorChallenge):
        return SessionResponse(
            requires_two_factor=True,
            channel=result.channel,
            step_up_token=result.step_up_token,
        )
    assert isinstance(result, SessionTokens)
    return SessionResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=result.expires_in,
        token_type=result.token_type,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    try:
        return runtime.auth.authenticate_bearer(authorization)
    except AuthenticationError as exc:
        raise _http_error("unauthorized", exc.message, status_code=401)


# ------------------------------------------------------------------ auth


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Verify a password; returns session tokens or a two-factor challenge."""
    runtime = get_runtime()
    result = await runtime.auth.authenticate(body.email, body.password)
    return _ok(_session_response(result))


@router.post("/auth/verify-2fa", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: VerifyTwoFactorRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.verify(body.email, body.step_up_token, body.code, body.channel)
    return _ok(_session_response(tokens))


@router.post("/auth/resend-2fa", response_model=Envelope, tags=["auth"])
async def resend_two_factor(body: ResendTwoFactorRequest):
    runtime = get_runtime()
    result = await runtime.auth.resend_code(body.email, body.step_up_token)
    return _ok(asdict(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return _ok(_session_response(tokens))


@router.post("/auth/revoke", response_model=Envelope, tags=["auth"])
async def revoke(body: RefreshRequest):
    runtime = get_runtime()
    revoked = await runtime.auth.revoke(body.refresh_token)
    return _ok({"revoked": revoked})


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an unconfirmed account and send the confirmation link."""
    runtime = get_runtime()
    user = await runtime.auth.register(
        body.email, body.password, body.first_name, body.last_name
    )
    sent = await runtime.auth.send_confirmation_email(user.email)
    return _ok({"user_id": user.id, "email": user.email, "confirmation_sent": sent})


@router.post("/auth/confirm-email", response_model=Envelope, tags=["auth"])
async def confirm_email(body: ConfirmEmailRequest):
    runtime = get_runtime()
    confirmed = await runtime.auth.confirm_email(body.email, body.token)
    return _ok({"confirmed": confirmed})


@router.post("/auth/resend-confirmation", response_model=Envelope, tags=["auth"])
async def resend_confirmation(body: ResendConfirmationRequest):
    """Always answers the same way so callers cannot learn which emails exist."""
    runtime = get_runtime()
    await runtime.auth.send_confirmation_email(body.email)
    return _ok({"message": "If the account exists and is unconfirmed, a new link was sent."})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    changed = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return _ok({"changed": changed})


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Always answers the same way so callers cannot learn which emails exist."""
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    return _ok({"message": "If the account exists, a password reset link was sent."})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    reset = await runtime.auth.reset_password(body.email, body.token, body.new_password)
    return _ok({"reset": reset})


# ------------------------------------------------------------ two-factor


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["two-factor"])
async def enable_two_factor(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    enabled = await runtime.auth.enable_two_factor(principal.user_id)
    return _ok({"enabled": enabled})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["two-factor"])
async def disable_two_factor(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    disabled = await runtime.auth.disable_two_factor(principal.user_id)
    return _ok({"disabled": disabled})


# --------------------------------------------------------- authenticator


@router.get("/auth/authenticator", response_model=Envelope, tags=["authenticator"])
async def authenticator_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    status = runtime.auth.authenticator_status(principal.user_id)
    return _ok(AuthenticatorStatusResponse(**status))


@router.post("/auth/authenticator/setup", response_model=Envelope, tags=["authenticator"])
async def setup_authenticator(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    setup = await runtime.auth.setup_authenticator(principal.user_id)
    return _ok(AuthenticatorSetupResponse(**asdict(setup)))


@router.post("/auth/authenticator/enable", response_model=Envelope, tags=["authenticator"])
async def enable_authenticator(
    body: AuthenticatorCodeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    enabled = await runtime.auth.enable_authenticator(principal.user_id, body.code)
    return _ok({"enabled": enabled})


@router.post("/auth/authenticator/disable", response_model=Envelope, tags=["authenticator"])
async def disable_authenticator(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    disabled = await runtime.auth.disable_authenticator(principal.user_id)
    return _ok({"disabled": disabled})


# ---------------------------------------------------------------- access


@router.get("/access/me/permissions", response_model=Envelope, tags=["access"])
async def my_permissions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    permissions = runtime.rbac.resolve_permissions(principal.user_id)
    return _ok({"permissions": sorted(permissions, key=str.lower)})


@router.get("/access/me/pages", response_model=Envelope, tags=["access"])
async def my_pages(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    pages = runtime.rbac.resolve_pages(principal.user_id)
    return _ok([PageResponse(**asdict(page)) for page in pages])


@router.get("/access/me/pages/{page_name}", response_model=Envelope, tags=["access"])
async def my_page_access(page_name: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    permissions = runtime.rbac.get_page_permissions(principal.user_id, page_name)
    return _ok(
        {
            "page": page_name,
            "has_access": runtime.rbac.check_page_access(principal.user_id, page_name),
            "permissions": permissions,
        }
    )


@router.get("/access/me/menu", response_model=Envelope, tags=["access"])
async def my_menu(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    menu = runtime.rbac.resolve_menu(principal.user_id)
    return _ok([asdict(node) for node in menu])


@router.get("/access/me/roles", response_model=Envelope, tags=["access"])
async def my_roles(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return _ok({"roles": runtime.rbac.get_user_roles(principal.user_id)})


@router.get("/access/me/department", response_model=Envelope, tags=["access"])
async def my_department(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    department = runtime.rbac.get_user_department(principal.user_id)
    return _ok(asdict(department) if department else None)


@router.get("/access/me/navigation", response_model=Envelope, tags=["access"])
async def my_navigation(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    navigation = runtime.rbac.get_navigation(principal.user_id)
    department = navigation["department"]
    return _ok(
        {
            "email": principal.email,
            "roles": navigation["roles"],
            "department": asdict(department) if department else None,
            "menu": [asdict(node) for node in navigation["menu"]],
        }
    )
