from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from authcore.api.deps import (
    client_address,
    get_principal,
    path_param,
    wrap_with_auth,
    wrap_with_role,
)
from authcore.api.schemas import (
    AccountSummary,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionList,
    SessionSummary,
    StatusChangeRequest,
    TokenResponse,
    VerifyEmailRequest,
    envelope,
)
from authcore.service.auth import PASSWORD_RESET_REQUESTED
from authcore.service.authorization import AccessPolicy, Principal
from authcore.service.errors import NotFoundError
from authcore.service.runtime import get_runtime

router = APIRouter(prefix="/v1/auth", tags=["auth"])
companies_router = APIRouter(prefix="/v1/companies", tags=["companies"])


@router.post("/register", status_code=201)
async def register(body: RegisterRequest, request: Request):
    """Create a pending account and send its verification link."""
    runtime = get_runtime()
    account, _token = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        origin_address=client_address(request),
    )
    return envelope(
        {
            "account": AccountSummary.from_account(account).model_dump(),
            "message": "Registration successful. Please check your email for verification instructions.",
        }
    )


@router.post("/verify-email")
async def verify_email(body: VerifyEmailRequest):
    account = await get_runtime().auth.verify_email(body.token)
    return envelope(
        {"message": "Email verified successfully", "verified": account.email_verified}
    )


@router.post("/login")
async def login(
    body: LoginRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
):
    """Authenticate with email and password.

    Raises:
        401: invalid credentials, unverified email or inactive account
        429: too many attempts for this email
    """
    result = await get_runtime().auth.login(
        body.email,
        body.password,
        user_agent=user_agent,
        origin_address=client_address(request),
    )
    data = LoginResponse(
        access_token=result.credentials.access_token,
        refresh_token=result.credentials.refresh_token,
        expires_in=result.credentials.expires_in,
        token_type=result.credentials.token_type,
        session_id=result.session.id,
        account=AccountSummary.from_account(result.account),
    )
    return envelope(data.model_dump())


@router.post("/refresh")
async def refresh(body: RefreshRequest):
    result = await get_runtime().auth.refresh(body.refresh_token)
    data = TokenResponse(
        access_token=result.credentials.access_token,
        refresh_token=result.credentials.refresh_token,
        expires_in=result.credentials.expires_in,
        token_type=result.credentials.token_type,
        session_id=result.session.id,
    )
    return envelope(data.model_dump())


@router.post("/logout")
async def logout(body: LogoutRequest, principal: Principal = Depends(get_principal)):
    auth = get_runtime().auth
    if body.logout_all_sessions:
        revoked = await auth.logout_all(principal)
        message = "Successfully logged out from all sessions"
    else:
        revoked = await auth.logout(
            principal, refresh_token=body.refresh_token, session_id=body.session_id
        )
        message = "Successfully logged out"
    return envelope({"message": message, "sessions_revoked": revoked})


@router.post("/logout-all")
async def logout_all(principal: Principal = Depends(get_principal)):
    revoked = await get_runtime().auth.logout_all(principal)
    return envelope(
        {"message": "Successfully logged out from all sessions", "sessions_revoked": revoked}
    )


@router.post("/password/forgot")
async def forgot_password(body: ForgotPasswordRequest):
    # Same response whether or not the account exists
    await get_runtime().auth.request_password_reset(body.email)
    return envelope({"message": PASSWORD_RESET_REQUESTED})


@router.post("/password/reset")
async def reset_password(body: ResetPasswordRequest):
    await get_runtime().auth.reset_password(body.token, body.new_password)
    return envelope(
        {"message": "Password has been reset successfully. Please log in with your new password."}
    )


async def _me(request: Request):
    principal: Principal = request.state.principal
    account = await get_runtime().auth.get_account(principal.subject_id)
    if account is None:
        raise NotFoundError("Account not found")
    return envelope(
        {
            "account": AccountSummary.from_account(account).model_dump(),
            "permissions": list(principal.permissions),
        }
    )


router.add_api_route("/me", wrap_with_auth(_me), methods=["GET"])


@router.get("/sessions")
async def list_sessions(principal: Principal = Depends(get_principal)):
    sessions = await get_runtime().sessions.list_active_sessions(principal.subject_id)
    data = SessionList(sessions=[SessionSummary.from_session(s) for s in sessions])
    return envelope(data.model_dump())


READ_COMPANY_ACCOUNT = AccessPolicy.build(
    "users",
    "read",
    resource_tenant_from=path_param("company_id"),
)
CHANGE_ACCOUNT_STATUS = AccessPolicy.build(
    "users",
    "update",
    allowed_roles=["admin"],
    resource_tenant_from=path_param("company_id"),
)


async def _get_company_account(company_id: str, account_id: str, request: Request):
    account = await get_runtime().auth.get_account(account_id)
    if account is None or account.tenant_id != company_id:
        raise NotFoundError("Account not found")
    return envelope({"account": AccountSummary.from_account(account).model_dump()})


async def _change_account_status(
    company_id: str, account_id: str, body: StatusChangeRequest, request: Request
):
    account = await get_runtime().auth.change_account_status(
        request.state.principal, account_id, body.status
    )
    return envelope({"account": AccountSummary.from_account(account).model_dump()})


companies_router.add_api_route(
    "/{company_id}/accounts/{account_id}",
    wrap_with_role(_get_company_account, READ_COMPANY_ACCOUNT),
    methods=["GET"],
)
companies_router.add_api_route(
    "/{company_id}/accounts/{account_id}/status",
    wrap_with_role(_change_account_status, CHANGE_ACCOUNT_STATUS),
    methods=["PATCH"],
)
