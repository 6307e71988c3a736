from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_correlation_id
from authcore.storage.models import Account, AccountStatus, Session

_VALID_ERROR_CODES = frozenset({
    "UNAUTHORIZED",
    "INVALID_CREDENTIALS",
    "INVALID_TOKEN",
    "TOKEN_EXPIRED",
    "ACCOUNT_NOT_FOUND",
    "ACCOUNT_INACTIVE",
    "EMAIL_NOT_VERIFIED",
    "ACCOUNT_SUSPENDED",
    "AUTHORIZATION_DENIED",
    "NOT_FOUND",
    "CONFLICT",
    "RATE_LIMIT_EXCEEDED",
    "VALIDATION_ERROR",
    "INTERNAL_ERROR",
})


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _epoch_to_iso(value: int) -> str:
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


class ErrorBody(BaseModel):
    """Error body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Meta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timestamp: str = Field(default_factory=_utc_timestamp)
    request_id: str = Field(
        default_factory=lambda: get_correlation_id() or "unknown", alias="requestId"
    )


class Envelope(BaseModel):
    """Response envelope: ``{success, data | error, meta}``."""

    success: bool
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    meta: Meta = Field(default_factory=Meta)

    def to_content(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def envelope(data: Any) -> dict:
    return Envelope(success=True, data=data).to_content()


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip()).casefold()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)
    session_id: Optional[str] = Field(default=None, max_length=256)
    logout_all_sessions: bool = False


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=128)
    confirm_password: str = Field(..., max_length=128)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.new_password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class StatusChangeRequest(BaseModel):
    status: AccountStatus


class AccountSummary(BaseModel):
    id: str
    email: str
    tenant_id: str
    role: str
    status: str
    email_verified: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    last_login_at: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountSummary":
        return cls(
            id=account.id,
            email=account.email,
            tenant_id=account.tenant_id,
            role=account.role.value,
            status=account.status.value,
            email_verified=account.email_verified,
            first_name=account.first_name,
            last_name=account.last_name,
            last_login_at=account.last_login_at.isoformat() if account.last_login_at else None,
        )


class SessionSummary(BaseModel):
    id: str
    device_fingerprint: str
    origin_address: Optional[str] = None
    created_at: str
    last_used_at: str
    expires_at: str

    @classmethod
    def from_session(cls, session: Session) -> "SessionSummary":
        return cls(
            id=session.id,
            device_fingerprint=session.device_fingerprint,
            origin_address=session.origin_address,
            created_at=_epoch_to_iso(session.created_at),
            last_used_at=_epoch_to_iso(session.last_used_at),
            expires_at=_epoch_to_iso(session.expires_at),
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    session_id: str


class LoginResponse(TokenResponse):
    account: AccountSummary


class SessionList(BaseModel):
    sessions: List[SessionSummary]
