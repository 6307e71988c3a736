from __future__ import annotations

import asyncio
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.audit import AuditLogger
from authcore.service.authorization import RESOURCE_ACCESS_DENIED, Principal
from authcore.service.email import EmailService
from authcore.service.errors import (
    AccountInactiveError,
    AccountSuspendedError,
    AuthorizationDeniedError,
    ConflictError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidStatusTransition,
    InvalidTokenError,
    NotFoundError,
    RateLimitExceededError,
    SessionRotationConflict,
    TokenVerificationError,
    ValidationError,
)
from authcore.service.passwords import PasswordService, password_policy_violations
from authcore.service.rate_limit import RateLimiter
from authcore.service.sessions import SessionManager
from authcore.service.tokens import CredentialPair, TokenService
from authcore.storage.common import CredentialStore, bounded_call
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    Account,
    AccountRole,
    AccountStatus,
    ActionToken,
    ActionTokenKind,
    Session,
    normalize_email,
    status_transition_allowed,
)

logger = get_logger(__name__)

LOGIN_ACTION = "login"
REGISTER_ACTION = "register"
PASSWORD_RESET_ACTION = "password_reset"

INVALID_CREDENTIALS = "Invalid email or password"
EMAIL_NOT_VERIFIED = "Please verify your email address before logging in"
ACCOUNT_SUSPENDED = "Account is suspended"
ACCOUNT_NOT_ACTIVE = "User account is not active"
REFRESH_TOKEN_INVALID = "Invalid or expired refresh token"
ACTION_TOKEN_INVALID = "Invalid or expired token"
LOGIN_RATE_LIMITED = "Too many login attempts. Please try again later."
RESET_RATE_LIMITED = "Too many password reset requests. Please try again later."
REGISTER_RATE_LIMITED = "Too many registration attempts. Please try again later."
PASSWORD_RESET_REQUESTED = (
    "If the email address exists in our system, you will receive password reset instructions."
)


@dataclass
class LoginResult:
    credentials: CredentialPair
    account: Account
    session: Session


@dataclass
class RefreshResult:
    credentials: CredentialPair
    session: Session


class AuthService:
    """Login, refresh, logout, registration and password-reset protocols.

    Callers only ever see the fixed messages defined in this module; failure
    reasons are recorded as audit events and log fields.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        sessions: SessionManager,
        rate_limiter: RateLimiter,
        passwords: PasswordService,
        settings: Settings,
        *,
        audit: Optional[AuditLogger] = None,
        email: Optional[EmailService] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.passwords = passwords
        self.settings = settings
        self.audit = audit or AuditLogger(clock=clock)
        self.email = email or EmailService()
        self._clock = clock
        self.logger = logger

    async def _call(self, fn, *args, **kwargs):
        return await bounded_call(self.settings.store_timeout_seconds, fn, *args, **kwargs)

    def _now_dt(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # registration and verification
    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        tenant_id: Optional[str] = None,
        role: AccountRole = AccountRole.ADMIN,
        origin_address: Optional[str] = None,
    ) -> tuple[Account, ActionToken]:
        """Create a pending account and issue its email verification token.

        Without ``tenant_id`` a new company is created and the registering
        account administers it. Attempts are throttled per origin address.
        """
        try:
            await self.rate_limiter.enforce(
                origin_address or "unknown",
                REGISTER_ACTION,
                self.settings.register_rate_limit_window_seconds,
                self.settings.register_rate_limit_attempts,
                message=REGISTER_RATE_LIMITED,
            )
        except RateLimitExceededError:
            self.audit.record("register_rate_limited", origin_address=origin_address)
            raise
        problems = password_policy_violations(
            password, email=email, first_name=first_name, last_name=last_name
        )
        if problems:
            raise ValidationError(
                "Password does not meet requirements", detail={"problems": problems}
            )
        account = Account.new(
            email,
            tenant_id or str(uuid.uuid4()),
            role=role,
            first_name=first_name,
            last_name=last_name,
        )
        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        try:
            account = await self._call(self.store.create_account, account, password_hash)
        except ConstraintViolation as exc:
            self.logger.info("register_duplicate_email", detail=exc.detail)
            raise ConflictError("An account with this email already exists") from exc
        token = await self._issue_action_token(
            account,
            ActionTokenKind.EMAIL_VERIFICATION,
            self.settings.email_verification_token_ttl_seconds,
        )
        await asyncio.to_thread(
            self.email.send_email_verification,
            account.email,
            token.token,
            ttl_hours=max(1, self.settings.email_verification_token_ttl_seconds // 3600),
        )
        self.audit.record("account_registered", account_id=account.id, tenant_id=account.tenant_id)
        return account, token

    async def _issue_action_token(
        self, account: Account, kind: ActionTokenKind, ttl_seconds: int
    ) -> ActionToken:
        now = int(self._clock())
        record = ActionToken(
            token=secrets.token_urlsafe(32),
            kind=kind,
            account_id=account.id,
            email=account.email,
            created_at=now,
            expires_at=now + ttl_seconds,
            max_attempts=self.settings.action_token_max_attempts,
        )
        return await self._call(self.store.put_action_token, record)

    async def _redeem_action_token(self, token: str, kind: ActionTokenKind) -> ActionToken:
        record = await self._call(self.store.get_action_token, token) if token else None
        if record is None or record.kind != kind or record.used:
            self.logger.warning("action_token_rejected", kind=kind.value, reason="unknown_or_used")
            raise ValidationError(ACTION_TOKEN_INVALID, error_code="INVALID_TOKEN")
        if record.is_expired(self._clock()):
            self.logger.warning("action_token_rejected", kind=kind.value, reason="expired")
            raise ValidationError(ACTION_TOKEN_INVALID, error_code="INVALID_TOKEN")
        if record.attempts >= record.max_attempts:
            self.logger.warning("action_token_rejected", kind=kind.value, reason="max_attempts")
            raise RateLimitExceededError("Maximum attempts exceeded")
        await self._call(self.store.record_action_token_attempt, token)
        return record

    async def verify_email(self, token: str) -> Account:
        record = await self._redeem_action_token(token, ActionTokenKind.EMAIL_VERIFICATION)
        account = await self._call(self.store.get_account, record.account_id)
        if account is None:
            self.logger.error("email_verification_missing_account", account_id=record.account_id)
            raise ValidationError(ACTION_TOKEN_INVALID, error_code="INVALID_TOKEN")
        if await self._call(self.store.consume_action_token, token) is None:
            raise ValidationError(ACTION_TOKEN_INVALID, error_code="INVALID_TOKEN")
        if account.email_verified:
            return account
        status = AccountStatus.ACTIVE if account.status == AccountStatus.PENDING else account.status
        updated = await self._call(
            self.store.set_account_status, account.id, status, email_verified=True
        )
        self.audit.record("email_verified", account_id=account.id)
        return updated or account

    # login / refresh / logout
    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        origin_address: Optional[str] = None,
    ) -> LoginResult:
        normalized = normalize_email(email)
        try:
            await self.rate_limiter.enforce(
                normalized,
                LOGIN_ACTION,
                self.settings.login_rate_limit_window_seconds,
                self.settings.login_rate_limit_attempts,
                message=LOGIN_RATE_LIMITED,
            )
        except RateLimitExceededError:
            self.audit.record("login_failed", reason="rate_limited", origin_address=origin_address)
            raise

        account = await self._call(self.store.get_account_by_email, normalized)
        if account is None:
            # same hashing cost as a real verification
            await asyncio.to_thread(self.passwords.burn)
            self.audit.record(
                "login_failed", reason="account_not_found", origin_address=origin_address
            )
            raise InvalidCredentialsError(INVALID_CREDENTIALS)

        if account.status == AccountStatus.PENDING:
            self.audit.record("login_failed", account_id=account.id, reason="email_not_verified")
            raise EmailNotVerifiedError(EMAIL_NOT_VERIFIED)
        if not account.is_active:
            self.audit.record(
                "login_failed",
                account_id=account.id,
                reason="account_inactive",
                status=account.status.value,
            )
            raise AccountSuspendedError(ACCOUNT_SUSPENDED)

        password_hash = await self._call(self.store.get_password_hash, account.id)
        verified = await asyncio.to_thread(self.passwords.verify, password_hash, password)
        if not verified:
            self.audit.record("login_failed", account_id=account.id, reason="invalid_password")
            raise InvalidCredentialsError(INVALID_CREDENTIALS)
        if password_hash and self.passwords.needs_rehash(password_hash):
            new_hash = await asyncio.to_thread(self.passwords.hash, password)
            await self._call(self.store.save_password_hash, account.id, new_hash)
            self.logger.info("password_rehashed", account_id=account.id)

        credentials = self.tokens.issue_credential_pair(account)
        session = await self.sessions.create_session(
            account.id, user_agent, origin_address, credentials.refresh_token
        )
        now = self._now_dt()
        await self._call(self.store.update_last_login, account.id, now)
        account.last_login_at = now
        self.audit.record("login", account_id=account.id, origin_address=origin_address)
        self.audit.record(
            "session_created",
            account_id=account.id,
            session_id=session.id,
            device=session.device_fingerprint,
        )
        return LoginResult(credentials=credentials, account=account, session=session)

    async def refresh(self, refresh_token: str) -> RefreshResult:
        """Exchange a refresh token for a new pair, rotating the bound session.

        Every failure surfaces as the same 401; the reason is audited.
        """
        try:
            claims = self.tokens.verify_refresh_token(refresh_token)
        except TokenVerificationError as exc:
            self.audit.record("refresh_rejected", reason=exc.reason.value)
            raise InvalidTokenError(REFRESH_TOKEN_INVALID) from exc

        account = await self._call(self.store.get_account, claims.subject)
        if account is None:
            self.audit.record("refresh_rejected", account_id=claims.subject, reason="account_not_found")
            raise InvalidTokenError(REFRESH_TOKEN_INVALID)
        if not account.is_active:
            self.audit.record(
                "refresh_rejected",
                account_id=account.id,
                reason="account_inactive",
                status=account.status.value,
            )
            raise AccountInactiveError(ACCOUNT_NOT_ACTIVE)

        session = await self.sessions.find_session_by_refresh_token(account.id, refresh_token)
        if session is None:
            # rotated away or revoked: the replay signal
            self.audit.record("refresh_rejected", account_id=account.id, reason="session_not_found")
            raise InvalidTokenError(REFRESH_TOKEN_INVALID)
        if session.is_expired(self._clock()):
            try:
                await self.sessions.revoke_session(session.id)
            except Exception as exc:
                self.logger.error(
                    "expired_session_revoke_failed",
                    account_id=account.id,
                    session_id=session.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            self.audit.record(
                "refresh_rejected",
                account_id=account.id,
                session_id=session.id,
                reason="session_expired",
            )
            raise InvalidTokenError(REFRESH_TOKEN_INVALID)

        credentials = self.tokens.issue_credential_pair(account)
        try:
            rotated = await self.sessions.rotate_session(
                session.id,
                credentials.refresh_token,
                previous_refresh_token=refresh_token,
            )
        except SessionRotationConflict as exc:
            self.audit.record(
                "refresh_rejected",
                account_id=account.id,
                session_id=session.id,
                reason="rotation_conflict",
            )
            raise InvalidTokenError(REFRESH_TOKEN_INVALID) from exc
        self.audit.record("token_refreshed", account_id=account.id, session_id=rotated.id)
        return RefreshResult(credentials=credentials, session=rotated)

    async def logout(
        self,
        principal: Principal,
        *,
        refresh_token: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> int:
        """Forget one session. Store failures are logged, never raised."""
        account_id = principal.subject_id
        try:
            target: Optional[Session] = None
            if session_id:
                target = await self.sessions.get_session(session_id)
                if target is not None and target.account_id != account_id:
                    self.logger.warning("logout_foreign_session", account_id=account_id)
                    target = None
            elif refresh_token:
                target = await self.sessions.find_session_by_refresh_token(account_id, refresh_token)
            if target is None:
                self.logger.info("logout_without_session", account_id=account_id)
                return 0
            revoked = await self.sessions.revoke_session(target.id)
        except Exception as exc:
            self.logger.error(
                "logout_failed",
                account_id=account_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return 0
        self.audit.record("logout", account_id=account_id, session_id=target.id)
        return 1 if revoked else 0

    async def logout_all(self, principal: Principal) -> int:
        try:
            revoked = await self.sessions.revoke_all_sessions(principal.subject_id)
        except Exception as exc:
            self.logger.error(
                "logout_all_failed",
                account_id=principal.subject_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return 0
        self.audit.record("logout_all", account_id=principal.subject_id, count=revoked)
        return revoked

    # password reset
    async def request_password_reset(self, email: str) -> Optional[ActionToken]:
        """Issue a reset token when the account exists and is active.

        The caller's response must not depend on the return value.
        """
        normalized = normalize_email(email)
        try:
            await self.rate_limiter.enforce(
                normalized,
                PASSWORD_RESET_ACTION,
                self.settings.password_reset_rate_limit_window_seconds,
                self.settings.password_reset_rate_limit_attempts,
                message=RESET_RATE_LIMITED,
                sliding=True,
            )
        except RateLimitExceededError:
            self.audit.record("password_reset_rate_limited")
            raise
        account = await self._call(self.store.get_account_by_email, normalized)
        if account is None:
            self.logger.info("password_reset_unknown_email")
            return None
        if not account.is_active:
            self.logger.warning(
                "password_reset_inactive_account",
                account_id=account.id,
                status=account.status.value,
            )
            return None
        token = await self._issue_action_token(
            account,
            ActionTokenKind.PASSWORD_RESET,
            self.settings.password_reset_token_ttl_seconds,
        )
        await asyncio.to_thread(
            self.email.send_password_reset,
            account.email,
            token.token,
            ttl_minutes=max(1, self.settings.password_reset_token_ttl_seconds // 60),
        )
        self.audit.record("password_reset_requested", account_id=account.id)
        return token

    async def password_reset_history(self, email: str, *, limit: int = 5) -> List[float]:
        return await self.rate_limiter.recent_attempts(
            normalize_email(email), PASSWORD_RESET_ACTION, limit=limit
        )

    async def reset_password(self, token: str, new_password: str) -> Account:
        problems = password_policy_violations(new_password)
        if problems:
            raise ValidationError(
                "Password does not meet requirements", detail={"problems": problems}
            )
        record = await self._redeem_action_token(token, ActionTokenKind.PASSWORD_RESET)
        account = await self._call(self.store.get_account, record.account_id)
        if account is None:
            self.logger.error("password_reset_missing_account", account_id=record.account_id)
            raise ValidationError(ACTION_TOKEN_INVALID, error_code="INVALID_TOKEN")
        if not account.is_active:
            raise AccountInactiveError(ACCOUNT_NOT_ACTIVE)
        problems = password_policy_violations(
            new_password,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
        )
        if problems:
            raise ValidationError(
                "Password does not meet requirements", detail={"problems": problems}
            )
        if await self._call(self.store.consume_action_token, token) is None:
            raise ValidationError(ACTION_TOKEN_INVALID, error_code="INVALID_TOKEN")
        password_hash = await asyncio.to_thread(self.passwords.hash, new_password)
        await self._call(self.store.save_password_hash, account.id, password_hash)
        revoked = await self.sessions.revoke_all_sessions(account.id)
        self.audit.record("password_reset", account_id=account.id, sessions_revoked=revoked)
        return account

    # account administration
    async def get_account(self, account_id: str) -> Optional[Account]:
        return await self._call(self.store.get_account, account_id)

    async def change_account_status(
        self, actor: Principal, account_id: str, status: AccountStatus
    ) -> Account:
        target = await self._call(self.store.get_account, account_id)
        if target is None:
            raise NotFoundError("Account not found")
        if target.tenant_id != actor.tenant_id:
            raise AuthorizationDeniedError(RESOURCE_ACCESS_DENIED)
        if target.id == actor.subject_id:
            raise InvalidStatusTransition("Cannot change your own account status")
        status = AccountStatus(status)
        by_admin = actor.role == AccountRole.ADMIN.value
        if not status_transition_allowed(target.status, status, by_admin=by_admin):
            raise InvalidStatusTransition(
                "Status change not allowed",
                detail={"from": target.status.value, "to": status.value},
            )
        updated = await self._call(self.store.set_account_status, target.id, status)
        if updated is None:
            raise NotFoundError("Account not found")
        revoked = 0
        if target.is_active and not updated.is_active:
            revoked = await self.sessions.revoke_all_sessions(target.id)
        self.audit.record(
            "account_status_changed",
            account_id=target.id,
            actor_id=actor.subject_id,
            previous=target.status.value,
            status=status.value,
            sessions_revoked=revoked,
        )
        return updated
