from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

from authcore.logging import get_logger
from authcore.service.authorization import AccessPolicy, Principal, evaluate_policy
from authcore.service.errors import (
    AccountInactiveError,
    AccountNotFoundError,
    AuthenticationError,
    InvalidTokenError,
    ServerError,
    TokenVerificationError,
)
from authcore.service.tokens import TokenService, extract_bearer_token
from authcore.storage.common import CredentialStore, bounded_call

logger = get_logger(__name__)

TOKEN_REQUIRED = "Authentication token is required"
TOKEN_INVALID = "Invalid or expired authentication token"
ACCOUNT_NOT_FOUND = "User account not found"
ACCOUNT_NOT_ACTIVE = "User account is not active"
AUTHENTICATION_ERROR = "Authentication error"


class AuthStage(str, Enum):
    NO_TOKEN = "no_token"
    TOKEN_EXTRACTED = "token_extracted"
    TOKEN_VERIFIED = "token_verified"
    ACCOUNT_LOADED = "account_loaded"
    ACCOUNT_ACTIVE = "account_active"
    AUTHORIZED = "authorized"


class AuthGuard:
    """Authenticates bearer credentials and evaluates access policies.

    The guard never writes to the store. Every token failure is reported with
    the same message; the specific reason only goes to the log.
    """

    def __init__(
        self,
        tokens: TokenService,
        store: CredentialStore,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self.tokens = tokens
        self.store = store
        self._timeout = timeout

    async def authenticate(self, authorization_header: Optional[str]) -> Principal:
        token = extract_bearer_token(authorization_header)
        if token is None:
            logger.debug("access_token_missing", stage=AuthStage.NO_TOKEN.value)
            raise AuthenticationError(TOKEN_REQUIRED)
        stage = AuthStage.TOKEN_EXTRACTED

        # Verification failures never reach the store
        try:
            claims = self.tokens.verify_access_token(token)
        except TokenVerificationError as exc:
            logger.warning(
                "access_token_rejected",
                stage=stage.value,
                reason=exc.reason.value,
                error_code=exc.error_code,
            )
            raise InvalidTokenError(TOKEN_INVALID) from exc
        stage = AuthStage.TOKEN_VERIFIED

        try:
            account = await bounded_call(self._timeout, self.store.get_account, claims.subject)
        except asyncio.TimeoutError as exc:
            logger.error("account_lookup_timeout", stage=stage.value, subject_id=claims.subject)
            raise ServerError(AUTHENTICATION_ERROR) from exc
        except Exception as exc:
            logger.error(
                "account_lookup_failed",
                stage=stage.value,
                subject_id=claims.subject,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ServerError(AUTHENTICATION_ERROR) from exc
        if account is None:
            logger.warning("account_not_found", stage=stage.value, subject_id=claims.subject)
            raise AccountNotFoundError(ACCOUNT_NOT_FOUND)
        stage = AuthStage.ACCOUNT_LOADED

        if not account.is_active:
            logger.warning(
                "account_not_active",
                stage=stage.value,
                subject_id=account.id,
                status=account.status.value,
            )
            raise AccountInactiveError(ACCOUNT_NOT_ACTIVE)

        # The permission snapshot comes from the token; identity fields from the claims
        return Principal(
            subject_id=claims.subject,
            email=claims.email,
            tenant_id=claims.tenant_id,
            role=claims.role,
            permissions=claims.permissions,
            email_verified=claims.email_verified,
        )

    def authorize(
        self,
        principal: Principal,
        policy: AccessPolicy,
        *,
        resource_tenant_id: Optional[str] = None,
    ) -> Principal:
        evaluate_policy(principal, policy, resource_tenant_id=resource_tenant_id)
        logger.debug(
            "request_authorized",
            stage=AuthStage.AUTHORIZED.value,
            subject_id=principal.subject_id,
            resource=policy.resource,
            action=policy.action,
        )
        return principal
