from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from authcore.config import SecretPolicyError, Settings
from authcore.logging import get_logger
from authcore.service.authorization import permissions_for_role
from authcore.service.errors import TokenFailureReason, TokenVerificationError
from authcore.storage.models import Account

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

MIN_SECRET_LENGTH = 16
MIN_PRODUCTION_SECRET_LENGTH = 32
MIN_CHARACTER_CLASSES = 3

_WEAK_SECRET_PATTERNS = [
    re.compile(r"^123456"),
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"^abc", re.IGNORECASE),
    re.compile(r"^qwe", re.IGNORECASE),
    re.compile(r"(.)\1{4,}"),
    re.compile(r"dev-", re.IGNORECASE),
    re.compile(r"change-in-production", re.IGNORECASE),
]


def _character_classes(secret: str) -> int:
    return sum(
        (
            any(c.islower() for c in secret),
            any(c.isupper() for c in secret),
            any(c.isdigit() for c in secret),
            any(not c.isalnum() for c in secret),
        )
    )


def validate_secret_policy(
    access_secret: Optional[str],
    refresh_secret: Optional[str],
    *,
    local: bool,
) -> None:
    """Check signing secrets once at startup; raise ``SecretPolicyError`` on violation."""
    problems: list[str] = []
    for label, secret in (("access", access_secret), ("refresh", refresh_secret)):
        if not secret:
            problems.append(f"{label} secret is not configured")
            continue
        if len(secret) < MIN_SECRET_LENGTH:
            problems.append(f"{label} secret must be at least {MIN_SECRET_LENGTH} characters")
        if local:
            continue
        if len(secret) < MIN_PRODUCTION_SECRET_LENGTH:
            problems.append(
                f"{label} secret must be at least {MIN_PRODUCTION_SECRET_LENGTH} characters"
            )
        if _character_classes(secret) < MIN_CHARACTER_CLASSES:
            problems.append(
                f"{label} secret must mix at least {MIN_CHARACTER_CLASSES} of "
                "lowercase, uppercase, digit and symbol characters"
            )
        if any(pattern.search(secret) for pattern in _WEAK_SECRET_PATTERNS):
            problems.append(f"{label} secret matches a known weak pattern")
    if access_secret and refresh_secret and hmac.compare_digest(
        access_secret.encode(), refresh_secret.encode()
    ):
        problems.append("access and refresh secrets must differ")
    if problems:
        raise SecretPolicyError(problems)


@dataclass(frozen=True)
class TokenConfig:
    """Immutable signing configuration, built once at process start."""

    access_secret: str
    refresh_secret: str
    issuer: str
    audience: str
    access_ttl_seconds: int = 900
    refresh_ttl_seconds: int = 7 * 24 * 3600

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenConfig":
        validate_secret_policy(
            settings.jwt_access_secret,
            settings.jwt_refresh_secret,
            local=settings.is_local,
        )
        return cls(
            access_secret=settings.jwt_access_secret or "",
            refresh_secret=settings.jwt_refresh_secret or "",
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
        )


@dataclass(frozen=True)
class CredentialPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    email: str
    tenant_id: str
    role: str
    permissions: Tuple[str, ...]
    email_verified: bool
    issued_at: int
    expires_at: int
    jti: str


@dataclass(frozen=True)
class RefreshClaims:
    subject: str
    jti: str
    issued_at: int
    expires_at: int


def extract_bearer_token(header: Optional[str]) -> Optional[str]:
    """Return the token from ``"Bearer <token>"``, or None for any other shape."""
    if not header:
        return None
    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """Issues and verifies HS256 credential pairs without persisted state.

    Access and refresh tokens are signed with distinct secrets, so a token of
    one kind never verifies as the other.
    """

    def __init__(
        self, config: TokenConfig, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.config = config
        self._clock = clock

    extract_bearer_token = staticmethod(extract_bearer_token)

    def issue_credential_pair(self, account: Account) -> CredentialPair:
        now = int(self._clock())
        access_payload = {
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "sub": account.id,
            "email": account.email,
            "tenant_id": account.tenant_id,
            "role": account.role.value,
            "permissions": list(permissions_for_role(account.role)),
            "email_verified": account.email_verified,
            "type": ACCESS_TOKEN_TYPE,
            "iat": now,
            "exp": now + self.config.access_ttl_seconds,
            "jti": str(uuid.uuid4()),
        }
        refresh_payload = {
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "sub": account.id,
            "type": REFRESH_TOKEN_TYPE,
            "iat": now,
            "exp": now + self.config.refresh_ttl_seconds,
            "jti": str(uuid.uuid4()),
        }
        return CredentialPair(
            access_token=self._encode_jwt(access_payload, self.config.access_secret),
            refresh_token=self._encode_jwt(refresh_payload, self.config.refresh_secret),
            expires_in=self.config.access_ttl_seconds,
        )

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self._decode_jwt(token, self.config.access_secret)
        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise TokenVerificationError(TokenFailureReason.CLAIMS, "not an access token")
        try:
            return AccessClaims(
                subject=str(payload["sub"]),
                email=str(payload.get("email", "")),
                tenant_id=str(payload["tenant_id"]),
                role=str(payload["role"]),
                permissions=tuple(payload.get("permissions") or ()),
                email_verified=bool(payload.get("email_verified", False)),
                issued_at=int(payload.get("iat", 0)),
                expires_at=int(payload["exp"]),
                jti=str(payload.get("jti", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenVerificationError(TokenFailureReason.CLAIMS, str(exc)) from exc

    def verify_refresh_token(self, token: str) -> RefreshClaims:
        payload = self._decode_jwt(token, self.config.refresh_secret)
        if payload.get("type") != REFRESH_TOKEN_TYPE:
            raise TokenVerificationError(TokenFailureReason.CLAIMS, "not a refresh token")
        if not payload.get("sub") or not payload.get("jti"):
            raise TokenVerificationError(TokenFailureReason.CLAIMS, "missing subject or jti")
        return RefreshClaims(
            subject=str(payload["sub"]),
            jti=str(payload["jti"]),
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _decode_jwt(self, token: str, secret: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise TokenVerificationError(TokenFailureReason.MALFORMED, "token is not a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenVerificationError(TokenFailureReason.MALFORMED, "wrong segment count")

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise TokenVerificationError(TokenFailureReason.MALFORMED, "bad header") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenVerificationError(TokenFailureReason.MALFORMED, "unsupported algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenVerificationError(TokenFailureReason.SIGNATURE, "signature mismatch")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise TokenVerificationError(TokenFailureReason.MALFORMED, "bad payload") from exc
        if not isinstance(payload, dict):
            raise TokenVerificationError(TokenFailureReason.MALFORMED, "payload is not an object")

        if payload.get("iss") != self.config.issuer:
            raise TokenVerificationError(TokenFailureReason.CLAIMS, "issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.config.audience
        elif isinstance(aud, list):
            valid_aud = self.config.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenVerificationError(TokenFailureReason.CLAIMS, "audience mismatch")

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise TokenVerificationError(TokenFailureReason.CLAIMS, "missing exp")
        # Checked against our own clock even though the signature is valid
        if int(exp) <= int(self._clock()):
            raise TokenVerificationError(TokenFailureReason.EXPIRED, "token expired")
        return payload
