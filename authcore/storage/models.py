from __future__ import annotations

import hashlib
import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

# Device fingerprints are truncated user agents
DEVICE_FINGERPRINT_MAX_LENGTH = 50


class AccountRole(str, Enum):
    ADMIN = "admin"
    USER = "user"
    VIEWER = "viewer"


class AccountStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class ActionTokenKind(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


# Allowed (from, to) status moves. Reactivation from suspended/inactive is
# only reachable through an admin action.
_STATUS_TRANSITIONS: Dict[AccountStatus, FrozenSet[AccountStatus]] = {
    AccountStatus.PENDING: frozenset(
        {AccountStatus.ACTIVE, AccountStatus.SUSPENDED, AccountStatus.INACTIVE}
    ),
    AccountStatus.ACTIVE: frozenset({AccountStatus.SUSPENDED, AccountStatus.INACTIVE}),
    AccountStatus.SUSPENDED: frozenset({AccountStatus.ACTIVE, AccountStatus.INACTIVE}),
    AccountStatus.INACTIVE: frozenset({AccountStatus.ACTIVE}),
}
_ADMIN_ONLY_TRANSITIONS: FrozenSet[Tuple[AccountStatus, AccountStatus]] = frozenset(
    {
        (AccountStatus.SUSPENDED, AccountStatus.ACTIVE),
        (AccountStatus.INACTIVE, AccountStatus.ACTIVE),
    }
)


def status_transition_allowed(
    current: AccountStatus, target: AccountStatus, *, by_admin: bool = False
) -> bool:
    """Return True when ``current`` may move to ``target``."""
    if current == target:
        return False
    if target not in _STATUS_TRANSITIONS.get(current, frozenset()):
        return False
    if (current, target) in _ADMIN_ONLY_TRANSITIONS and not by_admin:
        return False
    return True


def normalize_email(email: str) -> str:
    """Strip, NFKC-normalise and case-fold an email address."""
    return unicodedata.normalize("NFKC", email.strip()).casefold()


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def truncate_device_fingerprint(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "unknown"
    return user_agent[:DEVICE_FINGERPRINT_MAX_LENGTH]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    tenant_id: str
    role: AccountRole = AccountRole.USER
    status: AccountStatus = AccountStatus.PENDING
    email_verified: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @classmethod
    def new(
        cls,
        email: str,
        tenant_id: str,
        *,
        role: AccountRole = AccountRole.USER,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            tenant_id=tenant_id,
            role=AccountRole(role),
            first_name=first_name,
            last_name=last_name,
        )


@dataclass
class Session:
    """Persisted binding of one refresh credential lineage to a device.

    Timestamps are integer seconds since the epoch. Only the sha256 digest of
    the current refresh token is stored.
    """

    id: str
    account_id: str
    refresh_token_hash: str
    created_at: int
    last_used_at: int
    expires_at: int
    device_fingerprint: str = "unknown"
    origin_address: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= int(now)

    @staticmethod
    def make_id(account_id: str, now: float) -> str:
        return f"{account_id}:{int(now * 1000)}:{uuid.uuid4().hex[:8]}"

    @classmethod
    def new(
        cls,
        account_id: str,
        refresh_token: str,
        *,
        now: float,
        ttl_seconds: int,
        user_agent: Optional[str] = None,
        origin_address: Optional[str] = None,
    ) -> "Session":
        issued = int(now)
        return cls(
            id=cls.make_id(account_id, now),
            account_id=account_id,
            refresh_token_hash=hash_refresh_token(refresh_token),
            created_at=issued,
            last_used_at=issued,
            expires_at=issued + ttl_seconds,
            device_fingerprint=truncate_device_fingerprint(user_agent),
            origin_address=origin_address,
        )


@dataclass
class ActionToken:
    """One-time token for email verification or password reset."""

    token: str
    kind: ActionTokenKind
    account_id: str
    email: str
    created_at: int
    expires_at: int
    attempts: int = 0
    max_attempts: int = 5
    used: bool = False

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= int(now)
