from __future__ import annotations

import re
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 12
PASSWORD_MAX_LENGTH = 128

_FORBIDDEN_PATTERNS = [
    re.compile(r"password|passwd", re.IGNORECASE),
    re.compile(r"123|abc|qwer|asdf|zxcv", re.IGNORECASE),
    re.compile(r"admin|letmein|welcome|login|guest", re.IGNORECASE),
    re.compile(r"user|test|demo|temp|company|authcore", re.IGNORECASE),
    re.compile(r"(.)\1\1"),
]


def _personal_fragments(
    email: Optional[str], first_name: Optional[str], last_name: Optional[str]
) -> List[str]:
    fragments: List[str] = []
    if email:
        local_part = email.strip().lower().split("@", 1)[0]
        if len(local_part) > 3:
            fragments.append(local_part)
    for name in (first_name, last_name):
        if name and len(name.strip()) > 2:
            fragments.append(name.strip().lower())
    return fragments


def password_policy_violations(
    password: str,
    *,
    email: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> List[str]:
    """Return human-readable policy violations; empty when the password is acceptable.

    ``email`` and the names, when given, must not appear in the password.
    """
    problems: List[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        problems.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if len(password) > PASSWORD_MAX_LENGTH:
        problems.append(f"Password must be at most {PASSWORD_MAX_LENGTH} characters long")
    if not re.search(r"[a-z]", password):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        problems.append("Password must contain at least one number")
    if not re.search(r"[^A-Za-z0-9]", password):
        problems.append("Password must contain at least one special character")
    if any(pattern.search(password) for pattern in _FORBIDDEN_PATTERNS):
        problems.append("Password contains a common or repeated pattern")
    lowered = password.lower()
    if any(fragment in lowered for fragment in _personal_fragments(email, first_name, last_name)):
        problems.append("Password must not contain your email address or name")
    return problems


class PasswordService:
    """argon2id hashing with a fixed dummy hash for unknown accounts."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when the account does not exist so both paths cost the same
        self._dummy_hash = self._hasher.hash("authcore-dummy-password")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash:
            self.burn()
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error=str(exc))
            return False

    def burn(self) -> None:
        """Spend one verification on the dummy hash."""
        try:
            self._hasher.verify(self._dummy_hash, "authcore-not-the-password")
        except VerifyMismatchError:
            pass

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True
