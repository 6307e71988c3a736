from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConditionFailed, ConstraintViolation
from authcore.storage.models import (
    Account,
    AccountStatus,
    ActionToken,
    Session,
    normalize_email,
)


class MemoryStore:
    """In-memory credential store for development and tests.

    Records are copied on the way in and out so callers can only change
    stored state through the store methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.password_hashes: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.action_tokens: Dict[str, ActionToken] = {}
        # secondary indexes
        self._email_index: Dict[str, str] = {}
        self._account_sessions: Dict[str, set[str]] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # accounts
    def create_account(self, account: Account, password_hash: str) -> Account:
        email = normalize_email(account.email)
        with self._data_lock:
            if email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(account, email=email)
            self.accounts[stored.id] = stored
            self.password_hashes[stored.id] = password_hash
            self._email_index[email] = stored.id
            return replace(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(normalize_email(email))
            if not account_id:
                return None
            return replace(self.accounts[account_id])

    def list_accounts(self, tenant_id: str) -> List[Account]:
        with self._data_lock:
            results = [replace(a) for a in self.accounts.values() if a.tenant_id == tenant_id]
        return sorted(results, key=lambda a: a.created_at)

    def get_password_hash(self, account_id: str) -> Optional[str]:
        with self._data_lock:
            return self.password_hashes.get(account_id)

    def save_password_hash(self, account_id: str, password_hash: str) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            self.password_hashes[account_id] = password_hash
            self.accounts[account_id].updated_at = datetime.now(timezone.utc)

    def update_last_login(self, account_id: str, when: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.last_login_at = when

    def set_account_status(
        self,
        account_id: str,
        status: AccountStatus,
        *,
        email_verified: Optional[bool] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.status = AccountStatus(status)
            if email_verified is not None:
                account.email_verified = email_verified
            account.updated_at = datetime.now(timezone.utc)
            return replace(account)

    # sessions
    def put_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": session.account_id}
                )
            self.sessions[session.id] = replace(session)
            self._account_sessions.setdefault(session.account_id, set()).add(session.id)
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_sessions_for_account(self, account_id: str) -> List[Session]:
        with self._data_lock:
            ids = self._account_sessions.get(account_id, set())
            results = [replace(self.sessions[sid]) for sid in ids if sid in self.sessions]
        return sorted(results, key=lambda s: s.created_at)

    def rotate_session_token(
        self,
        session_id: str,
        *,
        expected_hash: str,
        new_hash: str,
        last_used_at: int,
    ) -> Session:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None:
                raise ConditionFailed(session_id, "session not found")
            if sess.refresh_token_hash != expected_hash:
                raise ConditionFailed(session_id, "refresh token mismatch")
            sess.refresh_token_hash = new_hash
            sess.last_used_at = last_used_at
            return replace(sess)

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.pop(session_id, None)
            if sess is None:
                return False
            ids = self._account_sessions.get(sess.account_id)
            if ids is not None:
                ids.discard(session_id)
            return True

    # one-time action tokens
    def put_action_token(self, token: ActionToken) -> ActionToken:
        with self._data_lock:
            self.action_tokens[token.token] = replace(token)
            return replace(token)

    def get_action_token(self, token: str) -> Optional[ActionToken]:
        with self._data_lock:
            record = self.action_tokens.get(token)
            return replace(record) if record else None

    def record_action_token_attempt(self, token: str) -> Optional[ActionToken]:
        with self._data_lock:
            record = self.action_tokens.get(token)
            if record is None:
                return None
            record.attempts += 1
            return replace(record)

    def consume_action_token(self, token: str) -> Optional[ActionToken]:
        """Mark a token used; returns None if it was missing or already used."""
        with self._data_lock:
            record = self.action_tokens.get(token)
            if record is None or record.used:
                return None
            record.used = True
            return replace(record)
