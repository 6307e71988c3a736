from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, List, Optional, Protocol, TypeVar

from authcore.storage.models import Account, AccountStatus, ActionToken, Session

T = TypeVar("T")


class CredentialStore(Protocol):
    """Keyed record store for accounts, password hashes, sessions and action tokens.

    Implementations must be atomic per key. Queries over the account index
    may be briefly stale; primary key reads may not.
    """

    def create_account(self, account: Account, password_hash: str) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_password_hash(self, account_id: str) -> Optional[str]: ...

    def save_password_hash(self, account_id: str, password_hash: str) -> None: ...

    def update_last_login(self, account_id: str, when: Any) -> None: ...

    def set_account_status(
        self, account_id: str, status: AccountStatus, *, email_verified: Optional[bool] = None
    ) -> Optional[Account]: ...

    def put_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_sessions_for_account(self, account_id: str) -> List[Session]: ...

    def rotate_session_token(
        self,
        session_id: str,
        *,
        expected_hash: str,
        new_hash: str,
        last_used_at: int,
    ) -> Session: ...

    def delete_session(self, session_id: str) -> bool: ...

    def put_action_token(self, token: ActionToken) -> ActionToken: ...

    def get_action_token(self, token: str) -> Optional[ActionToken]: ...

    def record_action_token_attempt(self, token: str) -> Optional[ActionToken]: ...

    def consume_action_token(self, token: str) -> Optional[ActionToken]: ...


async def bounded_call(
    timeout: Optional[float], fn: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a blocking store call in a worker thread, bounded by ``timeout`` seconds.

    Raises ``asyncio.TimeoutError`` when the call does not finish in time.
    """
    call = functools.partial(fn, *args, **kwargs)
    if timeout is None or timeout <= 0:
        return await asyncio.to_thread(call)
    return await asyncio.wait_for(asyncio.to_thread(call), timeout=timeout)


__all__ = ["CredentialStore", "bounded_call"]
