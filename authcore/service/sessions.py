from __future__ import annotations

import hmac
import time
from typing import Callable, List, Optional

from authcore.logging import get_logger
from authcore.service.errors import SessionRotationConflict
from authcore.storage.common import CredentialStore, bounded_call
from authcore.storage.errors import ConditionFailed
from authcore.storage.models import Session, hash_refresh_token

logger = get_logger(__name__)


class SessionManager:
    """Creates, finds, rotates and revokes refresh-token sessions.

    Sessions store only a digest of the refresh token. Rotation is a
    conditional update on that digest, so a token that has been rotated away
    can never be exchanged again.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        ttl_seconds: int = 7 * 24 * 3600,
        max_sessions_per_account: int = 10,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_sessions_per_account = max_sessions_per_account
        self._timeout = timeout
        self._clock = clock

    async def _call(self, fn, *args, **kwargs):
        return await bounded_call(self._timeout, fn, *args, **kwargs)

    async def create_session(
        self,
        account_id: str,
        device_fingerprint: Optional[str],
        origin_address: Optional[str],
        refresh_token: str,
    ) -> Session:
        session = Session.new(
            account_id,
            refresh_token,
            now=self._clock(),
            ttl_seconds=self.ttl_seconds,
            user_agent=device_fingerprint,
            origin_address=origin_address,
        )
        stored = await self._call(self.store.put_session, session)
        await self._enforce_session_limit(account_id, keep=stored.id)
        logger.info("session_created", account_id=account_id, session_id=stored.id)
        return stored

    async def _enforce_session_limit(self, account_id: str, *, keep: str) -> None:
        sessions = await self._call(self.store.list_sessions_for_account, account_id)
        excess = len(sessions) - self.max_sessions_per_account
        if excess <= 0:
            return
        candidates = sorted(
            (s for s in sessions if s.id != keep), key=lambda s: s.last_used_at
        )
        for stale in candidates[:excess]:
            try:
                await self.revoke_session(stale.id)
            except Exception as exc:
                logger.error(
                    "session_evict_failed",
                    account_id=account_id,
                    session_id=stale.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            logger.info("session_evicted", account_id=account_id, session_id=stale.id)

    async def get_session(self, session_id: str) -> Optional[Session]:
        return await self._call(self.store.get_session, session_id)

    async def list_sessions(self, account_id: str) -> List[Session]:
        return await self._call(self.store.list_sessions_for_account, account_id)

    async def list_active_sessions(self, account_id: str) -> List[Session]:
        """Sessions that have not yet expired; expired ones are left for refresh to revoke."""
        now = self._clock()
        return [s for s in await self.list_sessions(account_id) if not s.is_expired(now)]

    async def find_session_by_refresh_token(
        self, account_id: str, refresh_token: str
    ) -> Optional[Session]:
        token_hash = hash_refresh_token(refresh_token)
        sessions = await self.list_sessions(account_id)
        for session in sessions:
            if hmac.compare_digest(session.refresh_token_hash, token_hash):
                return session
        return None

    async def rotate_session(
        self,
        session_id: str,
        new_refresh_token: str,
        *,
        previous_refresh_token: str,
    ) -> Session:
        """Swap the bound refresh token, but only if ``previous_refresh_token`` is still current.

        Raises ``SessionRotationConflict`` when the session is gone or a
        concurrent rotation already replaced the token.
        """
        try:
            return await self._call(
                self.store.rotate_session_token,
                session_id,
                expected_hash=hash_refresh_token(previous_refresh_token),
                new_hash=hash_refresh_token(new_refresh_token),
                last_used_at=int(self._clock()),
            )
        except ConditionFailed as exc:
            logger.warning("session_rotation_conflict", session_id=session_id, reason=exc.message)
            raise SessionRotationConflict(session_id) from exc

    async def revoke_session(self, session_id: str) -> bool:
        return await self._call(self.store.delete_session, session_id)

    async def revoke_all_sessions(self, account_id: str) -> int:
        """Delete every session for the account, continuing past individual failures."""
        sessions = await self.list_sessions(account_id)
        revoked = 0
        for session in sessions:
            try:
                if await self.revoke_session(session.id):
                    revoked += 1
            except Exception as exc:
                logger.error(
                    "session_revoke_failed",
                    account_id=account_id,
                    session_id=session.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        logger.info("sessions_revoked", account_id=account_id, count=revoked, total=len(sessions))
        return revoked
