"""Tests for the login, refresh, logout, registration and password-reset protocols."""

from unittest.mock import MagicMock

import pytest

from authcore.service.auth import (
    ACCOUNT_SUSPENDED,
    ACTION_TOKEN_INVALID,
    EMAIL_NOT_VERIFIED,
    INVALID_CREDENTIALS,
    REFRESH_TOKEN_INVALID,
)
from authcore.service.authorization import RESOURCE_ACCESS_DENIED
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
    ValidationError,
)
from authcore.storage.models import AccountRole, AccountStatus, ActionTokenKind

PASSWORD = "Correct-Horse-9battery"
NEW_PASSWORD = "Staple-Orbit-7lantern"


async def _principal_for(stack, login_result):
    return await stack.guard.authenticate(f"Bearer {login_result.credentials.access_token}")


class TestRegistration:
    async def test_register_creates_pending_admin_of_new_tenant(self, stack):
        account, token = await stack.auth.register(
            "  New.User@Example.COM ", PASSWORD, first_name="New"
        )

        assert account.email == "new.user@example.com"
        assert account.status == AccountStatus.PENDING
        assert account.role == AccountRole.ADMIN
        assert account.tenant_id
        assert token.kind == ActionTokenKind.EMAIL_VERIFICATION
        assert token.account_id == account.id
        assert stack.audit.recent(event="account_registered")[0].account_id == account.id

    async def test_duplicate_email_conflicts(self, stack):
        await stack.auth.register("dup@example.com", PASSWORD)

        with pytest.raises(ConflictError):
            await stack.auth.register("DUP@example.com", PASSWORD)

    async def test_weak_password_rejected_with_problems(self, stack):
        with pytest.raises(ValidationError) as exc:
            await stack.auth.register("weak@example.com", "short")
        assert exc.value.detail["problems"]

    async def test_password_containing_email_or_name_rejected(self, stack):
        with pytest.raises(ValidationError) as exc:
            await stack.auth.register("battery@example.com", PASSWORD)
        assert "Password must not contain your email address or name" in exc.value.detail["problems"]

        with pytest.raises(ValidationError):
            await stack.auth.register("rider@example.com", PASSWORD, last_name="HORSE")
        assert stack.store.get_account_by_email("rider@example.com") is None

    async def test_registration_throttled_per_origin(self, stack):
        for email in ("first@example.com", "second@example.com", "third@example.com"):
            await stack.auth.register(email, PASSWORD, origin_address="10.0.0.1")

        with pytest.raises(RateLimitExceededError) as exc:
            await stack.auth.register("fourth@example.com", PASSWORD, origin_address="10.0.0.1")
        assert exc.value.retry_after > 0
        assert stack.audit.recent(event="register_rate_limited")
        assert stack.store.get_account_by_email("fourth@example.com") is None

        account, _ = await stack.auth.register(
            "fourth@example.com", PASSWORD, origin_address="10.0.0.2"
        )
        assert account.email == "fourth@example.com"

    async def test_verify_email_activates_account(self, stack):
        account, token = await stack.auth.register("verify@example.com", PASSWORD)

        verified = await stack.auth.verify_email(token.token)

        assert verified.status == AccountStatus.ACTIVE
        assert verified.email_verified is True
        result = await stack.auth.login("verify@example.com", PASSWORD)
        assert result.account.id == account.id

    async def test_verification_token_is_single_use(self, stack):
        _, token = await stack.auth.register("once@example.com", PASSWORD)
        await stack.auth.verify_email(token.token)

        with pytest.raises(ValidationError) as exc:
            await stack.auth.verify_email(token.token)
        assert exc.value.message == ACTION_TOKEN_INVALID
        assert exc.value.error_code == "INVALID_TOKEN"

    async def test_expired_verification_token(self, stack, clock):
        _, token = await stack.auth.register("late@example.com", PASSWORD)
        clock.advance(stack.settings.email_verification_token_ttl_seconds)

        with pytest.raises(ValidationError):
            await stack.auth.verify_email(token.token)


class TestLogin:
    async def test_successful_login(self, stack, make_account):
        account = make_account()

        result = await stack.auth.login(
            "ALICE@example.com", PASSWORD, user_agent="pytest-agent", origin_address="10.1.1.1"
        )

        assert result.account.id == account.id
        assert result.account.last_login_at is not None
        assert result.session.account_id == account.id
        assert result.session.device_fingerprint == "pytest-agent"
        principal = await _principal_for(stack, result)
        assert principal.subject_id == account.id
        events = [e.event for e in stack.audit.recent(account_id=account.id)]
        assert "login" in events
        assert "session_created" in events

    async def test_unknown_email_and_wrong_password_are_indistinguishable(
        self, stack, make_account
    ):
        make_account()

        with pytest.raises(InvalidCredentialsError) as unknown:
            await stack.auth.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await stack.auth.login("alice@example.com", "Wrong-Horse-9battery")

        assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS
        assert unknown.value.error_code == wrong.value.error_code
        assert unknown.value.status_code == wrong.value.status_code == 401
        reasons = {e.data.get("reason") for e in stack.audit.recent(event="login_failed")}
        assert reasons == {"account_not_found", "invalid_password"}

    async def test_fourth_attempt_is_rate_limited(self, stack, make_account):
        make_account()
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await stack.auth.login("alice@example.com", "Wrong-Horse-9battery")

        with pytest.raises(RateLimitExceededError) as exc:
            await stack.auth.login("alice@example.com", PASSWORD)
        assert exc.value.status_code == 429
        assert exc.value.retry_after > 0

    async def test_rate_limit_keys_on_normalized_email(self, stack, make_account):
        make_account()
        for variant in ("alice@example.com", "ALICE@example.com", " Alice@Example.com"):
            with pytest.raises(InvalidCredentialsError):
                await stack.auth.login(variant, "Wrong-Horse-9battery")

        with pytest.raises(RateLimitExceededError):
            await stack.auth.login("alice@EXAMPLE.com", PASSWORD)

    async def test_pending_account_must_verify(self, stack, make_account):
        make_account(status=AccountStatus.PENDING)

        with pytest.raises(EmailNotVerifiedError) as exc:
            await stack.auth.login("alice@example.com", PASSWORD)
        assert exc.value.message == EMAIL_NOT_VERIFIED
        assert exc.value.status_code == 401

    async def test_suspended_account_rejected(self, stack, make_account):
        make_account(status=AccountStatus.SUSPENDED)

        with pytest.raises(AccountSuspendedError) as exc:
            await stack.auth.login("alice@example.com", PASSWORD)
        assert exc.value.message == ACCOUNT_SUSPENDED


class TestRefresh:
    async def test_refresh_rotates_pair(self, stack, make_account):
        make_account()
        login = await stack.auth.login("alice@example.com", PASSWORD)

        refreshed = await stack.auth.refresh(login.credentials.refresh_token)

        assert refreshed.session.id == login.session.id
        assert refreshed.credentials.refresh_token != login.credentials.refresh_token
        assert refreshed.credentials.access_token != login.credentials.access_token

    async def test_replayed_refresh_token_fails(self, stack, make_account):
        make_account()
        login = await stack.auth.login("alice@example.com", PASSWORD)
        first = await stack.auth.refresh(login.credentials.refresh_token)

        with pytest.raises(InvalidTokenError) as exc:
            await stack.auth.refresh(login.credentials.refresh_token)
        assert exc.value.message == REFRESH_TOKEN_INVALID

        second = await stack.auth.refresh(first.credentials.refresh_token)
        assert second.session.id == login.session.id

    async def test_refresh_after_logout_all_fails(self, stack, make_account):
        make_account()
        first = await stack.auth.login("alice@example.com", PASSWORD)
        second = await stack.auth.login("alice@example.com", PASSWORD)
        principal = await _principal_for(stack, first)

        assert await stack.auth.logout_all(principal) == 2

        for login in (first, second):
            with pytest.raises(InvalidTokenError) as exc:
                await stack.auth.refresh(login.credentials.refresh_token)
            assert exc.value.message == REFRESH_TOKEN_INVALID

    async def test_expired_session_is_revoked_on_refresh(self, stack, make_account, clock):
        make_account()
        stack.sessions.ttl_seconds = 60
        login = await stack.auth.login("alice@example.com", PASSWORD)
        clock.advance(60)

        with pytest.raises(InvalidTokenError):
            await stack.auth.refresh(login.credentials.refresh_token)
        assert await stack.sessions.get_session(login.session.id) is None

    async def test_expired_session_revoke_failure_still_rejects(
        self, stack, make_account, clock
    ):
        make_account()
        stack.sessions.ttl_seconds = 60
        login = await stack.auth.login("alice@example.com", PASSWORD)
        clock.advance(60)
        stack.store.delete_session = MagicMock(side_effect=RuntimeError("store unavailable"))

        with pytest.raises(InvalidTokenError) as exc:
            await stack.auth.refresh(login.credentials.refresh_token)
        assert exc.value.message == REFRESH_TOKEN_INVALID
        stack.store.delete_session.assert_called_once_with(login.session.id)

    async def test_refresh_for_suspended_account(self, stack, make_account):
        account = make_account()
        login = await stack.auth.login("alice@example.com", PASSWORD)
        stack.store.set_account_status(account.id, AccountStatus.SUSPENDED)

        with pytest.raises(AccountInactiveError):
            await stack.auth.refresh(login.credentials.refresh_token)

    async def test_access_token_as_refresh_token_fails(self, stack, make_account):
        make_account()
        login = await stack.auth.login("alice@example.com", PASSWORD)

        with pytest.raises(InvalidTokenError) as exc:
            await stack.auth.refresh(login.credentials.access_token)
        assert exc.value.message == REFRESH_TOKEN_INVALID


class TestLogout:
    async def test_logout_by_refresh_token(self, stack, make_account):
        make_account()
        login = await stack.auth.login("alice@example.com", PASSWORD)
        principal = await _principal_for(stack, login)

        assert await stack.auth.logout(principal, refresh_token=login.credentials.refresh_token) == 1
        with pytest.raises(InvalidTokenError):
            await stack.auth.refresh(login.credentials.refresh_token)

    async def test_logout_ignores_foreign_session(self, stack, make_account):
        make_account()
        make_account("mallory@example.com")
        victim = await stack.auth.login("alice@example.com", PASSWORD)
        attacker = await stack.auth.login("mallory@example.com", PASSWORD)
        principal = await _principal_for(stack, attacker)

        assert await stack.auth.logout(principal, session_id=victim.session.id) == 0
        assert await stack.sessions.get_session(victim.session.id) is not None

    async def test_logout_without_session_is_noop(self, stack, make_account):
        make_account()
        login = await stack.auth.login("alice@example.com", PASSWORD)
        principal = await _principal_for(stack, login)

        assert await stack.auth.logout(principal) == 0


class TestPasswordReset:
    async def test_reset_flow_replaces_password_and_revokes_sessions(self, stack, make_account):
        make_account()
        login = await stack.auth.login("alice@example.com", PASSWORD)

        token = await stack.auth.request_password_reset("alice@example.com")
        assert token is not None
        await stack.auth.reset_password(token.token, NEW_PASSWORD)

        with pytest.raises(InvalidTokenError):
            await stack.auth.refresh(login.credentials.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await stack.auth.login("alice@example.com", PASSWORD)
        result = await stack.auth.login("alice@example.com", NEW_PASSWORD)
        assert result.account.email == "alice@example.com"

    async def test_reset_token_is_single_use(self, stack, make_account):
        make_account()
        token = await stack.auth.request_password_reset("alice@example.com")
        await stack.auth.reset_password(token.token, NEW_PASSWORD)

        with pytest.raises(ValidationError) as exc:
            await stack.auth.reset_password(token.token, "Another-Good-4phrase")
        assert exc.value.error_code == "INVALID_TOKEN"

    async def test_unknown_email_returns_nothing(self, stack):
        assert await stack.auth.request_password_reset("ghost@example.com") is None

    async def test_inactive_account_gets_no_token(self, stack, make_account):
        make_account(status=AccountStatus.SUSPENDED)

        assert await stack.auth.request_password_reset("alice@example.com") is None

    async def test_requests_are_rate_limited_and_logged(self, stack, make_account):
        make_account()
        for _ in range(3):
            await stack.auth.request_password_reset("alice@example.com")

        with pytest.raises(RateLimitExceededError):
            await stack.auth.request_password_reset("alice@example.com")
        history = await stack.auth.password_reset_history("alice@example.com")
        assert len(history) == 3

    async def test_weak_new_password_rejected(self, stack, make_account):
        make_account()
        token = await stack.auth.request_password_reset("alice@example.com")

        with pytest.raises(ValidationError) as exc:
            await stack.auth.reset_password(token.token, "password123")
        assert exc.value.detail["problems"]

    async def test_new_password_containing_email_rejected(self, stack, make_account):
        make_account("lantern@example.com")
        token = await stack.auth.request_password_reset("lantern@example.com")

        with pytest.raises(ValidationError) as exc:
            await stack.auth.reset_password(token.token, NEW_PASSWORD)
        assert exc.value.error_code != "INVALID_TOKEN"

        await stack.auth.reset_password(token.token, PASSWORD)
        assert stack.store.get_action_token(token.token).used

    async def test_attempts_are_capped(self, stack, make_account):
        make_account()
        token = await stack.auth.request_password_reset("alice@example.com")
        for _ in range(stack.settings.action_token_max_attempts):
            stack.store.record_action_token_attempt(token.token)

        with pytest.raises(RateLimitExceededError):
            await stack.auth.reset_password(token.token, NEW_PASSWORD)


class TestAccountStatus:
    async def test_admin_suspends_member_and_sessions_end(self, stack, make_account):
        make_account()
        member = make_account("bob@example.com", role=AccountRole.USER)
        admin_login = await stack.auth.login("alice@example.com", PASSWORD)
        member_login = await stack.auth.login("bob@example.com", PASSWORD)
        admin = await _principal_for(stack, admin_login)

        updated = await stack.auth.change_account_status(admin, member.id, AccountStatus.SUSPENDED)

        assert updated.status == AccountStatus.SUSPENDED
        assert await stack.sessions.list_sessions(member.id) == []
        with pytest.raises(AccountInactiveError):
            await stack.auth.refresh(member_login.credentials.refresh_token)

    async def test_reactivation_requires_admin(self, stack, make_account):
        viewer = make_account("vic@example.com", role=AccountRole.VIEWER)
        target = make_account("bob@example.com", status=AccountStatus.SUSPENDED)
        login = await stack.auth.login("vic@example.com", PASSWORD)
        principal = await _principal_for(stack, login)
        assert principal.subject_id == viewer.id

        with pytest.raises(InvalidStatusTransition):
            await stack.auth.change_account_status(principal, target.id, AccountStatus.ACTIVE)

    async def test_other_tenant_is_denied(self, stack, make_account):
        make_account()
        outsider = make_account("eve@example.com", tenant_id="tenant-b")
        login = await stack.auth.login("alice@example.com", PASSWORD)
        admin = await _principal_for(stack, login)

        with pytest.raises(AuthorizationDeniedError) as exc:
            await stack.auth.change_account_status(admin, outsider.id, AccountStatus.SUSPENDED)
        assert exc.value.message == RESOURCE_ACCESS_DENIED

    async def test_cannot_change_own_status(self, stack, make_account):
        admin_account = make_account()
        login = await stack.auth.login("alice@example.com", PASSWORD)
        admin = await _principal_for(stack, login)

        with pytest.raises(InvalidStatusTransition):
            await stack.auth.change_account_status(
                admin, admin_account.id, AccountStatus.INACTIVE
            )

    async def test_unknown_account(self, stack, make_account):
        make_account()
        login = await stack.auth.login("alice@example.com", PASSWORD)
        admin = await _principal_for(stack, login)

        with pytest.raises(NotFoundError):
            await stack.auth.change_account_status(admin, "missing", AccountStatus.SUSPENDED)
