"""Tests for the login front door, two-factor completion, logout and password reset."""

import pytest

from tollgate.service.auth import RESET_PREFIX, AuthOrchestrator, LoginContext
from tollgate.service.errors import (
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidOrExpiredSessionError,
    InvalidRecoveryCodeError,
    InvalidResetTokenError,
    RevokedTokenError,
    ValidationError,
)
from tollgate.service.two_factor import PENDING_LOGIN_PREFIX
from tollgate.storage.models import UserStatus


class TestPasswordLogin:
    async def test_login_without_mfa_returns_tokens(self, orchestrator, make_user, store, password):
        user = make_user()
        result = await orchestrator.login("alice", password)

        assert result.require_2fa is False
        assert result.temp_token is None
        assert result.tokens is not None
        assert (await orchestrator.tokens.validate_access(result.tokens.access_token)).id == user.id
        assert not [k for k in store._entries if k.startswith(PENDING_LOGIN_PREFIX)]

    async def test_login_records_success(self, orchestrator, make_user, audit_sink, password):
        user = make_user()
        context = LoginContext(ip_address="203.0.113.7", user_agent="pytest", device_fingerprint="fp-1")
        await orchestrator.login("alice", password, context)

        record = audit_sink.records[-1]
        assert record["user_id"] == user.id
        assert record["outcome"] == "success"
        assert record["ip_address"] == "203.0.113.7"
        assert record["device_fingerprint"] == "fp-1"

    async def test_login_updates_bookkeeping(self, orchestrator, make_user, users, clock, password):
        user = make_user()
        await orchestrator.login("alice", password, LoginContext(ip_address=" 203.0.113.7 "))
        stored = users.get_user(user.id)
        assert stored.last_login_at == clock.now()
        assert stored.last_login_ip == "203.0.113.7"

    async def test_invalid_ip_is_not_recorded(self, orchestrator, make_user, users, password):
        user = make_user()
        await orchestrator.login("alice", password, LoginContext(ip_address="not-an-ip"))
        assert users.get_user(user.id).last_login_ip is None

    async def test_pending_account_is_activated(self, orchestrator, make_user, users, password):
        user = make_user(status=UserStatus.PENDING)
        result = await orchestrator.login("alice", password)
        assert result.user.status == UserStatus.ACTIVE
        assert users.get_user(user.id).status == UserStatus.ACTIVE

    async def test_username_lookup_is_case_insensitive(self, orchestrator, make_user, password):
        make_user()
        result = await orchestrator.login("ALICE", password)
        assert result.tokens is not None

    @pytest.mark.parametrize(
        "setup,username,attempt,reason",
        [
            ({}, "bob", "CorrectHorse42!", "user_not_found"),
            ({"password": None}, "alice", "CorrectHorse42!", "no_password_set"),
            ({}, "alice", "wrong-password", "invalid_password"),
            ({"status": UserStatus.DISABLED}, "alice", "CorrectHorse42!", "account_disabled"),
        ],
    )
    async def test_failures_are_uniform_and_audited(
        self, orchestrator, make_user, audit_sink, setup, username, attempt, reason
    ):
        make_user(**setup)
        with pytest.raises(InvalidCredentialsError) as excinfo:
            await orchestrator.login(username, attempt)

        assert excinfo.value.status_code == 401
        assert str(excinfo.value) == str(InvalidCredentialsError())
        record = audit_sink.records[-1]
        assert (record["outcome"], record["reason"]) == ("failure", reason)

    @pytest.mark.parametrize(
        "setup,username",
        [({}, "bob"), ({"password": None}, "alice"), ({}, "alice")],
    )
    async def test_every_rejection_pays_for_a_hash_check(
        self, users, hasher, token_service, two_factor, store, make_user, setup, username
    ):
        class CountingHasher:
            def __init__(self, inner):
                self.inner = inner
                self.verified = 0

            def hash(self, password):
                return self.inner.hash(password)

            def verify(self, password_hash, password):
                self.verified += 1
                return self.inner.verify(password_hash, password)

        counting = CountingHasher(hasher)
        orchestrator = AuthOrchestrator(users, counting, token_service, two_factor, store)
        make_user(**setup)

        with pytest.raises(InvalidCredentialsError):
            await orchestrator.login(username, "wrong-password")
        assert counting.verified == 1

    async def test_failed_login_leaves_user_untouched(self, orchestrator, make_user, users):
        user = make_user()
        with pytest.raises(InvalidCredentialsError):
            await orchestrator.login("alice", "wrong-password")
        stored = users.get_user(user.id)
        assert stored.last_login_at is None
        assert stored.version == user.version

    async def test_failing_audit_sink_does_not_break_login(
        self, users, hasher, token_service, two_factor, store, make_user, password
    ):
        class BrokenSink:
            def record(self, *args, **kwargs):
                raise RuntimeError("sink down")

        orchestrator = AuthOrchestrator(
            users, hasher, token_service, two_factor, store, audit=BrokenSink()
        )
        make_user()
        result = await orchestrator.login("alice", password)
        assert result.tokens is not None
        with pytest.raises(InvalidCredentialsError):
            await orchestrator.login("alice", "wrong-password")

    async def test_result_to_dict(self, orchestrator, make_user, password):
        make_user(phone="+15550100")
        body = (await orchestrator.login("alice", password)).to_dict()
        assert body["user"]["username"] == "alice"
        assert body["user"]["phone"] == "+15550100"
        assert body["user"]["status"] == "active"
        assert body["require_2fa"] is False
        assert body["token_type"] == "Bearer"
        assert "temp_token" not in body
        assert "password_hash" not in body["user"]


class TestTwoFactorLogin:
    async def test_mfa_user_gets_challenge(self, orchestrator, make_user, enroll_mfa, audit_sink, password):
        user = make_user()
        await enroll_mfa(user.id)

        result = await orchestrator.login("alice", password)

        assert result.require_2fa is True
        assert result.tokens is None
        assert result.temp_token
        assert audit_sink.records[-1]["outcome"] == "challenge"
        assert "access_token" not in result.to_dict()

    async def test_complete_is_single_use(self, orchestrator, make_user, enroll_mfa, password):
        user = make_user()
        await enroll_mfa(user.id)
        challenge = await orchestrator.login("alice", password)

        result = await orchestrator.complete_two_factor_login(challenge.temp_token)
        assert result.tokens is not None
        with pytest.raises(InvalidOrExpiredSessionError):
            await orchestrator.complete_two_factor_login(challenge.temp_token)

    async def test_verify_with_totp(self, orchestrator, make_user, enroll_mfa, totp, password):
        user = make_user()
        secret, _ = await enroll_mfa(user.id)
        challenge = await orchestrator.login("alice", password)

        result = await orchestrator.verify_two_factor_login(
            challenge.temp_token, totp.current_code(secret)
        )

        assert result.user.id == user.id
        assert result.tokens is not None
        with pytest.raises(InvalidOrExpiredSessionError):
            await orchestrator.verify_two_factor_login(
                challenge.temp_token, totp.current_code(secret)
            )

    async def test_wrong_code_keeps_pending_login(
        self, orchestrator, make_user, enroll_mfa, totp, wrong_code, audit_sink, password
    ):
        user = make_user()
        secret, _ = await enroll_mfa(user.id)
        challenge = await orchestrator.login("alice", password)

        with pytest.raises(InvalidCodeError):
            await orchestrator.verify_two_factor_login(challenge.temp_token, wrong_code(secret))
        assert audit_sink.records[-1]["reason"] == "invalid_2fa_code"

        result = await orchestrator.verify_two_factor_login(
            challenge.temp_token, totp.current_code(secret)
        )
        assert result.tokens is not None

    async def test_recover_with_recovery_code(self, orchestrator, make_user, enroll_mfa, password):
        user = make_user()
        _, codes = await enroll_mfa(user.id)
        challenge = await orchestrator.login("alice", password)

        result = await orchestrator.recover_two_factor_login(challenge.temp_token, codes[0])

        assert result.tokens is not None
        assert result.recovery_codes_remaining == 9
        assert result.to_dict()["recovery_codes_remaining"] == 9

    async def test_bad_recovery_code_keeps_pending_login(
        self, orchestrator, make_user, enroll_mfa, password
    ):
        user = make_user()
        _, codes = await enroll_mfa(user.id)
        challenge = await orchestrator.login("alice", password)

        with pytest.raises(InvalidRecoveryCodeError):
            await orchestrator.recover_two_factor_login(challenge.temp_token, "ZZZZ-ZZZZ")
        result = await orchestrator.recover_two_factor_login(challenge.temp_token, codes[1])
        assert result.tokens is not None

    async def test_recovery_code_kept_when_pending_login_already_used(
        self, orchestrator, two_factor, make_user, enroll_mfa, totp, password
    ):
        user = make_user()
        secret, codes = await enroll_mfa(user.id)
        challenge = await orchestrator.login("alice", password)
        await orchestrator.verify_two_factor_login(challenge.temp_token, totp.current_code(secret))

        with pytest.raises(InvalidOrExpiredSessionError):
            await orchestrator.recover_two_factor_login(challenge.temp_token, codes[0])
        assert (await two_factor.status(user.id)).recovery_codes_remaining == 10

    async def test_recovery_code_kept_when_pending_login_expired(
        self, orchestrator, two_factor, make_user, enroll_mfa, clock, password
    ):
        user = make_user()
        _, codes = await enroll_mfa(user.id)
        challenge = await orchestrator.login("alice", password)
        clock.advance(301)

        with pytest.raises(InvalidOrExpiredSessionError):
            await orchestrator.recover_two_factor_login(challenge.temp_token, codes[0])
        assert (await two_factor.status(user.id)).recovery_codes_remaining == 10

    async def test_bad_recovery_code_keeps_original_deadline(
        self, orchestrator, make_user, enroll_mfa, clock, password
    ):
        user = make_user()
        _, codes = await enroll_mfa(user.id)
        challenge = await orchestrator.login("alice", password)
        clock.advance(200)
        with pytest.raises(InvalidRecoveryCodeError):
            await orchestrator.recover_two_factor_login(challenge.temp_token, "ZZZZ-ZZZZ")

        clock.advance(101)
        with pytest.raises(InvalidOrExpiredSessionError):
            await orchestrator.recover_two_factor_login(challenge.temp_token, codes[0])

    async def test_mfa_disabled_between_steps(
        self, orchestrator, two_factor, make_user, enroll_mfa, totp, password
    ):
        user = make_user()
        secret, codes = await enroll_mfa(user.id)
        first = await orchestrator.login("alice", password)
        second = await orchestrator.login("alice", password)
        code = totp.current_code(secret)
        await two_factor.disable(user.id, password)

        with pytest.raises(InvalidOrExpiredSessionError):
            await orchestrator.verify_two_factor_login(first.temp_token, code)
        with pytest.raises(InvalidOrExpiredSessionError):
            await orchestrator.complete_two_factor_login(first.temp_token)
        with pytest.raises(InvalidOrExpiredSessionError):
            await orchestrator.recover_two_factor_login(second.temp_token, codes[0])

    async def test_expired_pending_login(self, orchestrator, make_user, enroll_mfa, clock, totp, password):
        user = make_user()
        secret, _ = await enroll_mfa(user.id)
        challenge = await orchestrator.login("alice", password)
        clock.advance(301)
        with pytest.raises(InvalidOrExpiredSessionError):
            await orchestrator.verify_two_factor_login(
                challenge.temp_token, totp.current_code(secret)
            )

    async def test_user_disabled_between_steps(self, orchestrator, make_user, enroll_mfa, users, password):
        user = make_user()
        await enroll_mfa(user.id)
        challenge = await orchestrator.login("alice", password)
        users.update_user(user.id, {"status": UserStatus.DISABLED})
        with pytest.raises(InvalidCredentialsError):
            await orchestrator.complete_two_factor_login(challenge.temp_token)

    async def test_user_deleted_between_steps(self, orchestrator, make_user, enroll_mfa, users, totp, password):
        user = make_user()
        secret, _ = await enroll_mfa(user.id)
        challenge = await orchestrator.login("alice", password)
        code = totp.current_code(secret)
        users.delete_user(user.id)
        with pytest.raises(InvalidCredentialsError):
            await orchestrator.verify_two_factor_login(challenge.temp_token, code)

    async def test_unknown_temp_token(self, orchestrator):
        with pytest.raises(InvalidOrExpiredSessionError):
            await orchestrator.verify_two_factor_login("nope", "123456")
        with pytest.raises(InvalidOrExpiredSessionError):
            await orchestrator.recover_two_factor_login("nope", "ABCD-1234")


class TestSessionLifecycle:
    async def test_refresh_delegates_to_token_service(self, orchestrator, make_user, password):
        make_user()
        result = await orchestrator.login("alice", password)
        rotated = await orchestrator.refresh(result.tokens.refresh_token)
        assert rotated.access_token != result.tokens.access_token

    async def test_logout_revokes_both_tokens(self, orchestrator, make_user, password):
        user = make_user()
        tokens = (await orchestrator.login("alice", password)).tokens

        await orchestrator.logout(user.id, tokens.access_token, tokens.refresh_token)

        with pytest.raises(RevokedTokenError):
            await orchestrator.tokens.validate_access(tokens.access_token)
        with pytest.raises(RevokedTokenError):
            await orchestrator.refresh(tokens.refresh_token)

    async def test_logout_without_refresh_token(self, orchestrator, make_user, password):
        user = make_user()
        tokens = (await orchestrator.login("alice", password)).tokens
        await orchestrator.logout(user.id, tokens.access_token)
        assert await orchestrator.refresh(tokens.refresh_token)


class TestPasswordReset:
    async def test_reset_flow(self, orchestrator, make_user, notifier, users):
        user = make_user()
        await orchestrator.request_password_reset("ALICE@example.com")

        assert len(notifier.sent) == 1
        user_id, token = notifier.sent[0]
        assert user_id == user.id

        await orchestrator.reset_password(token, "a-brand-new-passphrase")

        result = await orchestrator.login("alice", "a-brand-new-passphrase")
        assert result.tokens is not None
        with pytest.raises(InvalidCredentialsError):
            await orchestrator.login("alice", "CorrectHorse42!")
        assert users.get_user(user.id).version > user.version

    async def test_reset_token_is_single_use(self, orchestrator, make_user, notifier):
        make_user()
        await orchestrator.request_password_reset("alice@example.com")
        _, token = notifier.sent[0]
        await orchestrator.reset_password(token, "first-new-password")
        with pytest.raises(InvalidResetTokenError):
            await orchestrator.reset_password(token, "second-new-password")

    async def test_reset_token_stored_as_digest(self, orchestrator, make_user, notifier, store):
        user = make_user()
        await orchestrator.request_password_reset("alice@example.com")
        _, token = notifier.sent[0]
        owner_key = f"{RESET_PREFIX}user:{user.id}"
        keys = [k for k in store._entries if k.startswith(RESET_PREFIX) and k != owner_key]
        assert len(keys) == 1
        assert token not in keys[0]
        assert keys[0] == RESET_PREFIX + await store.get(owner_key)

    async def test_new_request_supersedes_earlier_token(self, orchestrator, make_user, notifier):
        make_user()
        await orchestrator.request_password_reset("alice@example.com")
        await orchestrator.request_password_reset("alice@example.com")
        (_, first), (_, second) = notifier.sent

        with pytest.raises(InvalidResetTokenError):
            await orchestrator.reset_password(first, "first-new-password")
        await orchestrator.reset_password(second, "second-new-password")
        assert (await orchestrator.login("alice", "second-new-password")).tokens is not None

    async def test_stale_ticket_rejected_after_pointer_moves(
        self, orchestrator, make_user, notifier, store
    ):
        user = make_user()
        await orchestrator.request_password_reset("alice@example.com")
        _, token = notifier.sent[0]
        # A concurrent request that moved the pointer without deleting this ticket
        await store.set(f"{RESET_PREFIX}user:{user.id}", "0" * 64, 60_000)

        with pytest.raises(InvalidResetTokenError):
            await orchestrator.reset_password(token, "a-brand-new-passphrase")

    async def test_failing_notifier_looks_like_unknown_email(
        self, users, hasher, token_service, two_factor, store, make_user
    ):
        class UnreachableNotifier:
            async def send_password_reset(self, user, token):
                raise ConnectionError("smtp down")

        orchestrator = AuthOrchestrator(
            users, hasher, token_service, two_factor, store, notifier=UnreachableNotifier()
        )
        make_user()

        assert await orchestrator.request_password_reset("nobody@example.com") is None
        assert await orchestrator.request_password_reset("alice@example.com") is None
        tickets = [
            k for k in store._entries
            if k.startswith(RESET_PREFIX) and not k.startswith(RESET_PREFIX + "user:")
        ]
        assert tickets == []

    async def test_reset_token_expires(self, orchestrator, make_user, notifier, clock):
        make_user()
        await orchestrator.request_password_reset("alice@example.com")
        _, token = notifier.sent[0]
        clock.advance(901)
        with pytest.raises(InvalidResetTokenError):
            await orchestrator.reset_password(token, "a-brand-new-passphrase")

    @pytest.mark.parametrize("email", ["nobody@example.com", "", None])
    async def test_unknown_email_is_silent(self, orchestrator, make_user, notifier, email):
        make_user()
        assert await orchestrator.request_password_reset(email) is None
        assert notifier.sent == []

    async def test_disabled_account_gets_no_reset(self, orchestrator, make_user, notifier):
        make_user(status=UserStatus.DISABLED)
        await orchestrator.request_password_reset("alice@example.com")
        assert notifier.sent == []

    async def test_short_password_rejected_without_consuming(self, orchestrator, make_user, notifier):
        make_user()
        await orchestrator.request_password_reset("alice@example.com")
        _, token = notifier.sent[0]
        with pytest.raises(ValidationError):
            await orchestrator.reset_password(token, "short")
        await orchestrator.reset_password(token, "long-enough-now")

    async def test_unknown_reset_token(self, orchestrator):
        with pytest.raises(InvalidResetTokenError):
            await orchestrator.reset_password("unknown", "long-enough-now")
        with pytest.raises(InvalidResetTokenError):
            await orchestrator.reset_password("", "long-enough-now")
