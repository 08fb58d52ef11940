"""MemoryStore behaviour the services rely on."""

from datetime import timedelta

import pytest

from meterauth.storage.errors import ConstraintViolation
from meterauth.storage.models import TwoFactorMethod


class TestUsers:
    def test_email_unique_case_insensitive(self, store):
        store.create_user("Dup@Example.com")

        with pytest.raises(ConstraintViolation):
            store.create_user("dup@example.com")

    def test_lookup_by_email(self, store):
        user = store.create_user("Find@Example.com", tenant_id=7, role="admin")

        found = store.get_user_by_email("find@example.com")
        assert found.id == user.id
        assert found.tenant_id == 7
        assert found.role == "admin"

    def test_password_for_missing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password(404, "hash", "argon2id")

    def test_failed_logins_lock_at_threshold(self, store, clock):
        user = store.create_user("lock@example.com")
        until = clock() + timedelta(minutes=15)
        for _ in range(4):
            store.record_failed_login(user.id, max_attempts=5, lock_until=until)
        assert store.get_user(user.id).locked_until is None

        updated = store.record_failed_login(user.id, max_attempts=5, lock_until=until)
        assert updated.locked_until == until

        store.reset_failed_logins(user.id, login_at=clock())
        reset = store.get_user(user.id)
        assert reset.failed_login_attempts == 0
        assert reset.locked_until is None
        assert reset.last_login_at == clock()

    def test_returned_users_are_copies(self, store):
        user = store.create_user("copy@example.com")
        user.role = "admin"

        assert store.get_user(user.id).role == "user"


class TestSecondFactors:
    def test_disable_is_idempotent_false(self, store):
        user = store.create_user("mfa@example.com")
        store.upsert_two_factor_method(user.id, TwoFactorMethod.EMAIL_OTP)

        assert store.disable_two_factor_method(user.id, TwoFactorMethod.EMAIL_OTP) is True
        assert store.disable_two_factor_method(user.id, TwoFactorMethod.EMAIL_OTP) is False
        assert store.list_two_factor_methods(user.id) == []
        assert len(store.list_two_factor_methods(user.id, enabled_only=False)) == 1

    def test_reenable_keeps_created_at(self, store, clock):
        user = store.create_user("mfa@example.com")
        first = store.upsert_two_factor_method(user.id, TwoFactorMethod.TOTP, secret="A" * 32, now=clock())
        store.disable_two_factor_method(user.id, TwoFactorMethod.TOTP)
        clock.advance(days=1)

        again = store.upsert_two_factor_method(user.id, TwoFactorMethod.TOTP, secret="B" * 32, now=clock())
        assert again.created_at == first.created_at
        assert again.is_enabled

    def test_one_challenge_per_method(self, store, clock):
        user = store.create_user("otp@example.com")
        first = store.store_otp_challenge(user.id, TwoFactorMethod.EMAIL_OTP, "a", clock())
        second = store.store_otp_challenge(user.id, TwoFactorMethod.EMAIL_OTP, "b", clock())

        assert store.get_otp_challenge(user.id, TwoFactorMethod.EMAIL_OTP).id == second.id
        assert store.claim_otp_attempt(first.id, 3) is None

    def test_claim_stops_at_max(self, store, clock):
        user = store.create_user("otp@example.com")
        challenge = store.store_otp_challenge(user.id, TwoFactorMethod.SMS_OTP, "a", clock())

        assert [store.claim_otp_attempt(challenge.id, 2).attempts for _ in range(2)] == [1, 2]
        assert store.claim_otp_attempt(challenge.id, 2) is None

    def test_delete_challenge_once(self, store, clock):
        user = store.create_user("otp@example.com")
        challenge = store.store_otp_challenge(user.id, TwoFactorMethod.SMS_OTP, "a", clock())

        assert store.delete_otp_challenge(challenge.id) is True
        assert store.delete_otp_challenge(challenge.id) is False


class TestResetTokens:
    def test_token_for_missing_user(self, store, clock):
        with pytest.raises(ConstraintViolation):
            store.store_reset_token(404, "h" * 64, clock() + timedelta(hours=1))

    def test_hash_collision_rejected(self, store, clock):
        user = store.create_user("reset@example.com")
        store.store_reset_token(user.id, "h" * 64, clock() + timedelta(hours=1))

        with pytest.raises(ConstraintViolation):
            store.store_reset_token(user.id, "h" * 64, clock() + timedelta(hours=1))

    def test_purge_only_long_expired(self, store, clock):
        user = store.create_user("reset@example.com")
        store.store_reset_token(user.id, "a" * 64, clock() - timedelta(days=10))
        store.store_reset_token(user.id, "b" * 64, clock() + timedelta(hours=1))

        assert store.purge_expired_reset_tokens(clock() - timedelta(days=7)) == 1
        assert store.get_reset_token("b" * 64) is not None


class TestAuditEvents:
    def test_details_match_filters(self, store, audit):
        audit.log_password_reset(True, requested=True, details={"email": "a@x.io", "initiated_by": "self"})
        audit.log_password_reset(True, requested=True, details={"email": "a@x.io", "initiated_by": "admin"})

        total = store.count_audit_events(
            "password_reset_requested",
            since=audit.clock() - timedelta(minutes=1),
            details_match={"email": "a@x.io", "initiated_by": "self"},
        )
        assert total == 1
