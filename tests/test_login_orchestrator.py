"""Tests for the password + second factor login flow."""

import pyotp
import pytest

from meterauth.service.errors import AuthenticationError, BadRequestError, SessionExpiredError
from meterauth.service.login import INVALID_2FA_CODE, INVALID_CREDENTIALS
from meterauth.storage.models import TwoFactorMethod

from conftest import STRONG_PASSWORD


def _login_events(store, user_id=None):
    return store.list_audit_events(user_id=user_id, event_type="login")


@pytest.fixture
def totp_user(make_user, store, two_factor, clock):
    user = make_user("totp@example.com")
    secret = pyotp.random_base32()
    store.upsert_two_factor_method(user.id, TwoFactorMethod.TOTP, secret=secret, now=clock())
    user.totp_secret = secret
    return user


class TestPasswordOnlyLogin:
    async def test_success_issues_tokens(self, login_orchestrator, make_user, store, clock):
        user = make_user()

        result = await login_orchestrator.login("test@example.com", STRONG_PASSWORD)

        assert result.requires_2fa is False
        assert result.tokens.access_token
        assert result.tokens.refresh_token
        assert store.get_user(user.id).last_login_at == clock()
        assert _login_events(store, user.id)[0].status == "success"

    async def test_email_is_case_insensitive(self, login_orchestrator, make_user):
        make_user()

        result = await login_orchestrator.login("  TEST@Example.COM ", STRONG_PASSWORD)
        assert result.tokens is not None

    async def test_unknown_email_is_generic(self, login_orchestrator, store):
        with pytest.raises(AuthenticationError) as exc:
            await login_orchestrator.login("ghost@example.com", STRONG_PASSWORD)

        assert exc.value.message == INVALID_CREDENTIALS
        event = _login_events(store)[0]
        assert event.details["reason"] == "user_not_found"
        assert event.user_id is None

    async def test_wrong_password_is_generic(self, login_orchestrator, make_user, store):
        user = make_user()

        with pytest.raises(AuthenticationError) as exc:
            await login_orchestrator.login("test@example.com", "WrongPassword123!")

        assert exc.value.message == INVALID_CREDENTIALS
        event = _login_events(store, user.id)[0]
        assert event.details["reason"] == "invalid_password"
        assert event.details["attempts"] == 1

    @pytest.mark.parametrize("email,password", [("", "x"), ("a@b.co", ""), (None, None)])
    async def test_missing_fields(self, login_orchestrator, email, password):
        with pytest.raises(BadRequestError):
            await login_orchestrator.login(email, password)

    async def test_inactive_user_is_generic(self, login_orchestrator, make_user, store):
        user = make_user()
        store.set_user_active(user.id, False)

        with pytest.raises(AuthenticationError) as exc:
            await login_orchestrator.login("test@example.com", STRONG_PASSWORD)

        assert exc.value.message == INVALID_CREDENTIALS
        assert _login_events(store, user.id)[0].details["reason"] == "user_inactive"


class TestLockout:
    async def test_fifth_failure_locks_account(self, login_orchestrator, make_user, store):
        user = make_user()
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await login_orchestrator.login("test@example.com", "WrongPassword123!")

        assert _login_events(store, user.id)[0].details["is_locked"] is True

        with pytest.raises(AuthenticationError) as exc:
            await login_orchestrator.login("test@example.com", STRONG_PASSWORD)
        assert exc.value.message == INVALID_CREDENTIALS
        assert _login_events(store, user.id)[0].details["reason"] == "account_locked"

    async def test_lock_lifts_after_window(self, login_orchestrator, make_user, store, clock):
        user = make_user()
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await login_orchestrator.login("test@example.com", "WrongPassword123!")

        clock.advance(minutes=15, seconds=1)
        result = await login_orchestrator.login("test@example.com", STRONG_PASSWORD)

        assert result.tokens is not None
        assert store.get_user(user.id).failed_login_attempts == 0

    async def test_success_resets_counter(self, login_orchestrator, make_user, store):
        user = make_user()
        with pytest.raises(AuthenticationError):
            await login_orchestrator.login("test@example.com", "WrongPassword123!")

        await login_orchestrator.login("test@example.com", STRONG_PASSWORD)
        assert store.get_user(user.id).failed_login_attempts == 0


class TestTwoFactorLogin:
    async def test_login_returns_pending_session(self, login_orchestrator, totp_user, store):
        result = await login_orchestrator.login("totp@example.com", STRONG_PASSWORD)

        assert result.requires_2fa is True
        assert result.tokens is None
        assert result.session_token
        assert result.available_methods == ["totp"]
        assert _login_events(store, totp_user.id)[0].status == "pending_2fa"

    async def test_pending_token_cannot_authenticate(
        self, login_orchestrator, account_service, totp_user
    ):
        result = await login_orchestrator.login("totp@example.com", STRONG_PASSWORD)

        with pytest.raises(AuthenticationError):
            account_service.authenticate(result.session_token)

    async def test_totp_completes_login(self, login_orchestrator, totp_user, store, clock):
        pending = await login_orchestrator.login(
            "totp@example.com", STRONG_PASSWORD, remember_me=True
        )
        code = pyotp.TOTP(totp_user.totp_secret).at(clock())

        result = await login_orchestrator.verify_two_factor(pending.session_token, code, "totp")

        assert result.tokens.access_token
        assert result.tokens.refresh_expires_in == 30 * 24 * 60 * 60
        event = _login_events(store, totp_user.id)[0]
        assert event.status == "success"
        assert event.details["verification_method"] == "totp"

    async def test_session_token_is_single_use(self, login_orchestrator, totp_user, store, clock):
        pending = await login_orchestrator.login("totp@example.com", STRONG_PASSWORD)
        code = pyotp.TOTP(totp_user.totp_secret).at(clock())
        await login_orchestrator.verify_two_factor(pending.session_token, code, "totp")

        with pytest.raises(SessionExpiredError):
            await login_orchestrator.verify_two_factor(pending.session_token, code, "totp")
        assert _login_events(store, totp_user.id)[0].details["reason"] == "session_already_used"

    async def test_expired_session(self, login_orchestrator, totp_user, clock):
        pending = await login_orchestrator.login("totp@example.com", STRONG_PASSWORD)
        clock.advance(minutes=10)
        code = pyotp.TOTP(totp_user.totp_secret).at(clock())

        with pytest.raises(SessionExpiredError):
            await login_orchestrator.verify_two_factor(pending.session_token, code, "totp")

    async def test_wrong_code(self, login_orchestrator, totp_user, store):
        pending = await login_orchestrator.login("totp@example.com", STRONG_PASSWORD)

        with pytest.raises(AuthenticationError) as exc:
            await login_orchestrator.verify_two_factor(pending.session_token, "abcdef", "totp")

        assert exc.value.message == INVALID_2FA_CODE
        assert _login_events(store, totp_user.id)[0].details["reason"] == "invalid_2fa_code"

    async def test_failed_code_leaves_session_usable(self, login_orchestrator, totp_user, clock):
        pending = await login_orchestrator.login("totp@example.com", STRONG_PASSWORD)
        with pytest.raises(AuthenticationError):
            await login_orchestrator.verify_two_factor(pending.session_token, "abcdef", "totp")

        code = pyotp.TOTP(totp_user.totp_secret).at(clock())
        result = await login_orchestrator.verify_two_factor(pending.session_token, code, "totp")
        assert result.tokens is not None

    async def test_method_not_enrolled(self, login_orchestrator, two_factor, totp_user):
        # a stale challenge must not open a method the user never enabled
        issued = two_factor.issue_otp(totp_user.id, TwoFactorMethod.EMAIL_OTP)
        pending = await login_orchestrator.login("totp@example.com", STRONG_PASSWORD)

        with pytest.raises(AuthenticationError):
            await login_orchestrator.verify_two_factor(
                pending.session_token, issued.code, "email_otp"
            )

    async def test_unknown_method(self, login_orchestrator, totp_user):
        pending = await login_orchestrator.login("totp@example.com", STRONG_PASSWORD)

        with pytest.raises(BadRequestError):
            await login_orchestrator.verify_two_factor(pending.session_token, "123456", "fax")

    async def test_empty_code(self, login_orchestrator, totp_user):
        pending = await login_orchestrator.login("totp@example.com", STRONG_PASSWORD)

        with pytest.raises(BadRequestError):
            await login_orchestrator.verify_two_factor(pending.session_token, "  ", "totp")

    async def test_backup_code_completes_login(self, login_orchestrator, two_factor, totp_user):
        codes = two_factor.generate_backup_codes()
        two_factor.store_backup_codes(totp_user.id, codes)
        pending = await login_orchestrator.login("totp@example.com", STRONG_PASSWORD)

        result = await login_orchestrator.verify_two_factor(
            pending.session_token, codes[3], "backup_code"
        )
        assert result.tokens is not None

    async def test_deactivated_during_pending(self, login_orchestrator, totp_user, store, clock):
        pending = await login_orchestrator.login("totp@example.com", STRONG_PASSWORD)
        store.set_user_active(totp_user.id, False)
        code = pyotp.TOTP(totp_user.totp_secret).at(clock())

        with pytest.raises(SessionExpiredError):
            await login_orchestrator.verify_two_factor(pending.session_token, code, "totp")


class TestEmailAndSmsCodes:
    async def test_email_code_flow(self, login_orchestrator, make_user, store, email_service):
        user = make_user("otp@example.com")
        store.upsert_two_factor_method(user.id, TwoFactorMethod.EMAIL_OTP)
        pending = await login_orchestrator.login("otp@example.com", STRONG_PASSWORD)

        delivery = await login_orchestrator.send_two_factor_code(
            pending.session_token, "email_otp"
        )
        assert delivery.delivered is True
        assert delivery.expires_in == 300
        assert email_service.outbox[-1]["to"] == "otp@example.com"

        result = await login_orchestrator.verify_two_factor(
            pending.session_token, email_service.last_code(), "email_otp"
        )
        assert result.tokens is not None

    async def test_sms_code_goes_to_enrolled_phone(
        self, login_orchestrator, make_user, store, sms_service
    ):
        user = make_user("sms@example.com")
        store.upsert_two_factor_method(
            user.id, TwoFactorMethod.SMS_OTP, phone_number="+15551234567"
        )
        pending = await login_orchestrator.login("sms@example.com", STRONG_PASSWORD)

        await login_orchestrator.send_two_factor_code(pending.session_token, "sms_otp")

        assert sms_service.messages[-1]["to"] == "+15551234567"

    async def test_wrong_email_code_reports_attempts(
        self, login_orchestrator, make_user, store, email_service
    ):
        user = make_user("otp@example.com")
        store.upsert_two_factor_method(user.id, TwoFactorMethod.EMAIL_OTP)
        pending = await login_orchestrator.login("otp@example.com", STRONG_PASSWORD)
        await login_orchestrator.send_two_factor_code(pending.session_token, "email_otp")
        wrong = "000000" if email_service.last_code() != "000000" else "111111"

        with pytest.raises(AuthenticationError) as exc:
            await login_orchestrator.verify_two_factor(pending.session_token, wrong, "email_otp")

        assert exc.value.detail["attempts_remaining"] == 2
        assert exc.value.detail["is_locked"] is False

    async def test_send_code_rejects_totp(self, login_orchestrator, totp_user):
        pending = await login_orchestrator.login("totp@example.com", STRONG_PASSWORD)

        with pytest.raises(BadRequestError):
            await login_orchestrator.send_two_factor_code(pending.session_token, "totp")

    async def test_send_code_requires_enrollment(self, login_orchestrator, totp_user):
        pending = await login_orchestrator.login("totp@example.com", STRONG_PASSWORD)

        with pytest.raises(BadRequestError):
            await login_orchestrator.send_two_factor_code(pending.session_token, "email_otp")

    async def test_send_code_requires_valid_session(self, login_orchestrator):
        with pytest.raises(SessionExpiredError):
            await login_orchestrator.send_two_factor_code("not-a-token", "email_otp")


@pytest.fixture
def multi_factor_user(make_user, store, two_factor, clock):
    """User enrolled in every method, with backup codes on file."""
    user = make_user("multi@example.com")
    secret = pyotp.random_base32()
    store.upsert_two_factor_method(user.id, TwoFactorMethod.TOTP, secret=secret, now=clock())
    store.upsert_two_factor_method(user.id, TwoFactorMethod.EMAIL_OTP, now=clock())
    store.upsert_two_factor_method(
        user.id, TwoFactorMethod.SMS_OTP, phone_number="+15557654321", now=clock()
    )
    user.totp_secret = secret
    user.backup_codes = two_factor.generate_backup_codes()
    two_factor.store_backup_codes(user.id, user.backup_codes)
    return user


def _valid_code(method, user, two_factor, clock):
    if method is TwoFactorMethod.TOTP:
        return pyotp.TOTP(user.totp_secret).at(clock())
    if method is TwoFactorMethod.BACKUP_CODE:
        return user.backup_codes[0]
    return two_factor.issue_otp(user.id, method).code


class TestPendingSessionLifetime:
    @pytest.mark.parametrize("method", list(TwoFactorMethod))
    async def test_expired_session_rejected_for_every_method(
        self, login_orchestrator, multi_factor_user, two_factor, store, clock, method
    ):
        pending = await login_orchestrator.login("multi@example.com", STRONG_PASSWORD)
        clock.advance(minutes=10, seconds=1)
        code = _valid_code(method, multi_factor_user, two_factor, clock)

        with pytest.raises(SessionExpiredError) as exc:
            await login_orchestrator.verify_two_factor(pending.session_token, code, method)

        assert exc.value.message == "Session token expired or invalid"
        assert store.count_unused_backup_codes(multi_factor_user.id) == 10

    async def test_replay_does_not_spend_backup_code(
        self, login_orchestrator, multi_factor_user, store, clock
    ):
        pending = await login_orchestrator.login("multi@example.com", STRONG_PASSWORD)
        code = pyotp.TOTP(multi_factor_user.totp_secret).at(clock())
        await login_orchestrator.verify_two_factor(pending.session_token, code, "totp")

        with pytest.raises(SessionExpiredError):
            await login_orchestrator.verify_two_factor(
                pending.session_token, multi_factor_user.backup_codes[0], "backup_code"
            )

        assert store.count_unused_backup_codes(multi_factor_user.id) == 10

    async def test_replay_leaves_otp_challenge_in_place(
        self, login_orchestrator, multi_factor_user, two_factor, store, clock
    ):
        pending = await login_orchestrator.login("multi@example.com", STRONG_PASSWORD)
        code = pyotp.TOTP(multi_factor_user.totp_secret).at(clock())
        await login_orchestrator.verify_two_factor(pending.session_token, code, "totp")
        issued = two_factor.issue_otp(multi_factor_user.id, TwoFactorMethod.EMAIL_OTP)

        with pytest.raises(SessionExpiredError):
            await login_orchestrator.verify_two_factor(
                pending.session_token, issued.code, "email_otp"
            )

        challenge = store.get_otp_challenge(multi_factor_user.id, TwoFactorMethod.EMAIL_OTP)
        assert challenge is not None
        assert challenge.attempts == 0

    async def test_redeemed_session_cannot_request_codes(
        self, login_orchestrator, multi_factor_user, email_service, clock
    ):
        pending = await login_orchestrator.login("multi@example.com", STRONG_PASSWORD)
        code = pyotp.TOTP(multi_factor_user.totp_secret).at(clock())
        await login_orchestrator.verify_two_factor(pending.session_token, code, "totp")

        with pytest.raises(SessionExpiredError):
            await login_orchestrator.send_two_factor_code(pending.session_token, "email_otp")
        assert email_service.outbox == []


class TestCodeRejectionShape:
    async def test_reused_backup_code_looks_like_unknown_code(
        self, login_orchestrator, multi_factor_user
    ):
        first = await login_orchestrator.login("multi@example.com", STRONG_PASSWORD)
        used = multi_factor_user.backup_codes[2]
        await login_orchestrator.verify_two_factor(first.session_token, used, "backup_code")

        second = await login_orchestrator.login("multi@example.com", STRONG_PASSWORD)
        with pytest.raises(AuthenticationError) as reused:
            await login_orchestrator.verify_two_factor(second.session_token, used, "backup_code")
        with pytest.raises(AuthenticationError) as unknown:
            await login_orchestrator.verify_two_factor(
                second.session_token, "FFFFFFFF", "backup_code"
            )

        assert reused.value.message == unknown.value.message == INVALID_2FA_CODE
        assert reused.value.detail == unknown.value.detail
        assert reused.value.status_code == unknown.value.status_code == 401

    async def test_locked_challenge_rejects_correct_code(
        self, login_orchestrator, multi_factor_user, email_service
    ):
        pending = await login_orchestrator.login("multi@example.com", STRONG_PASSWORD)
        await login_orchestrator.send_two_factor_code(pending.session_token, "email_otp")
        correct = email_service.last_code()
        wrong = "000000" if correct != "000000" else "111111"
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await login_orchestrator.verify_two_factor(pending.session_token, wrong, "email_otp")

        with pytest.raises(AuthenticationError) as exc:
            await login_orchestrator.verify_two_factor(pending.session_token, correct, "email_otp")

        assert exc.value.detail["is_locked"] is True
        assert exc.value.detail["attempts_remaining"] == 0
