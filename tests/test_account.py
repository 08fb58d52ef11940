"""Tests for signed-in account operations: password change and 2FA enrollment."""

import pyotp
import pytest

from meterauth.service.errors import AuthenticationError, BadRequestError, NotFoundError
from meterauth.service.password_reset import WeakPasswordError
from meterauth.storage.models import TwoFactorMethod

from conftest import STRONG_PASSWORD

NEW_PASSWORD = "AnotherPassword789$"


@pytest.fixture
def user(make_user):
    return make_user("account@example.com")


async def _enroll_totp(account_service, user, clock):
    setup = await account_service.setup_two_factor(user, "totp")
    secret = setup.data["secret"]
    codes = await account_service.verify_setup(
        user, "totp", pyotp.TOTP(secret).at(clock()), secret=secret
    )
    return secret, codes


class TestAuthenticate:
    def test_access_token_resolves_user(self, account_service, codec, user):
        token = codec.issue_final(user).access_token

        assert account_service.authenticate(token).id == user.id

    def test_refresh_token_rejected(self, account_service, codec, user):
        token = codec.issue_final(user).refresh_token

        with pytest.raises(AuthenticationError):
            account_service.authenticate(token)

    def test_inactive_user_rejected(self, account_service, codec, store, user):
        token = codec.issue_final(user).access_token
        store.set_user_active(user.id, False)

        with pytest.raises(AuthenticationError):
            account_service.authenticate(token)

    def test_tokens_before_password_change_rejected(
        self, account_service, codec, passwords, user, clock
    ):
        token = codec.issue_final(user).access_token
        clock.advance(minutes=1)
        passwords.save_password(user.id, NEW_PASSWORD, changed_at=clock())

        with pytest.raises(AuthenticationError):
            account_service.authenticate(token)
        assert account_service.authenticate(codec.issue_final(user).access_token)


class TestChangePassword:
    async def test_change_password(self, account_service, passwords, store, user):
        await account_service.change_password(user, STRONG_PASSWORD, NEW_PASSWORD, NEW_PASSWORD)

        assert passwords.verify_password(user.id, NEW_PASSWORD)
        event = store.list_audit_events(user_id=user.id, event_type="password_change")[0]
        assert event.status == "success"

    async def test_change_invalidates_reset_links(
        self, account_service, token_service, user
    ):
        grant = token_service.generate_reset_token()
        token_service.store_reset_token(user.id, grant)

        await account_service.change_password(user, STRONG_PASSWORD, NEW_PASSWORD, NEW_PASSWORD)

        assert token_service.validate_reset_token(grant.token) is None

    async def test_wrong_current_password(self, account_service, store, user):
        with pytest.raises(AuthenticationError):
            await account_service.change_password(
                user, "NotMyPassword1!", NEW_PASSWORD, NEW_PASSWORD
            )
        event = store.list_audit_events(user_id=user.id, event_type="password_change")[0]
        assert event.details["reason"] == "invalid_current_password"

    async def test_mismatch(self, account_service, user):
        with pytest.raises(BadRequestError):
            await account_service.change_password(
                user, STRONG_PASSWORD, NEW_PASSWORD, "Different123!!"
            )

    async def test_weak_new_password(self, account_service, user):
        with pytest.raises(WeakPasswordError):
            await account_service.change_password(user, STRONG_PASSWORD, "weak", "weak")

    async def test_same_password_rejected(self, account_service, user):
        with pytest.raises(BadRequestError) as exc:
            await account_service.change_password(
                user, STRONG_PASSWORD, STRONG_PASSWORD, STRONG_PASSWORD
            )
        assert "different" in exc.value.message


class TestTotpEnrollment:
    async def test_setup_returns_qr_and_secret(self, account_service, user):
        result = await account_service.setup_two_factor(user, "totp")

        assert result.method is TwoFactorMethod.TOTP
        assert set(result.data) == {"secret", "qr_code", "manual_entry_key", "otpauth_url"}

    async def test_setup_alone_does_not_enable(self, account_service, two_factor, user):
        await account_service.setup_two_factor(user, "totp")

        assert two_factor.enabled_methods(user.id) == []

    async def test_verify_setup_enables_and_issues_backup_codes(
        self, account_service, two_factor, store, user, clock, email_service
    ):
        secret, codes = await _enroll_totp(account_service, user, clock)

        assert len(codes) == 10
        assert two_factor.enabled_methods(user.id) == [TwoFactorMethod.TOTP]
        assert store.get_two_factor_secret(user.id, TwoFactorMethod.TOTP) == secret
        assert email_service.outbox[-1]["subject"]
        assert "Authenticator app" in email_service.outbox[-1]["text"]

    async def test_verify_setup_wrong_code(self, account_service, two_factor, user):
        setup = await account_service.setup_two_factor(user, "totp")

        with pytest.raises(BadRequestError):
            await account_service.verify_setup(
                user, "totp", "abcdef", secret=setup.data["secret"]
            )
        assert two_factor.enabled_methods(user.id) == []

    async def test_verify_setup_requires_secret(self, account_service, user):
        with pytest.raises(BadRequestError):
            await account_service.verify_setup(user, "totp", "123456")

    async def test_backup_code_is_not_enrollable(self, account_service, user):
        with pytest.raises(BadRequestError):
            await account_service.setup_two_factor(user, "backup_code")


class TestOtpEnrollment:
    async def test_email_setup_sends_code(self, account_service, two_factor, user, email_service):
        result = await account_service.setup_two_factor(user, "email_otp")
        assert result.data == {"code_sent": True}

        codes = await account_service.verify_setup(user, "email_otp", email_service.last_code())

        assert codes == []
        assert two_factor.enabled_methods(user.id) == [TwoFactorMethod.EMAIL_OTP]

    async def test_sms_requires_phone(self, account_service, user):
        with pytest.raises(BadRequestError):
            await account_service.setup_two_factor(user, "sms_otp")

    async def test_sms_enrollment_stores_phone(
        self, account_service, store, user, sms_service
    ):
        await account_service.setup_two_factor(user, "sms_otp", phone_number=" +15550001111 ")
        code = sms_service.messages[-1]["message"].split("code: ")[1][:6]

        await account_service.verify_setup(user, "sms_otp", code, phone_number="+15550001111")

        row = store.get_two_factor_method(user.id, TwoFactorMethod.SMS_OTP)
        assert row.is_enabled
        assert row.phone_number == "+15550001111"


class TestManageMethods:
    async def test_list_methods(self, account_service, user, clock):
        await _enroll_totp(account_service, user, clock)

        listing = account_service.list_methods(user)

        assert [m["type"] for m in listing["methods"]] == ["totp"]
        assert listing["backup_codes_remaining"] == 10

    async def test_disable_requires_password(self, account_service, user, clock):
        await _enroll_totp(account_service, user, clock)

        with pytest.raises(AuthenticationError):
            await account_service.disable_two_factor(user, "totp", "WrongPassword1!")

    async def test_disable_totp_drops_backup_codes(
        self, account_service, two_factor, store, user, clock
    ):
        await _enroll_totp(account_service, user, clock)

        await account_service.disable_two_factor(user, "totp", STRONG_PASSWORD)

        assert two_factor.enabled_methods(user.id) == []
        assert store.count_unused_backup_codes(user.id) == 0
        assert store.get_two_factor_method(user.id, TwoFactorMethod.TOTP).is_enabled is False

    async def test_disable_missing_method(self, account_service, user):
        with pytest.raises(NotFoundError):
            await account_service.disable_two_factor(user, "email_otp", STRONG_PASSWORD)

    async def test_regenerate_backup_codes(self, account_service, two_factor, user, clock):
        _, old_codes = await _enroll_totp(account_service, user, clock)

        new_codes = await account_service.regenerate_backup_codes(user, STRONG_PASSWORD)

        assert len(new_codes) == 10
        assert not two_factor.verify(user.id, TwoFactorMethod.BACKUP_CODE, old_codes[0]).valid
        assert two_factor.verify(user.id, TwoFactorMethod.BACKUP_CODE, new_codes[0]).valid

    async def test_regenerate_requires_totp(self, account_service, user):
        with pytest.raises(BadRequestError):
            await account_service.regenerate_backup_codes(user, STRONG_PASSWORD)
