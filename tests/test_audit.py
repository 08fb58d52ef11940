"""Unit tests for the authentication audit trail."""

from datetime import timedelta

import pytest

from meterauth.service.audit import AuditEventType, AuditStatus, AuthLoggingService


class _BrokenStore:
    def append_audit_event(self, event):
        raise RuntimeError("audit sink offline")

    def count_audit_events(self, event_type, *, since, user_id=None, details_match=None):
        raise RuntimeError("audit sink offline")


class TestAuthLoggingService:
    def test_log_event_persists_row(self, audit, store, clock):
        event = audit.log_event(
            AuditEventType.LOGIN,
            AuditStatus.SUCCESS,
            user_id=4,
            details={"method": "password"},
            ip_address="203.0.113.9",
            user_agent="pytest",
        )

        assert event.id is not None
        assert event.created_at == clock()
        stored = store.list_audit_events(user_id=4)
        assert [e.to_dict()["details"] for e in stored] == [{"method": "password"}]

    def test_status_strings_are_accepted(self, audit):
        event = audit.log_event(AuditEventType.LOGIN, "pending_2fa")

        assert event.status == "pending_2fa"

    def test_unknown_status_rejected(self, audit):
        with pytest.raises(ValueError):
            audit.log_event(AuditEventType.LOGIN, "maybe")

    def test_write_failure_is_swallowed(self, clock):
        service = AuthLoggingService(_BrokenStore(), clock=clock)

        assert service.log_login(AuditStatus.FAILED, details={"reason": "x"}) is None

    def test_count_failure_propagates(self, clock):
        service = AuthLoggingService(_BrokenStore(), clock=clock)

        with pytest.raises(RuntimeError):
            service.count_recent(AuditEventType.PASSWORD_RESET_REQUESTED, timedelta(hours=1))

    def test_password_reset_phases(self, audit):
        requested = audit.log_password_reset(True, requested=True, details={"email": "a@b.co"})
        redeemed = audit.log_password_reset(False, details={"reason": "invalid_token"})

        assert requested.event_type == AuditEventType.PASSWORD_RESET_REQUESTED
        assert requested.status == "success"
        assert redeemed.event_type == AuditEventType.PASSWORD_RESET
        assert redeemed.status == "failed"

    def test_count_recent_uses_trailing_window(self, audit, clock):
        audit.log_password_reset(True, requested=True, details={"email": "a@example.com"})
        clock.advance(minutes=30)
        audit.log_password_reset(True, requested=True, details={"email": "a@example.com"})
        audit.log_password_reset(True, requested=True, details={"email": "b@example.com"})

        window = timedelta(hours=1)
        match = {"email": "a@example.com"}
        assert audit.count_recent(
            AuditEventType.PASSWORD_RESET_REQUESTED, window, details_match=match
        ) == 2

        clock.advance(minutes=31)
        assert audit.count_recent(
            AuditEventType.PASSWORD_RESET_REQUESTED, window, details_match=match
        ) == 1

    def test_recent_events_newest_first(self, audit, clock):
        audit.log_login(AuditStatus.FAILED, user_id=9, details={"reason": "invalid_password"})
        clock.advance(seconds=5)
        audit.log_login(AuditStatus.SUCCESS, user_id=9)

        events = audit.recent_events(9, limit=10)
        assert [e.status for e in events] == ["success", "failed"]
        assert len(audit.recent_events(9, limit=1)) == 1
