from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from meterauth.logging import get_logger
from meterauth.service.clock import Clock, utcnow
from meterauth.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditStatus(str, Enum):
    PENDING_2FA = "pending_2fa"
    SUCCESS = "success"
    FAILED = "failed"


class AuditEventType:
    LOGIN = "login"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGE = "password_change"
    TWO_FACTOR_CODE_SENT = "2fa_code_sent"
    TWO_FACTOR_ENABLE = "2fa_enable"
    TWO_FACTOR_DISABLE = "2fa_disable"
    BACKUP_CODES_REGENERATED = "2fa_backup_codes_regenerated"


class AuditStore(Protocol):
    def append_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    def count_audit_events(
        self,
        event_type: str,
        *,
        since: datetime,
        user_id: Optional[int] = None,
        details_match: Optional[Dict[str, Any]] = None,
    ) -> int: ...

    def list_audit_events(
        self,
        *,
        user_id: Optional[int] = None,
        event_type: Optional[str] = None,
        limit: int = 50,
    ) -> List[AuditEvent]: ...


class AuthLoggingService:
    """Append-only audit trail of authentication events.

    Writes never raise: a failing audit sink is logged and the primary
    operation carries on.
    """

    def __init__(self, store: AuditStore, *, clock: Clock = utcnow) -> None:
        self.store = store
        self.clock = clock

    def log_event(
        self,
        event_type: str,
        status: AuditStatus | str,
        *,
        user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        event = AuditEvent(
            event_type=event_type,
            status=AuditStatus(status).value,
            user_id=user_id,
            details=dict(details or {}),
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=self.clock(),
        )
        try:
            return self.store.append_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                event_type=event_type,
                status=event.status,
                user_id=user_id,
                error=str(exc),
            )
            return None

    def log_login(
        self,
        status: AuditStatus | str,
        *,
        user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        return self.log_event(
            AuditEventType.LOGIN,
            status,
            user_id=user_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def log_password_reset(
        self,
        success: bool,
        *,
        user_id: Optional[int] = None,
        requested: bool = False,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        """Record either phase of a reset in the one audit shape.

        ``requested`` selects the request phase (``password_reset_requested``);
        otherwise the event is the redemption (``password_reset``).
        """
        event_type = (
            AuditEventType.PASSWORD_RESET_REQUESTED
            if requested
            else AuditEventType.PASSWORD_RESET
        )
        return self.log_event(
            event_type,
            AuditStatus.SUCCESS if success else AuditStatus.FAILED,
            user_id=user_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def count_recent(
        self,
        event_type: str,
        window: timedelta,
        *,
        user_id: Optional[int] = None,
        details_match: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Events of ``event_type`` within the trailing ``window``.

        Unlike writes, this read is not swallowed; callers use it to gate work.
        """
        return self.store.count_audit_events(
            event_type,
            since=self.clock() - window,
            user_id=user_id,
            details_match=details_match,
        )

    def recent_events(self, user_id: int, *, limit: int = 50) -> List[AuditEvent]:
        return self.store.list_audit_events(user_id=user_id, limit=limit)
