# aac_practice/compliance_logger.py
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models

logger = structlog.get_logger(__name__)

CRITICAL_ACTIONS = frozenset({
    "patient_created",
    "patient_deleted",
    "patient_modified",
    "phi_exported",
    "unauthorized_access",
    "decrypt_error",
    "encrypt_error",
})

DEFAULT_IP = "127.0.0.1"
DEFAULT_USER_AGENT = "aac-practice-api"


@dataclass
class AuditEntry:
    action: str
    user_id: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ip_address: str = DEFAULT_IP
    user_agent: str = DEFAULT_USER_AGENT

    @property
    def is_critical(self) -> bool:
        return self.action in CRITICAL_ACTIONS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "user_id": self.user_id,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ComplianceLogger:
    """HIPAA access log.

    Every entry goes into a bounded in-memory ring buffer. Critical actions
    (record lifecycle, PHI export, crypto failures) are also written to the
    ``audit_logs`` table, which is pruned to the newest ``persist_limit`` rows.

    When a caller passes its own session the audit row joins that
    transaction; otherwise a short-lived session from ``session_factory`` is
    used and committed immediately.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        buffer_size: int = 10000,
        persist_limit: int = 1000,
    ):
        self.session_factory = session_factory
        self.persist_limit = persist_limit
        self._entries: Deque[AuditEntry] = deque(maxlen=buffer_size)

    @property
    def is_active(self) -> bool:
        return self._entries.maxlen is not None and self._entries.maxlen > 0

    def __len__(self) -> int:
        return len(self._entries)

    def log_access(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = "system",
        db: Optional[Session] = None,
        ip_address: str = DEFAULT_IP,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> AuditEntry:
        entry = AuditEntry(
            action=action,
            user_id=str(user_id) if user_id is not None else "system",
            details=dict(details or {}),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self._entries.append(entry)

        if entry.is_critical:
            logger.warning("phi_audit_critical", action=action, user_id=entry.user_id)
            self._persist(entry, db)
        return entry

    def _persist(self, entry: AuditEntry, db: Optional[Session]) -> None:
        if db is not None:
            self._write(db, entry)
            return
        if self.session_factory is None:
            return
        own_session = self.session_factory()
        try:
            self._write(own_session, entry)
            own_session.commit()
        except SQLAlchemyError as e:
            own_session.rollback()
            logger.error("audit_persist_failed", action=entry.action, error=str(e))
        finally:
            own_session.close()

    def _write(self, db: Session, entry: AuditEntry) -> None:
        db.add(models.AuditLog(
            timestamp=entry.timestamp,
            action=entry.action,
            category="PHI",
            severity="CRITICAL",
            user_id=entry.user_id,
            details=entry.details,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
        ))
        db.flush()
        self._prune(db)

    def _prune(self, db: Session) -> None:
        stale_ids = [
            row.id for row in db.query(models.AuditLog.id)
            .order_by(models.AuditLog.id.desc())
            .offset(self.persist_limit)
            .all()
        ]
        if stale_ids:
            db.query(models.AuditLog).filter(models.AuditLog.id.in_(stale_ids)).delete(synchronize_session=False)

    def entries(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        action: Optional[str] = None,
    ) -> List[AuditEntry]:
        """Buffered entries in [start, end], oldest first"""
        start = _as_utc(start) if start else None
        end = _as_utc(end) if end else None
        return [
            e for e in self._entries
            if (start is None or e.timestamp >= start)
            and (end is None or e.timestamp <= end)
            and (action is None or e.action == action)
        ]

    def get_audit_log(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        user_id: Optional[str] = "system",
    ) -> List[AuditEntry]:
        result = self.entries(start, end)
        self.log_access("audit_accessed", {
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
            "entries_returned": len(result),
        }, user_id)
        return result

    @staticmethod
    def get_persisted(
        db: Session,
        skip: int = 0,
        limit: int = 100,
        action: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[models.AuditLog]:
        query = db.query(models.AuditLog)
        if action:
            query = query.filter(models.AuditLog.action == action)
        if start:
            query = query.filter(models.AuditLog.timestamp >= start)
        if end:
            query = query.filter(models.AuditLog.timestamp <= end)
        return query.order_by(models.AuditLog.timestamp.desc(), models.AuditLog.id.desc()).offset(skip).limit(limit).all()
