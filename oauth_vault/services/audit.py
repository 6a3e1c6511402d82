from __future__ import annotations
import logging
import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Deque, Iterator, Optional

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.orm import sessionmaker

from oauth_vault.core.clock import as_utc, utcnow
from oauth_vault.db import models

logger = logging.getLogger(__name__)

ACTIONS = ("initiate", "callback", "refresh", "revoke")


@dataclass(frozen=True)
class AuditEvent:
    subject_id: str
    platform: str
    action: str
    success: bool
    organization_id: Optional[str] = None
    error_code: Optional[str] = None
    # internal diagnostics (e.g. upstream status/body); never returned to API callers
    detail: Optional[str] = None
    caller_ip: Optional[str] = None
    caller_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if self.action not in ACTIONS:
            raise ValueError(f"unknown audit action {self.action!r}")

    @classmethod
    def from_row(cls, row: models.AuditEvent) -> "AuditEvent":
        return cls(
            id=row.id,
            subject_id=row.subject_id,
            organization_id=row.organization_id,
            platform=row.platform,
            action=row.action,
            success=row.success,
            error_code=row.error_code,
            detail=row.detail,
            caller_ip=row.caller_ip,
            caller_agent=row.caller_agent,
            timestamp=as_utc(row.timestamp),
        )

    def to_row(self) -> models.AuditEvent:
        return models.AuditEvent(**asdict(self))


@dataclass(frozen=True)
class AuditFilter:
    subject_id: Optional[str] = None
    organization_id: Optional[str] = None
    platform: Optional[str] = None
    action: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None


class AuditQuery:
    """
    Lazy, restartable view over the audit trail, oldest first.
    Rows are fetched in keyset pages of (timestamp, id); each iteration starts over.
    """

    def __init__(self, session_factory: sessionmaker, flt: AuditFilter, page_size: int = 200):
        self._sessions = session_factory
        self.filter = flt
        self.page_size = max(1, page_size)

    def _conditions(self):
        f = self.filter
        conds = []
        if f.subject_id is not None:
            conds.append(models.AuditEvent.subject_id == f.subject_id)
        if f.organization_id is not None:
            conds.append(models.AuditEvent.organization_id == f.organization_id)
        if f.platform is not None:
            conds.append(models.AuditEvent.platform == f.platform)
        if f.action is not None:
            conds.append(models.AuditEvent.action == f.action)
        if f.since is not None:
            conds.append(models.AuditEvent.timestamp >= f.since)
        if f.until is not None:
            conds.append(models.AuditEvent.timestamp < f.until)
        return conds

    def __iter__(self) -> Iterator[AuditEvent]:
        last: Optional[tuple] = None
        while True:
            stmt = select(models.AuditEvent).where(*self._conditions())
            if last is not None:
                ts, eid = last
                stmt = stmt.where(or_(
                    models.AuditEvent.timestamp > ts,
                    and_(models.AuditEvent.timestamp == ts, models.AuditEvent.id > eid),
                ))
            stmt = stmt.order_by(models.AuditEvent.timestamp, models.AuditEvent.id).limit(self.page_size)
            with self._sessions() as db:
                rows = list(db.scalars(stmt))
            for row in rows:
                yield AuditEvent.from_row(row)
            if len(rows) < self.page_size:
                return
            last = (rows[-1].timestamp, rows[-1].id)


class AuditLogger:
    """
    Append-only audit trail. `record` never raises: a storage failure is logged,
    the event is written to the local fallback sink and kept for `flush_pending`.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        fallback: Optional[logging.Logger] = None,
        max_pending: int = 1000,
    ):
        self._sessions = session_factory
        self._fallback = fallback
        self._pending: Deque[AuditEvent] = deque(maxlen=max_pending)
        self._lock = threading.Lock()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _insert(self, event: AuditEvent) -> None:
        with self._sessions() as db:
            db.add(event.to_row())
            db.commit()

    def record(self, event: AuditEvent) -> None:
        try:
            self._insert(event)
        except Exception:  # audit must never fail the flow
            logger.exception(
                "audit write failed; buffering event",
                extra={"audit_id": event.id, "action": event.action, "platform": event.platform},
            )
            with self._lock:
                self._pending.append(event)
            if self._fallback is not None:
                try:
                    self._fallback.info("audit-event", extra={"event": _jsonable(event)})
                except Exception:
                    logger.exception("audit fallback write failed", extra={"audit_id": event.id})

    def flush_pending(self) -> int:
        """Retry buffered events in order; stops at the first failure. Returns how many were stored."""
        stored = 0
        while True:
            with self._lock:
                if not self._pending:
                    return stored
                event = self._pending.popleft()
            try:
                self._insert(event)
            except Exception:
                logger.warning("audit flush failed; will retry later", extra={"pending": self.pending + 1})
                with self._lock:
                    self._pending.appendleft(event)
                return stored
            stored += 1

    def query(self, flt: Optional[AuditFilter] = None, page_size: int = 200) -> AuditQuery:
        return AuditQuery(self._sessions, flt or AuditFilter(), page_size=page_size)

    def purge_before(self, cutoff: datetime) -> int:
        """Retention policy: delete events strictly older than `cutoff`. Not used by any flow."""
        with self._sessions() as db:
            result = db.execute(
                delete(models.AuditEvent)
                .where(models.AuditEvent.timestamp < cutoff)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            count = result.rowcount or 0
        if count:
            logger.info("audit retention purge", extra={"deleted": count})
        return count


def _jsonable(event: AuditEvent) -> dict:
    data = asdict(event)
    data["timestamp"] = event.timestamp.isoformat()
    return data
