"""Kiosk loan sessions driven by RFID scans.

One reader serves one person at a time, so there is exactly one session
slot per machine. A badge scan opens the slot, equipment scans toggle units
in and out of the cart, and the same badge again closes it, writing an
immutable usage log when the cart is not empty. An open session that sees no
activity for longer than the timeout is dropped the next time anything is
scanned; nothing runs in the background.
"""
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .database import atomic
from .errors import AuthorizationError
from .models import Equipment, UsageLog, UsageLogItem, User
from .schemas import EquipmentHistoryEntry, ScanAction, ScanResponse, UsageLogItemRead, UsageLogRead
from .tags import TagKind, record_pending_tag, resolve_tag

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = timedelta(minutes=3)


@dataclass
class LoanSession:
    session_id: str
    user_id: int
    user_name: str
    started_at: datetime
    last_activity_at: datetime
    equipment_ids: List[int] = field(default_factory=list)
    equipment_names: List[str] = field(default_factory=list)


class LoanSessionMachine:
    """Single-slot session state guarded by one lock.

    ``scan`` is the only way the slot changes (besides ``reset``), and every
    call runs under the lock, so scans are processed strictly one at a time.
    The slot lives in process memory and is lost on restart.
    """

    def __init__(
        self,
        timeout: timedelta = DEFAULT_TIMEOUT,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.timeout = timeout
        self.clock = clock
        self._session: Optional[LoanSession] = None
        self._lock = threading.Lock()

    def scan(self, db: Session, tag: str) -> ScanResponse:
        with self._lock:
            now = self.clock()
            self._expire_if_idle(now)

            resolved = resolve_tag(db, tag)
            if resolved.kind is TagKind.USER:
                if not resolved.user.is_active:
                    raise AuthorizationError("User is inactive")
                return self._badge_scan(db, resolved.user, now)

            if resolved.kind is TagKind.EQUIPMENT:
                if not resolved.equipment.is_active:
                    raise AuthorizationError("Equipment is inactive")
                return self._equipment_scan(resolved.equipment, now)

            record_pending_tag(db, resolved.tag, note="Scanned at equipment reader", now=now)
            return ScanResponse(
                action=ScanAction.PENDING,
                message="Tag not registered - pending assignment",
                rfid_tag=resolved.tag,
            )

    def current_session(self) -> Optional[LoanSession]:
        """Snapshot of the open session, or None. Mutating it does not affect the machine."""

        with self._lock:
            self._expire_if_idle(self.clock())
            if self._session is None:
                return None
            return replace(
                self._session,
                equipment_ids=list(self._session.equipment_ids),
                equipment_names=list(self._session.equipment_names),
            )

    def reset(self) -> None:
        with self._lock:
            self._session = None

    def _expire_if_idle(self, now: datetime) -> None:
        session = self._session
        if session is not None and now - session.last_activity_at > self.timeout:
            logger.info("Loan session %s for %s expired after inactivity", session.session_id, session.user_name)
            self._session = None

    def _badge_scan(self, db: Session, user: User, now: datetime) -> ScanResponse:
        session = self._session
        if session is not None and session.user_id != user.id:
            return ScanResponse(
                action=ScanAction.SESSION_BUSY,
                message=f"Session in use by {session.user_name}",
                user_name=user.name,
                current_user=session.user_name,
                equipment_count=len(session.equipment_ids),
            )
        if session is not None:
            return self._close(db, session, now)

        self._session = LoanSession(
            session_id=f"session-{uuid.uuid4().hex[:12]}",
            user_id=user.id,
            user_name=user.name,
            started_at=now,
            last_activity_at=now,
        )
        logger.info("Loan session %s opened for %s", self._session.session_id, user.name)
        return ScanResponse(
            action=ScanAction.SESSION_OPENED,
            message=f"Session opened for {user.name}",
            user_name=user.name,
        )

    def _equipment_scan(self, equipment: Equipment, now: datetime) -> ScanResponse:
        session = self._session
        if session is None:
            return ScanResponse(
                action=ScanAction.NO_SESSION,
                message="Scan your badge first",
                equipment_name=equipment.name,
                category=equipment.category,
            )

        session.last_activity_at = now
        if equipment.id in session.equipment_ids:
            index = session.equipment_ids.index(equipment.id)
            del session.equipment_ids[index]
            del session.equipment_names[index]
            action = ScanAction.EQUIPMENT_REMOVED
            message = f"{equipment.name} removed from the list"
        else:
            session.equipment_ids.append(equipment.id)
            session.equipment_names.append(equipment.name)
            action = ScanAction.EQUIPMENT_ADDED
            message = f"{equipment.name} added"

        return ScanResponse(
            action=action,
            message=message,
            user_name=session.user_name,
            equipment_name=equipment.name,
            category=equipment.category,
            equipment_count=len(session.equipment_ids),
            equipment_list=list(session.equipment_names),
            equipment_ids=list(session.equipment_ids),
        )

    def _close(self, db: Session, session: LoanSession, now: datetime) -> ScanResponse:
        if not session.equipment_ids:
            self._session = None
            logger.info("Loan session %s closed with no equipment", session.session_id)
            return ScanResponse(
                action=ScanAction.SESSION_CLOSED,
                message="Session closed without recording equipment",
                user_name=session.user_name,
            )

        # The slot is only cleared once the log is committed; a failed write leaves it open for a retry.
        with atomic(db):
            log = UsageLog(
                user_id=session.user_id,
                logged_at=now,
                items=[
                    UsageLogItem(equipment_id=equipment_id, position=position)
                    for position, equipment_id in enumerate(session.equipment_ids)
                ],
            )
            db.add(log)
            db.flush()
        self._session = None

        count = len(session.equipment_ids)
        logger.info("Loan session %s closed, usage log %s with %d item(s)", session.session_id, log.id, count)
        return ScanResponse(
            action=ScanAction.LOG_CREATED,
            message=f"Recorded {count} item(s)",
            user_name=session.user_name,
            equipment_count=count,
            equipment_list=list(session.equipment_names),
            equipment_ids=list(session.equipment_ids),
            log_id=log.id,
        )


def list_usage_logs(
    db: Session,
    user_id: Optional[int] = None,
    equipment_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 50,
) -> List[UsageLog]:
    stmt = select(UsageLog).options(
        selectinload(UsageLog.user),
        selectinload(UsageLog.items).selectinload(UsageLogItem.equipment),
    )
    if user_id is not None:
        stmt = stmt.where(UsageLog.user_id == user_id)
    if equipment_id is not None:
        stmt = stmt.where(UsageLog.items.any(UsageLogItem.equipment_id == equipment_id))
    if start_date is not None:
        stmt = stmt.where(UsageLog.logged_at >= start_date)
    if end_date is not None:
        stmt = stmt.where(UsageLog.logged_at <= end_date)
    stmt = stmt.order_by(UsageLog.logged_at.desc(), UsageLog.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars())


def list_equipment_history(db: Session, equipment_id: int, limit: int = 20) -> List[EquipmentHistoryEntry]:
    rows = db.execute(
        select(UsageLogItem.log_id, UsageLog.logged_at, UsageLog.user_id, User.name)
        .join(UsageLog, UsageLog.id == UsageLogItem.log_id)
        .join(User, User.id == UsageLog.user_id)
        .where(UsageLogItem.equipment_id == equipment_id)
        .order_by(UsageLog.logged_at.desc(), UsageLog.id.desc())
        .limit(limit)
    ).all()
    return [
        EquipmentHistoryEntry(log_id=log_id, logged_at=logged_at, user_id=user_id, user_name=name)
        for log_id, logged_at, user_id, name in rows
    ]


def serialize_usage_log(log: UsageLog) -> UsageLogRead:
    return UsageLogRead(
        id=log.id,
        user_id=log.user_id,
        user_name=log.user.name if log.user else None,
        logged_at=log.logged_at,
        items=[
            UsageLogItemRead(
                equipment_id=item.equipment_id,
                position=item.position,
                equipment_name=item.equipment.name if item.equipment else None,
                category=item.equipment.category if item.equipment else None,
            )
            for item in log.items
        ],
    )
