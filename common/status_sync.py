"""Keeps the cached ``Equipment.status`` label in line with reservations.

``status`` is a materialized view of "does this unit have a reservation
active right now". There is one rule for computing it, used both by the
fleet-wide pass run before equipment reads and by the per-unit refresh the
reservation lifecycle performs inside its own transactions. Units in
maintenance or retired are manual overrides and are never touched here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from .database import atomic
from .models import SYNCED_STATUSES, Equipment, EquipmentStatus, Reservation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    marked_in_use: int = 0
    marked_available: int = 0

    @property
    def writes(self) -> int:
        return self.marked_in_use + self.marked_available


def active_reservation_clause(now: datetime):
    return (
        Reservation.start_time <= now,
        or_(Reservation.end_time.is_(None), Reservation.end_time > now),
    )


def has_active_reservation(
    db: Session, equipment_id: int, now: datetime, exclude_id: Optional[int] = None
) -> bool:
    stmt = select(Reservation.id).where(Reservation.equipment_id == equipment_id, *active_reservation_clause(now))
    if exclude_id is not None:
        stmt = stmt.where(Reservation.id != exclude_id)
    return db.execute(stmt.limit(1)).first() is not None


def apply_status(db: Session, equipment_ids: Iterable[int], status: EquipmentStatus) -> int:
    """Write ``status`` to every synced unit in ``equipment_ids`` with one UPDATE."""

    ids = sorted(set(equipment_ids))
    if not ids:
        return 0
    result = db.execute(
        update(Equipment)
        .where(Equipment.id.in_(ids), Equipment.status.in_(SYNCED_STATUSES), Equipment.status != status)
        .values(status=status)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


def refresh_unit_status(db: Session, equipment_id: int, now: datetime) -> Optional[EquipmentStatus]:
    """Recompute one unit's label without committing; the caller owns the transaction."""

    unit = db.query(Equipment).filter(Equipment.id == equipment_id).first()
    if unit is None or not unit.is_active or unit.status not in SYNCED_STATUSES:
        return None
    target = EquipmentStatus.IN_USE if has_active_reservation(db, equipment_id, now) else EquipmentStatus.AVAILABLE
    if unit.status != target:
        logger.info("Equipment %s status %s -> %s", equipment_id, unit.status.value, target.value)
        unit.status = target
    return target


def sync_equipment_statuses(
    db: Session, now: Optional[datetime] = None, clock: Callable[[], datetime] = datetime.utcnow
) -> SyncResult:
    """Bring every synced unit's label in line with its reservations.

    One read decides, for all eligible units at once, whether each has a
    reservation active at ``now``. Only units whose label disagrees are
    written, in at most two batched updates, so a second run with nothing
    changed issues no writes at all.
    """
    now = now or clock()
    busy = (
        select(Reservation.id)
        .where(Reservation.equipment_id == Equipment.id, *active_reservation_clause(now))
        .exists()
    )
    rows = db.execute(
        select(Equipment.id, Equipment.status, busy.label("busy")).where(
            Equipment.is_active.is_(True), Equipment.status.in_(SYNCED_STATUSES)
        )
    ).all()

    to_in_use = [row.id for row in rows if row.busy and row.status != EquipmentStatus.IN_USE]
    to_available = [row.id for row in rows if not row.busy and row.status == EquipmentStatus.IN_USE]
    if not to_in_use and not to_available:
        return SyncResult()

    with atomic(db):
        marked_in_use = apply_status(db, to_in_use, EquipmentStatus.IN_USE)
        marked_available = apply_status(db, to_available, EquipmentStatus.AVAILABLE)

    logger.info("Status sync: %d unit(s) in use, %d unit(s) available", marked_in_use, marked_available)
    return SyncResult(marked_in_use=marked_in_use, marked_available=marked_available)
