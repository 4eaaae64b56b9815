"""Equipment directory reads and manual status overrides."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .database import atomic
from .errors import NotFoundError, ValidationError
from .models import Equipment, EquipmentCategory, EquipmentStatus, Reservation
from .overlap import effective_end
from .status_sync import has_active_reservation, sync_equipment_statuses

logger = logging.getLogger(__name__)


def list_equipment(
    db: Session,
    category: Optional[EquipmentCategory] = None,
    status: Optional[EquipmentStatus] = None,
    is_active: Optional[bool] = None,
    page: int = 1,
    limit: int = 10,
    clock: Callable[[], datetime] = datetime.utcnow,
) -> Tuple[List[Equipment], int]:
    sync_equipment_statuses(db, clock=clock)

    stmt = select(Equipment)
    if category is not None:
        stmt = stmt.where(Equipment.category == category)
    if status is not None:
        stmt = stmt.where(Equipment.status == status)
    if is_active is not None:
        stmt = stmt.where(Equipment.is_active.is_(is_active))

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    items = db.execute(
        stmt.order_by(Equipment.category, Equipment.name).offset((page - 1) * limit).limit(limit)
    ).scalars()
    return list(items), total


def get_equipment(db: Session, equipment_id: int, clock: Callable[[], datetime] = datetime.utcnow) -> Equipment:
    sync_equipment_statuses(db, clock=clock)
    equipment = db.query(Equipment).filter(Equipment.id == equipment_id).first()
    if equipment is None:
        raise NotFoundError("Equipment not found")
    return equipment


def find_available_for_range(
    db: Session,
    start_time: datetime,
    end_time: Optional[datetime] = None,
    category: Optional[EquipmentCategory] = None,
) -> List[Equipment]:
    """Active units outside maintenance/retirement with no booking intersecting the window."""

    if end_time is not None and end_time <= start_time:
        raise ValidationError("End time must be after start time")

    clash = (
        select(Reservation.id)
        .where(
            Reservation.equipment_id == Equipment.id,
            Reservation.start_time < effective_end(end_time),
            or_(Reservation.end_time.is_(None), Reservation.end_time > start_time),
        )
        .exists()
    )
    stmt = select(Equipment).where(
        Equipment.is_active.is_(True),
        Equipment.status.not_in((EquipmentStatus.MAINTENANCE, EquipmentStatus.RETIRED)),
        ~clash,
    )
    if category is not None:
        stmt = stmt.where(Equipment.category == category)
    return list(db.execute(stmt.order_by(Equipment.category, Equipment.name)).scalars())


def set_equipment_status(
    db: Session,
    equipment_id: int,
    status: EquipmentStatus,
    clock: Callable[[], datetime] = datetime.utcnow,
) -> Equipment:
    """Manual status change.

    ``maintenance`` and ``retired`` are overrides and are written as given.
    ``available`` and ``in_use`` are derived from reservations, so they are
    only accepted when they agree with what the reservations say right now.
    """
    equipment = db.query(Equipment).filter(Equipment.id == equipment_id).first()
    if equipment is None:
        raise NotFoundError("Equipment not found")

    if status in (EquipmentStatus.AVAILABLE, EquipmentStatus.IN_USE):
        busy = has_active_reservation(db, equipment_id, clock())
        if status is EquipmentStatus.AVAILABLE and busy:
            raise ValidationError("Cannot set status to available while the equipment has an active reservation")
        if status is EquipmentStatus.IN_USE and not busy:
            raise ValidationError("Cannot set status to in_use without an active reservation")

    with atomic(db):
        equipment.status = status
    logger.info("Equipment %s status set to %s", equipment_id, status.value)
    return equipment
