"""Reservation lifecycle: create, update, return and delete equipment bookings.

Every operation that writes a reservation and an equipment status does both
in one transaction, and every read that decides the write happens inside it.
On PostgreSQL ``create`` and interval-changing ``update`` calls lock the
affected equipment rows before checking for conflicts. On SQLite each
transaction starts with ``BEGIN IMMEDIATE`` (see ``common.database``), so a
second concurrent booking waits for the first to commit or fails with
InfrastructureError. Either way two bookings for the same unit cannot both
pass the overlap check.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from .database import atomic
from .errors import NotFoundError, ValidationError
from .models import Equipment, EquipmentStatus, Event, Reservation, User
from .overlap import format_time_range, is_active_at, ranges_overlap
from .status_sync import active_reservation_clause, apply_status, refresh_unit_status

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({"user_id", "event_id", "start_time", "end_time", "notes"})


class ReservationManager:
    """Owns every write to reservations and their status side effects."""

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow) -> None:
        self.clock = clock

    # ---- reads

    def get(self, db: Session, reservation_id: int) -> Reservation:
        reservation = db.query(Reservation).filter(Reservation.id == reservation_id).first()
        if reservation is None:
            raise NotFoundError("Reservation not found")
        return reservation

    def list(
        self,
        db: Session,
        equipment_id: Optional[int] = None,
        user_id: Optional[int] = None,
        event_id: Optional[int] = None,
        active: Optional[bool] = None,
        today: bool = False,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Reservation], int]:
        now = self.clock()
        stmt = select(Reservation)
        if equipment_id is not None:
            stmt = stmt.where(Reservation.equipment_id == equipment_id)
        if user_id is not None:
            stmt = stmt.where(Reservation.user_id == user_id)
        if event_id is not None:
            stmt = stmt.where(Reservation.event_id == event_id)
        if active is True:
            stmt = stmt.where(*active_reservation_clause(now))
        elif active is False:
            stmt = stmt.where(Reservation.end_time.is_not(None), Reservation.end_time <= now)
        if today:
            start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
            end_of_day = start_of_day + timedelta(days=1)
            stmt = stmt.where(
                Reservation.start_time < end_of_day,
                or_(Reservation.end_time.is_(None), Reservation.end_time > start_of_day),
            )

        total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        items = (
            db.execute(
                stmt.order_by(Reservation.start_time.desc(), Reservation.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        return list(items), total

    # ---- writes

    def create(
        self,
        db: Session,
        equipment_ids: Sequence[int],
        user_id: int,
        start_time: datetime,
        creator_id: int,
        end_time: Optional[datetime] = None,
        event_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> List[Reservation]:
        """Book every unit in ``equipment_ids`` for ``[start_time, end_time)``.

        All units are checked before anything is written. If any unit is
        missing, inactive or already booked in an overlapping window the
        whole request is rejected with one ValidationError that lists every
        problem found (one conflict per unit). On success one reservation per
        unit is inserted and, when the window contains the current instant,
        the booked units are flipped to ``in_use`` in the same transaction.
        """
        requested = list(equipment_ids)
        unit_ids = list(dict.fromkeys(requested))
        violations: List[str] = []

        if not requested:
            violations.append("At least one equipment ID is required")
        duplicates = sorted({eid for eid in requested if requested.count(eid) > 1})
        if duplicates:
            violations.append(f"Equipment listed more than once: {_join_ids(duplicates)}")
        if end_time is not None and end_time <= start_time:
            violations.append("End time must be after start time")

        now = self.clock()
        with atomic(db):
            violations.extend(self._reference_violations(db, user_id, event_id, check_user=True))
            units = self._lock_units(db, unit_ids)
            missing = [eid for eid in unit_ids if eid not in units]
            if missing:
                violations.append(f"Equipment not found: {_join_ids(missing)}")

            candidates = self._possible_overlaps(db, list(units), start_time)
            for eid in unit_ids:
                unit = units.get(eid)
                if unit is None:
                    continue
                if not unit.is_active:
                    violations.append(f'"{unit.name}" is inactive')
                    continue
                conflict = _first_conflict(candidates[eid], start_time, end_time)
                if conflict is not None:
                    violations.append(_conflict_message(unit, conflict))

            if violations:
                raise ValidationError(violations)

            created = [
                Reservation(
                    equipment_id=eid,
                    user_id=user_id,
                    event_id=event_id,
                    start_time=start_time,
                    end_time=end_time,
                    notes=notes,
                    created_by=creator_id,
                )
                for eid in unit_ids
            ]
            db.add_all(created)
            db.flush()

            if is_active_at(start_time, end_time, now):
                apply_status(db, unit_ids, EquipmentStatus.IN_USE)

        logger.info(
            "Created %d reservation(s) for user %s on equipment %s", len(created), user_id, _join_ids(unit_ids)
        )
        return created

    def update(self, db: Session, reservation_id: int, changes: Mapping[str, Any]) -> Reservation:
        """Apply a partial update.

        Changed user/event references are re-validated. When the interval
        moves, it is checked again against the unit's other reservations
        exactly like a new booking, and the unit status is recomputed.
        """
        violations: List[str] = []
        unknown = sorted(set(changes) - UPDATABLE_FIELDS)
        if unknown:
            violations.append(f"Unknown field(s): {', '.join(unknown)}")
        if "user_id" in changes and changes["user_id"] is None:
            violations.append("User is required")

        now = self.clock()
        with atomic(db):
            reservation = self.get(db, reservation_id)
            violations.extend(
                self._reference_violations(
                    db,
                    changes.get("user_id"),
                    changes.get("event_id"),
                    check_user=changes.get("user_id") is not None,
                )
            )

            new_start = changes.get("start_time", reservation.start_time)
            new_end = changes.get("end_time", reservation.end_time)
            interval_changed = new_start != reservation.start_time or new_end != reservation.end_time
            well_formed = True
            if new_start is None:
                violations.append("Start time is required")
                well_formed = False
            elif new_end is not None and new_end <= new_start:
                violations.append("End time must be after start time")
                well_formed = False

            if interval_changed and well_formed:
                units = self._lock_units(db, [reservation.equipment_id])
                unit = units[reservation.equipment_id]
                others = [
                    r
                    for r in self._possible_overlaps(db, [unit.id], new_start)[unit.id]
                    if r.id != reservation.id
                ]
                conflict = _first_conflict(others, new_start, new_end)
                if conflict is not None:
                    violations.append(_conflict_message(unit, conflict))

            if violations:
                raise ValidationError(violations)

            for field, value in changes.items():
                setattr(reservation, field, value)
            db.flush()
            refresh_unit_status(db, reservation.equipment_id, now)

        logger.info("Updated reservation %s (%s)", reservation.id, ", ".join(sorted(changes)) or "no fields")
        return reservation

    def return_equipment(self, db: Session, reservation_id: int, notes: Optional[str] = None) -> Reservation:
        """Close an open reservation at the current instant and release the unit if nothing else holds it."""

        now = self.clock()
        with atomic(db):
            reservation = self.get(db, reservation_id)
            if reservation.end_time is not None:
                raise ValidationError("Equipment has already been returned")
            if reservation.start_time >= now:
                raise ValidationError("Reservation has not started yet; delete it instead of returning it")

            reservation.end_time = now
            if notes is not None:
                reservation.notes = notes
            db.flush()
            refresh_unit_status(db, reservation.equipment_id, now)

        logger.info("Reservation %s returned (equipment %s)", reservation.id, reservation.equipment_id)
        return reservation

    def delete(self, db: Session, reservation_id: int) -> None:
        now = self.clock()
        with atomic(db):
            reservation = self.get(db, reservation_id)
            was_active = is_active_at(reservation.start_time, reservation.end_time, now)
            equipment_id = reservation.equipment_id

            db.delete(reservation)
            db.flush()
            if was_active:
                refresh_unit_status(db, equipment_id, now)

        logger.info("Deleted reservation %s (equipment %s, was active: %s)", reservation_id, equipment_id, was_active)

    # ---- helpers

    def _reference_violations(
        self, db: Session, user_id: Optional[int], event_id: Optional[int], check_user: bool
    ) -> List[str]:
        violations: List[str] = []
        if check_user:
            user = db.query(User).filter(User.id == user_id).first() if user_id is not None else None
            if user is None or not user.is_active:
                violations.append("User not found or inactive")
        if event_id is not None and db.query(Event).filter(Event.id == event_id).first() is None:
            violations.append("Event not found")
        return violations

    def _lock_units(self, db: Session, equipment_ids: Iterable[int]) -> Dict[int, Equipment]:
        ids = sorted(set(equipment_ids))
        if not ids:
            return {}
        rows = db.execute(
            select(Equipment).where(Equipment.id.in_(ids)).order_by(Equipment.id).with_for_update()
        ).scalars()
        return {unit.id: unit for unit in rows}

    def _possible_overlaps(
        self, db: Session, equipment_ids: List[int], start_time: datetime
    ) -> Dict[int, List[Reservation]]:
        """Load only reservations that can still intersect a window starting at ``start_time``."""

        grouped: Dict[int, List[Reservation]] = defaultdict(list)
        if not equipment_ids:
            return grouped
        rows = db.execute(
            select(Reservation)
            .options(selectinload(Reservation.user))
            .where(
                Reservation.equipment_id.in_(equipment_ids),
                or_(Reservation.end_time.is_(None), Reservation.end_time > start_time),
            )
            .order_by(Reservation.start_time)
        ).scalars()
        for reservation in rows:
            grouped[reservation.equipment_id].append(reservation)
        return grouped


def _first_conflict(
    existing: Iterable[Reservation], start_time: datetime, end_time: Optional[datetime]
) -> Optional[Reservation]:
    for reservation in existing:
        if ranges_overlap(reservation.start_time, reservation.end_time, start_time, end_time):
            return reservation
    return None


def _conflict_message(unit: Equipment, conflict: Reservation) -> str:
    holder = conflict.user.name if conflict.user else f"user {conflict.user_id}"
    return f'"{unit.name}" is reserved by {holder} {format_time_range(conflict.start_time, conflict.end_time)}'


def _join_ids(ids: Iterable[int]) -> str:
    return ", ".join(str(i) for i in ids)
