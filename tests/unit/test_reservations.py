"""Unit tests for the reservation lifecycle."""
from datetime import timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from common.database import engine
from common.errors import InfrastructureError, NotFoundError, ValidationError
from common.models import EquipmentStatus, Reservation
from common.reservations import ReservationManager


@pytest.fixture()
def manager(clock):
    return ReservationManager(clock=clock)


@pytest.fixture()
def ana(make_user):
    return make_user(name="Ana")


@pytest.fixture()
def bruno(make_user):
    return make_user(name="Bruno")


def reservation_count(db_session) -> int:
    return db_session.execute(select(func.count()).select_from(Reservation)).scalar_one()


def status_of(db_session, unit) -> EquipmentStatus:
    db_session.refresh(unit)
    return unit.status


@pytest.fixture()
def other_session():
    """A session on its own engine, as a second service process would have."""

    other_engine = create_engine(engine.url, connect_args={"check_same_thread": False, "timeout": 0.2})
    session = sessionmaker(bind=other_engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()
        other_engine.dispose()


class TestCreate:
    def test_conflicting_booking_names_holder_and_range(self, db_session, manager, clock, ana, bruno, make_equipment):
        camera = make_equipment(name="Sony FX3")
        manager.create(db_session, [camera.id], ana.id, clock() - timedelta(hours=1), creator_id=ana.id)

        with pytest.raises(ValidationError) as exc_info:
            manager.create(db_session, [camera.id], bruno.id, clock(), creator_id=bruno.id)

        assert exc_info.value.violations == ['"Sony FX3" is reserved by Ana from 12/03 09:00 (no end time)']
        assert reservation_count(db_session) == 1

    def test_every_violation_is_reported(self, db_session, manager, clock, ana, bruno, make_equipment):
        busy = make_equipment(name="Canon R5")
        retired_from_use = make_equipment(name="Old lens", is_active=False)
        free = make_equipment(name="Card 64GB")
        manager.create(
            db_session, [busy.id], bruno.id, clock(), end_time=clock() + timedelta(hours=2), creator_id=bruno.id
        )

        with pytest.raises(ValidationError) as exc_info:
            manager.create(
                db_session,
                [busy.id, retired_from_use.id, free.id, 999],
                ana.id,
                clock() + timedelta(hours=1),
                end_time=clock() + timedelta(hours=3),
                creator_id=ana.id,
            )

        violations = exc_info.value.violations
        assert "Equipment not found: 999" in violations
        assert '"Old lens" is inactive' in violations
        assert '"Canon R5" is reserved by Bruno 12/03 from 10:00 to 12:00' in violations
        assert len(violations) == 3
        assert reservation_count(db_session) == 1

    def test_one_conflict_reported_per_unit(self, db_session, manager, clock, ana, bruno, make_equipment):
        camera = make_equipment()
        manager.create(db_session, [camera.id], ana.id, clock(), end_time=clock() + timedelta(hours=1), creator_id=ana.id)
        manager.create(
            db_session,
            [camera.id],
            ana.id,
            clock() + timedelta(hours=1),
            end_time=clock() + timedelta(hours=2),
            creator_id=ana.id,
        )

        with pytest.raises(ValidationError) as exc_info:
            manager.create(db_session, [camera.id], bruno.id, clock(), creator_id=bruno.id)

        assert len(exc_info.value.violations) == 1

    def test_reference_and_field_violations(self, db_session, manager, clock, make_user, make_equipment):
        inactive = make_user(name="Carla", is_active=False)
        camera = make_equipment()

        with pytest.raises(ValidationError) as exc_info:
            manager.create(
                db_session,
                [camera.id, camera.id],
                inactive.id,
                clock(),
                end_time=clock() - timedelta(minutes=5),
                event_id=42,
                creator_id=inactive.id,
            )

        violations = exc_info.value.violations
        assert "User not found or inactive" in violations
        assert "Event not found" in violations
        assert "End time must be after start time" in violations
        assert f"Equipment listed more than once: {camera.id}" in violations

    def test_empty_equipment_list_rejected(self, db_session, manager, clock, ana):
        with pytest.raises(ValidationError) as exc_info:
            manager.create(db_session, [], ana.id, clock(), creator_id=ana.id)

        assert "At least one equipment ID is required" in exc_info.value.violations

    def test_touching_ranges_are_allowed(self, db_session, manager, clock, ana, bruno, make_equipment):
        camera = make_equipment()
        manager.create(db_session, [camera.id], ana.id, clock(), end_time=clock() + timedelta(hours=1), creator_id=ana.id)

        created = manager.create(
            db_session,
            [camera.id],
            bruno.id,
            clock() + timedelta(hours=1),
            end_time=clock() + timedelta(hours=2),
            creator_id=bruno.id,
        )

        assert len(created) == 1
        assert reservation_count(db_session) == 2

    def test_books_every_unit_with_event(self, db_session, manager, clock, ana, make_equipment, make_event):
        camera = make_equipment(name="Sony FX3")
        lens = make_equipment(name="24-70mm")
        concert = make_event()

        created = manager.create(
            db_session,
            [camera.id, lens.id],
            ana.id,
            clock() + timedelta(days=8),
            end_time=clock() + timedelta(days=8, hours=4),
            event_id=concert.id,
            notes="Main stage",
            creator_id=ana.id,
        )

        assert [r.equipment_id for r in created] == [camera.id, lens.id]
        assert all(r.event_id == concert.id and r.created_by == ana.id for r in created)

    def test_future_booking_does_not_flip_status(self, db_session, manager, clock, ana, make_equipment):
        camera = make_equipment()
        manager.create(db_session, [camera.id], ana.id, clock() + timedelta(hours=2), creator_id=ana.id)

        assert status_of(db_session, camera) == EquipmentStatus.AVAILABLE

    def test_maintenance_unit_status_is_left_alone(self, db_session, manager, clock, ana, make_equipment):
        camera = make_equipment(status=EquipmentStatus.MAINTENANCE)
        manager.create(db_session, [camera.id], ana.id, clock() - timedelta(minutes=10), creator_id=ana.id)

        assert status_of(db_session, camera) == EquipmentStatus.MAINTENANCE

    def test_concurrent_open_ended_bookings_cannot_both_commit(
        self, monkeypatch, db_session, other_session, manager, clock, ana, bruno, make_equipment
    ):
        camera = make_equipment()
        original = ReservationManager._possible_overlaps
        competing_errors = []

        def book_for_bruno_midway(self, db, equipment_ids, start_time):
            if db is db_session and not competing_errors:
                try:
                    ReservationManager(clock=clock).create(
                        other_session, [camera.id], bruno.id, clock(), creator_id=bruno.id
                    )
                except InfrastructureError as exc:
                    competing_errors.append(exc)
            return original(self, db, equipment_ids, start_time)

        monkeypatch.setattr(ReservationManager, "_possible_overlaps", book_for_bruno_midway)

        manager.create(db_session, [camera.id], ana.id, clock() - timedelta(hours=1), creator_id=ana.id)

        rows = db_session.execute(select(Reservation)).scalars().all()
        assert len(rows) == 1
        assert rows[0].user_id == ana.id
        assert len(competing_errors) == 1
        assert "locked" in str(competing_errors[0].original)


class TestReturn:
    def test_round_trip_status(self, db_session, manager, clock, ana, make_equipment):
        camera = make_equipment()
        (reservation,) = manager.create(
            db_session, [camera.id], ana.id, clock() - timedelta(hours=1), creator_id=ana.id
        )
        assert status_of(db_session, camera) == EquipmentStatus.IN_USE

        clock.advance(minutes=30)
        returned = manager.return_equipment(db_session, reservation.id, notes="Battery low")

        assert returned.end_time == clock()
        assert returned.notes == "Battery low"
        assert status_of(db_session, camera) == EquipmentStatus.AVAILABLE

    def test_cannot_return_twice(self, db_session, manager, clock, ana, make_equipment):
        camera = make_equipment()
        (reservation,) = manager.create(db_session, [camera.id], ana.id, clock() - timedelta(hours=1), creator_id=ana.id)
        manager.return_equipment(db_session, reservation.id)

        with pytest.raises(ValidationError, match="already been returned"):
            manager.return_equipment(db_session, reservation.id)

    def test_cannot_return_before_start(self, db_session, manager, clock, ana, make_equipment):
        camera = make_equipment()
        (reservation,) = manager.create(db_session, [camera.id], ana.id, clock() + timedelta(hours=1), creator_id=ana.id)

        with pytest.raises(ValidationError, match="not started yet"):
            manager.return_equipment(db_session, reservation.id)

    def test_missing_reservation(self, db_session, manager):
        with pytest.raises(NotFoundError):
            manager.return_equipment(db_session, 404)


class TestDelete:
    def test_deleting_only_active_reservation_frees_unit(self, db_session, manager, clock, ana, make_equipment):
        camera = make_equipment()
        (reservation,) = manager.create(db_session, [camera.id], ana.id, clock() - timedelta(hours=1), creator_id=ana.id)
        assert status_of(db_session, camera) == EquipmentStatus.IN_USE

        manager.delete(db_session, reservation.id)

        assert status_of(db_session, camera) == EquipmentStatus.AVAILABLE
        assert reservation_count(db_session) == 0

    def test_deleting_sibling_keeps_unit_in_use(self, db_session, manager, clock, ana, bruno, make_equipment):
        camera = make_equipment()
        (earlier,) = manager.create(
            db_session,
            [camera.id],
            bruno.id,
            clock() - timedelta(hours=3),
            end_time=clock() - timedelta(hours=1),
            creator_id=bruno.id,
        )
        manager.create(db_session, [camera.id], ana.id, clock() - timedelta(hours=1), creator_id=ana.id)

        manager.delete(db_session, earlier.id)

        assert status_of(db_session, camera) == EquipmentStatus.IN_USE
        assert reservation_count(db_session) == 1

    def test_missing_reservation(self, db_session, manager):
        with pytest.raises(NotFoundError, match="Reservation not found"):
            manager.delete(db_session, 404)


class TestUpdate:
    def test_moving_into_a_taken_window_is_rejected(self, db_session, manager, clock, ana, bruno, make_equipment):
        camera = make_equipment(name="Sony FX3")
        manager.create(
            db_session,
            [camera.id],
            ana.id,
            clock() + timedelta(hours=1),
            end_time=clock() + timedelta(hours=2),
            creator_id=ana.id,
        )
        (later,) = manager.create(
            db_session,
            [camera.id],
            bruno.id,
            clock() + timedelta(hours=3),
            end_time=clock() + timedelta(hours=4),
            creator_id=bruno.id,
        )

        with pytest.raises(ValidationError) as exc_info:
            manager.update(db_session, later.id, {"start_time": clock() + timedelta(hours=1, minutes=30)})

        assert exc_info.value.violations == ['"Sony FX3" is reserved by Ana 12/03 from 11:00 to 12:00']
        db_session.refresh(later)
        assert later.start_time == clock() + timedelta(hours=3)

    def test_reservation_does_not_conflict_with_itself(self, db_session, manager, clock, ana, make_equipment):
        camera = make_equipment()
        (reservation,) = manager.create(
            db_session,
            [camera.id],
            ana.id,
            clock() + timedelta(hours=1),
            end_time=clock() + timedelta(hours=2),
            creator_id=ana.id,
        )

        updated = manager.update(db_session, reservation.id, {"end_time": clock() + timedelta(hours=5)})

        assert updated.end_time == clock() + timedelta(hours=5)

    def test_moving_into_now_marks_unit_in_use(self, db_session, manager, clock, ana, make_equipment):
        camera = make_equipment()
        (reservation,) = manager.create(db_session, [camera.id], ana.id, clock() + timedelta(hours=1), creator_id=ana.id)

        manager.update(db_session, reservation.id, {"start_time": clock() - timedelta(minutes=5)})

        assert status_of(db_session, camera) == EquipmentStatus.IN_USE

    def test_invalid_changes_are_aggregated(self, db_session, manager, clock, ana, make_equipment):
        camera = make_equipment()
        (reservation,) = manager.create(db_session, [camera.id], ana.id, clock() + timedelta(hours=1), creator_id=ana.id)

        with pytest.raises(ValidationError) as exc_info:
            manager.update(
                db_session,
                reservation.id,
                {"equipment_id": 3, "user_id": 999, "end_time": clock()},
            )

        violations = exc_info.value.violations
        assert "Unknown field(s): equipment_id" in violations
        assert "User not found or inactive" in violations
        assert "End time must be after start time" in violations

    def test_notes_only_update(self, db_session, manager, clock, ana, make_equipment):
        camera = make_equipment()
        (reservation,) = manager.create(db_session, [camera.id], ana.id, clock() + timedelta(hours=1), creator_id=ana.id)

        updated = manager.update(db_session, reservation.id, {"notes": "Bring spare batteries"})

        assert updated.notes == "Bring spare batteries"


class TestList:
    def test_filters_and_pagination(self, db_session, manager, clock, ana, bruno, make_equipment):
        camera = make_equipment(name="Sony FX3")
        lens = make_equipment(name="24-70mm")
        manager.create(db_session, [camera.id, lens.id], ana.id, clock() - timedelta(hours=1), creator_id=ana.id)
        manager.create(
            db_session,
            [camera.id],
            bruno.id,
            clock() + timedelta(days=2),
            end_time=clock() + timedelta(days=2, hours=1),
            creator_id=bruno.id,
        )

        items, total = manager.list(db_session, equipment_id=camera.id)
        assert total == 2
        assert items[0].user_id == bruno.id

        items, total = manager.list(db_session, user_id=ana.id, active=True)
        assert total == 2

        items, total = manager.list(db_session, today=True)
        assert total == 2

        items, total = manager.list(db_session, page=2, limit=2)
        assert total == 3
        assert len(items) == 1

    def test_get_missing(self, db_session, manager):
        with pytest.raises(NotFoundError):
            manager.get(db_session, 1)

    def test_get_sees_rows_deleted_by_another_session(
        self, db_session, other_session, manager, clock, ana, make_equipment
    ):
        camera = make_equipment()
        (reservation,) = manager.create(db_session, [camera.id], ana.id, clock(), creator_id=ana.id)

        other_session.query(Reservation).filter(Reservation.id == reservation.id).delete()
        other_session.commit()

        with pytest.raises(NotFoundError):
            manager.get(db_session, reservation.id)
