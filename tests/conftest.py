import os
from datetime import datetime, timedelta
from typing import Callable, Generator, Optional

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("SCANNER_API_KEY", "test-scanner-key")

from common.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from common.auth import create_user_token  # noqa: E402
from common.database import Base, SessionLocal, engine  # noqa: E402
from common.models import Equipment, EquipmentCategory, EquipmentStatus, Event, RoleEnum, User  # noqa: E402
from services.equipment.app import app as equipment_app  # noqa: E402
from services.loans.app import app as loans_app  # noqa: E402
from services.reservations.app import app as reservations_app  # noqa: E402


class FakeClock:
    """Settable stand-in for ``datetime.utcnow``."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 12, 10, 0, 0))


@pytest.fixture()
def make_user(db_session) -> Callable[..., User]:
    def factory(
        name: str = "Ana",
        role: RoleEnum = RoleEnum.INTERN,
        rfid_tag: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            name=name,
            email=f"{name.lower().replace(' ', '.')}@example.com",
            role=role,
            rfid_tag=rfid_tag,
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return factory


@pytest.fixture()
def make_equipment(db_session) -> Callable[..., Equipment]:
    def factory(
        name: str = "Sony FX3",
        category: EquipmentCategory = EquipmentCategory.CAMERA,
        status: EquipmentStatus = EquipmentStatus.AVAILABLE,
        rfid_tag: Optional[str] = None,
        is_active: bool = True,
    ) -> Equipment:
        unit = Equipment(name=name, category=category, status=status, rfid_tag=rfid_tag, is_active=is_active)
        db_session.add(unit)
        db_session.commit()
        return unit

    return factory


@pytest.fixture()
def make_event(db_session) -> Callable[..., Event]:
    def factory(name: str = "Spring concert", start: Optional[datetime] = None) -> Event:
        event = Event(name=name, start_datetime=start or datetime(2025, 3, 20, 18, 0))
        db_session.add(event)
        db_session.commit()
        return event

    return factory


@pytest.fixture()
def auth_header() -> Callable[[User], dict[str, str]]:
    def build(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_user_token(user)}"}

    return build


@pytest.fixture()
def scanner_headers() -> dict[str, str]:
    return {"X-API-Key": os.environ["SCANNER_API_KEY"]}


@pytest.fixture()
def equipment_client() -> Generator[TestClient, None, None]:
    with TestClient(equipment_app) as client:
        yield client


@pytest.fixture()
def reservations_client() -> Generator[TestClient, None, None]:
    with TestClient(reservations_app) as client:
        yield client


@pytest.fixture()
def loans_client() -> Generator[TestClient, None, None]:
    with TestClient(loans_app) as client:
        yield client
