"""SQLAlchemy models shared across all services."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class RoleEnum(str, Enum):
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    INTERN = "intern"


class EquipmentCategory(str, Enum):
    CAMERA = "camera"
    LENS = "lens"
    ADAPTER = "adapter"
    SD_CARD = "sd_card"


class EquipmentStatus(str, Enum):
    AVAILABLE = "available"
    IN_USE = "in_use"
    MAINTENANCE = "maintenance"
    RETIRED = "retired"


# Only these labels are derived from reservations; the others are manual overrides.
SYNCED_STATUSES = (EquipmentStatus.AVAILABLE, EquipmentStatus.IN_USE)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    email: Mapped[str] = mapped_column(String(255), unique=True)
    role: Mapped[RoleEnum] = mapped_column(SqlEnum(RoleEnum), default=RoleEnum.INTERN)
    rfid_tag: Mapped[Optional[str]] = mapped_column(String(64), unique=True, index=True, default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    reservations: Mapped[List["Reservation"]] = relationship(
        back_populates="user", foreign_keys="Reservation.user_id"
    )
    usage_logs: Mapped[List["UsageLog"]] = relationship(back_populates="user")


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(200))
    start_datetime: Mapped[datetime] = mapped_column(DateTime)
    end_datetime: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)

    reservations: Mapped[List["Reservation"]] = relationship(back_populates="event")


class Equipment(Base):
    __tablename__ = "equipment"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    category: Mapped[EquipmentCategory] = mapped_column(SqlEnum(EquipmentCategory), index=True)
    status: Mapped[EquipmentStatus] = mapped_column(
        SqlEnum(EquipmentStatus), default=EquipmentStatus.AVAILABLE, index=True
    )
    serial_number: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    description: Mapped[Optional[str]] = mapped_column(Text, default=None)
    rfid_tag: Mapped[Optional[str]] = mapped_column(String(64), unique=True, index=True, default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    reservations: Mapped[List["Reservation"]] = relationship(back_populates="equipment")


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (Index("ix_reservations_equipment_window", "equipment_id", "end_time", "start_time"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    equipment_id: Mapped[int] = mapped_column(ForeignKey("equipment.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    event_id: Mapped[Optional[int]] = mapped_column(ForeignKey("events.id", ondelete="SET NULL"), default=None)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    # NULL means the unit is still out with no planned return.
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True, default=None)
    notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    created_by: Mapped[int] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    equipment: Mapped[Equipment] = relationship(back_populates="reservations")
    user: Mapped[User] = relationship(back_populates="reservations", foreign_keys=[user_id])
    creator: Mapped[User] = relationship(foreign_keys=[created_by])
    event: Mapped[Optional[Event]] = relationship(back_populates="reservations")


class UsageLog(Base):
    __tablename__ = "usage_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    logged_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    user: Mapped[User] = relationship(back_populates="usage_logs")
    items: Mapped[List["UsageLogItem"]] = relationship(
        back_populates="log", order_by="UsageLogItem.position", cascade="all, delete-orphan"
    )

    @property
    def equipment_ids(self) -> List[int]:
        return [item.equipment_id for item in self.items]


class UsageLogItem(Base):
    __tablename__ = "usage_log_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    log_id: Mapped[int] = mapped_column(ForeignKey("usage_logs.id", ondelete="CASCADE"), index=True)
    equipment_id: Mapped[int] = mapped_column(ForeignKey("equipment.id", ondelete="CASCADE"), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)

    log: Mapped[UsageLog] = relationship(back_populates="items")
    equipment: Mapped[Equipment] = relationship()


class PendingTag(Base):
    __tablename__ = "pending_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    rfid_tag: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    note: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    scanned_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
