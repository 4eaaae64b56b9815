"""Pydantic schemas shared across the services."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator

from .models import EquipmentCategory, EquipmentStatus, RoleEnum

T = TypeVar("T")


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Stored timestamps are naive UTC.
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class PageMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class Page(BaseModel, Generic[T]):
    data: List[T]
    meta: PageMeta

    @classmethod
    def build(cls, items: List[T], total: int, page: int, limit: int) -> "Page[T]":
        return cls(
            data=items,
            meta=PageMeta(total=total, page=page, limit=limit, total_pages=(total + limit - 1) // limit),
        )


class UserSummary(BaseModel):
    id: int
    name: str
    role: RoleEnum
    rfid_tag: Optional[str] = None

    model_config = {"from_attributes": True}


class EquipmentRead(BaseModel):
    id: int
    name: str
    category: EquipmentCategory
    status: EquipmentStatus
    serial_number: Optional[str] = None
    description: Optional[str] = None
    rfid_tag: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class EquipmentStatusUpdate(BaseModel):
    status: EquipmentStatus


class SyncRead(BaseModel):
    marked_in_use: int
    marked_available: int


class ReservationCreate(BaseModel):
    equipment_ids: List[int] = Field(..., min_length=1)
    user_id: int
    event_id: Optional[int] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_times(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value)


class ReservationUpdate(BaseModel):
    user_id: Optional[int] = None
    event_id: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_times(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value)


class ReservationReturn(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)


class ReservationRead(BaseModel):
    id: int
    equipment_id: int
    user_id: int
    event_id: Optional[int] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    notes: Optional[str] = None
    created_by: int
    created_at: datetime

    model_config = {"from_attributes": True}


class ScanAction(str, Enum):
    SESSION_OPENED = "session_opened"
    SESSION_CLOSED = "session_closed"
    LOG_CREATED = "log_created"
    SESSION_BUSY = "session_busy"
    NO_SESSION = "no_session"
    EQUIPMENT_ADDED = "equipment_added"
    EQUIPMENT_REMOVED = "equipment_removed"
    PENDING = "pending"


class ScanRequest(BaseModel):
    rfid_tag: str = Field(..., min_length=1, max_length=64)


class ScanResponse(BaseModel):
    """Everything a kiosk display needs to render the outcome of one scan."""

    action: ScanAction
    message: str
    user_name: Optional[str] = None
    current_user: Optional[str] = None
    equipment_name: Optional[str] = None
    category: Optional[EquipmentCategory] = None
    equipment_count: int = 0
    equipment_list: List[str] = Field(default_factory=list)
    equipment_ids: List[int] = Field(default_factory=list)
    log_id: Optional[int] = None
    rfid_tag: Optional[str] = None


class LoanSessionRead(BaseModel):
    session_id: str
    user_id: int
    user_name: str
    equipment_ids: List[int]
    equipment_names: List[str]
    started_at: datetime
    last_activity_at: datetime

    model_config = {"from_attributes": True}


class UsageLogItemRead(BaseModel):
    equipment_id: int
    position: int
    equipment_name: Optional[str] = None
    category: Optional[EquipmentCategory] = None


class UsageLogRead(BaseModel):
    id: int
    user_id: int
    user_name: Optional[str] = None
    logged_at: datetime
    items: List[UsageLogItemRead]


class EquipmentHistoryEntry(BaseModel):
    log_id: int
    logged_at: datetime
    user_id: int
    user_name: Optional[str] = None


class PendingTagRead(BaseModel):
    id: int
    rfid_tag: str
    note: Optional[str] = None
    first_seen_at: datetime
    scanned_at: datetime

    model_config = {"from_attributes": True}


class TagLinkRequest(BaseModel):
    rfid_tag: str = Field(..., min_length=1, max_length=64)
