"""RFID tag directory: resolve scanned tags and manage tags nobody owns yet."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy.orm import Session

from .database import atomic
from .errors import NotFoundError, ValidationError
from .models import Equipment, PendingTag, User

logger = logging.getLogger(__name__)


class TagKind(str, Enum):
    USER = "user"
    EQUIPMENT = "equipment"
    UNKNOWN = "unknown"


@dataclass
class ResolvedTag:
    tag: str
    kind: TagKind
    user: Optional[User] = None
    equipment: Optional[Equipment] = None


def normalize_tag(tag: str) -> str:
    value = (tag or "").strip().upper()
    if not value:
        raise ValidationError("rfid_tag is required")
    return value


def resolve_tag(db: Session, tag: str) -> ResolvedTag:
    """A tag belongs to a user, to an equipment unit, or to nobody."""

    tag = normalize_tag(tag)
    user = db.query(User).filter(User.rfid_tag == tag).first()
    if user is not None:
        return ResolvedTag(tag=tag, kind=TagKind.USER, user=user)
    equipment = db.query(Equipment).filter(Equipment.rfid_tag == tag).first()
    if equipment is not None:
        return ResolvedTag(tag=tag, kind=TagKind.EQUIPMENT, equipment=equipment)
    return ResolvedTag(tag=tag, kind=TagKind.UNKNOWN)


def record_pending_tag(
    db: Session, tag: str, note: Optional[str] = None, now: Optional[datetime] = None
) -> PendingTag:
    """Insert the tag as pending, or bump its last-seen time if already pending."""

    tag = normalize_tag(tag)
    now = now or datetime.utcnow()
    with atomic(db):
        pending = db.query(PendingTag).filter(PendingTag.rfid_tag == tag).first()
        if pending is None:
            pending = PendingTag(rfid_tag=tag, note=note, first_seen_at=now, scanned_at=now)
            db.add(pending)
            logger.info("New pending tag %s", tag)
        else:
            pending.scanned_at = now
    return pending


def list_pending_tags(db: Session) -> List[PendingTag]:
    return db.query(PendingTag).order_by(PendingTag.scanned_at.desc()).all()


def discard_pending_tag(db: Session, tag: str) -> None:
    tag = normalize_tag(tag)
    pending = db.query(PendingTag).filter(PendingTag.rfid_tag == tag).first()
    if pending is None:
        raise NotFoundError("Pending tag not found")
    with atomic(db):
        db.delete(pending)


def _ensure_tag_free(db: Session, tag: str, user_id: Optional[int] = None, equipment_id: Optional[int] = None) -> None:
    owner = resolve_tag(db, tag)
    if owner.kind is TagKind.USER and owner.user.id != user_id:
        raise ValidationError(f"Tag {tag} is already linked to {owner.user.name}")
    if owner.kind is TagKind.EQUIPMENT and owner.equipment.id != equipment_id:
        raise ValidationError(f'Tag {tag} is already linked to "{owner.equipment.name}"')


def _drop_pending(db: Session, tag: str) -> None:
    pending = db.query(PendingTag).filter(PendingTag.rfid_tag == tag).first()
    if pending is not None:
        db.delete(pending)


def link_tag_to_user(db: Session, user_id: int, tag: str) -> User:
    tag = normalize_tag(tag)
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise NotFoundError("User not found")
    _ensure_tag_free(db, tag, user_id=user_id)
    with atomic(db):
        _drop_pending(db, tag)
        user.rfid_tag = tag
    logger.info("Tag %s linked to user %s", tag, user_id)
    return user


def unlink_user_tag(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise NotFoundError("User not found")
    with atomic(db):
        user.rfid_tag = None
    return user


def link_tag_to_equipment(db: Session, equipment_id: int, tag: str) -> Equipment:
    tag = normalize_tag(tag)
    equipment = db.query(Equipment).filter(Equipment.id == equipment_id).first()
    if equipment is None:
        raise NotFoundError("Equipment not found")
    _ensure_tag_free(db, tag, equipment_id=equipment_id)
    with atomic(db):
        _drop_pending(db, tag)
        equipment.rfid_tag = tag
    logger.info("Tag %s linked to equipment %s", tag, equipment_id)
    return equipment
