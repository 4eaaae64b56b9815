from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.orm import Session

from common import tags
from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import allow_roles, get_current_active_user, get_loan_machine, require_scanner_key
from common.errors import add_error_handlers
from common.loan_session import LoanSessionMachine, list_equipment_history, list_usage_logs, serialize_usage_log
from common.logging_middleware import add_audit_middleware, configure_core_logging
from common.models import RoleEnum, User
from common.rate_limit import apply_rate_limiter, limiter, scanner_key
from common.schemas import (
    EquipmentHistoryEntry,
    EquipmentRead,
    LoanSessionRead,
    PendingTagRead,
    ScanRequest,
    ScanResponse,
    TagLinkRequest,
    UsageLogRead,
    UserSummary,
    as_naive_utc,
)

settings = get_settings()
require_manager = allow_roles(RoleEnum.ADMIN, RoleEnum.SUPERVISOR)


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    # One reader, one slot: the machine lives as long as the app does.
    fastapi_app.state.loan_machine = LoanSessionMachine(timeout=settings.loan_session_timeout)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Equipment Loans Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "loans")
    configure_core_logging()
    Instrumentator().instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "loans"}


@app.post("/equipment-loans/scan", response_model=ScanResponse, dependencies=[Depends(require_scanner_key)])
@limiter.limit(settings.scan_rate_limit, key_func=scanner_key)
def scan(
    request: Request,
    payload: ScanRequest,
    machine: LoanSessionMachine = Depends(get_loan_machine),
    db: Session = Depends(get_db),
) -> ScanResponse:
    return machine.scan(db, payload.rfid_tag)


@app.get("/equipment-loans/history", response_model=List[UsageLogRead])
def history(
    user_id: Optional[int] = None,
    equipment_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(default=settings.usage_history_limit, ge=1, le=500),
    _: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[UsageLogRead]:
    logs = list_usage_logs(
        db,
        user_id=user_id,
        equipment_id=equipment_id,
        start_date=as_naive_utc(start_date),
        end_date=as_naive_utc(end_date),
        limit=limit,
    )
    return [serialize_usage_log(log) for log in logs]


@app.get("/equipment-loans/equipment/{equipment_id}/history", response_model=List[EquipmentHistoryEntry])
def equipment_history(
    equipment_id: int,
    limit: int = Query(default=settings.equipment_history_limit, ge=1, le=500),
    _: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[EquipmentHistoryEntry]:
    return list_equipment_history(db, equipment_id, limit=limit)


@app.get("/equipment-loans/session", response_model=Optional[LoanSessionRead])
def current_session(
    _: User = Depends(require_manager),
    machine: LoanSessionMachine = Depends(get_loan_machine),
) -> Optional[LoanSessionRead]:
    session = machine.current_session()
    return LoanSessionRead.model_validate(session) if session else None


@app.get("/rfid/pending", response_model=List[PendingTagRead])
def pending_tags(_: User = Depends(require_manager), db: Session = Depends(get_db)) -> List[PendingTagRead]:
    return [PendingTagRead.model_validate(p) for p in tags.list_pending_tags(db)]


@app.delete("/rfid/pending/{rfid_tag}", status_code=status.HTTP_204_NO_CONTENT)
def discard_pending(rfid_tag: str, _: User = Depends(require_manager), db: Session = Depends(get_db)) -> None:
    tags.discard_pending_tag(db, rfid_tag)


@app.post("/rfid/users/{user_id}/link", response_model=UserSummary)
def link_user(
    user_id: int,
    payload: TagLinkRequest,
    _: User = Depends(require_manager),
    db: Session = Depends(get_db),
) -> UserSummary:
    return UserSummary.model_validate(tags.link_tag_to_user(db, user_id, payload.rfid_tag))


@app.delete("/rfid/users/{user_id}/link", response_model=UserSummary)
def unlink_user(user_id: int, _: User = Depends(require_manager), db: Session = Depends(get_db)) -> UserSummary:
    return UserSummary.model_validate(tags.unlink_user_tag(db, user_id))


@app.post("/rfid/equipment/{equipment_id}/link", response_model=EquipmentRead)
def link_equipment(
    equipment_id: int,
    payload: TagLinkRequest,
    _: User = Depends(require_manager),
    db: Session = Depends(get_db),
) -> EquipmentRead:
    return EquipmentRead.model_validate(tags.link_tag_to_equipment(db, equipment_id, payload.rfid_tag))
