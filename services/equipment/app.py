from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.orm import Session

from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import allow_roles, get_current_active_user
from common.equipment import find_available_for_range, get_equipment, list_equipment, set_equipment_status
from common.errors import add_error_handlers
from common.logging_middleware import add_audit_middleware, configure_core_logging
from common.models import EquipmentCategory, EquipmentStatus, RoleEnum, User
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import EquipmentRead, EquipmentStatusUpdate, Page, SyncRead, as_naive_utc
from common.status_sync import sync_equipment_statuses

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Equipment Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "equipment")
    configure_core_logging()
    Instrumentator().instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "equipment"}


@app.get("/equipment", response_model=Page[EquipmentRead])
@limiter.limit("60/minute")
def list_units(
    request: Request,
    category: Optional[EquipmentCategory] = None,
    status_filter: Optional[EquipmentStatus] = Query(default=None, alias="status"),
    is_active: Optional[bool] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    _: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Page[EquipmentRead]:
    items, total = list_equipment(db, category=category, status=status_filter, is_active=is_active, page=page, limit=limit)
    return Page[EquipmentRead].build([EquipmentRead.model_validate(unit) for unit in items], total, page, limit)


@app.get("/equipment/available", response_model=List[EquipmentRead])
def available_units(
    start_time: datetime = Query(...),
    end_time: Optional[datetime] = Query(default=None),
    category: Optional[EquipmentCategory] = None,
    _: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[EquipmentRead]:
    units = find_available_for_range(db, as_naive_utc(start_time), as_naive_utc(end_time), category)
    return [EquipmentRead.model_validate(unit) for unit in units]


@app.post("/equipment/sync", response_model=SyncRead)
def sync_statuses(
    _: User = Depends(allow_roles(RoleEnum.ADMIN, RoleEnum.SUPERVISOR)),
    db: Session = Depends(get_db),
) -> SyncRead:
    result = sync_equipment_statuses(db)
    return SyncRead(marked_in_use=result.marked_in_use, marked_available=result.marked_available)


@app.get("/equipment/{equipment_id}", response_model=EquipmentRead)
@limiter.limit("60/minute")
def get_unit(
    request: Request,
    equipment_id: int,
    _: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> EquipmentRead:
    return EquipmentRead.model_validate(get_equipment(db, equipment_id))


@app.patch("/equipment/{equipment_id}/status", response_model=EquipmentRead, status_code=status.HTTP_200_OK)
@limiter.limit("15/minute")
def update_unit_status(
    request: Request,
    equipment_id: int,
    payload: EquipmentStatusUpdate,
    _: User = Depends(allow_roles(RoleEnum.ADMIN, RoleEnum.SUPERVISOR)),
    db: Session = Depends(get_db),
) -> EquipmentRead:
    return EquipmentRead.model_validate(set_equipment_status(db, equipment_id, payload.status))
