from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Body, Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.orm import Session

from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import get_current_active_user
from common.errors import AuthorizationError, add_error_handlers
from common.logging_middleware import add_audit_middleware, configure_core_logging
from common.models import Reservation, RoleEnum, User
from common.rate_limit import apply_rate_limiter, limiter
from common.reservations import ReservationManager
from common.schemas import Page, ReservationCreate, ReservationRead, ReservationReturn, ReservationUpdate

settings = get_settings()
MANAGER_ROLES = {RoleEnum.ADMIN, RoleEnum.SUPERVISOR}


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    fastapi_app.state.reservations = ReservationManager()
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Reservations Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "reservations")
    configure_core_logging()
    Instrumentator().instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


def get_manager(request: Request) -> ReservationManager:
    return request.app.state.reservations


def _ensure_can_manage(current_user: User, reservation: Reservation) -> None:
    if current_user.role in MANAGER_ROLES:
        return
    if current_user.id not in (reservation.user_id, reservation.created_by):
        raise AuthorizationError("Not allowed")


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "reservations"}


@app.get("/reservations", response_model=Page[ReservationRead])
@limiter.limit("60/minute")
def list_reservations(
    request: Request,
    equipment_id: Optional[int] = None,
    user_id: Optional[int] = None,
    event_id: Optional[int] = None,
    active: Optional[bool] = None,
    today: bool = False,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    _: User = Depends(get_current_active_user),
    manager: ReservationManager = Depends(get_manager),
    db: Session = Depends(get_db),
) -> Page[ReservationRead]:
    items, total = manager.list(
        db,
        equipment_id=equipment_id,
        user_id=user_id,
        event_id=event_id,
        active=active,
        today=today,
        page=page,
        limit=limit,
    )
    return Page[ReservationRead].build([ReservationRead.model_validate(r) for r in items], total, page, limit)


@app.get("/reservations/{reservation_id}", response_model=ReservationRead)
def get_reservation(
    reservation_id: int,
    _: User = Depends(get_current_active_user),
    manager: ReservationManager = Depends(get_manager),
    db: Session = Depends(get_db),
) -> Reservation:
    return manager.get(db, reservation_id)


@app.post("/reservations", response_model=list[ReservationRead], status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_reservations(
    request: Request,
    payload: ReservationCreate,
    current_user: User = Depends(get_current_active_user),
    manager: ReservationManager = Depends(get_manager),
    db: Session = Depends(get_db),
) -> list[Reservation]:
    if payload.user_id != current_user.id and current_user.role not in MANAGER_ROLES:
        raise AuthorizationError("Only supervisors can reserve equipment for someone else")
    return manager.create(
        db,
        equipment_ids=payload.equipment_ids,
        user_id=payload.user_id,
        event_id=payload.event_id,
        start_time=payload.start_time,
        end_time=payload.end_time,
        notes=payload.notes,
        creator_id=current_user.id,
    )


@app.put("/reservations/{reservation_id}", response_model=ReservationRead)
@limiter.limit("20/minute")
def update_reservation(
    request: Request,
    reservation_id: int,
    payload: ReservationUpdate,
    current_user: User = Depends(get_current_active_user),
    manager: ReservationManager = Depends(get_manager),
    db: Session = Depends(get_db),
) -> Reservation:
    _ensure_can_manage(current_user, manager.get(db, reservation_id))
    return manager.update(db, reservation_id, payload.model_dump(exclude_unset=True))


@app.post("/reservations/{reservation_id}/return", response_model=ReservationRead)
@limiter.limit("20/minute")
def return_reservation(
    request: Request,
    reservation_id: int,
    payload: Optional[ReservationReturn] = Body(default=None),
    current_user: User = Depends(get_current_active_user),
    manager: ReservationManager = Depends(get_manager),
    db: Session = Depends(get_db),
) -> Reservation:
    _ensure_can_manage(current_user, manager.get(db, reservation_id))
    return manager.return_equipment(db, reservation_id, notes=payload.notes if payload else None)


@app.delete("/reservations/{reservation_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("20/minute")
def delete_reservation(
    request: Request,
    reservation_id: int,
    current_user: User = Depends(get_current_active_user),
    manager: ReservationManager = Depends(get_manager),
    db: Session = Depends(get_db),
) -> None:
    _ensure_can_manage(current_user, manager.get(db, reservation_id))
    manager.delete(db, reservation_id)
