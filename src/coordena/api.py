"""FastAPI application exposing registration, reservations and approvals."""

import datetime as dt
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, make_asgi_app
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from . import services
from .auth import create_access_token, get_current_user
from .config import settings, validate_runtime_config
from .database import init_db
from .errors import CoordenaError
from .models.user import User


logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

validate_runtime_config()

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
app = FastAPI(title=settings.api_title)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.mount("/metrics", make_asgi_app())

init_db()
services.seed_admin()

MAX_PAGE_SIZE = 200

# Prometheus counter to track API requests by method, endpoint and status code
REQUEST_COUNTER = Counter(
    "api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log incoming requests and their outcomes while updating metrics."""
    logger.info("request %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status=str(response.status_code),
        ).inc()
        logger.info(
            "response %s %s status %s",
            request.method,
            request.url.path,
            response.status_code,
        )
        return response
    except Exception:
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status="500",
        ).inc()
        logger.exception(
            "error handling %s %s", request.method, request.url.path
        )
        raise


@app.exception_handler(CoordenaError)
async def coordena_error_handler(request: Request, exc: CoordenaError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
    )


class UserCreate(BaseModel):
    """Request body for registering a new user."""

    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1, description="Institutional email")
    password: str = Field(..., min_length=1)
    registration: Optional[str] = Field(None, description="Matricula")
    personal_email: Optional[EmailStr] = None


class UserLogin(BaseModel):
    """Request body for user login."""

    email: str
    password: str


class UserProfile(BaseModel):
    """Public view of a user; never includes the password hash."""

    id: int
    name: str
    email: str
    registration: Optional[str] = None
    personal_email: Optional[str] = None
    role: str
    status: str
    rejection_reason: Optional[str] = None
    created_at: dt.datetime

    model_config = ConfigDict(from_attributes=True)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserProfile


class DecisionRequest(BaseModel):
    """Optional body for approve/reject actions."""

    reason: Optional[str] = None


class ReservationRequest(BaseModel):
    """Request body for creating a reservation.

    Status and responsible party are not accepted; they are set server side.
    """

    title: str = Field(..., min_length=1)
    description: str = ""
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    resource: str = Field(..., min_length=1, description="Lab or room being booked")
    type: str = Field(..., min_length=1, description="Kind of booking, e.g. class or exam")
    room: str = ""
    department: str = Field(..., min_length=1)


class ReservationUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[dt.date] = None
    start_time: Optional[dt.time] = None
    end_time: Optional[dt.time] = None
    resource: Optional[str] = None
    type: Optional[str] = None
    room: Optional[str] = None
    department: Optional[str] = None


class ReservationResponse(BaseModel):
    """Serialized reservation."""

    id: int
    title: str
    description: str
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    resource: str
    type: str
    room: str
    department: str
    owner_id: int
    responsible: str
    status: str
    rejection_reason: Optional[str] = None
    created_at: dt.datetime
    updated_at: dt.datetime

    model_config = ConfigDict(from_attributes=True)


class ReservationListResponse(BaseModel):
    """Paginated list of reservations."""

    total: int
    items: List[ReservationResponse]


class PushKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscribeRequest(BaseModel):
    endpoint: str
    keys: PushKeys


class PushUnsubscribeRequest(BaseModel):
    endpoint: str


class MessageResponse(BaseModel):
    message: str


@app.get("/")
def root():
    return {"status": "Coordena+ API running"}


@app.post("/api/auth/register", response_model=UserProfile, status_code=201)
@limiter.limit(settings.auth_rate_limit)
def register(request: Request, user: UserCreate):
    """Register a pending account; an admin must approve it before login."""

    return services.register_user(
        name=user.name,
        email=user.email,
        password=user.password,
        registration=user.registration,
        personal_email=user.personal_email,
    )


@app.post("/api/auth/login", response_model=LoginResponse)
@limiter.limit(settings.auth_rate_limit)
def login(request: Request, credentials: UserLogin):
    db_user = services.authenticate_user(credentials.email, credentials.password)
    return LoginResponse(
        access_token=create_access_token(db_user),
        user=UserProfile.model_validate(db_user),
    )


@app.get("/api/auth/me", response_model=UserProfile)
def me(current_user: User = Depends(get_current_user)):
    return current_user


@app.get("/api/reservations", response_model=ReservationListResponse)
def get_reservations(
    status: Optional[str] = None,
    resource: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    current_user: User = Depends(get_current_user),
):
    """Return reservations visible to the caller, paginated."""

    records, total = services.list_reservations(
        current_user, status=status, resource=resource, skip=skip, limit=limit
    )
    return ReservationListResponse(total=total, items=records)


@app.get("/api/reservations/me", response_model=List[ReservationResponse])
def get_my_reservations(current_user: User = Depends(get_current_user)):
    records, _ = services.list_reservations(current_user, mine=True, limit=None)
    return records


@app.post("/api/reservations", response_model=ReservationResponse, status_code=201)
def post_reservation(
    payload: ReservationRequest, current_user: User = Depends(get_current_user)
):
    """Create a pending reservation owned by the caller."""

    return services.create_reservation(
        current_user,
        title=payload.title,
        date=payload.date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        resource=payload.resource,
        reservation_type=payload.type,
        department=payload.department,
        description=payload.description,
        room=payload.room,
    )


@app.get("/api/reservations/{reservation_id}", response_model=ReservationResponse)
def get_reservation(reservation_id: int, current_user: User = Depends(get_current_user)):
    return services.get_reservation(current_user, reservation_id)


@app.put("/api/reservations/{reservation_id}", response_model=ReservationResponse)
@app.patch("/api/reservations/{reservation_id}", response_model=ReservationResponse)
def put_reservation(
    reservation_id: int,
    payload: ReservationUpdate,
    current_user: User = Depends(get_current_user),
):
    return services.update_reservation(
        current_user, reservation_id, payload.model_dump(exclude_unset=True)
    )


@app.delete("/api/reservations/{reservation_id}", response_model=MessageResponse)
def delete_reservation(reservation_id: int, current_user: User = Depends(get_current_user)):
    services.delete_reservation(current_user, reservation_id)
    return MessageResponse(message="Reservation deleted")


@app.get("/api/admin/users", response_model=List[UserProfile])
def get_users(status: Optional[str] = None, current_user: User = Depends(get_current_user)):
    return services.list_users(current_user, status=status)


@app.get("/api/admin/pending-users", response_model=List[UserProfile])
def get_pending_users(current_user: User = Depends(get_current_user)):
    return services.list_users(current_user, status="pending")


@app.patch("/api/admin/approve-user/{user_id}", response_model=UserProfile)
def approve_user(user_id: int, current_user: User = Depends(get_current_user)):
    return services.set_user_status(current_user, user_id, "approved")


@app.patch("/api/admin/reject-user/{user_id}", response_model=UserProfile)
def reject_user(
    user_id: int,
    payload: Optional[DecisionRequest] = None,
    current_user: User = Depends(get_current_user),
):
    reason = payload.reason if payload else None
    return services.set_user_status(current_user, user_id, "rejected", reason)


@app.get("/api/admin/pending-reservations", response_model=List[ReservationResponse])
def get_pending_reservations(current_user: User = Depends(get_current_user)):
    return services.list_pending_reservations(current_user)


@app.patch("/api/admin/approve-reservation/{reservation_id}", response_model=ReservationResponse)
def approve_reservation(reservation_id: int, current_user: User = Depends(get_current_user)):
    return services.set_reservation_status(current_user, reservation_id, "approved")


@app.patch("/api/admin/reject-reservation/{reservation_id}", response_model=ReservationResponse)
def reject_reservation(
    reservation_id: int,
    payload: Optional[DecisionRequest] = None,
    current_user: User = Depends(get_current_user),
):
    reason = payload.reason if payload else None
    return services.set_reservation_status(current_user, reservation_id, "rejected", reason)


@app.get("/api/push/public-key")
def get_push_public_key():
    return {"public_key": settings.vapid_public_key}


@app.post("/api/push/subscribe", response_model=MessageResponse, status_code=201)
def subscribe_push(
    payload: PushSubscribeRequest, current_user: User = Depends(get_current_user)
):
    services.save_push_subscription(
        current_user, payload.endpoint, payload.keys.p256dh, payload.keys.auth
    )
    return MessageResponse(message="Subscription saved")


@app.post("/api/push/unsubscribe", response_model=MessageResponse)
def unsubscribe_push(
    payload: PushUnsubscribeRequest, current_user: User = Depends(get_current_user)
):
    services.delete_push_subscription(current_user, payload.endpoint)
    return MessageResponse(message="Subscription removed")
