from __future__ import annotations

import logging
import time
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import Body, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import ErrorCode, InvalidInputError, ServiceError, ServiceResponse, UnauthorizedError
from .identity import StaticIdentity
from .models import (
    DateRecord,
    ErrorBody,
    Fact,
    Person,
    PersonDetail,
    TimelineOptions,
    TimelineResponse,
    UpcomingResponse,
)
from .record_store import SQLiteRecordStore
from .settings import settings
from .timeline import TimelineService

LOG_LEVEL = getattr(logging, settings.log_level.upper(), logging.INFO)
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("datebook.app")
logger.setLevel(LOG_LEVEL)

ALLOWED_ORIGINS = settings.allowed_origins or ["*"]

STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.INVALID_RANGE: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.UPSTREAM_FAILURE: 502,
    ErrorCode.UNEXPECTED_ERROR: 500,
}


app = FastAPI(
    title=settings.app_title,
    description=settings.app_description,
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _uptime_seconds() -> float:
    started_at = getattr(app.state, "started_at", None)
    if not started_at:
        return 0.0
    return max(0.0, (datetime.utcnow() - started_at).total_seconds())


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    request.state.request_id = request_id
    start_time = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id

    if settings.enable_request_logging:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "Request completed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )

    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", str(uuid4()))
    logger.exception(
        "Unhandled server error",
        extra={"request_id": request_id, "path": request.url.path},
    )
    return JSONResponse(
        status_code=500,
        content={
            "code": ErrorCode.UNEXPECTED_ERROR.value,
            "message": "An unexpected server error occurred.",
            "request_id": request_id,
        },
        headers={"X-Request-ID": request_id},
    )


@app.on_event("startup")
async def startup() -> None:
    app.state.started_at = datetime.utcnow()
    app.state.settings = settings
    if getattr(app.state, "record_store", None) is None:
        app.state.record_store = SQLiteRecordStore(settings.database_path)


def _service(user_id: Optional[str]) -> TimelineService:
    return TimelineService(app.state.record_store, identity=StaticIdentity(user_id))


def _error_response(request: Request, error: ServiceError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", str(uuid4()))
    body = ErrorBody(
        code=error.code.value,
        message=error.message,
        request_id=request_id,
        details=error.details,
    )
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(error.code, 500),
        content=jsonable_encoder(body),
        headers={"X-Request-ID": request_id},
    )


def _respond(request: Request, result: ServiceResponse[Any]) -> Any:
    if result.error is not None:
        return _error_response(request, result.error)
    return result.data


def _signed_in(x_user_id: Optional[str]) -> Optional[str]:
    return StaticIdentity(x_user_id).current_user_id()


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "uptime_seconds": round(_uptime_seconds(), 3),
        "version": app.version,
    }


@app.get("/api/timeline", response_model=TimelineResponse)
async def get_timeline(
    request: Request,
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    include_unknown_years: bool = Query(default=True),
    x_user_id: Optional[str] = Header(default=None),
):
    user_id = _signed_in(x_user_id)
    if user_id is None:
        return _error_response(request, UnauthorizedError("No signed-in user").to_service_error())
    if limit is not None and limit > settings.max_timeline_limit:
        return _error_response(
            request,
            InvalidInputError(
                f"limit must be {settings.max_timeline_limit} or less", details={"limit": limit}
            ).to_service_error(),
        )

    options = TimelineOptions(
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        include_unknown_years=include_unknown_years,
    )
    result = await _service(user_id).get_timeline_for_user(user_id, options)
    if result.error is not None:
        return _error_response(request, result.error)
    return TimelineResponse(
        items=result.data,
        total_entries=len(result.data),
        generated_at=datetime.utcnow(),
    )


@app.get("/api/timeline/{year}/{month}", response_model=TimelineResponse)
async def get_timeline_for_month(
    request: Request,
    year: int,
    month: int,
    x_user_id: Optional[str] = Header(default=None),
):
    user_id = _signed_in(x_user_id)
    if user_id is None:
        return _error_response(request, UnauthorizedError("No signed-in user").to_service_error())

    result = await _service(user_id).get_timeline_for_month(user_id, year, month)
    if result.error is not None:
        return _error_response(request, result.error)
    return TimelineResponse(
        items=result.data,
        total_entries=len(result.data),
        generated_at=datetime.utcnow(),
    )


@app.get("/api/upcoming", response_model=UpcomingResponse)
async def get_upcoming(
    request: Request,
    days_ahead: Optional[int] = Query(default=None),
    x_user_id: Optional[str] = Header(default=None),
):
    horizon = settings.default_upcoming_days if days_ahead is None else days_ahead
    if horizon > settings.max_upcoming_days:
        return _error_response(
            request,
            InvalidInputError(
                f"days_ahead must be {settings.max_upcoming_days} or less",
                details={"days_ahead": horizon},
            ).to_service_error(),
        )

    result = await _service(x_user_id).get_upcoming_dates(horizon)
    if result.error is not None:
        return _error_response(request, result.error)
    return UpcomingResponse(
        items=result.data,
        days_ahead=horizon,
        total_entries=len(result.data),
        generated_at=datetime.utcnow(),
    )


@app.get("/api/people", response_model=List[Person])
async def list_people(request: Request, x_user_id: Optional[str] = Header(default=None)):
    return _respond(request, await _service(x_user_id).list_people())


@app.post("/api/people", response_model=Person)
async def create_person(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    x_user_id: Optional[str] = Header(default=None),
):
    return _respond(request, await _service(x_user_id).create_person(payload))


@app.get("/api/people/{person_id}", response_model=PersonDetail)
async def get_person(request: Request, person_id: str, x_user_id: Optional[str] = Header(default=None)):
    return _respond(request, await _service(x_user_id).get_person_detail(person_id))


@app.patch("/api/people/{person_id}", response_model=Person)
async def update_person(
    request: Request,
    person_id: str,
    payload: Dict[str, Any] = Body(...),
    x_user_id: Optional[str] = Header(default=None),
):
    return _respond(request, await _service(x_user_id).update_person(person_id, payload))


@app.delete("/api/people/{person_id}", response_model=Person)
async def delete_person(request: Request, person_id: str, x_user_id: Optional[str] = Header(default=None)):
    return _respond(request, await _service(x_user_id).delete_person(person_id))


@app.get("/api/people/{person_id}/dates", response_model=List[DateRecord])
async def list_person_dates(request: Request, person_id: str, x_user_id: Optional[str] = Header(default=None)):
    return _respond(request, await _service(x_user_id).get_dates_by_person(person_id))


@app.post("/api/people/{person_id}/dates", response_model=DateRecord)
async def create_date(
    request: Request,
    person_id: str,
    payload: Dict[str, Any] = Body(...),
    x_user_id: Optional[str] = Header(default=None),
):
    return _respond(request, await _service(x_user_id).create_date(person_id, payload))


@app.post("/api/people/{person_id}/facts", response_model=Fact)
async def create_fact(
    request: Request,
    person_id: str,
    payload: Dict[str, Any] = Body(...),
    x_user_id: Optional[str] = Header(default=None),
):
    return _respond(request, await _service(x_user_id).create_fact(person_id, payload))


@app.patch("/api/dates/{date_id}", response_model=DateRecord)
async def update_date(
    request: Request,
    date_id: str,
    payload: Dict[str, Any] = Body(...),
    x_user_id: Optional[str] = Header(default=None),
):
    return _respond(request, await _service(x_user_id).update_date(date_id, payload))


@app.delete("/api/dates/{date_id}", response_model=DateRecord)
async def delete_date(request: Request, date_id: str, x_user_id: Optional[str] = Header(default=None)):
    return _respond(request, await _service(x_user_id).delete_date(date_id))


@app.patch("/api/facts/{fact_id}", response_model=Fact)
async def update_fact(
    request: Request,
    fact_id: str,
    payload: Dict[str, Any] = Body(...),
    x_user_id: Optional[str] = Header(default=None),
):
    return _respond(request, await _service(x_user_id).update_fact(fact_id, payload))


@app.delete("/api/facts/{fact_id}", response_model=Fact)
async def delete_fact(request: Request, fact_id: str, x_user_id: Optional[str] = Header(default=None)):
    return _respond(request, await _service(x_user_id).delete_fact(fact_id))
