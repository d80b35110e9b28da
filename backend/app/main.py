import asyncio
import json
import logging
import time
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from fastapi import Depends, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.availability.admission import AdmissionGate, SqlAttemptStore
from app.availability.engine import AvailabilityEngine, CancellationToken, day_record_to_dict
from app.availability.errors import (
    AvailabilityError,
    InvalidInput,
    InvalidRange,
    OperationCancelled,
    SlotTaken,
    StoreUnavailable,
)
from app.availability.settings import load_engine_settings
from app.availability.slots import DateRange, parse_date
from app.availability.store import AvailabilityStore
from app.bookings.service import (
    ADMISSION_ACTION,
    BlockDateArgs,
    block_date,
    create_booking,
    delete_booking,
    get_booking,
    list_bookings,
    map_validation_error,
    parse_admin_create_booking_args,
    parse_create_booking_args,
    parse_update_booking_args,
    serialize_booking,
    unblock_date,
    update_booking,
)
from app.config import ADMISSION_LIMITS, ENABLE_RATE_LIMIT
from app.db.session import SessionLocal
from app.security.dependencies import require_admin_api_key


DISCONNECT_POLL_SECONDS = 0.25
ERROR_STATUS_CODES = {
    InvalidInput: 400,
    InvalidRange: 400,
    SlotTaken: 409,
    StoreUnavailable: 503,
    OperationCancelled: 499,
}
RESULT_STATUS_CODES = {
    "INVALID_ARGS": 400,
    "BOOKING_NOT_FOUND": 404,
    "BOOKING_CONFIRMED": 409,
    "SLOT_UNAVAILABLE": 409,
    "SLOT_TAKEN": 409,
    "RATE_LIMITED": 429,
}


def configure_logging() -> logging.Logger:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    return logging.getLogger("bookingengine.backend")


def build_availability_engine() -> AvailabilityEngine:
    return AvailabilityEngine(
        store=AvailabilityStore(SessionLocal),
        settings=load_engine_settings(),
    )


def build_admission_gate() -> AdmissionGate:
    return AdmissionGate.from_config(
        raw_mode=ENABLE_RATE_LIMIT,
        raw_limits=ADMISSION_LIMITS,
        store=SqlAttemptStore(SessionLocal),
    )


logger = configure_logging()
app = FastAPI(title="Booking Availability Engine")
availability_engine = build_availability_engine()
admission_gate = build_admission_gate()


class CheckSlotArgs(BaseModel):
    date: str = Field(min_length=1)
    start_time: str = Field(min_length=1)
    end_time: str = Field(min_length=1)
    services: list[str] = Field(default_factory=list)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
    response.headers["x-request-id"] = request_id

    logger.info(
        json.dumps(
            {
                "event": "http_request",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            }
        )
    )
    return response


@app.exception_handler(AvailabilityError)
async def availability_error_handler(request: Request, exc: AvailabilityError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        logger.error(
            "Availability request failed path=%s error_code=%s",
            request.url.path,
            exc.error_code,
        )
    return JSONResponse(status_code=status_code, content=exc.to_response())


def _result_response(result: dict[str, Any]) -> JSONResponse:
    if result.get("ok"):
        return JSONResponse(content=result)

    status_code = RESULT_STATUS_CODES.get(result.get("error_code"), 400)
    headers = None
    if result.get("retry_after_seconds") is not None:
        headers = {"Retry-After": str(result["retry_after_seconds"])}
    return JSONResponse(status_code=status_code, content=result, headers=headers)


def _validation_response(exc: ValidationError) -> JSONResponse:
    return JSONResponse(content={"ok": False, **map_validation_error(exc)}, status_code=400)


@contextmanager
def _session_scope() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Booking store operation failed")
        raise StoreUnavailable() from exc
    finally:
        db.close()


def _client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@app.get("/health")
async def health():
    return JSONResponse(content={"ok": True})


@app.get("/v1/availability/range")
async def availability_range(
    request: Request,
    start_date: str,
    end_date: str,
    include_bookings: bool = False,
) -> JSONResponse:
    token = CancellationToken()
    task = asyncio.ensure_future(
        run_in_threadpool(
            availability_engine.check_range,
            start_date,
            end_date,
            include_bookings,
            token,
        )
    )

    while not task.done():
        done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
        if done:
            break
        if await request.is_disconnected():
            token.cancel()
            logger.info("Client disconnected; cancelled range check %s..%s", start_date, end_date)
            break

    result = await task
    return JSONResponse(content={"ok": True, "data": result.to_dict()})


@app.post("/v1/availability/check")
async def availability_check(payload: dict[str, Any]) -> JSONResponse:
    try:
        args = CheckSlotArgs.model_validate(payload)
    except ValidationError as exc:
        return _validation_response(exc)

    check = availability_engine.check_slot(args.date, args.start_time, args.end_time, args.services)
    return JSONResponse(content={"ok": True, "data": check.to_dict()})


@app.get("/v1/availability/{target_date}/slots")
async def availability_day_slots(target_date: str) -> JSONResponse:
    record = availability_engine.day_slots(target_date)
    return JSONResponse(content={"ok": True, "data": day_record_to_dict(record)})


@app.get("/v1/availability/{target_date}/updates")
async def availability_updates(
    target_date: str,
    timeout_seconds: float = Query(default=25.0, gt=0, le=60),
) -> JSONResponse:
    day = parse_date(target_date)
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    def offer(payload: dict[str, Any]) -> None:
        if not queue.full():
            queue.put_nowait(payload)

    subscription = availability_engine.broadcaster.subscribe(
        day,
        lambda payload: loop.call_soon_threadsafe(offer, payload),
    )
    try:
        event = await asyncio.wait_for(queue.get(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        return JSONResponse(content={"ok": True, "data": {"date": day.isoformat(), "updated": False}})
    finally:
        subscription.dispose()

    return JSONResponse(
        content={"ok": True, "data": {"date": day.isoformat(), "updated": True, "event": event}}
    )


@app.post("/v1/bookings")
async def public_create_booking(request: Request, payload: dict[str, Any]) -> JSONResponse:
    try:
        args = parse_create_booking_args(payload)
    except ValidationError as exc:
        return _validation_response(exc)

    with _session_scope() as db:
        result = create_booking(
            db=db,
            engine=availability_engine,
            gate=admission_gate,
            args=args,
            client_identifier=_client_identifier(request),
        )
        return _result_response(result)


@app.get("/v1/admin/bookings", dependencies=[Depends(require_admin_api_key)])
async def admin_list_bookings(start_date: str, end_date: str) -> JSONResponse:
    date_range = DateRange(parse_date(start_date), parse_date(end_date))
    with _session_scope() as db:
        bookings = list_bookings(db=db, date_range=date_range)
        return JSONResponse(
            content={
                "ok": True,
                "data": {"bookings": [serialize_booking(item) for item in bookings]},
            }
        )


@app.post("/v1/admin/bookings", dependencies=[Depends(require_admin_api_key)])
async def admin_create_booking(payload: dict[str, Any]) -> JSONResponse:
    try:
        args = parse_admin_create_booking_args(payload)
    except ValidationError as exc:
        return _validation_response(exc)

    with _session_scope() as db:
        result = create_booking(
            db=db,
            engine=availability_engine,
            gate=None,
            args=args,
            client_identifier="admin",
        )
        return _result_response(result)


@app.get("/v1/admin/bookings/{booking_id}", dependencies=[Depends(require_admin_api_key)])
async def admin_get_booking(booking_id: int) -> JSONResponse:
    with _session_scope() as db:
        booking = get_booking(db=db, booking_id=booking_id)
        if booking is None:
            return _result_response(
                {
                    "ok": False,
                    "error_code": "BOOKING_NOT_FOUND",
                    "human_message": "Booking not found.",
                }
            )
        return JSONResponse(content={"ok": True, "data": {"booking": serialize_booking(booking)}})


@app.patch("/v1/admin/bookings/{booking_id}", dependencies=[Depends(require_admin_api_key)])
async def admin_update_booking(booking_id: int, payload: dict[str, Any]) -> JSONResponse:
    try:
        args = parse_update_booking_args(payload)
    except ValidationError as exc:
        return _validation_response(exc)

    with _session_scope() as db:
        result = update_booking(db=db, engine=availability_engine, booking_id=booking_id, args=args)
        return _result_response(result)


@app.delete("/v1/admin/bookings/{booking_id}", dependencies=[Depends(require_admin_api_key)])
async def admin_delete_booking(booking_id: int) -> JSONResponse:
    with _session_scope() as db:
        result = delete_booking(db=db, engine=availability_engine, booking_id=booking_id)
        return _result_response(result)


@app.put("/v1/admin/calendar/{target_date}", dependencies=[Depends(require_admin_api_key)])
async def admin_block_date(target_date: str, payload: dict[str, Any] | None = None) -> JSONResponse:
    day = parse_date(target_date)
    try:
        args = BlockDateArgs.model_validate(payload or {})
    except ValidationError as exc:
        return _validation_response(exc)

    with _session_scope() as db:
        return _result_response(block_date(db=db, engine=availability_engine, target_date=day, args=args))


@app.delete("/v1/admin/calendar/{target_date}", dependencies=[Depends(require_admin_api_key)])
async def admin_unblock_date(target_date: str) -> JSONResponse:
    day = parse_date(target_date)
    with _session_scope() as db:
        return _result_response(unblock_date(db=db, engine=availability_engine, target_date=day))


@app.delete(
    "/v1/admin/admission/{identifier}",
    dependencies=[Depends(require_admin_api_key)],
)
async def admin_clear_admission(identifier: str, action: str = ADMISSION_ACTION) -> JSONResponse:
    if action not in admission_gate.limits:
        return JSONResponse(
            status_code=400,
            content={
                "ok": False,
                "error_code": "INVALID_ARGS",
                "human_message": f"Unknown admission action: {action}",
            },
        )
    admission_gate.clear(identifier, action)
    return JSONResponse(content={"ok": True, "data": {"identifier": identifier, "action": action}})
