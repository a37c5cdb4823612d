from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from tablehold.deps import Services, get_services
from tablehold.models import BookingDraft, RequestStatus, TimeWindow
from tablehold.routers.schemas import (
    AcceptIn,
    BookingRequestOut,
    ChooseAlternateIn,
    CreateRequestIn,
    DeclineIn,
    OfferAlternatesIn,
    VersionedIn,
)


router = APIRouter()


def _require_tz(value: datetime, field: str) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise HTTPException(status_code=422, detail=f"{field} must include timezone information")


@router.post("/requests", response_model=BookingRequestOut, status_code=status.HTTP_201_CREATED)
async def create_request(payload: CreateRequestIn, services: Services = Depends(get_services)) -> BookingRequestOut:
    _require_tz(payload.window_start, "window_start")
    _require_tz(payload.window_end, "window_end")
    if payload.window_start >= payload.window_end:
        raise HTTPException(status_code=422, detail="window_start must be before window_end")

    draft = BookingDraft(
        diner_id=payload.diner_id,
        restaurant_id=payload.restaurant_id,
        party_size=payload.party_size,
        time_window=TimeWindow(start=payload.window_start, end=payload.window_end),
        notes=payload.notes,
        preferences=payload.preferences,
    )
    record = await services.engine.create_request(draft)
    return BookingRequestOut.from_record(record, services.clock.now())


@router.get("/requests/{request_id}", response_model=BookingRequestOut)
async def get_request(request_id: str, services: Services = Depends(get_services)) -> BookingRequestOut:
    record = await services.engine.get(request_id)
    return BookingRequestOut.from_record(record, services.clock.now())


@router.get("/restaurants/{restaurant_id}/requests", response_model=list[BookingRequestOut])
async def restaurant_inbox(
    restaurant_id: str,
    status_filter: RequestStatus | None = Query(default=None, alias="status"),
    services: Services = Depends(get_services),
) -> list[BookingRequestOut]:
    now = services.clock.now()
    records = await services.engine.inbox(restaurant_id, status_filter)
    return [BookingRequestOut.from_record(record, now) for record in records]


@router.get("/diners/{diner_id}/requests", response_model=list[BookingRequestOut])
async def diner_requests(diner_id: str, services: Services = Depends(get_services)) -> list[BookingRequestOut]:
    now = services.clock.now()
    records = await services.engine.diner_requests(diner_id)
    return [BookingRequestOut.from_record(record, now) for record in records]


@router.post("/requests/{request_id}/accept", response_model=BookingRequestOut)
async def accept_request(
    request_id: str,
    payload: AcceptIn,
    services: Services = Depends(get_services),
) -> BookingRequestOut:
    record = await services.engine.accept(request_id, payload.expected_version, payload.time, payload.message)
    return BookingRequestOut.from_record(record, services.clock.now())


@router.post("/requests/{request_id}/decline", response_model=BookingRequestOut)
async def decline_request(
    request_id: str,
    payload: DeclineIn,
    services: Services = Depends(get_services),
) -> BookingRequestOut:
    record = await services.engine.decline(request_id, payload.expected_version, payload.message)
    return BookingRequestOut.from_record(record, services.clock.now())


@router.post("/requests/{request_id}/alternates", response_model=BookingRequestOut)
async def offer_alternates(
    request_id: str,
    payload: OfferAlternatesIn,
    services: Services = Depends(get_services),
) -> BookingRequestOut:
    record = await services.engine.offer_alternates(
        request_id, payload.expected_version, payload.alternates, payload.message
    )
    return BookingRequestOut.from_record(record, services.clock.now())


@router.post("/requests/{request_id}/alternates/accept", response_model=BookingRequestOut)
async def accept_alternate(
    request_id: str,
    payload: ChooseAlternateIn,
    services: Services = Depends(get_services),
) -> BookingRequestOut:
    record = await services.engine.accept_alternate(request_id, payload.expected_version, payload.time)
    return BookingRequestOut.from_record(record, services.clock.now())


@router.post("/requests/{request_id}/alternates/reject", response_model=BookingRequestOut)
async def reject_alternates(
    request_id: str,
    payload: VersionedIn,
    services: Services = Depends(get_services),
) -> BookingRequestOut:
    record = await services.engine.reject_alternates(request_id, payload.expected_version)
    return BookingRequestOut.from_record(record, services.clock.now())


@router.post("/requests/{request_id}/cancel", response_model=BookingRequestOut)
async def cancel_request(
    request_id: str,
    payload: VersionedIn,
    services: Services = Depends(get_services),
) -> BookingRequestOut:
    record = await services.engine.cancel(request_id, payload.expected_version)
    return BookingRequestOut.from_record(record, services.clock.now())
