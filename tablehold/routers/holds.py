from fastapi import APIRouter, Depends

from tablehold.deps import Services, get_services
from tablehold.routers.schemas import BookingRequestOut, HoldOut, VersionedIn


router = APIRouter()


@router.get("/requests/{request_id}/hold", response_model=HoldOut)
async def get_hold(request_id: str, services: Services = Depends(get_services)) -> HoldOut:
    """Hold with its countdown recomputed from the persisted deadline."""
    record = await services.engine.get(request_id)
    remaining = services.holds.remaining(record)
    return HoldOut.from_hold(record.hold, int(remaining.total_seconds()))


@router.post("/requests/{request_id}/hold/seat", response_model=BookingRequestOut)
async def mark_seated(
    request_id: str,
    payload: VersionedIn,
    services: Services = Depends(get_services),
) -> BookingRequestOut:
    record = await services.holds.mark_seated(request_id, payload.expected_version)
    return BookingRequestOut.from_record(record, services.clock.now())


@router.post("/requests/{request_id}/hold/release", response_model=BookingRequestOut)
async def release_hold(
    request_id: str,
    payload: VersionedIn,
    services: Services = Depends(get_services),
) -> BookingRequestOut:
    record = await services.holds.cancel(request_id, payload.expected_version)
    return BookingRequestOut.from_record(record, services.clock.now())
