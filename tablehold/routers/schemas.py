from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from tablehold.models import BookingRequest, Hold, HoldState, RequestStatus


class CreateRequestIn(BaseModel):
    diner_id: str = Field(min_length=1, max_length=64)
    restaurant_id: str = Field(min_length=1, max_length=64)
    party_size: int = Field(ge=1, le=50)
    # ISO 8601 with offset, e.g. "2025-11-05T19:00:00-05:00"
    window_start: datetime
    window_end: datetime
    notes: str | None = Field(default=None, max_length=1024)
    preferences: dict[str, Any] | None = None


class VersionedIn(BaseModel):
    expected_version: int = Field(ge=1)


class AcceptIn(VersionedIn):
    time: datetime
    message: str | None = Field(default=None, max_length=1024)


class DeclineIn(VersionedIn):
    message: str | None = Field(default=None, max_length=1024)


class OfferAlternatesIn(VersionedIn):
    # Count is enforced by the engine so callers get the named error.
    alternates: list[datetime]
    message: str | None = Field(default=None, max_length=1024)


class ChooseAlternateIn(VersionedIn):
    time: datetime


class HoldOut(BaseModel):
    request_id: str
    started_at: datetime
    expires_at: datetime
    state: HoldState
    remaining_seconds: int

    @classmethod
    def from_hold(cls, hold: Hold, remaining_seconds: int) -> "HoldOut":
        return cls(
            request_id=hold.request_id,
            started_at=hold.started_at,
            expires_at=hold.expires_at,
            state=hold.state,
            remaining_seconds=remaining_seconds,
        )


class BookingRequestOut(BaseModel):
    id: str
    diner_id: str
    restaurant_id: str
    party_size: int
    window_start: datetime
    window_end: datetime
    status: RequestStatus
    accepted_time: datetime | None
    alternates: list[datetime]
    respond_by: datetime
    hold: HoldOut | None
    no_show: bool
    notes: str | None
    preferences: dict[str, Any] | None
    restaurant_message: str | None
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: BookingRequest, now: datetime) -> "BookingRequestOut":
        hold = None
        if record.hold is not None:
            remaining = record.hold.remaining(now) if not record.hold.is_terminal else None
            hold = HoldOut.from_hold(record.hold, int(remaining.total_seconds()) if remaining else 0)
        return cls(
            id=record.id,
            diner_id=record.diner_id,
            restaurant_id=record.restaurant_id,
            party_size=record.party_size,
            window_start=record.time_window.start,
            window_end=record.time_window.end,
            status=record.status,
            accepted_time=record.accepted_time,
            alternates=list(record.alternates),
            respond_by=record.respond_by,
            hold=hold,
            no_show=record.no_show,
            notes=record.notes,
            preferences=record.preferences,
            restaurant_message=record.restaurant_message,
            version=record.version,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
