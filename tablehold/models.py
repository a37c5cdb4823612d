from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def as_utc(value: datetime) -> datetime:
    """Normalise to an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    ALTERNATES_OFFERED = "alternates_offered"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RequestStatus.DECLINED, RequestStatus.EXPIRED, RequestStatus.CANCELLED})
# Statuses with a running negotiation deadline.
NEGOTIATING_STATUSES = frozenset({RequestStatus.PENDING, RequestStatus.ALTERNATES_OFFERED})


class HoldState(str, Enum):
    ACTIVE = "active"
    SEATED = "seated"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TimeWindow(BaseModel):
    """Half-open span ``[start, end)`` the diner is flexible within."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
            raise ValueError("timestamps must include timezone information")
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _ordered(self) -> "TimeWindow":
        if self.start >= self.end:
            raise ValueError("time window start must be before its end")
        return self

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def widened(self, slack: timedelta) -> "TimeWindow":
        return TimeWindow(start=self.start - slack, end=self.end + slack)


class Hold(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    started_at: datetime
    expires_at: datetime
    state: HoldState = HoldState.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.state is not HoldState.ACTIVE

    def remaining(self, now: datetime) -> timedelta:
        # Always derived from the persisted deadline.
        return max(self.expires_at - now, timedelta(0))


class BookingDraft(BaseModel):
    """What a diner submits; the store fills in identity and bookkeeping."""

    model_config = ConfigDict(frozen=True)

    diner_id: str
    restaurant_id: str
    party_size: int = Field(gt=0)
    time_window: TimeWindow
    notes: str | None = None
    preferences: dict[str, Any] | None = None


class BookingRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    diner_id: str
    restaurant_id: str
    party_size: int = Field(gt=0)
    time_window: TimeWindow
    status: RequestStatus = RequestStatus.PENDING
    accepted_time: datetime | None = None
    alternates: tuple[datetime, ...] = ()
    respond_by: datetime
    hold: Hold | None = None
    no_show: bool = False
    notes: str | None = None
    preferences: dict[str, Any] | None = None
    restaurant_message: str | None = None
    version: int = 1
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _alternates_match_status(self) -> "BookingRequest":
        offered = self.status is RequestStatus.ALTERNATES_OFFERED
        if offered != bool(self.alternates):
            raise ValueError("alternates must be non-empty exactly when alternates are offered")
        if (self.accepted_time is not None) != (self.status is RequestStatus.ACCEPTED):
            raise ValueError("accepted_time is set only on accepted requests")
        return self

    @property
    def is_terminal(self) -> bool:
        if self.status in TERMINAL_STATUSES:
            return True
        return self.hold is not None and self.hold.is_terminal

    @property
    def is_negotiating(self) -> bool:
        return self.status in NEGOTIATING_STATUSES


class NotificationEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    new_status: RequestStatus
    relevant_time: datetime | None = None
    alternates: tuple[datetime, ...] = ()
    hold_state: HoldState | None = None
