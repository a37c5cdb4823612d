from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from tablehold.core.clock import Clock, spawn
from tablehold.core.config import settings
from tablehold.core.errors import InvalidTransition, NotFound, VersionConflict
from tablehold.models import BookingRequest, Hold, HoldState, NotificationEvent, RequestStatus
from tablehold.services.notifier import SafeNotifier
from tablehold.services.store import RequestStore, swap_or_resolve


logger = logging.getLogger(__name__)


def _has_active_hold(record: BookingRequest) -> bool:
    return (
        record.status is RequestStatus.ACCEPTED
        and record.hold is not None
        and record.hold.state is HoldState.ACTIVE
    )


class HoldManager:
    """Runs the table-held countdown that follows an accepted request.

    The hold lives on its request record, so every hold change is a
    compare-and-swap on that record and serialises with the diner's cancel.
    """

    def __init__(
        self,
        store: RequestStore,
        notifier: SafeNotifier,
        clock: Clock | None = None,
        hold_minutes: Callable[[str], int] = settings.hold_minutes_for,
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock or Clock()
        self._hold_minutes = hold_minutes
        self._timers: dict[str, object] = {}

    def duration_for(self, restaurant_id: str) -> timedelta:
        return timedelta(minutes=self._hold_minutes(restaurant_id))

    def new_hold(self, record: BookingRequest, started_at: datetime) -> Hold:
        return Hold(
            request_id=record.id,
            started_at=started_at,
            expires_at=started_at + self.duration_for(record.restaurant_id),
        )

    def released(self, hold: Hold) -> Hold:
        if hold.state is not HoldState.ACTIVE:
            raise InvalidTransition(f"Hold for {hold.request_id} is already {hold.state.value}")
        return hold.model_copy(update={"state": HoldState.CANCELLED})

    def start(self, record: BookingRequest) -> None:
        """Arm the single-shot expiry timer for an active hold."""
        if not _has_active_hold(record):
            return
        self.disarm(record.id)
        delay = self.clock.until(record.hold.expires_at)
        self._timers[record.id] = self.clock.after(delay, lambda: self._on_timer(record.id))
        logger.debug("Hold for %s armed, %.0fs remaining", record.id, max(delay, 0))

    def disarm(self, request_id: str) -> None:
        handle = self._timers.pop(request_id, None)
        if handle is not None:
            self.clock.cancel(handle)

    def is_armed(self, request_id: str) -> bool:
        return request_id in self._timers

    def remaining(self, record: BookingRequest) -> timedelta:
        if record.hold is None:
            raise InvalidTransition(f"Booking request {record.id} has no hold")
        if record.hold.state is not HoldState.ACTIVE:
            return timedelta(0)
        return record.hold.remaining(self.clock.now())

    async def get_hold(self, request_id: str) -> Hold:
        record = await self.store.get(request_id)
        if record.hold is None:
            raise InvalidTransition(f"Booking request {request_id} has no hold")
        return record.hold

    async def mark_seated(self, request_id: str, expected_version: int) -> BookingRequest:
        updated = await self._finish(request_id, expected_version, HoldState.SEATED)
        self._notify(updated, updated.restaurant_id)
        return updated

    async def cancel(self, request_id: str, expected_version: int) -> BookingRequest:
        """Release the held table; the request itself stays accepted."""
        updated = await self._finish(request_id, expected_version, HoldState.CANCELLED)
        self._notify(updated, updated.diner_id)
        return updated

    async def _finish(self, request_id: str, expected_version: int, state: HoldState) -> BookingRequest:
        def mutate(record: BookingRequest) -> BookingRequest:
            if not _has_active_hold(record):
                raise InvalidTransition(f"Booking request {record.id} has no active hold")
            return record.model_copy(update={"hold": record.hold.model_copy(update={"state": state})})

        updated = await swap_or_resolve(self.store, request_id, expected_version, mutate, _has_active_hold)
        self.disarm(request_id)
        logger.info("Hold for %s is %s", request_id, state.value)
        return updated

    def _on_timer(self, request_id: str) -> None:
        self._timers.pop(request_id, None)
        spawn(self._expire(request_id), name=f"hold-expiry:{request_id}")

    async def _expire(self, request_id: str) -> None:
        try:
            record = await self.store.get(request_id)
        except NotFound:
            logger.warning("Hold timer fired for unknown request %s", request_id)
            return
        if not _has_active_hold(record):
            return
        if self.clock.now() < record.hold.expires_at:
            self.start(record)
            return

        def lapse(current: BookingRequest) -> BookingRequest:
            if not _has_active_hold(current):
                raise InvalidTransition(f"Hold for {current.id} is no longer active")
            return current.model_copy(
                update={
                    "hold": current.hold.model_copy(update={"state": HoldState.EXPIRED}),
                    "no_show": True,
                }
            )

        try:
            updated = await self.store.compare_and_swap(request_id, record.version, lapse)
        except (VersionConflict, InvalidTransition) as exc:
            logger.info("Hold expiry for %s dropped: %s", request_id, exc)
            return

        logger.info("Hold for %s expired without the party being seated", request_id)
        self._notify(updated, updated.diner_id, updated.restaurant_id)

    def _notify(self, record: BookingRequest, *party_ids: str) -> None:
        event = NotificationEvent(
            request_id=record.id,
            new_status=record.status,
            relevant_time=record.hold.expires_at if record.hold else None,
            hold_state=record.hold.state if record.hold else None,
        )
        for party_id in party_ids:
            self.notifier.send(party_id, event)
