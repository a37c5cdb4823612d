"""State machine for diner/restaurant table-request negotiation.

Transitions::

    pending            --accept(time)-->          accepted            (restaurant)
    pending            --decline()-->             declined            (restaurant)
    pending            --offer(alternates)-->     alternates_offered  (restaurant)
    alternates_offered --accept_alternate(t)-->   accepted            (diner)
    alternates_offered --reject_alternates()-->   declined            (diner)
    pending|alternates_offered --deadline-->      expired             (timer)
    pending|alternates_offered|accepted --cancel()--> cancelled       (diner)

Each caller-driven action is one compare-and-swap at the version the caller
read. A timer-driven expiry that loses the version race is logged and
dropped; a caller that loses it gets ``RequestAlreadyResolved`` when the
winner moved the record out of reach.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from tablehold.core.clock import Clock, spawn
from tablehold.core.config import settings
from tablehold.core.errors import (
    EmptyAlternatesError,
    InvalidTimeError,
    InvalidTransition,
    NotFound,
    TooManyAlternatesError,
    VersionConflict,
)
from tablehold.models import (
    BookingDraft,
    BookingRequest,
    HoldState,
    NotificationEvent,
    RequestStatus,
    as_utc,
)
from tablehold.services.holds import HoldManager
from tablehold.services.notifier import SafeNotifier
from tablehold.services.store import RequestStore, swap_or_resolve


logger = logging.getLogger(__name__)

PENDING = RequestStatus.PENDING
OFFERED = RequestStatus.ALTERNATES_OFFERED
ACCEPTED = RequestStatus.ACCEPTED


def _require_status(record: BookingRequest, allowed: Iterable[RequestStatus], action: str) -> None:
    if record.is_terminal or record.status not in allowed:
        raise InvalidTransition(f"Cannot {action} a request that is {record.status.value}")


def _in_status(*allowed: RequestStatus):
    def check(record: BookingRequest) -> bool:
        return record.status in allowed

    return check


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None or moment.tzinfo.utcoffset(moment) is None:
        raise InvalidTimeError("Times must include timezone information")
    return as_utc(moment)


class LifecycleEngine:
    def __init__(
        self,
        store: RequestStore,
        holds: HoldManager,
        notifier: SafeNotifier,
        clock: Clock | None = None,
        alternate_slack: timedelta | None = None,
        max_alternates: int | None = None,
    ):
        self.store = store
        self.holds = holds
        self.notifier = notifier
        self.clock = clock or Clock()
        self.alternate_slack = (
            alternate_slack if alternate_slack is not None else timedelta(minutes=settings.ALTERNATE_SLACK_MINUTES)
        )
        self.max_alternates = max_alternates or settings.MAX_ALTERNATES
        self._timers: dict[str, object] = {}

    # Queries

    async def get(self, request_id: str) -> BookingRequest:
        return await self.store.get(request_id)

    async def inbox(self, restaurant_id: str, status: RequestStatus | None = None) -> list[BookingRequest]:
        return await self.store.list(restaurant_id, status)

    async def diner_requests(self, diner_id: str) -> list[BookingRequest]:
        return await self.store.list_for_diner(diner_id)

    # Diner commands

    async def create_request(self, draft: BookingDraft) -> BookingRequest:
        record = await self.store.create(draft)
        logger.info(
            "Request %s created: party of %s at %s between %s and %s",
            record.id,
            record.party_size,
            record.restaurant_id,
            record.time_window.start.isoformat(),
            record.time_window.end.isoformat(),
        )
        self._arm_expiry(record)
        self._notify(record, record.restaurant_id, relevant_time=record.respond_by)
        return record

    async def accept_alternate(self, request_id: str, expected_version: int, time: datetime) -> BookingRequest:
        time = _aware(time)

        def mutate(record: BookingRequest) -> BookingRequest:
            _require_status(record, (OFFERED,), "accept an alternate on")
            if time not in record.alternates:
                raise InvalidTimeError(f"{time.isoformat()} is not one of the offered alternates")
            return self._accepted(record, time)

        updated = await swap_or_resolve(self.store, request_id, expected_version, mutate, _in_status(OFFERED))
        return self._after_accept(updated, notify=updated.restaurant_id)

    async def reject_alternates(self, request_id: str, expected_version: int) -> BookingRequest:
        def mutate(record: BookingRequest) -> BookingRequest:
            _require_status(record, (OFFERED,), "reject alternates on")
            return record.model_copy(update={"status": RequestStatus.DECLINED, "alternates": ()})

        updated = await swap_or_resolve(self.store, request_id, expected_version, mutate, _in_status(OFFERED))
        self._disarm_expiry(request_id)
        logger.info("Request %s: diner rejected the alternates", request_id)
        self._notify(updated, updated.restaurant_id)
        return updated

    async def cancel(self, request_id: str, expected_version: int) -> BookingRequest:
        allowed = (PENDING, OFFERED, ACCEPTED)

        def mutate(record: BookingRequest) -> BookingRequest:
            if record.hold is not None and record.hold.state is HoldState.SEATED:
                raise InvalidTransition(f"Booking request {record.id} is already seated")
            _require_status(record, allowed, "cancel")
            return record.model_copy(
                update={
                    "status": RequestStatus.CANCELLED,
                    "alternates": (),
                    "accepted_time": None,
                    "hold": self.holds.released(record.hold) if record.hold else None,
                }
            )

        updated = await swap_or_resolve(self.store, request_id, expected_version, mutate, _in_status(*allowed))
        self._disarm_expiry(request_id)
        self.holds.disarm(request_id)
        logger.info("Request %s cancelled by diner", request_id)
        self._notify(updated, updated.restaurant_id)
        return updated

    # Restaurant commands

    async def accept(
        self,
        request_id: str,
        expected_version: int,
        time: datetime,
        message: str | None = None,
    ) -> BookingRequest:
        time = _aware(time)

        def mutate(record: BookingRequest) -> BookingRequest:
            _require_status(record, (PENDING,), "accept")
            if not record.time_window.contains(time):
                raise InvalidTimeError(
                    f"{time.isoformat()} is outside the requested window "
                    f"[{record.time_window.start.isoformat()}, {record.time_window.end.isoformat()})"
                )
            return self._accepted(record, time, message)

        updated = await swap_or_resolve(self.store, request_id, expected_version, mutate, _in_status(PENDING))
        return self._after_accept(updated, notify=updated.diner_id)

    async def decline(self, request_id: str, expected_version: int, message: str | None = None) -> BookingRequest:
        def mutate(record: BookingRequest) -> BookingRequest:
            _require_status(record, (PENDING,), "decline")
            return record.model_copy(update={"status": RequestStatus.DECLINED, "restaurant_message": message})

        updated = await swap_or_resolve(self.store, request_id, expected_version, mutate, _in_status(PENDING))
        self._disarm_expiry(request_id)
        logger.info("Request %s declined by restaurant", request_id)
        self._notify(updated, updated.diner_id)
        return updated

    async def offer_alternates(
        self,
        request_id: str,
        expected_version: int,
        alternates: Sequence[datetime],
        message: str | None = None,
    ) -> BookingRequest:
        offered = self._check_alternates(alternates)

        def mutate(record: BookingRequest) -> BookingRequest:
            _require_status(record, (PENDING,), "offer alternates on")
            now = self.clock.now()
            window = record.time_window.widened(self.alternate_slack)
            for alternate in offered:
                if alternate <= now:
                    raise InvalidTimeError(f"Alternate {alternate.isoformat()} is not in the future")
                if not window.contains(alternate):
                    raise InvalidTimeError(
                        f"Alternate {alternate.isoformat()} is outside the negotiation window "
                        f"[{window.start.isoformat()}, {window.end.isoformat()})"
                    )
            return record.model_copy(
                update={
                    "status": OFFERED,
                    "alternates": offered,
                    "respond_by": max(offered),
                    "restaurant_message": message,
                }
            )

        updated = await swap_or_resolve(self.store, request_id, expected_version, mutate, _in_status(PENDING))
        self._arm_expiry(updated)
        logger.info("Request %s: restaurant offered %d alternates", request_id, len(offered))
        self._notify(updated, updated.diner_id, relevant_time=updated.respond_by)
        return updated

    def _check_alternates(self, alternates: Sequence[datetime]) -> tuple[datetime, ...]:
        if not alternates:
            raise EmptyAlternatesError()
        if len(alternates) > self.max_alternates:
            raise TooManyAlternatesError(len(alternates), self.max_alternates)
        offered = tuple(_aware(alternate) for alternate in alternates)
        if len(set(offered)) != len(offered):
            raise InvalidTimeError("Alternate times must be distinct")
        return offered

    # Acceptance and hold hand-off

    def _accepted(self, record: BookingRequest, time: datetime, message: str | None = None) -> BookingRequest:
        update = {
            "status": ACCEPTED,
            "accepted_time": time,
            "alternates": (),
            "hold": self.holds.new_hold(record, self.clock.now()),
        }
        if message is not None:
            update["restaurant_message"] = message
        return record.model_copy(update=update)

    def _after_accept(self, record: BookingRequest, notify: str) -> BookingRequest:
        self._disarm_expiry(record.id)
        self.holds.start(record)
        logger.info(
            "Request %s accepted for %s, hold until %s",
            record.id,
            record.accepted_time.isoformat(),
            record.hold.expires_at.isoformat(),
        )
        self._notify(record, notify, relevant_time=record.accepted_time)
        return record

    # Negotiation deadline

    def _arm_expiry(self, record: BookingRequest) -> None:
        if not record.is_negotiating:
            return
        self._disarm_expiry(record.id)
        delay = self.clock.until(record.respond_by)
        self._timers[record.id] = self.clock.after(delay, lambda: self._on_timer(record.id))

    def _disarm_expiry(self, request_id: str) -> None:
        handle = self._timers.pop(request_id, None)
        if handle is not None:
            self.clock.cancel(handle)

    def is_armed(self, request_id: str) -> bool:
        return request_id in self._timers

    def _on_timer(self, request_id: str) -> None:
        self._timers.pop(request_id, None)
        spawn(self._expire(request_id), name=f"request-expiry:{request_id}")

    async def _expire(self, request_id: str) -> None:
        try:
            record = await self.store.get(request_id)
        except NotFound:
            logger.warning("Expiry timer fired for unknown request %s", request_id)
            return
        if not record.is_negotiating:
            return
        if self.clock.now() < record.respond_by:
            self._arm_expiry(record)
            return

        def mutate(current: BookingRequest) -> BookingRequest:
            _require_status(current, (PENDING, OFFERED), "expire")
            return current.model_copy(update={"status": RequestStatus.EXPIRED, "alternates": ()})

        try:
            updated = await self.store.compare_and_swap(request_id, record.version, mutate)
        except (VersionConflict, InvalidTransition) as exc:
            logger.info("Expiry of %s dropped, a response won the race: %s", request_id, exc)
            return

        logger.info("Request %s expired without a response", request_id)
        self._notify(updated, updated.diner_id, updated.restaurant_id)

    async def rearm_timers(self) -> int:
        """Re-arm every live deadline from persisted state, e.g. after a restart."""
        count = 0
        for record in await self.store.list_unresolved():
            if record.is_negotiating:
                self._arm_expiry(record)
            else:
                self.holds.start(record)
            count += 1
        logger.info("Re-armed %d timers", count)
        return count

    def _notify(self, record: BookingRequest, *party_ids: str, relevant_time: datetime | None = None) -> None:
        event = NotificationEvent(
            request_id=record.id,
            new_status=record.status,
            relevant_time=relevant_time,
            alternates=record.alternates,
            hold_state=record.hold.state if record.hold else None,
        )
        for party_id in party_ids:
            self.notifier.send(party_id, event)
