"""Durable storage of booking requests with per-record optimistic versioning.

Every write after ``create`` goes through ``compare_and_swap``: the caller
passes the version it read and a pure mutator, and the store applies the
mutator only if the record is still at that version. A stale version raises
``VersionConflict``; nothing is merged.
"""

from __future__ import annotations

import abc
import itertools
import logging
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from sqlalchemy import and_, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tablehold.core.clock import Clock
from tablehold.core.errors import NotFound, RequestAlreadyResolved, VersionConflict
from tablehold.db.models import BookingRequestRow
from tablehold.models import (
    NEGOTIATING_STATUSES,
    BookingDraft,
    BookingRequest,
    Hold,
    HoldState,
    RequestStatus,
    TimeWindow,
    as_utc,
)


logger = logging.getLogger(__name__)

Mutator = Callable[[BookingRequest], BookingRequest]

IMMUTABLE_FIELDS = ("id", "diner_id", "restaurant_id", "party_size", "time_window", "created_at")


class RequestStore(abc.ABC):
    def __init__(self, clock: Clock | None = None):
        self.clock = clock or Clock()

    @abc.abstractmethod
    async def get(self, request_id: str) -> BookingRequest: ...

    @abc.abstractmethod
    async def create(self, draft: BookingDraft) -> BookingRequest: ...

    @abc.abstractmethod
    async def compare_and_swap(self, request_id: str, expected_version: int, mutator: Mutator) -> BookingRequest: ...

    @abc.abstractmethod
    async def list(self, restaurant_id: str, status: RequestStatus | None = None) -> list[BookingRequest]:
        """Restaurant inbox, most recent first."""

    @abc.abstractmethod
    async def list_for_diner(self, diner_id: str) -> list[BookingRequest]: ...

    @abc.abstractmethod
    async def list_unresolved(self) -> list[BookingRequest]:
        """Records that still have a live deadline (negotiation or hold)."""

    async def ping(self) -> None:
        """Raise if the backing store is unreachable."""

    def _new_record(self, draft: BookingDraft) -> BookingRequest:
        now = self.clock.now()
        return BookingRequest(
            id=str(uuid4()),
            diner_id=draft.diner_id,
            restaurant_id=draft.restaurant_id,
            party_size=draft.party_size,
            time_window=draft.time_window,
            status=RequestStatus.PENDING,
            respond_by=draft.time_window.end,
            notes=draft.notes,
            preferences=draft.preferences,
            version=1,
            created_at=now,
            updated_at=now,
        )

    def _apply(self, current: BookingRequest, expected_version: int, mutator: Mutator) -> BookingRequest:
        if current.version != expected_version:
            raise VersionConflict(current.id, expected_version, current.version)
        mutated = mutator(current)
        for field in IMMUTABLE_FIELDS:
            if getattr(mutated, field) != getattr(current, field):
                raise ValueError(f"{field} is immutable")
        # model_copy skips validation; rebuild so status/alternates invariants hold on every write.
        return BookingRequest.model_validate(
            {**mutated.model_dump(), "version": current.version + 1, "updated_at": self.clock.now()}
        )


async def swap_or_resolve(
    store: RequestStore,
    request_id: str,
    expected_version: int,
    mutator: Mutator,
    still_applicable: Callable[[BookingRequest], bool],
) -> BookingRequest:
    """Apply one caller-driven mutation; never retries.

    On a version conflict the record is reread once. If the competing write
    left it somewhere this action no longer applies, the caller gets
    ``RequestAlreadyResolved`` instead of a plain conflict.
    """
    try:
        return await store.compare_and_swap(request_id, expected_version, mutator)
    except VersionConflict as exc:
        fresh = await store.get(request_id)
        if fresh.is_terminal or not still_applicable(fresh):
            raise RequestAlreadyResolved(request_id, expected_version, fresh.version, fresh.status.value) from exc
        raise


def _is_unresolved(record: BookingRequest) -> bool:
    if record.status in NEGOTIATING_STATUSES:
        return True
    return record.hold is not None and record.hold.state is HoldState.ACTIVE


class MemoryRequestStore(RequestStore):
    """Process-local store.

    Mutators run synchronously between awaits, so a compare-and-swap is
    atomic with respect to other coroutines on the same loop.
    """

    def __init__(self, clock: Clock | None = None):
        super().__init__(clock)
        self._records: dict[str, BookingRequest] = {}
        self._order: dict[str, int] = {}
        self._seq = itertools.count()

    async def get(self, request_id: str) -> BookingRequest:
        try:
            return self._records[request_id]
        except KeyError:
            raise NotFound(request_id) from None

    async def create(self, draft: BookingDraft) -> BookingRequest:
        record = self._new_record(draft)
        self._records[record.id] = record
        self._order[record.id] = next(self._seq)
        return record

    async def compare_and_swap(self, request_id: str, expected_version: int, mutator: Mutator) -> BookingRequest:
        current = await self.get(request_id)
        updated = self._apply(current, expected_version, mutator)
        self._records[request_id] = updated
        return updated

    def _sorted(self, records) -> list[BookingRequest]:
        return sorted(records, key=lambda r: (r.created_at, self._order[r.id]), reverse=True)

    async def list(self, restaurant_id: str, status: RequestStatus | None = None) -> list[BookingRequest]:
        return self._sorted(
            r
            for r in self._records.values()
            if r.restaurant_id == restaurant_id and (status is None or r.status is status)
        )

    async def list_for_diner(self, diner_id: str) -> list[BookingRequest]:
        return self._sorted(r for r in self._records.values() if r.diner_id == diner_id)

    async def list_unresolved(self) -> list[BookingRequest]:
        return self._sorted(r for r in self._records.values() if _is_unresolved(r))


def _row_values(record: BookingRequest) -> dict:
    # SQLite drops offsets, so everything is written as UTC.
    hold = record.hold
    return {
        "id": record.id,
        "diner_id": record.diner_id,
        "restaurant_id": record.restaurant_id,
        "party_size": record.party_size,
        "window_start": as_utc(record.time_window.start),
        "window_end": as_utc(record.time_window.end),
        "status": record.status.value,
        "accepted_time": _maybe_utc(record.accepted_time),
        "alternates": [as_utc(alt).isoformat() for alt in record.alternates],
        "respond_by": as_utc(record.respond_by),
        "hold_started_at": as_utc(hold.started_at) if hold else None,
        "hold_expires_at": as_utc(hold.expires_at) if hold else None,
        "hold_state": hold.state.value if hold else None,
        "no_show": record.no_show,
        "notes": record.notes,
        "preferences": record.preferences,
        "restaurant_message": record.restaurant_message,
        "version": record.version,
        "created_at": as_utc(record.created_at),
        "updated_at": as_utc(record.updated_at),
    }


def _maybe_utc(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


def _to_model(row: BookingRequestRow) -> BookingRequest:
    hold = None
    if row.hold_state is not None:
        hold = Hold(
            request_id=row.id,
            started_at=as_utc(row.hold_started_at),
            expires_at=as_utc(row.hold_expires_at),
            state=HoldState(row.hold_state),
        )
    return BookingRequest(
        id=row.id,
        diner_id=row.diner_id,
        restaurant_id=row.restaurant_id,
        party_size=row.party_size,
        time_window=TimeWindow(start=as_utc(row.window_start), end=as_utc(row.window_end)),
        status=RequestStatus(row.status),
        accepted_time=_maybe_utc(row.accepted_time),
        alternates=tuple(as_utc(datetime.fromisoformat(alt)) for alt in row.alternates or ()),
        respond_by=as_utc(row.respond_by),
        hold=hold,
        no_show=row.no_show,
        notes=row.notes,
        preferences=row.preferences,
        restaurant_message=row.restaurant_message,
        version=row.version,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class SqlRequestStore(RequestStore):
    """SQLAlchemy-backed store; the version guard lives in the UPDATE itself."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], clock: Clock | None = None):
        super().__init__(clock)
        self._sessionmaker = sessionmaker

    async def ping(self) -> None:
        async with self._sessionmaker() as session:
            await session.execute(text("SELECT 1"))

    async def get(self, request_id: str) -> BookingRequest:
        async with self._sessionmaker() as session:
            row = await session.get(BookingRequestRow, request_id)
            if row is None:
                raise NotFound(request_id)
            return _to_model(row)

    async def create(self, draft: BookingDraft) -> BookingRequest:
        record = self._new_record(draft)
        async with self._sessionmaker() as session:
            async with session.begin():
                session.add(BookingRequestRow(**_row_values(record)))
        return record

    async def compare_and_swap(self, request_id: str, expected_version: int, mutator: Mutator) -> BookingRequest:
        async with self._sessionmaker() as session:
            async with session.begin():
                row = await session.get(BookingRequestRow, request_id)
                if row is None:
                    raise NotFound(request_id)
                updated = self._apply(_to_model(row), expected_version, mutator)

                values = _row_values(updated)
                del values["id"]
                result = await session.execute(
                    update(BookingRequestRow)
                    .where(
                        BookingRequestRow.id == request_id,
                        BookingRequestRow.version == expected_version,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Another writer committed between our read and the update.
                    logger.debug("Lost update race on %s at version %s", request_id, expected_version)
                    raise VersionConflict(request_id, expected_version)
        return updated

    async def _select(self, *criteria) -> list[BookingRequest]:
        stmt = (
            select(BookingRequestRow)
            .where(*criteria)
            .order_by(BookingRequestRow.created_at.desc())
        )
        async with self._sessionmaker() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_model(row) for row in rows]

    async def list(self, restaurant_id: str, status: RequestStatus | None = None) -> list[BookingRequest]:
        criteria = [BookingRequestRow.restaurant_id == restaurant_id]
        if status is not None:
            criteria.append(BookingRequestRow.status == status.value)
        return await self._select(*criteria)

    async def list_for_diner(self, diner_id: str) -> list[BookingRequest]:
        return await self._select(BookingRequestRow.diner_id == diner_id)

    async def list_unresolved(self) -> list[BookingRequest]:
        return await self._select(
            or_(
                BookingRequestRow.status.in_([s.value for s in NEGOTIATING_STATUSES]),
                and_(
                    BookingRequestRow.status == RequestStatus.ACCEPTED.value,
                    BookingRequestRow.hold_state == HoldState.ACTIVE.value,
                ),
            )
        )
