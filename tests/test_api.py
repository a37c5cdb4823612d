from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from tablehold.deps import build_services
from tablehold.main import create_app
from tablehold.models import HoldState
from tablehold.services.store import MemoryRequestStore
from tests.conftest import at, settle


pytestmark = pytest.mark.asyncio

PREFIX = "/api/v1"


@pytest_asyncio.fixture
async def client(services):
    transport = ASGITransport(app=create_app(services))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def _payload(**overrides):
    payload = {
        "diner_id": "diner-1",
        "restaurant_id": "bistro",
        "party_size": 2,
        "window_start": "2025-11-05T19:00:00-05:00",
        "window_end": "2025-11-05T20:00:00-05:00",
        "notes": "pytest",
        "preferences": {"seating": "patio"},
    }
    payload.update(overrides)
    return payload


def _ts(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


async def _create(client, **overrides):
    response = await client.post(f"{PREFIX}/requests", json=_payload(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


async def test_create_and_fetch_request(client, gateway):
    created = await _create(client)

    assert created["status"] == "pending"
    assert created["version"] == 1
    assert created["alternates"] == []
    assert created["hold"] is None
    assert created["preferences"] == {"seating": "patio"}
    assert _ts(created["respond_by"]) == at(20, 0)

    fetched = await client.get(f"{PREFIX}/requests/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json() == created

    await settle()
    assert gateway.for_party("bistro")[0].request_id == created["id"]


async def test_create_rejects_naive_window(client):
    response = await client.post(
        f"{PREFIX}/requests",
        json=_payload(window_start="2025-11-05T19:00:00", window_end="2025-11-05T20:00:00"),
    )

    assert response.status_code == 422
    assert "timezone" in response.json()["detail"]


async def test_create_rejects_inverted_window(client):
    response = await client.post(
        f"{PREFIX}/requests",
        json=_payload(window_start="2025-11-05T20:00:00-05:00", window_end="2025-11-05T19:00:00-05:00"),
    )

    assert response.status_code == 422


async def test_create_rejects_empty_party(client):
    response = await client.post(f"{PREFIX}/requests", json=_payload(party_size=0))

    assert response.status_code == 422


async def test_unknown_request_is_404(client):
    response = await client.get(f"{PREFIX}/requests/nope")

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


async def test_accept_starts_hold(client):
    created = await _create(client)

    response = await client.post(
        f"{PREFIX}/requests/{created['id']}/accept",
        json={"expected_version": 1, "time": "2025-11-05T19:30:00-05:00", "message": "See you soon"},
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["status"] == "accepted"
    assert _ts(body["accepted_time"]) == at(19, 30)
    assert body["restaurant_message"] == "See you soon"
    assert body["hold"]["state"] == "active"
    assert body["hold"]["remaining_seconds"] == 600

    hold = await client.get(f"{PREFIX}/requests/{created['id']}/hold")
    assert hold.status_code == 200
    assert hold.json()["remaining_seconds"] == 600


async def test_accept_outside_window_is_422(client):
    created = await _create(client)

    response = await client.post(
        f"{PREFIX}/requests/{created['id']}/accept",
        json={"expected_version": 1, "time": "2025-11-05T21:00:00-05:00"},
    )

    assert response.status_code == 422
    assert response.json()["code"] == "INVALID_TIME"


async def test_accept_with_naive_time_is_422(client):
    created = await _create(client)

    response = await client.post(
        f"{PREFIX}/requests/{created['id']}/accept",
        json={"expected_version": 1, "time": "2025-11-05T19:30:00"},
    )

    assert response.status_code == 422
    assert response.json()["code"] == "INVALID_TIME"


async def test_second_response_sees_already_resolved(client):
    created = await _create(client)
    url = f"{PREFIX}/requests/{created['id']}"

    first = await client.post(f"{url}/accept", json={"expected_version": 1, "time": "2025-11-05T19:30:00-05:00"})
    second = await client.post(f"{url}/decline", json={"expected_version": 1})

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["code"] == "ALREADY_RESOLVED"
    assert (await client.get(url)).json()["status"] == "accepted"


async def test_stale_cancel_is_version_conflict(client):
    created = await _create(client)
    url = f"{PREFIX}/requests/{created['id']}"
    offered = await client.post(
        f"{url}/alternates",
        json={"expected_version": 1, "alternates": ["2025-11-05T20:30:00-05:00"]},
    )
    assert offered.status_code == 200

    response = await client.post(f"{url}/cancel", json={"expected_version": 1})

    assert response.status_code == 409
    assert response.json()["code"] == "VERSION_CONFLICT"


async def test_alternates_flow(client, gateway):
    created = await _create(client)
    url = f"{PREFIX}/requests/{created['id']}"

    offered = await client.post(
        f"{url}/alternates",
        json={
            "expected_version": 1,
            "alternates": ["2025-11-05T20:30:00-05:00", "2025-11-05T21:00:00-05:00"],
            "message": "Fully booked at 7",
        },
    )
    assert offered.status_code == 200, offered.text
    body = offered.json()
    assert body["status"] == "alternates_offered"
    assert [_ts(t) for t in body["alternates"]] == [at(20, 30), at(21, 0)]
    assert _ts(body["respond_by"]) == at(21, 0)

    chosen = await client.post(
        f"{url}/alternates/accept",
        json={"expected_version": body["version"], "time": "2025-11-05T21:00:00-05:00"},
    )
    assert chosen.status_code == 200, chosen.text
    assert chosen.json()["status"] == "accepted"
    assert chosen.json()["alternates"] == []
    assert _ts(chosen.json()["accepted_time"]) == at(21, 0)

    await settle()
    assert gateway.for_party("diner-1")[-1].alternates == (at(20, 30), at(21, 0))


async def test_reject_alternates(client):
    created = await _create(client)
    url = f"{PREFIX}/requests/{created['id']}"
    await client.post(f"{url}/alternates", json={"expected_version": 1, "alternates": ["2025-11-05T20:30:00-05:00"]})

    response = await client.post(f"{url}/alternates/reject", json={"expected_version": 2})

    assert response.status_code == 200
    assert response.json()["status"] == "declined"


@pytest.mark.parametrize(
    ("alternates", "code"),
    [
        ([], "EMPTY_ALTERNATES"),
        (
            [
                "2025-11-05T19:15:00-05:00",
                "2025-11-05T19:30:00-05:00",
                "2025-11-05T19:45:00-05:00",
                "2025-11-05T20:15:00-05:00",
            ],
            "TOO_MANY_ALTERNATES",
        ),
        (["2025-11-06T09:00:00-05:00"], "INVALID_TIME"),
    ],
)
async def test_bad_alternates_are_422(client, alternates, code):
    created = await _create(client)

    response = await client.post(
        f"{PREFIX}/requests/{created['id']}/alternates",
        json={"expected_version": 1, "alternates": alternates},
    )

    assert response.status_code == 422
    assert response.json()["code"] == code


async def test_invalid_transition_is_409(client):
    created = await _create(client)
    url = f"{PREFIX}/requests/{created['id']}"
    await client.post(f"{url}/decline", json={"expected_version": 1, "message": "Closed tonight"})

    response = await client.post(f"{url}/decline", json={"expected_version": 2})

    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_TRANSITION"


async def test_restaurant_inbox_filters_by_status(client, clock):
    first = await _create(client)
    await clock.advance(timedelta(minutes=1))
    second = await _create(client)
    await clock.advance(timedelta(minutes=1))
    await _create(client, restaurant_id="cafe")
    await client.post(f"{PREFIX}/requests/{first['id']}/decline", json={"expected_version": 1})

    inbox = await client.get(f"{PREFIX}/restaurants/bistro/requests")
    pending = await client.get(f"{PREFIX}/restaurants/bistro/requests", params={"status": "pending"})

    assert [r["id"] for r in inbox.json()] == [second["id"], first["id"]]
    assert [r["id"] for r in pending.json()] == [second["id"]]


async def test_diner_requests(client):
    mine = await _create(client)
    await _create(client, diner_id="diner-2")

    response = await client.get(f"{PREFIX}/diners/diner-1/requests")

    assert [r["id"] for r in response.json()] == [mine["id"]]


async def test_hold_seat_and_release(client):
    seated = await _create(client)
    released = await _create(client)
    for created in (seated, released):
        await client.post(
            f"{PREFIX}/requests/{created['id']}/accept",
            json={"expected_version": 1, "time": "2025-11-05T19:30:00-05:00"},
        )

    seat = await client.post(f"{PREFIX}/requests/{seated['id']}/hold/seat", json={"expected_version": 2})
    release = await client.post(f"{PREFIX}/requests/{released['id']}/hold/release", json={"expected_version": 2})

    assert seat.status_code == 200
    assert seat.json()["hold"]["state"] == HoldState.SEATED.value
    assert seat.json()["hold"]["remaining_seconds"] == 0
    assert release.status_code == 200
    assert release.json()["status"] == "accepted"
    assert release.json()["hold"]["state"] == HoldState.CANCELLED.value

    cancel = await client.post(f"{PREFIX}/requests/{seated['id']}/cancel", json={"expected_version": 3})
    assert cancel.status_code == 409
    assert cancel.json()["code"] == "INVALID_TRANSITION"


async def test_hold_of_pending_request_is_409(client):
    created = await _create(client)

    response = await client.get(f"{PREFIX}/requests/{created['id']}/hold")

    assert response.status_code == 409


async def test_lapsed_hold_reported_by_api(client, clock):
    created = await _create(client)
    await client.post(
        f"{PREFIX}/requests/{created['id']}/accept",
        json={"expected_version": 1, "time": "2025-11-05T19:30:00-05:00"},
    )

    await clock.advance(timedelta(minutes=10))
    body = (await client.get(f"{PREFIX}/requests/{created['id']}")).json()

    assert body["status"] == "accepted"
    assert body["no_show"] is True
    assert body["hold"]["state"] == "expired"
    assert body["hold"]["remaining_seconds"] == 0


async def test_health_endpoints(client):
    health = await client.get(f"{PREFIX}/healthz")
    readiness = await client.get(f"{PREFIX}/readiness")

    assert health.status_code == 200
    assert health.json() == {"ok": True}
    assert readiness.status_code == 200
    assert readiness.json() == {"ready": True}


class _UnreachableStore(MemoryRequestStore):
    async def ping(self) -> None:
        raise ConnectionError("database is down")


async def test_readiness_reports_unavailable_store(gateway, clock):
    services = build_services(_UnreachableStore(clock), gateway, clock)
    transport = ASGITransport(app=create_app(services))

    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get(f"{PREFIX}/readiness")

    assert response.status_code == 503
