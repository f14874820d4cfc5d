"""
Integration tests for the REST and WebSocket endpoints.

Runs the real application over the in-memory stores.  ``ASGITransport``
does not run the lifespan, so the fixture stops the scheduler itself; the
WebSocket test uses ``TestClient``, which does.
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from ride_dispatch.api.app import create_app
from ride_dispatch.config import DispatchSettings, Settings
from ride_dispatch.domain.entities import utcnow
from ride_dispatch.engine import build_engine
from ride_dispatch.workers.sweeper import StaleSweeper
from tests.conftest import KIGALI, KIGALI_DROPOFF, offset

RIDE_BODY = {
    "passenger_id": "passenger-1",
    "pickup_lat": KIGALI.latitude,
    "pickup_lng": KIGALI.longitude,
    "dropoff_lat": KIGALI_DROPOFF.latitude,
    "dropoff_lng": KIGALI_DROPOFF.longitude,
}


def make_engine(**dispatch):
    knobs = {
        "auto_dispatch_timeout_seconds": 0,
        "retry_backoff_seconds": 0,
        "max_backoff_seconds": 0,
        **dispatch,
    }
    return build_engine(Settings(store_backend="memory", dispatch=DispatchSettings(**knobs)))


@pytest_asyncio.fixture
async def engine():
    engine = make_engine()
    yield engine
    await engine.scheduler.stop()


@pytest_asyncio.fixture
async def client(engine):
    app = create_app(engine=engine)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def put_driver_on_shift(client, driver_id, north_km=0.5, **profile):
    resp = await client.post("/api/v1/drivers", json={"driver_id": driver_id, **profile})
    assert resp.status_code == 201
    resp = await client.patch(
        f"/api/v1/drivers/{driver_id}/availability", json={"availability": "available"}
    )
    assert resp.status_code == 200
    point = offset(KIGALI, north_km)
    resp = await client.post(
        f"/api/v1/drivers/{driver_id}/location",
        json={"latitude": point.latitude, "longitude": point.longitude, "speed": 8.0},
    )
    assert resp.json() == {"driver_id": driver_id, "applied": True}


# ── Health / admin ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/api/v1/admin/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["store_backend"] == "memory"
    assert body["tracked_drivers"] == 0


@pytest.mark.asyncio
async def test_settings_round_trip(client: AsyncClient):
    resp = await client.get("/api/v1/admin/settings")
    assert resp.status_code == 200
    assert resp.json()["max_retries"] == 3

    resp = await client.patch(
        "/api/v1/admin/settings",
        json={"min_driver_rating": 4.0, "requires_driver_confirmation": True},
    )
    assert resp.status_code == 200
    assert resp.json()["min_driver_rating"] == 4.0

    resp = await client.get("/api/v1/admin/settings")
    assert resp.json()["requires_driver_confirmation"] is True


@pytest.mark.asyncio
async def test_invalid_settings_rejected(client: AsyncClient):
    resp = await client.patch("/api/v1/admin/settings", json={"max_retries": 0})
    assert resp.status_code == 422
    resp = await client.get("/api/v1/admin/settings")
    assert resp.json()["max_retries"] == 3


# ── Drivers ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_register_and_get_driver(client: AsyncClient):
    resp = await client.post(
        "/api/v1/drivers",
        json={"driver_id": "d-1", "rating": 4.8, "name": "Aline", "car_plate": "RAB 220 C"},
    )
    assert resp.status_code == 201
    assert resp.json()["availability"] == "offline"

    resp = await client.get("/api/v1/drivers/d-1")
    assert resp.status_code == 200
    assert resp.json()["name"] == "Aline"

    resp = await client.post("/api/v1/drivers", json={"driver_id": "d-1"})
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_unknown_driver_404(client: AsyncClient):
    resp = await client.get("/api/v1/drivers/ghost")
    assert resp.status_code == 404
    resp = await client.post(
        "/api/v1/drivers/ghost/location", json={"latitude": -1.95, "longitude": 30.06}
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_inactive_not_settable_by_driver(client: AsyncClient):
    await put_driver_on_shift(client, "d-1")
    resp = await client.patch(
        "/api/v1/drivers/d-1/availability", json={"availability": "inactive"}
    )
    assert resp.status_code == 409
    assert (await client.get("/api/v1/drivers/d-1")).json()["availability"] == "available"


@pytest.mark.asyncio
async def test_location_out_of_range_rejected(client: AsyncClient):
    await client.post("/api/v1/drivers", json={"driver_id": "d-1"})
    resp = await client.post(
        "/api/v1/drivers/d-1/location", json={"latitude": 95.0, "longitude": 30.06}
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_older_sample_acknowledged_not_applied(client: AsyncClient):
    await put_driver_on_shift(client, "d-1")
    old = (utcnow() - timedelta(minutes=5)).isoformat()
    resp = await client.post(
        "/api/v1/drivers/d-1/location",
        json={"latitude": -1.9, "longitude": 30.1, "recorded_at": old},
    )
    assert resp.status_code == 200
    assert resp.json()["applied"] is False


@pytest.mark.asyncio
async def test_naive_timestamp_taken_as_utc(client: AsyncClient, engine):
    await client.post("/api/v1/drivers", json={"driver_id": "d-1"})
    await client.patch("/api/v1/drivers/d-1/availability", json={"availability": "available"})
    resp = await client.post(
        "/api/v1/drivers/d-1/location",
        json={"latitude": -1.95, "longitude": 30.06, "recorded_at": "2020-01-01T00:00:00"},
    )
    assert resp.status_code == 200
    assert resp.json()["applied"] is True
    assert engine.locations.get("d-1").recorded_at.tzinfo is not None

    resp = await client.get("/api/v1/admin/live-map")
    assert resp.status_code == 200
    assert resp.json()[0]["stale"] is True

    assert await StaleSweeper(engine.locations, 30).run_once() == ["d-1"]

    resp = await client.post(
        "/api/v1/drivers/d-1/location",
        json={"latitude": -1.95, "longitude": 30.06, "recorded_at": utcnow().isoformat()},
    )
    assert resp.json()["applied"] is True


@pytest.mark.asyncio
async def test_nearest_drivers(client: AsyncClient):
    await put_driver_on_shift(client, "near", north_km=0.5, rating=4.9, car_model="Toyota Vitz")
    await put_driver_on_shift(client, "far", north_km=3.0)

    resp = await client.get(
        "/api/v1/drivers/nearest",
        params={"lat": KIGALI.latitude, "lng": KIGALI.longitude, "limit": 1},
    )
    assert resp.status_code == 200
    [nearest] = resp.json()
    assert nearest["driver_id"] == "near"
    assert nearest["car_model"] == "Toyota Vitz"
    assert nearest["estimated_arrival_minutes"] >= 1


@pytest.mark.asyncio
async def test_live_map_lists_tracked_drivers(client: AsyncClient):
    await put_driver_on_shift(client, "b")
    await put_driver_on_shift(client, "a", north_km=1.0)

    resp = await client.get("/api/v1/admin/live-map")
    assert resp.status_code == 200
    entries = resp.json()
    assert [e["driver_id"] for e in entries] == ["a", "b"]
    assert all(e["availability"] == "available" and not e["stale"] for e in entries)


# ── Rides ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_ride_returns_202(client: AsyncClient):
    resp = await client.post("/api/v1/rides", json=RIDE_BODY)
    assert resp.status_code == 202
    data = resp.json()
    assert data["status"] == "pending"
    assert data["dispatch_state"] == "awaiting_dispatch"
    assert data["fare_estimate"] > 0


@pytest.mark.asyncio
async def test_idempotency_key(client: AsyncClient):
    body = {**RIDE_BODY, "idempotency_key": "retry-me"}
    resp1 = await client.post("/api/v1/rides", json=body)
    resp2 = await client.post("/api/v1/rides", json=body)
    assert resp1.status_code == 202
    assert resp2.status_code == 202
    assert resp1.json()["id"] == resp2.json()["id"]


@pytest.mark.asyncio
async def test_get_ride_not_found(client: AsyncClient):
    resp = await client.get("/api/v1/rides/does-not-exist")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_cancel_pending_ride(client: AsyncClient):
    ride_id = (await client.post("/api/v1/rides", json=RIDE_BODY)).json()["id"]

    resp = await client.patch(f"/api/v1/rides/{ride_id}/cancel", json={"reason": "found a bus"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["cancel_reason"] == "found a bus"

    resp = await client.patch(f"/api/v1/rides/{ride_id}/cancel")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_ride_dispatched_and_completed(client: AsyncClient, engine):
    await put_driver_on_shift(client, "d-1", rating=4.8)
    ride_id = (await client.post("/api/v1/rides", json=RIDE_BODY)).json()["id"]

    await engine.scheduler.drain()

    ride = (await client.get(f"/api/v1/rides/{ride_id}")).json()
    assert ride["status"] == "accepted"
    assert ride["driver_id"] == "d-1"
    assert (await client.get("/api/v1/drivers/d-1")).json()["availability"] == "on_trip"

    assert (await client.post(f"/api/v1/rides/{ride_id}/start")).json()["status"] == "in_progress"
    assert (await client.post(f"/api/v1/rides/{ride_id}/complete")).json()["status"] == "completed"
    driver = (await client.get("/api/v1/drivers/d-1")).json()
    assert driver["availability"] == "available"
    assert driver["completed_trip_count"] == 1


@pytest.mark.asyncio
async def test_start_before_accept_conflicts(client: AsyncClient):
    ride_id = (await client.post("/api/v1/rides", json=RIDE_BODY)).json()["id"]
    resp = await client.post(f"/api/v1/rides/{ride_id}/start")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_confirmation_flow(client: AsyncClient, engine):
    engine.update_settings(requires_driver_confirmation=True, driver_confirmation_timeout_seconds=60)
    await put_driver_on_shift(client, "d-1")
    ride_id = (await client.post("/api/v1/rides", json=RIDE_BODY)).json()["id"]
    await engine.scheduler.run_cycle(ride_id)

    ride = (await client.get(f"/api/v1/rides/{ride_id}")).json()
    assert ride["dispatch_state"] == "assigned"
    assert ride["offered_driver_id"] == "d-1"

    resp = await client.post(f"/api/v1/drivers/other/rides/{ride_id}/confirm")
    assert resp.status_code == 409
    resp = await client.post(f"/api/v1/drivers/d-1/rides/{ride_id}/confirm")
    assert resp.status_code == 200
    assert resp.json()["status"] == "accepted"


@pytest.mark.asyncio
async def test_escalation_then_manual_assign(client: AsyncClient, engine):
    ride_id = (await client.post("/api/v1/rides", json=RIDE_BODY)).json()["id"]
    await engine.scheduler.drain()

    escalated = (await client.get("/api/v1/admin/escalations")).json()
    assert [r["id"] for r in escalated] == [ride_id]
    assert escalated[0]["dispatch_state"] == "dispatch_failed"

    await put_driver_on_shift(client, "ops-pick", north_km=40.0)
    resp = await client.post(
        f"/api/v1/admin/rides/{ride_id}/assign", json={"driver_id": "ops-pick"}
    )
    assert resp.status_code == 200
    assert resp.json()["driver_id"] == "ops-pick"
    assert (await client.get("/api/v1/admin/escalations")).json() == []


@pytest.mark.asyncio
async def test_redispatch_endpoint(client: AsyncClient, engine):
    ride_id = (await client.post("/api/v1/rides", json=RIDE_BODY)).json()["id"]
    await engine.scheduler.drain()
    await put_driver_on_shift(client, "late")

    resp = await client.post(f"/api/v1/admin/rides/{ride_id}/dispatch")
    assert resp.status_code == 200
    assert resp.json() == {"ride_id": ride_id, "outcome": "accepted"}


@pytest.mark.asyncio
async def test_assign_busy_driver_conflicts(client: AsyncClient, engine):
    await put_driver_on_shift(client, "d-1")
    first = (await client.post("/api/v1/rides", json=RIDE_BODY)).json()["id"]
    await engine.scheduler.drain()
    second = (await client.post("/api/v1/rides", json=RIDE_BODY)).json()["id"]

    resp = await client.post(f"/api/v1/admin/rides/{second}/assign", json={"driver_id": "d-1"})
    assert resp.status_code == 409
    assert (await client.get(f"/api/v1/rides/{first}")).json()["driver_id"] == "d-1"


# ── WebSocket feed ────────────────────────────────────────────────────


def test_ride_feed_streams_until_terminal():
    engine = make_engine(auto_dispatch_enabled=False)
    with TestClient(create_app(engine=engine)) as tc:
        ride_id = tc.post("/api/v1/rides", json=RIDE_BODY).json()["id"]
        with tc.websocket_connect(f"/api/v1/ws/rides/{ride_id}") as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert snapshot["ride"]["status"] == "pending"

            tc.patch(f"/api/v1/rides/{ride_id}/cancel", json={"reason": "changed plans"})

            event = ws.receive_json()
            assert event["type"] == "ride_status_changed"
            assert event["status"] == "cancelled"


def test_ride_feed_unknown_ride_closes():
    with TestClient(create_app(engine=make_engine())) as tc:
        with tc.websocket_connect("/api/v1/ws/rides/nope") as ws:
            message = ws.receive()
            assert message["type"] == "websocket.close"
            assert message["code"] == 4404
