import httpx
import pytest

from ridematch import driver_discovery
from ridematch.main import app
import ridematch.routes as routes
from ridematch.gateway import SimulatedPaymentGateway
from conftest import COLOMBO, DESTINATION

pytestmark = pytest.mark.anyio


def as_user(user_id, role):
    return {"X-User-ID": str(user_id), "X-User-Role": role}


PASSENGER = as_user(100, "passenger")
DRIVER = as_user(1, "driver")
SYSTEM = as_user(0, "system")


@pytest.fixture
async def client(engine):
    async def override_get_conn():
        async with engine.connect() as conn:
            yield conn

    app.dependency_overrides[routes.get_conn] = override_get_conn
    app.dependency_overrides[routes.get_payment_gateway] = SimulatedPaymentGateway
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def register_driver(client, driver_id=1, location=COLOMBO):
    headers = as_user(driver_id, "driver")
    r = await client.post("/v1/drivers", headers=headers,
                          json={"id": driver_id, "name": "Nimal", "vehicle_type": "car", "rating": 4.7})
    assert r.status_code == 200
    r = await client.post(f"/v1/drivers/{driver_id}/location", headers=headers,
                          json={"lat": location[0], "lon": location[1]})
    assert r.status_code == 200 and r.json()["status"] == "ok"


async def create_journey(client, headers=PASSENGER, **extra):
    payload = {
        "origin": {"lat": COLOMBO[0], "lon": COLOMBO[1]},
        "destination": {"lat": DESTINATION[0], "lon": DESTINATION[1]},
        "pickup_address": "Fort Railway Station",
        "dropoff_address": "Mount Lavinia Hotel",
        **extra,
    }
    return await client.post("/v1/journeys", headers=headers, json=payload)


async def test_full_flow_journey_bid_ride_settle_and_tip(client, fake_redis):
    await register_driver(client)

    r = await create_journey(client)
    assert r.status_code == 200
    journey = r.json()
    assert journey["status"] == "open"

    r = await client.get(f"/v1/journeys/{journey['id']}/matches", headers=PASSENGER)
    assert r.status_code == 200
    assert [m["driver_id"] for m in r.json()] == [1]

    r = await client.get(f"/v1/journeys/{journey['id']}/suggested-bid", headers=DRIVER)
    assert r.status_code == 200
    suggestion = r.json()
    assert suggestion["min_bid"] <= suggestion["recommended_bid"] <= suggestion["max_bid"]

    r = await client.post(f"/v1/journeys/{journey['id']}/bids", headers=DRIVER,
                          json={"amount": suggestion["recommended_bid"], "ttl_sec": 300})
    assert r.status_code == 200
    bid = r.json()

    r = await client.get("/v1/bids/mine", headers=DRIVER)
    assert [b["id"] for b in r.json()] == [bid["id"]]

    r = await client.post(f"/v1/bids/{bid['id']}/accept", headers=PASSENGER)
    assert r.status_code == 200
    ride_id = r.json()["ride_id"]
    assert r.json()["bid"]["status"] == "accepted"

    for step in ("accept", "arrive", "start"):
        r = await client.post(f"/v1/rides/{ride_id}/{step}", headers=DRIVER)
        assert r.status_code == 200, r.text
    r = await client.post(f"/v1/rides/{ride_id}/end", headers=DRIVER,
                          json={"final_fare": 1800.0, "distance_meters": 8400})
    assert r.status_code == 200
    assert r.json()["status"] == "completed"

    r = await client.post(f"/v1/rides/{ride_id}/settle", headers=SYSTEM, json={})
    assert r.status_code == 200
    [payment] = r.json()
    assert payment["commission"] == 180.0
    assert payment["provider"] == "simulated"

    r = await client.post(f"/v1/rides/{ride_id}/settle", headers=SYSTEM, json={})
    assert r.status_code == 409
    assert r.json()["error"] == "state_conflict"

    r = await client.post(f"/v1/rides/{ride_id}/tip", headers=PASSENGER, json={"amount": 200})
    assert r.status_code == 200
    assert r.json()["payment_type"] == "tip"

    r = await client.get(f"/v1/rides/{ride_id}", headers=PASSENGER)
    body = r.json()
    assert body["paid"] is True and body["tip_amount"] == 200.0
    assert [l["status"] for l in body["legs"]] == ["dropped_off"]

    r = await client.get(f"/v1/rides/{ride_id}/payments", headers=DRIVER)
    assert [p["payment_type"] for p in r.json()] == ["fare", "tip"]


async def test_journey_creation_is_idempotent(client):
    headers = {**PASSENGER, "Idempotency-Key": "abc-123"}
    first = await create_journey(client, headers=headers)
    second = await create_journey(client, headers=headers)
    assert first.status_code == second.status_code == 200
    assert first.json()["id"] == second.json()["id"]

    other = await create_journey(client, headers={**as_user(101, "passenger"), "Idempotency-Key": "abc-123"})
    assert other.json()["id"] != first.json()["id"]


async def test_error_bodies_carry_stable_codes(client):
    r = await client.get("/v1/journeys/999", headers=PASSENGER)
    assert r.status_code == 404
    assert r.json() == {"error": "not_found", "detail": "Journey 999 not found"}

    r = await create_journey(client)
    journey_id = r.json()["id"]
    r = await client.post(f"/v1/journeys/{journey_id}/bids", headers=PASSENGER, json={"amount": 1000})
    assert r.status_code == 403
    assert r.json()["error"] == "not_authorized"

    await register_driver(client)
    r = await client.post(f"/v1/journeys/{journey_id}/bids", headers=DRIVER, json={"amount": -5})
    assert r.status_code == 422
    assert r.json()["error"] == "validation_error"

    r = await client.post(f"/v1/journeys/{journey_id}/cancel", headers=PASSENGER)
    assert r.status_code == 200 and r.json()["status"] == "cancelled"
    r = await client.post(f"/v1/journeys/{journey_id}/bids", headers=DRIVER, json={"amount": 1000})
    assert r.status_code == 409

    r = await client.get(f"/v1/journeys/{journey_id}")
    assert r.status_code == 401


async def test_vouchers_over_http(client):
    admin = as_user(9, "admin")
    r = await client.post("/v1/vouchers", headers=admin, json={
        "code": "ride10", "discount_type": "percentage", "discount_value": 10,
        "max_discount_amount": 100, "expires_at": "2999-01-01T00:00:00Z",
    })
    assert r.status_code == 200
    voucher = r.json()
    assert voucher["code"] == "RIDE10"

    r = await client.post(f"/v1/vouchers/{voucher['id']}/grants", headers=admin, json={"user_id": 100})
    assert r.status_code == 200

    r = await client.get("/v1/vouchers/mine", headers=PASSENGER)
    assert [v["code"] for v in r.json()] == ["RIDE10"]

    r = await client.post("/v1/vouchers/validate", headers=PASSENGER, json={"code": "RIDE10", "amount": 2000})
    assert r.json() == {"code": "RIDE10", "discount_amount": 100.0, "final_amount": 1900.0}

    r = await client.post("/v1/vouchers", headers=PASSENGER, json={
        "code": "FREE", "discount_type": "fixed_amount", "discount_value": 50, "expires_at": "2999-01-01T00:00:00Z",
    })
    assert r.status_code == 403


async def test_drivers_manage_only_their_own_entry(client):
    r = await client.post("/v1/drivers/2/location", headers=DRIVER, json={"lat": COLOMBO[0], "lon": COLOMBO[1]})
    assert r.status_code == 403
    await register_driver(client)
    r = await client.post("/v1/drivers/1/availability", headers=DRIVER, json={"available": False})
    assert r.status_code == 200 and r.json() == {"driver_id": 1, "available": False}


async def test_driver_discovery_service(engine, conn, make_driver):
    await make_driver(1, gender="female", accepts_restricted_rides=True)
    await make_driver(2)

    async def override_get_conn():
        async with engine.connect() as c:
            yield c

    driver_discovery.app.dependency_overrides[driver_discovery.get_conn] = override_get_conn
    transport = httpx.ASGITransport(app=driver_discovery.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://discovery") as c:
        r = await c.post("/match", json={"pickup_lat": COLOMBO[0], "pickup_lon": COLOMBO[1], "restricted": True})
        assert r.status_code == 200
        assert [d["driver_id"] for d in r.json()["drivers"]] == [1]

        r = await c.post("/match", json={"pickup_lat": 123.0, "pickup_lon": COLOMBO[1]})
        assert r.status_code == 422 and r.json()["error"] == "validation_error"

        r = await c.get("/health")
        assert r.json() == {"status": "ok", "redis": True}
    driver_discovery.app.dependency_overrides.clear()
