import json
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine

import ridematch.cache as cache
import ridematch.directory as directory
import ridematch.events as events
import ridematch.models as models
from ridematch import bidding, journeys, rides
from ridematch.auth import Caller

COLOMBO = (6.9271, 79.8612)
DESTINATION = (6.8649, 79.8997)


class FakeRedis:
    """In-memory stand-in for the handful of redis commands the services use."""

    def __init__(self):
        self.hashes = {}
        self.geo = {}
        self.published = []

    async def hset(self, key, mapping=None):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in (mapping or {}).items()})

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def expire(self, key, seconds):
        return True

    async def exists(self, key):
        return int(key in self.hashes)

    async def delete(self, key):
        self.hashes.pop(key, None)

    async def zrem(self, key, member):
        self.geo.pop(str(member), None)

    async def zrange(self, key, start, end):
        return list(self.geo)

    async def execute_command(self, command, *args):
        if command == "GEOADD":
            _, lon, lat, member = args
            self.geo[str(member)] = (float(lat), float(lon))
            return 1
        if command == "GEORADIUS":
            _, lon, lat, radius, unit = args[:5]
            found = []
            for member, pos in self.geo.items():
                dist = directory.haversine_km((float(lat), float(lon)), pos)
                if dist <= float(radius):
                    found.append([member, dist])
            return sorted(found, key=lambda e: e[1])
        raise NotImplementedError(command)

    async def ping(self):
        return True

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    def event_names(self):
        return [json.loads(message)["event"] for _, message in self.published]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(directory, "redis_client", fake)
    monkeypatch.setattr(events, "redis_client", fake)
    monkeypatch.setattr(cache, "redis_client", fake)
    return fake


@pytest.fixture
async def engine(tmp_path):
    # file database so concurrent connections see each other's commits
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ridematch.db'}")

    # BEGIN IMMEDIATE takes the write lock up front, the closest SQLite gets to SELECT ... FOR UPDATE
    @event.listens_for(eng.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with eng.begin() as conn:
        await conn.run_sync(models.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def conn(engine):
    async with engine.connect() as c:
        yield c


@pytest.fixture
def make_driver(conn):
    async def _make(driver_id, location=COLOMBO, **profile):
        profile.setdefault("name", f"driver {driver_id}")
        profile.setdefault("vehicle_type", "car")
        profile.setdefault("rating", 4.5)
        driver = await directory.register_driver(conn, driver_id, **profile)
        if location is not None:
            await directory.update_driver_location(driver_id, *location)
        return driver
    return _make


@pytest.fixture
def make_journey(conn):
    async def _make(passenger_id, origin=COLOMBO, destination=DESTINATION, **kw):
        return await journeys.create_journey(conn, Caller(passenger_id, "passenger"), origin, destination, **kw)
    return _make


@pytest.fixture
def matched_ride(conn, make_driver, make_journey):
    """Journey, accepted bid and the resulting ride for one passenger/driver pair."""
    async def _make(passenger_id=100, driver_id=1, amount=1500.0, register=True, **journey_kw):
        if register:
            await make_driver(driver_id)
        journey = await make_journey(passenger_id, **journey_kw)
        bid = await bidding.submit_bid(conn, Caller(driver_id, "driver"), journey["id"], amount)
        result = await bidding.accept_bid(conn, Caller(passenger_id, "passenger"), bid["id"])
        return result["ride"]
    return _make


@pytest.fixture
def completed_ride(conn, matched_ride):
    async def _make(passenger_id=100, driver_id=1, amount=1500.0, final_fare=None, **kw):
        ride = await matched_ride(passenger_id, driver_id, amount, **kw)
        driver = Caller(driver_id, "driver")
        await rides.confirm_ride(conn, driver, ride["id"])
        await rides.mark_arrived(conn, driver, ride["id"])
        await rides.start_ride(conn, driver, ride["id"])
        return await rides.end_ride(conn, driver, ride["id"], final_fare=final_fare or amount, distance_meters=8200)
    return _make
