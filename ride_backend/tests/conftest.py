import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")

from datetime import datetime, timezone  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import src.api.models.ride  # noqa: E402,F401
from src.api.clock import FixedClock  # noqa: E402
from src.api.db import get_db  # noqa: E402
from src.api.deps import get_clock, get_geo_sink  # noqa: E402
from src.api.main import app  # noqa: E402
from src.api.models.base import Base  # noqa: E402
from src.api.services.geo_markers import SessionGeoMarkerSink  # noqa: E402

# Thursday 2024-05-16 05:00 UTC is 08:00 in the pricing region: weekday peak.
THURSDAY_PEAK_UTC = datetime(2024, 5, 16, 5, 0, tzinfo=timezone.utc)

RIYADH_PICKUP = {"pickup_lat": 24.7136, "pickup_lng": 46.6753, "pickup_address": "Olaya St"}
RIYADH_DROPOFF = {"dropoff_lat": 24.7243, "dropoff_lng": 46.7054, "dropoff_address": "King Fahd Rd"}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FixedClock(THURSDAY_PEAK_UTC)


@pytest.fixture
def geo_sink(session_factory):
    return SessionGeoMarkerSink(session_factory)


@pytest.fixture
def ride_payload():
    return {**RIYADH_PICKUP, **RIYADH_DROPOFF}


@pytest.fixture
def rider_id():
    return uuid4()


@pytest.fixture
def driver_id():
    return uuid4()


@pytest.fixture
def client(session_factory, clock, geo_sink):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_geo_sink] = lambda: geo_sink
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
