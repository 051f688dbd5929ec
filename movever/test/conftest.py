from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import create_async_engine

from movever import models
from movever.cache import MemoryKeyStore
from movever.config import Settings
from movever.db import init_db
from movever.geo import GeoLookupError
from movever.services import build_services


PLACES = {
    "Abuja": (9.0765, 7.3986),
    "Jos": (9.8965, 8.8583),
    "Keffi": (8.8486, 7.8736),
    "Akwanga": (8.9100, 8.4000),
    "Kaduna": (10.5105, 7.4165),
    "Lagos": (6.5244, 3.3792),
    "Ibadan": (7.3775, 3.9470),
}

# Abuja -> Keffi -> Akwanga -> Jos, roughly following the A2/A3 roads
ABUJA_JOS_ROUTE = [
    PLACES["Abuja"],
    (8.98, 7.65),
    (8.85, 7.87),
    PLACES["Akwanga"],
    (9.40, 8.65),
    PLACES["Jos"],
]

TRAVELER = 10
BUSINESS = 20
OUTSIDER = 99
TRIP_DAY = date(2026, 3, 10)


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class StaticGeo:
    """Geocoder and router answering from fixed tables."""

    def __init__(self, places, routes=None, fail=()):
        self.places = places
        self.routes = routes or {}
        self.fail = set(fail)
        self.geocode_calls = []
        self.route_calls = []

    async def geocode(self, address):
        self.geocode_calls.append(address)
        if address in self.fail:
            raise GeoLookupError(f"geocoder down for {address}")
        return self.places.get(address)

    async def route(self, start, end):
        self.route_calls.append((start, end))
        return self.routes.get((start, end))


class RecordingSink:
    def __init__(self):
        self.sent = []

    async def send(self, user_id, type, title, body, metadata):
        self.sent.append({"user_id": user_id, "type": type, "title": title, "body": body, "metadata": metadata})

    def types_for(self, user_id):
        return [n["type"] for n in self.sent if n["user_id"] == user_id]


class RecordingMailer:
    def __init__(self):
        self.sent = []

    async def send(self, to, subject, body):
        self.sent.append({"to": to, "subject": subject, "body": body})

    def subjects_for(self, address):
        return [m["subject"] for m in self.sent if m["to"] == address]


class Seeder:
    def __init__(self, engine):
        self.engine = engine
        self._tick = 0

    def _created(self):
        # strictly increasing creation times keep recency ordering deterministic
        self._tick += 1
        return datetime(2026, 3, 1, 12, 0) + timedelta(minutes=self._tick)

    async def _insert(self, table, **values):
        async with self.engine.begin() as conn:
            res = await conn.execute(insert(table).returning(table.c[list(table.primary_key)[0].name]).values(**values))
            return res.scalar_one()

    async def user(self, user_id, verified=False, name=None, push_token=None):
        return await self._insert(
            models.users, id=user_id, full_name=name or f"user {user_id}", email=f"u{user_id}@example.com",
            is_verified=verified, push_token=push_token,
        )

    async def trip(self, traveler_id=TRAVELER, origin="Abuja", destination="Jos", departure_date=TRIP_DAY,
                   departure_time="08:00", space="medium", status=models.TRIP_ACTIVE):
        return await self._insert(
            models.trips, traveler_id=traveler_id, origin=origin, destination=destination,
            departure_date=departure_date, departure_time=departure_time, available_space=space,
            status=status, created_at=self._created(),
        )

    async def request(self, business_id=BUSINESS, origin="Abuja", destination="Jos", delivery_date=TRIP_DAY,
                      size="small", cost=Decimal("10000.00"), status=models.REQUEST_PENDING):
        return await self._insert(
            models.delivery_requests, business_id=business_id, origin=origin, destination=destination,
            delivery_date=delivery_date, package_size=size, estimated_cost=cost, status=status,
            created_at=self._created(),
        )

    async def payment(self, match_id, reference, amount=Decimal("10000.00"), business_id=BUSINESS,
                      traveler_id=TRAVELER, status=models.PAY_PENDING):
        return await self._insert(
            models.payments, match_id=match_id, business_id=business_id, traveler_id=traveler_id,
            amount=amount, commission=amount * Decimal("0.05"), traveler_earnings=amount * Decimal("0.95"),
            reference=reference, authorization_url=f"https://pay.test/{reference}", status=status,
            created_at=self._created(),
        )

    async def notification(self, user_id, type="match_requested", title="New Match Request!", is_read=False):
        return await self._insert(
            models.notifications, user_id=user_id, type=type, title=title, message=f"{type} for {user_id}",
            metadata={}, is_read=is_read, created_at=self._created(),
        )

    async def fetch(self, table, row_id):
        pk = list(table.primary_key)[0]
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(table).where(pk == row_id))).first()
        return dict(row._mapping) if row else None


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'movever.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def geo():
    return StaticGeo(PLACES, {(PLACES["Abuja"], PLACES["Jos"]): ABUJA_JOS_ROUTE})


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def settings():
    return Settings(DATABASE_URL="sqlite+aiosqlite://", OTC_BACKEND="memory",
                    PAYSTACK_SECRET_KEY="mock_paystack_secret", PUSH_URL="")


@pytest.fixture
async def services(settings, engine, clock, geo, sink, mailer):
    svc = build_services(settings, engine=engine, store=MemoryKeyStore(clock), geocoder=geo, router=geo,
                         sink=sink, mailer=mailer, clock=clock)
    yield svc
    await svc.notifier.drain()
    await svc.http.aclose()


@pytest.fixture
async def seed(engine):
    s = Seeder(engine)
    await s.user(TRAVELER, name="Tunde Traveler")
    await s.user(BUSINESS, name="Bola Business")
    return s
