"""Trips posted by travelers and delivery requests posted by businesses."""
from datetime import datetime
from decimal import Decimal
from typing import List
import logging

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from . import models, schemas
from .cache import Clock, utcnow
from .errors import InvalidTransition, NotAuthorized, NotFound, StateConflict
from .notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

# matches in these states hold the traveler to the trip
COMMITTED = (models.MATCH_ACCEPTED, models.MATCH_PICKUP_CONFIRMED)


class PostingService:
    def __init__(self, engine: AsyncEngine, notifier: NotificationDispatcher, clock: Clock = utcnow):
        self.engine = engine
        self.notifier = notifier
        self.clock = clock

    def _now(self) -> datetime:
        return self.clock().replace(tzinfo=None)

    async def _load_trip(self, conn: AsyncConnection, trip_id: int) -> schemas.Trip:
        row = (await conn.execute(select(models.trips).where(models.trips.c.id == trip_id))).first()
        if not row:
            raise NotFound(f"Trip {trip_id} not found")
        return schemas.Trip.model_validate(dict(row._mapping))

    async def _owned_trip(self, conn: AsyncConnection, trip_id: int, traveler_id: int) -> schemas.Trip:
        trip = await self._load_trip(conn, trip_id)
        if trip.traveler_id != traveler_id:
            raise NotAuthorized(f"Trip {trip_id} belongs to another traveler")
        return trip

    async def _match_count(self, conn: AsyncConnection, trip_id: int, statuses=None) -> int:
        m = models.matches
        sel = select(func.count()).select_from(m).where(m.c.trip_id == trip_id)
        if statuses:
            sel = sel.where(m.c.status.in_(list(statuses)))
        return (await conn.execute(sel)).scalar_one()

    # ---- trips ----

    async def create_trip(self, traveler_id: int, data: schemas.TripCreate) -> schemas.Trip:
        t = models.trips
        async with self.engine.begin() as conn:
            res = await conn.execute(
                insert(t).returning(t.c.id).values(
                    traveler_id=traveler_id, status=models.TRIP_ACTIVE, created_at=self._now(),
                    **data.model_dump(),
                )
            )
            trip = await self._load_trip(conn, res.scalar_one())

        logger.info("trip_created: trip=%s traveler=%s %s->%s", trip.id, traveler_id, trip.origin, trip.destination)
        self.notifier.email(
            traveler_id, "Trip Posted Successfully",
            f"Your trip from {trip.origin} to {trip.destination} on {trip.departure_date} has been posted.",
        )
        return trip

    async def update_trip(self, trip_id: int, traveler_id: int, data: schemas.TripUpdate) -> schemas.Trip:
        changes = data.model_dump(exclude_unset=True)
        t = models.trips
        async with self.engine.begin() as conn:
            trip = await self._owned_trip(conn, trip_id, traveler_id)
            if trip.status != models.TRIP_ACTIVE:
                raise InvalidTransition(f"Trip {trip_id} is {trip.status} and can no longer be edited")
            moved = any(k in changes and changes[k] != getattr(trip, k) for k in ("origin", "destination"))
            if moved and await self._match_count(conn, trip_id):
                raise StateConflict("Origin and destination cannot change once the trip has matches")
            if changes:
                await conn.execute(update(t).where(t.c.id == trip_id).values(**changes))
            trip = await self._load_trip(conn, trip_id)
        logger.info("trip_updated: trip=%s fields=%s", trip_id, sorted(changes))
        return trip

    async def cancel_trip(self, trip_id: int, traveler_id: int) -> schemas.Trip:
        """Cancel an active trip. Pending proposals on it are declined; a
        trip with an accepted or picked-up match cannot be cancelled."""
        t, m = models.trips, models.matches
        async with self.engine.begin() as conn:
            trip = await self._owned_trip(conn, trip_id, traveler_id)
            if await self._match_count(conn, trip_id, COMMITTED):
                raise StateConflict(f"Trip {trip_id} has a delivery in progress and cannot be cancelled")
            res = await conn.execute(
                update(t)
                .where(and_(t.c.id == trip_id, t.c.status == models.TRIP_ACTIVE))
                .values(status=models.TRIP_CANCELLED)
            )
            if res.rowcount != 1:
                raise InvalidTransition(f"Trip {trip_id} is {trip.status} and cannot be cancelled")
            declined = (await conn.execute(
                select(m.c.id, m.c.business_id)
                .where(and_(m.c.trip_id == trip_id, m.c.status == models.MATCH_PENDING))
            )).all()
            await conn.execute(
                update(m)
                .where(and_(m.c.trip_id == trip_id, m.c.status == models.MATCH_PENDING))
                .values(status=models.MATCH_DECLINED)
            )
            trip = await self._load_trip(conn, trip_id)

        logger.info("trip_cancelled: trip=%s declined_matches=%d", trip_id, len(declined))
        for match_id, business_id in declined:
            self.notifier.notify(
                business_id, "match_declined", "Match Declined",
                "The traveler cancelled the trip for your match request.",
                {"matchId": match_id, "tripId": trip_id, "status": models.MATCH_DECLINED},
            )
        return trip

    async def trips_for_traveler(self, traveler_id: int) -> List[schemas.TripSummary]:
        t, m, p = models.trips, models.matches, models.payments
        requests = (
            select(func.count(m.c.id)).where(m.c.trip_id == t.c.id).correlate(t).scalar_subquery()
        )
        earnings = (
            select(func.coalesce(func.sum(p.c.traveler_earnings), 0))
            .select_from(p.join(m, p.c.match_id == m.c.id))
            .where(and_(m.c.trip_id == t.c.id, p.c.status == models.PAY_PAID))
            .correlate(t)
            .scalar_subquery()
        )
        sel = (
            select(t, requests.label("request_count"), earnings.label("total_earnings"))
            .where(t.c.traveler_id == traveler_id)
            .order_by(t.c.created_at.desc(), t.c.id.desc())
        )
        async with self.engine.connect() as conn:
            res = await conn.execute(sel)
            out = []
            for row in res:
                values = dict(row._mapping)
                count = values.pop("request_count")
                earned = values.pop("total_earnings")
                out.append(schemas.TripSummary(
                    trip=schemas.Trip.model_validate(values),
                    request_count=count,
                    total_earnings=Decimal(str(earned)).quantize(Decimal("0.01")),
                ))
            return out

    # ---- delivery requests ----

    async def create_request(self, business_id: int, data: schemas.RequestCreate) -> schemas.DeliveryRequest:
        dr = models.delivery_requests
        async with self.engine.begin() as conn:
            res = await conn.execute(
                insert(dr).returning(dr.c.id).values(
                    business_id=business_id, status=models.REQUEST_PENDING, created_at=self._now(),
                    **data.model_dump(),
                )
            )
            row = (await conn.execute(select(dr).where(dr.c.id == res.scalar_one()))).first()
        req = schemas.DeliveryRequest.model_validate(dict(row._mapping))

        logger.info("request_created: request=%s business=%s %s->%s", req.id, business_id, req.origin, req.destination)
        self.notifier.email(
            business_id, "Order Received",
            f"Your delivery request from {req.origin} to {req.destination} has been received "
            f"and is now pending matching.",
        )
        return req

    async def requests_for_business(self, business_id: int) -> List[schemas.RequestSummary]:
        dr, m, u = models.delivery_requests, models.matches, models.users
        # the traveler on the live match, if any
        traveler = (
            select(u.c.full_name)
            .select_from(m.join(u, u.c.id == m.c.traveler_id))
            .where(and_(m.c.delivery_request_id == dr.c.id, m.c.status != models.MATCH_DECLINED))
            .order_by(m.c.id.desc())
            .limit(1)
            .correlate(dr)
            .scalar_subquery()
        )
        sel = (
            select(dr, traveler.label("traveler_name"))
            .where(dr.c.business_id == business_id)
            .order_by(dr.c.created_at.desc(), dr.c.id.desc())
        )
        async with self.engine.connect() as conn:
            res = await conn.execute(sel)
            out = []
            for row in res:
                values = dict(row._mapping)
                name = values.pop("traveler_name")
                out.append(schemas.RequestSummary(
                    request=schemas.DeliveryRequest.model_validate(values),
                    traveler_name=name or "Pending",
                ))
            return out
