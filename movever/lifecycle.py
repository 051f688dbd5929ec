"""Match lifecycle: pending -> accepted -> pickup_confirmed -> completed.

`declined` is reachable from pending and `disputed` from any non-terminal
state. Every transition is a conditional UPDATE on the match's current
status, so of two concurrent callers exactly one succeeds.
"""
from datetime import datetime
from typing import Iterable, List, Optional
import logging

from sqlalchemy import select, update, insert, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from . import models, schemas
from .cache import Clock, utcnow
from .directory import IdentityDirectory
from .errors import (
    DuplicateMatch, InvalidTransition, NotAuthorized, NotFound, NotPending, PaymentRequired,
)
from .escrow import EscrowLedger
from .notifications import NotificationDispatcher
from .otc import CodeIssuer, OneTimeCode

logger = logging.getLogger(__name__)


class MatchLifecycle:
    def __init__(self, engine: AsyncEngine, codes: CodeIssuer, ledger: EscrowLedger,
                 notifier: NotificationDispatcher, directory: IdentityDirectory, clock: Clock = utcnow):
        self.engine = engine
        self.codes = codes
        self.ledger = ledger
        self.notifier = notifier
        self.directory = directory
        self.clock = clock

    def _now(self) -> datetime:
        return self.clock().replace(tzinfo=None)

    async def _load(self, conn: AsyncConnection, match_id: int) -> schemas.Match:
        row = (await conn.execute(select(models.matches).where(models.matches.c.id == match_id))).first()
        if not row:
            raise NotFound(f"Match {match_id} not found")
        return schemas.Match.model_validate(dict(row._mapping))

    async def _transition(self, conn: AsyncConnection, match_id: int, from_states: Iterable[str],
                          to_state: str, **values) -> bool:
        m = models.matches
        res = await conn.execute(
            update(m)
            .where(and_(m.c.id == match_id, m.c.status.in_(list(from_states))))
            .values(status=to_state, **values)
        )
        return res.rowcount == 1

    async def _paid_payment(self, conn: AsyncConnection, match_id: int) -> Optional[schemas.Payment]:
        p = models.payments
        row = (await conn.execute(
            select(p).where(and_(p.c.match_id == match_id, p.c.status == models.PAY_PAID)).limit(1)
        )).first()
        return schemas.Payment.model_validate(dict(row._mapping)) if row else None

    @staticmethod
    def _ensure_party(match: schemas.Match, user_id: int):
        if user_id not in (match.traveler_id, match.business_id):
            raise NotAuthorized(f"User {user_id} is not a party to match {match.id}")

    @staticmethod
    def _ensure_traveler(match: schemas.Match, user_id: int):
        # the traveler enters the code the business handed over
        if user_id != match.traveler_id:
            raise NotAuthorized(f"Only the traveler can confirm match {match.id}")

    async def propose(self, trip_id: int, request_id: int, requester_id: int) -> schemas.Match:
        m = models.matches
        try:
            async with self.engine.begin() as conn:
                existing = (await conn.execute(
                    select(m.c.id).where(and_(m.c.trip_id == trip_id, m.c.delivery_request_id == request_id))
                )).first()
                if existing:
                    raise DuplicateMatch(trip_id, request_id)

                trip = (await conn.execute(select(models.trips).where(models.trips.c.id == trip_id))).first()
                req = (await conn.execute(
                    select(models.delivery_requests).where(models.delivery_requests.c.id == request_id)
                )).first()
                if not trip or not req:
                    raise NotFound("Trip or request not found")
                trip, req = trip._mapping, req._mapping
                if requester_id not in (trip["traveler_id"], req["business_id"]):
                    raise NotAuthorized("Only the traveler or the business can propose this match")
                if trip["status"] != models.TRIP_ACTIVE:
                    raise InvalidTransition(f"Trip {trip_id} is not active")
                if req["status"] != models.REQUEST_PENDING:
                    raise InvalidTransition(f"Request {request_id} is not pending")

                res = await conn.execute(
                    insert(m).returning(m.c.id).values(
                        trip_id=trip_id,
                        delivery_request_id=request_id,
                        traveler_id=trip["traveler_id"],
                        business_id=req["business_id"],
                        status=models.MATCH_PENDING,
                        created_at=self._now(),
                    )
                )
                match_id = res.scalar_one()
                match = await self._load(conn, match_id)
        except IntegrityError:
            # lost a race against a concurrent proposal for the same pair
            raise DuplicateMatch(trip_id, request_id)

        logger.info("match_proposed: match=%s trip=%s request=%s by=%s", match.id, trip_id, request_id, requester_id)
        self.notifier.notify(
            match.traveler_id, "match_requested", "New Match Request!",
            "A business wants you to deliver a package on your trip.",
            {"matchId": match.id, "tripId": trip_id, "requestId": request_id, "status": match.status},
        )
        self.notifier.email(
            match.traveler_id, "New Delivery Request!",
            "A business has requested you to deliver a package on your upcoming trip. "
            "Log in to MOVEVER to accept or decline.",
        )
        return match

    async def accept(self, match_id: int, user_id: int) -> schemas.Match:
        async with self.engine.begin() as conn:
            match = await self._load(conn, match_id)
            self._ensure_party(match, user_id)
            if not await self._transition(conn, match_id, [models.MATCH_PENDING], models.MATCH_ACCEPTED):
                logger.warning("accept_rejected: match=%s status=%s", match_id, match.status)
                raise NotPending(match_id, match.status)
            await conn.execute(
                update(models.delivery_requests)
                .where(models.delivery_requests.c.id == match.delivery_request_id)
                .values(status=models.REQUEST_MATCHED)
            )
            match = await self._load(conn, match_id)

        logger.info("match_accepted: match=%s by=%s", match_id, user_id)
        self.notifier.notify(
            match.business_id, "match_accepted", "Match Accepted!",
            "The traveler has accepted your delivery request. Please proceed to payment to secure the delivery.",
            {"matchId": match_id, "tripId": match.trip_id, "requestId": match.delivery_request_id, "status": match.status},
        )
        self.notifier.email(
            match.business_id, "Delivery Match Accepted",
            "Match confirmed!\n\nYou can now request a pickup OTP in the app when the traveler arrives.",
        )
        return match

    async def decline(self, match_id: int, user_id: int) -> schemas.Match:
        async with self.engine.begin() as conn:
            match = await self._load(conn, match_id)
            self._ensure_party(match, user_id)
            if not await self._transition(conn, match_id, [models.MATCH_PENDING], models.MATCH_DECLINED):
                logger.warning("decline_rejected: match=%s status=%s", match_id, match.status)
                raise NotPending(match_id, match.status)
            match = await self._load(conn, match_id)

        logger.info("match_declined: match=%s by=%s", match_id, user_id)
        other = match.business_id if user_id == match.traveler_id else match.traveler_id
        self.notifier.notify(
            other, "match_declined", "Match Declined",
            "Your match request was declined.",
            {"matchId": match_id, "status": match.status},
        )
        return match

    async def flag_disputed(self, match_id: int) -> schemas.Match:
        open_states = [models.MATCH_PENDING, models.MATCH_ACCEPTED, models.MATCH_PICKUP_CONFIRMED]
        async with self.engine.begin() as conn:
            match = await self._load(conn, match_id)
            if not await self._transition(conn, match_id, open_states, models.MATCH_DISPUTED):
                raise InvalidTransition(f"Match {match_id} is {match.status} and cannot be disputed")
            match = await self._load(conn, match_id)
        logger.info("match_disputed: match=%s", match_id)
        return match

    async def request_code(self, match_id: int, phase: str, user_id: int) -> OneTimeCode:
        required = models.MATCH_ACCEPTED if phase == models.PHASE_PICKUP else models.MATCH_PICKUP_CONFIRMED
        async with self.engine.connect() as conn:
            match = await self._load(conn, match_id)
            self.codes.ensure_party(match, user_id)
            if match.status != required:
                raise InvalidTransition(f"Cannot request a {phase} code while match is {match.status}")
            # funds must be secured before the traveler can prove pickup
            if phase == models.PHASE_PICKUP and not await self._paid_payment(conn, match_id):
                logger.warning("code_blocked_unpaid: match=%s", match_id)
                raise PaymentRequired(
                    "Payment required before requesting pickup code. Please ask the business to complete payment."
                )

        otc = await self.codes.issue(match, phase, user_id)

        # the business holds the code and hands it to the traveler
        label = "Pickup" if phase == models.PHASE_PICKUP else "Delivery"
        self.notifier.notify(
            match.business_id, "otp_received", f"{label} Code Requested",
            f"Share this code with the traveler: {otc.code}. Valid for {self.codes.ttl_sec // 60} minutes.",
            {"matchId": match_id, "type": phase, "otp": otc.code, "requestId": match.delivery_request_id},
        )
        self.notifier.email(
            match.business_id, f"{label} Verification Code",
            f"The traveler has requested the {phase} verification code.\n\nYour code is: {otc.code}\n\n"
            f"Valid for {self.codes.ttl_sec // 60} minutes. Share this with the traveler in person.",
        )
        return otc

    async def confirm_pickup(self, match_id: int, code: str, user_id: int) -> schemas.Match:
        async with self.engine.connect() as conn:
            match = await self._load(conn, match_id)
        self._ensure_traveler(match, user_id)
        if match.status != models.MATCH_ACCEPTED:
            raise InvalidTransition(f"Cannot confirm pickup while match is {match.status}")
        otc = await self.codes.validate(match_id, models.PHASE_PICKUP, code)

        async with self.engine.begin() as conn:
            if not await self._paid_payment(conn, match_id):
                raise PaymentRequired("Payment must be completed before pickup can be confirmed.")
            ok = await self._transition(
                conn, match_id, [models.MATCH_ACCEPTED], models.MATCH_PICKUP_CONFIRMED,
                pickup_confirmed_at=self._now(),
            )
            if not ok:
                raise InvalidTransition(f"Match {match_id} changed state during pickup confirmation")
            await conn.execute(
                update(models.delivery_requests)
                .where(models.delivery_requests.c.id == match.delivery_request_id)
                .values(status=models.REQUEST_IN_TRANSIT)
            )
            match = await self._load(conn, match_id)
        await self.codes.consume(otc)

        logger.info("pickup_confirmed: match=%s", match_id)
        self.notifier.notify(
            match.business_id, "package_in_transit", "Package Picked Up!",
            "The traveler has confirmed pickup. Your package is now in transit.",
            {"matchId": match_id, "requestId": match.delivery_request_id},
        )
        return match

    async def confirm_delivery(self, match_id: int, code: str, user_id: int) -> schemas.Match:
        async with self.engine.connect() as conn:
            match = await self._load(conn, match_id)
        self._ensure_traveler(match, user_id)
        if match.status != models.MATCH_PICKUP_CONFIRMED:
            logger.warning("delivery_rejected: match=%s status=%s", match_id, match.status)
            raise InvalidTransition(f"Cannot confirm delivery while match is {match.status}")
        otc = await self.codes.validate(match_id, models.PHASE_DELIVERY, code)

        async with self.engine.begin() as conn:
            ok = await self._transition(
                conn, match_id, [models.MATCH_PICKUP_CONFIRMED], models.MATCH_COMPLETED,
                delivery_confirmed_at=self._now(),
            )
            if not ok:
                raise InvalidTransition(f"Match {match_id} changed state during delivery confirmation")
            await conn.execute(
                update(models.delivery_requests)
                .where(models.delivery_requests.c.id == match.delivery_request_id)
                .values(status=models.REQUEST_DELIVERED)
            )
            await conn.execute(
                update(models.trips).where(models.trips.c.id == match.trip_id).values(status=models.TRIP_COMPLETED)
            )
            await self.ledger.release(conn, match_id)
            match = await self._load(conn, match_id)
        await self.codes.consume(otc)

        logger.info("delivery_confirmed: match=%s", match_id)
        self.notifier.notify(
            match.business_id, "package_delivered", "Package Delivered!",
            "Your package has been successfully delivered and confirmed.",
            {"matchId": match_id, "requestId": match.delivery_request_id},
        )
        return match

    async def get_match(self, match_id: int) -> schemas.MatchDetail:
        async with self.engine.connect() as conn:
            match = await self._load(conn, match_id)
            detail = await self._detail(conn, match)
        detail.traveler = await self.directory.profile(match.traveler_id)
        detail.business = await self.directory.profile(match.business_id)
        return detail

    async def _detail(self, conn: AsyncConnection, match: schemas.Match) -> schemas.MatchDetail:
        dr = models.delivery_requests
        p = models.payments
        req = (await conn.execute(select(dr).where(dr.c.id == match.delivery_request_id))).first()
        pay = (await conn.execute(select(p).where(p.c.match_id == match.id).order_by(p.c.id.desc()))).first()
        return schemas.MatchDetail(
            match=match,
            request=schemas.DeliveryRequest.model_validate(dict(req._mapping)) if req else None,
            payment=schemas.Payment.model_validate(dict(pay._mapping)) if pay else None,
        )

    async def list_for_trip(self, trip_id: int) -> List[schemas.MatchDetail]:
        m = models.matches
        async with self.engine.connect() as conn:
            res = await conn.execute(select(m).where(m.c.trip_id == trip_id).order_by(m.c.id))
            found = [schemas.Match.model_validate(dict(row._mapping)) for row in res]
            return [await self._detail(conn, match) for match in found]

    async def deliveries_for_traveler(self, traveler_id: int) -> List[schemas.Match]:
        m = models.matches
        sel = (
            select(m)
            .where(and_(m.c.traveler_id == traveler_id, m.c.status.not_in([models.MATCH_PENDING, models.MATCH_DECLINED])))
            .order_by(m.c.id.desc())
        )
        async with self.engine.connect() as conn:
            res = await conn.execute(sel)
            return [schemas.Match.model_validate(dict(row._mapping)) for row in res]
