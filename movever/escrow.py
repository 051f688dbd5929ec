"""Traveler wallet escrow.

Captured earnings sit in `pending_balance` until delivery is confirmed, then
move to `balance` (available). Each move is guarded by a conditional update
on the payment row, so webhook redelivery or a replayed confirmation cannot
apply it twice. Balance arithmetic happens inside the UPDATE statement.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional
import logging

from sqlalchemy import select, update, insert, and_
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from . import models, schemas
from .cache import Clock, utcnow

logger = logging.getLogger(__name__)


class EscrowLedger:
    def __init__(self, engine: AsyncEngine, clock: Clock = utcnow):
        self.engine = engine
        self.clock = clock

    def _now(self) -> datetime:
        return self.clock().replace(tzinfo=None)

    async def capture(self, conn: AsyncConnection, reference: str,
                      provider_response: Optional[dict] = None) -> Optional[schemas.Payment]:
        """Mark a pending payment paid and credit the traveler's pending balance.

        Returns the payment when this call performed the capture, None when it
        was already paid, is unknown, or its match already has a paid payment.
        """
        p = models.payments
        already = p.alias("already_paid")
        now = self._now()
        # a second paid row for the same match would be escrowed but never released
        res = await conn.execute(
            update(p)
            .where(and_(
                p.c.reference == reference,
                p.c.status == models.PAY_PENDING,
                ~select(already.c.id)
                .where(and_(already.c.match_id == p.c.match_id, already.c.status == models.PAY_PAID))
                .correlate(p)
                .exists(),
            ))
            .values(status=models.PAY_PAID, paid_at=now, provider_response=provider_response)
        )
        if res.rowcount != 1:
            logger.info("capture_skipped: reference=%s not pending or match already paid", reference)
            return None

        row = (await conn.execute(select(p).where(p.c.reference == reference))).first()
        payment = schemas.Payment.model_validate(dict(row._mapping))
        await self._apply(conn, payment.traveler_id, now, pending=payment.traveler_earnings)
        logger.info("escrow_captured: payment=%s match=%s traveler=%s amount=%s",
                    payment.id, payment.match_id, payment.traveler_id, payment.traveler_earnings)
        return payment

    async def release(self, conn: AsyncConnection, match_id: int) -> Optional[Decimal]:
        """Move a completed match's earnings from pending to available, once."""
        p = models.payments
        row = (await conn.execute(
            select(p).where(and_(p.c.match_id == match_id, p.c.status == models.PAY_PAID)).order_by(p.c.id)
        )).first()
        if not row:
            logger.warning("escrow_release_skipped: match=%s has no paid payment", match_id)
            return None
        payment = schemas.Payment.model_validate(dict(row._mapping))

        now = self._now()
        res = await conn.execute(
            update(p).where(and_(p.c.id == payment.id, p.c.released_at.is_(None))).values(released_at=now)
        )
        if res.rowcount != 1:
            logger.info("escrow_release_skipped: match=%s payment=%s already released", match_id, payment.id)
            return None

        amount = payment.traveler_earnings
        await self._apply(conn, payment.traveler_id, now, pending=-amount, available=amount, earned=amount)
        logger.info("escrow_released: match=%s traveler=%s amount=%s", match_id, payment.traveler_id, amount)
        return amount

    async def _apply(self, conn: AsyncConnection, traveler_id: int, now: datetime,
                     pending: Decimal = Decimal("0"), available: Decimal = Decimal("0"),
                     earned: Decimal = Decimal("0")):
        w = models.wallets
        res = await conn.execute(
            update(w)
            .where(w.c.traveler_id == traveler_id)
            .values(
                pending_balance=w.c.pending_balance + pending,
                balance=w.c.balance + available,
                total_earned=w.c.total_earned + earned,
                updated_at=now,
            )
        )
        if res.rowcount == 0:
            await conn.execute(
                insert(w).values(
                    traveler_id=traveler_id,
                    pending_balance=pending,
                    balance=available,
                    total_earned=earned,
                    updated_at=now,
                )
            )

    async def get_wallet(self, traveler_id: int) -> schemas.Wallet:
        w = models.wallets
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(w).where(w.c.traveler_id == traveler_id))).first()
        if not row:
            return schemas.Wallet(traveler_id=traveler_id)
        m = row._mapping
        return schemas.Wallet(
            traveler_id=traveler_id,
            balance=m["balance"],
            pending_balance=m["pending_balance"],
            total_earned=m["total_earned"],
        )
