import hashlib
import hmac
import json
import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Protocol
import logging

import httpx
from sqlalchemy import select, insert, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from . import models, schemas
from .cache import Clock, utcnow
from .errors import ExternalServiceError, InvalidTransition, NotAuthorized, NotFound, StateConflict, ValidationFailed
from .escrow import EscrowLedger
from .notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

MOCK_SECRET = "mock_paystack_secret"
CENTS = Decimal("0.01")


class PaymentGateway(Protocol):
    async def initialize(self, email: str, amount: Decimal, metadata: dict) -> dict: ...

    async def verify(self, reference: str) -> dict: ...


class MockGateway:
    """Gateway used when no real secret key is configured. Every MOCK_
    reference verifies as successful."""

    async def initialize(self, email: str, amount: Decimal, metadata: dict) -> dict:
        reference = f"MOCK_{uuid.uuid4().hex[:16]}"
        return {"authorization_url": "https://standard.paystack.co/close", "access_code": "mock_code", "reference": reference}

    async def verify(self, reference: str) -> dict:
        status = "success" if reference.startswith("MOCK_") else "failed"
        return {"status": status, "reference": reference, "gateway_response": "Mock"}


class PaystackGateway:
    def __init__(self, client: httpx.AsyncClient, secret_key: str, base_url: str, timeout: float = 10.0):
        self.client = client
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    async def initialize(self, email: str, amount: Decimal, metadata: dict) -> dict:
        # amounts go over the wire in the minor unit
        minor = int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))
        try:
            resp = await self.client.post(
                f"{self.base_url}/transaction/initialize",
                json={"email": email, "amount": minor, "metadata": metadata},
                headers=self._headers(),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()["data"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error("paystack_initialize_failed: error=%s", e)
            raise ExternalServiceError("Payment initialization failed") from e

    async def verify(self, reference: str) -> dict:
        try:
            resp = await self.client.get(
                f"{self.base_url}/transaction/verify/{reference}",
                headers=self._headers(),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()["data"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error("paystack_verify_failed: reference=%s error=%s", reference, e)
            raise ExternalServiceError("Payment verification failed") from e


def sign_webhook(secret_key: str, body: bytes) -> str:
    return hmac.new(secret_key.encode(), body, hashlib.sha512).hexdigest()


class PaymentService:
    def __init__(self, engine: AsyncEngine, gateway: PaymentGateway, ledger: EscrowLedger,
                 notifier: NotificationDispatcher, secret_key: str, commission_rate: float = 0.05,
                 clock: Clock = utcnow):
        self.engine = engine
        self.gateway = gateway
        self.ledger = ledger
        self.notifier = notifier
        self.secret_key = secret_key
        self.commission_rate = Decimal(str(commission_rate))
        self.clock = clock

    def split(self, amount: Decimal) -> tuple:
        """Return (commission, traveler_earnings) for a gross amount."""
        commission = (amount * self.commission_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
        return commission, amount - commission

    async def initialize_payment(self, match_id: int, business_id: int, email: str) -> schemas.PaymentInitOut:
        """Start checkout for an accepted match.

        A pending attempt for the match is handed back as is, so retries do
        not open a second charge for the same delivery.
        """
        m = models.matches
        dr = models.delivery_requests
        p = models.payments
        sel = (
            select(m.c.business_id, m.c.traveler_id, m.c.status, dr.c.estimated_cost)
            .join(dr, dr.c.id == m.c.delivery_request_id)
            .where(m.c.id == match_id)
        )
        async with self.engine.connect() as conn:
            row = (await conn.execute(sel)).first()
            if not row:
                raise NotFound(f"Match {match_id} not found")
            attempts = (await conn.execute(
                select(p.c.reference, p.c.status, p.c.authorization_url, p.c.access_code)
                .where(p.c.match_id == match_id)
                .order_by(p.c.id.desc())
            )).all()
        info = row._mapping
        if info["business_id"] != business_id:
            raise NotAuthorized("Only the business on this match can pay for it")
        if info["status"] != models.MATCH_ACCEPTED:
            raise InvalidTransition(f"Match must be accepted before payment (status: {info['status']})")
        if any(a.status == models.PAY_PAID for a in attempts):
            raise StateConflict(f"Match {match_id} is already paid")
        pending = next((a for a in attempts if a.status == models.PAY_PENDING and a.authorization_url), None)
        if pending is not None:
            logger.info("payment_reused: match=%s reference=%s", match_id, pending.reference)
            return schemas.PaymentInitOut(
                authorization_url=pending.authorization_url, access_code=pending.access_code,
                reference=pending.reference,
            )

        amount = Decimal(info["estimated_cost"]).quantize(CENTS)
        if amount <= 0:
            raise ValidationFailed("Delivery request has no payable amount")
        commission, earnings = self.split(amount)

        data = await self.gateway.initialize(
            email, amount, {"match_id": match_id, "business_id": business_id, "traveler_id": info["traveler_id"]}
        )
        async with self.engine.begin() as conn:
            await conn.execute(
                insert(p).values(
                    match_id=match_id,
                    business_id=business_id,
                    traveler_id=info["traveler_id"],
                    amount=amount,
                    commission=commission,
                    traveler_earnings=earnings,
                    reference=data["reference"],
                    authorization_url=data["authorization_url"],
                    access_code=data.get("access_code"),
                    status=models.PAY_PENDING,
                    created_at=self.clock().replace(tzinfo=None),
                )
            )
        logger.info("payment_initialized: match=%s reference=%s amount=%s", match_id, data["reference"], amount)
        return schemas.PaymentInitOut(
            authorization_url=data["authorization_url"], access_code=data.get("access_code"), reference=data["reference"]
        )

    async def verify_payment(self, reference: str) -> schemas.PaymentVerifyOut:
        p = models.payments
        async with self.engine.connect() as conn:
            status = (await conn.execute(select(p.c.status).where(p.c.reference == reference))).scalar_one_or_none()
        if status is None:
            raise NotFound(f"Payment {reference} not found")
        if status == models.PAY_PAID:
            return schemas.PaymentVerifyOut(reference=reference, status=models.PAY_PAID)

        data = await self.gateway.verify(reference)
        if data.get("status") != "success":
            logger.info("payment_not_successful: reference=%s gateway_status=%s", reference, data.get("status"))
            return schemas.PaymentVerifyOut(reference=reference, status=data.get("status") or models.PAY_PENDING)

        if await self._capture(reference, data) is None:
            # settled by a concurrent verify, or the match was captured under another reference
            async with self.engine.connect() as conn:
                status = (await conn.execute(select(p.c.status).where(p.c.reference == reference))).scalar_one()
            return schemas.PaymentVerifyOut(reference=reference, status=status)
        return schemas.PaymentVerifyOut(reference=reference, status=models.PAY_PAID)

    async def handle_webhook(self, signature: Optional[str], body: bytes) -> bool:
        """Process a signed gateway event. Returns True if a payment was captured."""
        expected = sign_webhook(self.secret_key, body)
        if not signature or not hmac.compare_digest(expected, signature):
            logger.warning("webhook_bad_signature")
            raise NotAuthorized("Invalid webhook signature")
        try:
            event = json.loads(body)
        except ValueError as e:
            raise ValidationFailed("Webhook body is not valid JSON") from e

        if event.get("event") != "charge.success":
            logger.info("webhook_ignored: event=%s", event.get("event"))
            return False
        reference = (event.get("data") or {}).get("reference")
        if not reference:
            raise ValidationFailed("Webhook event has no reference")
        return await self._capture(reference, event["data"]) is not None

    async def _capture(self, reference: str, provider_response: dict) -> Optional[schemas.Payment]:
        try:
            async with self.engine.begin() as conn:
                payment = await self.ledger.capture(conn, reference, _jsonable(provider_response))
        except IntegrityError:
            # a concurrent capture for the same match committed first
            logger.warning("capture_conflict: reference=%s", reference)
            return None
        if payment is None:
            return None
        self.notifier.notify(
            payment.traveler_id, "payment_received", "Payment Secured",
            "The business has paid for this delivery. You can request the pickup code when you arrive.",
            {"matchId": payment.match_id, "reference": reference},
        )
        return payment


def _jsonable(data: dict) -> dict:
    return json.loads(json.dumps(data, default=str))
