"""Process wiring: build every component once with explicit collaborators."""
from dataclasses import dataclass
from typing import Optional
import logging

import httpx
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from .cache import Clock, KeyStore, MemoryKeyStore, RedisKeyStore, TableKeyStore, create_redis, utcnow
from .config import Settings
from .db import create_engine
from .directory import IdentityDirectory, UserDirectory
from .escrow import EscrowLedger
from .geo import Geocoder, HttpGeoResolver, Router
from .lifecycle import MatchLifecycle
from .notifications import (
    Mailer, NotificationDispatcher, NotificationInbox, NotificationSink, TableNotificationSink, build_mailer,
)
from .otc import CodeIssuer
from .payments import MOCK_SECRET, MockGateway, PaymentGateway, PaymentService, PaystackGateway
from .postings import PostingService
from .ranking import RankingEngine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    http: httpx.AsyncClient
    redis: Optional[Redis]
    store: KeyStore
    directory: IdentityDirectory
    notifier: NotificationDispatcher
    inbox: NotificationInbox
    codes: CodeIssuer
    ledger: EscrowLedger
    payments: PaymentService
    ranking: RankingEngine
    lifecycle: MatchLifecycle
    postings: PostingService

    async def close(self):
        await self.notifier.drain()
        await self.http.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        await self.engine.dispose()
        logger.info("services_closed")


def build_store(settings: Settings, engine: AsyncEngine, redis: Optional[Redis], clock: Clock) -> KeyStore:
    backend = settings.OTC_BACKEND.lower()
    if backend == "redis":
        if redis is None:
            raise RuntimeError("OTC_BACKEND=redis requires a redis client")
        return RedisKeyStore(redis)
    if backend == "table":
        return TableKeyStore(engine, clock)
    if backend == "memory":
        return MemoryKeyStore(clock)
    raise RuntimeError(f"Unknown OTC_BACKEND {settings.OTC_BACKEND!r}")


def build_services(settings: Settings, engine: Optional[AsyncEngine] = None,
                   http: Optional[httpx.AsyncClient] = None, store: Optional[KeyStore] = None,
                   geocoder: Optional[Geocoder] = None, router: Optional[Router] = None,
                   gateway: Optional[PaymentGateway] = None, sink: Optional[NotificationSink] = None,
                   mailer: Optional[Mailer] = None, clock: Clock = utcnow) -> Services:
    engine = engine or create_engine(settings)
    http = http or httpx.AsyncClient()
    redis = None
    if store is None:
        if settings.OTC_BACKEND.lower() == "redis":
            redis = create_redis(settings.REDIS_URL)
        store = build_store(settings, engine, redis, clock)

    directory = UserDirectory(engine)
    resolver = HttpGeoResolver(http, settings.GEOCODER_URL, settings.ROUTER_URL,
                               settings.GEO_USER_AGENT, settings.GEO_TIMEOUT_SEC)
    notifier = NotificationDispatcher(
        sink or TableNotificationSink(engine, directory, http, settings.PUSH_URL),
        mailer or build_mailer(settings),
        directory,
    )
    codes = CodeIssuer(store, clock, settings.OTC_LENGTH, settings.OTC_TTL_SEC, settings.OTC_COOLDOWN_SEC)
    ledger = EscrowLedger(engine, clock)

    if gateway is None:
        if settings.PAYSTACK_SECRET_KEY == MOCK_SECRET:
            logger.warning("payments_mock_gateway: PAYSTACK_SECRET_KEY not configured")
            gateway = MockGateway()
        else:
            gateway = PaystackGateway(http, settings.PAYSTACK_SECRET_KEY, settings.PAYSTACK_BASE_URL)
    payments = PaymentService(engine, gateway, ledger, notifier, settings.PAYSTACK_SECRET_KEY,
                              settings.COMMISSION_RATE, clock)

    ranking = RankingEngine(engine, geocoder or resolver, router or resolver, directory,
                            settings.RANKING, settings.REVERSE, settings.GEO_TIMEOUT_SEC)
    lifecycle = MatchLifecycle(engine, codes, ledger, notifier, directory, clock)
    postings = PostingService(engine, notifier, clock)

    return Services(
        settings=settings, engine=engine, http=http, redis=redis, store=store, directory=directory,
        notifier=notifier, inbox=NotificationInbox(engine), codes=codes, ledger=ledger, payments=payments,
        ranking=ranking, lifecycle=lifecycle, postings=postings,
    )
