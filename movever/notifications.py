import asyncio
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Set
import logging

import httpx
from fastapi_mail import ConnectionConfig, FastMail, MessageSchema, MessageType
from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncEngine

from . import models, schemas
from .config import Settings
from .directory import IdentityDirectory
from .errors import NotFound

logger = logging.getLogger(__name__)

EXPO_TOKEN_PREFIX = "ExponentPushToken"


class NotificationSink(Protocol):
    async def send(self, user_id: int, type: str, title: str, body: str, metadata: dict) -> None: ...


class Mailer(Protocol):
    async def send(self, to: str, subject: str, body: str) -> None: ...


class LogMailer:
    """Used when no SMTP server is configured."""

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info("mail_not_sent: to=%s subject=%s (SMTP_HOST not configured)", to, subject)


class SmtpMailer:
    def __init__(self, settings: Settings):
        self.fast_mail = FastMail(ConnectionConfig(
            MAIL_USERNAME=settings.SMTP_USER,
            MAIL_PASSWORD=settings.SMTP_PASSWORD,
            MAIL_FROM=settings.MAIL_FROM,
            MAIL_PORT=settings.SMTP_PORT,
            MAIL_SERVER=settings.SMTP_HOST,
            MAIL_STARTTLS=True,
            MAIL_SSL_TLS=False,
            USE_CREDENTIALS=bool(settings.SMTP_USER),
        ))

    async def send(self, to: str, subject: str, body: str) -> None:
        msg = MessageSchema(subject=subject, recipients=[to], body=body, subtype=MessageType.plain)
        await self.fast_mail.send_message(msg)


def build_mailer(settings: Settings) -> Mailer:
    if not settings.SMTP_HOST:
        logger.warning("mail_disabled: SMTP_HOST not configured")
        return LogMailer()
    return SmtpMailer(settings)


class TableNotificationSink:
    """Stores the in-app notification, then pushes to the user's device if
    a push endpoint is configured and the user registered a token."""

    def __init__(self, engine: AsyncEngine, directory: IdentityDirectory,
                 client: Optional[httpx.AsyncClient] = None, push_url: str = ""):
        self.engine = engine
        self.directory = directory
        self.client = client
        self.push_url = push_url

    async def send(self, user_id: int, type: str, title: str, body: str, metadata: dict) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(
                insert(models.notifications).values(
                    user_id=user_id, type=type, title=title, message=body, metadata=metadata,
                    is_read=False, created_at=datetime.now(timezone.utc).replace(tzinfo=None),
                )
            )
        if not (self.push_url and self.client):
            return
        token = await self.directory.push_token(user_id)
        if not token or not token.startswith(EXPO_TOKEN_PREFIX):
            return
        resp = await self.client.post(
            self.push_url,
            json={"to": token, "sound": "default", "title": title, "body": body, "data": {"type": type, **metadata}},
            timeout=5.0,
        )
        resp.raise_for_status()
        logger.debug("push_sent: user=%s type=%s", user_id, type)


class NotificationDispatcher:
    """Best-effort delivery. `notify` and `email` schedule and return
    immediately; failures are logged and never reach the caller."""

    def __init__(self, sink: NotificationSink, mailer: Optional[Mailer] = None,
                 directory: Optional[IdentityDirectory] = None):
        self.sink = sink
        self.mailer = mailer
        self.directory = directory
        self._tasks: Set[asyncio.Task] = set()

    def _schedule(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def notify(self, user_id: int, type: str, title: str, body: str, metadata: Optional[dict] = None):
        self._schedule(self._deliver(user_id, type, title, body, metadata or {}))

    def email(self, user_id: int, subject: str, body: str):
        if self.mailer is None or self.directory is None:
            return
        self._schedule(self._mail(user_id, subject, body))

    async def _deliver(self, user_id: int, type: str, title: str, body: str, metadata: dict):
        try:
            await self.sink.send(user_id, type, title, body, metadata)
            logger.info("notification_sent: user=%s type=%s", user_id, type)
        except Exception:
            logger.exception("notification_failed: user=%s type=%s", user_id, type)

    async def _mail(self, user_id: int, subject: str, body: str):
        try:
            profile = await self.directory.profile(user_id)
            if not profile or not profile.email:
                logger.debug("mail_skipped: user=%s has no email", user_id)
                return
            await self.mailer.send(profile.email, subject, body)
            logger.info("mail_sent: user=%s subject=%s", user_id, subject)
        except Exception:
            logger.exception("mail_failed: user=%s subject=%s", user_id, subject)

    async def drain(self):
        """Wait for all scheduled deliveries to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


class NotificationInbox:
    """A user's stored in-app notifications."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def list(self, user_id: int, unread_only: bool = False, limit: int = 50) -> List[schemas.Notification]:
        n = models.notifications
        sel = select(n).where(n.c.user_id == user_id)
        if unread_only:
            sel = sel.where(n.c.is_read.is_(False))
        sel = sel.order_by(n.c.created_at.desc(), n.c.id.desc()).limit(limit)
        async with self.engine.connect() as conn:
            res = await conn.execute(sel)
            return [schemas.Notification.model_validate(dict(row._mapping)) for row in res]

    async def unread_count(self, user_id: int) -> int:
        n = models.notifications
        sel = select(func.count()).select_from(n).where(and_(n.c.user_id == user_id, n.c.is_read.is_(False)))
        async with self.engine.connect() as conn:
            return (await conn.execute(sel)).scalar_one()

    async def mark_read(self, notification_id: int, user_id: int) -> schemas.Notification:
        n = models.notifications
        async with self.engine.begin() as conn:
            # another user's notification looks the same as a missing one
            res = await conn.execute(
                update(n).where(and_(n.c.id == notification_id, n.c.user_id == user_id)).values(is_read=True)
            )
            if res.rowcount != 1:
                raise NotFound(f"Notification {notification_id} not found")
            row = (await conn.execute(select(n).where(n.c.id == notification_id))).first()
        return schemas.Notification.model_validate(dict(row._mapping))

    async def mark_all_read(self, user_id: int) -> int:
        n = models.notifications
        async with self.engine.begin() as conn:
            res = await conn.execute(
                update(n).where(and_(n.c.user_id == user_id, n.c.is_read.is_(False))).values(is_read=True)
            )
        logger.info("notifications_read: user=%s count=%d", user_id, res.rowcount)
        return res.rowcount
