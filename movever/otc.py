import hmac
import math
import secrets
import string
import uuid
from datetime import datetime, timedelta
from typing import Optional
import logging

from pydantic import BaseModel

from . import schemas
from .cache import Clock, KeyStore, utcnow
from .errors import CooldownActive, InvalidCode, NotAuthorized

logger = logging.getLogger(__name__)


class OneTimeCode(BaseModel):
    id: str
    match_id: int
    phase: str
    code: str
    issued_at: datetime
    expires_at: datetime


def _code_key(match_id: int, phase: str) -> str:
    return f"otc:code:{match_id}:{phase}"


def _cooldown_key(match_id: int, phase: str) -> str:
    return f"otc:cooldown:{match_id}:{phase}"


def generate_code(length: int = 6) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


class CodeIssuer:
    """Issues and validates short-lived numeric codes per (match, phase).

    Only the latest code for a phase is kept; issuing a new one supersedes
    the previous. A cooldown marker is taken with put-if-absent so two
    concurrent requests cannot both issue.
    """

    def __init__(self, store: KeyStore, clock: Clock = utcnow, length: int = 6,
                 ttl_sec: int = 600, cooldown_sec: int = 300):
        self.store = store
        self.clock = clock
        self.length = length
        self.ttl_sec = ttl_sec
        self.cooldown_sec = cooldown_sec

    def ensure_party(self, match: schemas.Match, user_id: int):
        if user_id not in (match.traveler_id, match.business_id):
            logger.warning("otc_not_authorized: match=%s user=%s", match.id, user_id)
            raise NotAuthorized("Not authorized to request a code for this match")

    async def issue(self, match: schemas.Match, phase: str, user_id: int) -> OneTimeCode:
        self.ensure_party(match, user_id)
        now = self.clock()

        taken = await self.store.put_if_absent(_cooldown_key(match.id, phase), now.isoformat(), self.cooldown_sec)
        if not taken:
            remaining = await self._cooldown_remaining(match.id, phase, now)
            logger.warning("otc_cooldown: match=%s phase=%s remaining_min=%s", match.id, phase, remaining)
            raise CooldownActive(remaining)

        otc = OneTimeCode(
            id=uuid.uuid4().hex,
            match_id=match.id,
            phase=phase,
            code=generate_code(self.length),
            issued_at=now,
            expires_at=now + timedelta(seconds=self.ttl_sec),
        )
        try:
            await self.store.put(_code_key(match.id, phase), otc.model_dump_json(), self.ttl_sec)
        except Exception:
            # no code was stored, so the parties must be able to ask again
            await self.store.delete(_cooldown_key(match.id, phase))
            raise
        logger.info("otc_issued: match=%s phase=%s id=%s expires_at=%s", match.id, phase, otc.id, otc.expires_at.isoformat())
        return otc

    async def _cooldown_remaining(self, match_id: int, phase: str, now: datetime) -> int:
        held = await self.store.get(_cooldown_key(match_id, phase))
        if held is None:
            return 1
        elapsed = (now - datetime.fromisoformat(held)).total_seconds()
        return max(1, math.ceil((self.cooldown_sec - elapsed) / 60))

    async def current(self, match_id: int, phase: str) -> Optional[OneTimeCode]:
        raw = await self.store.get(_code_key(match_id, phase))
        if raw is None:
            return None
        return OneTimeCode.model_validate_json(raw)

    async def validate(self, match_id: int, phase: str, code: str) -> OneTimeCode:
        """Return the latest live code for the phase if `code` matches it."""
        otc = await self.current(match_id, phase)
        if otc is None or otc.expires_at <= self.clock() or not hmac.compare_digest(otc.code, code):
            logger.warning("otc_rejected: match=%s phase=%s", match_id, phase)
            raise InvalidCode(f"Invalid or expired {phase} code")
        return otc

    async def consume(self, otc: OneTimeCode):
        # the cooldown marker stays, so a consumed code still rate-limits reissue
        await self.store.delete(_code_key(otc.match_id, otc.phase))
        logger.info("otc_consumed: match=%s phase=%s id=%s", otc.match_id, otc.phase, otc.id)
