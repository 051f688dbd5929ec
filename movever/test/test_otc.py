import asyncio
from datetime import datetime, timedelta

import pytest

from movever import otc as otc_module
from movever.cache import MemoryKeyStore
from movever.errors import CooldownActive, InvalidCode, NotAuthorized
from movever.otc import CodeIssuer, generate_code
from movever.schemas import Match

from conftest import BUSINESS, OUTSIDER, TRAVELER


MATCH = Match(id=7, trip_id=1, delivery_request_id=2, traveler_id=TRAVELER, business_id=BUSINESS,
              status="accepted", created_at=datetime(2026, 3, 1, 12, 0))


@pytest.fixture
def issuer(clock):
    return CodeIssuer(MemoryKeyStore(clock), clock, length=6, ttl_sec=600, cooldown_sec=300)


@pytest.fixture
def fixed_codes(monkeypatch):
    codes = iter(["111111", "222222", "333333", "444444"])
    monkeypatch.setattr(otc_module, "generate_code", lambda length=6: next(codes))


def test_generate_code_format():
    for _ in range(50):
        code = generate_code(6)
        assert len(code) == 6
        assert code.isdigit()
    assert len(generate_code(8)) == 8


async def test_issue_sets_expiry(issuer, clock):
    otc = await issuer.issue(MATCH, "pickup", TRAVELER)
    assert otc.match_id == MATCH.id
    assert otc.phase == "pickup"
    assert otc.issued_at == clock.now
    assert otc.expires_at == clock.now + timedelta(minutes=10)
    assert (await issuer.current(MATCH.id, "pickup")).code == otc.code


async def test_either_party_may_request(issuer):
    await issuer.issue(MATCH, "pickup", BUSINESS)
    await issuer.issue(MATCH, "delivery", TRAVELER)


async def test_outsider_cannot_request(issuer):
    with pytest.raises(NotAuthorized):
        await issuer.issue(MATCH, "pickup", OUTSIDER)
    assert await issuer.current(MATCH.id, "pickup") is None


async def test_cooldown_reports_remaining_minutes(issuer, clock):
    await issuer.issue(MATCH, "pickup", TRAVELER)
    clock.advance(minutes=1)
    with pytest.raises(CooldownActive) as exc:
        await issuer.issue(MATCH, "pickup", TRAVELER)
    assert exc.value.remaining_minutes == 4
    assert "4 minute(s)" in exc.value.message

    clock.advance(minutes=3, seconds=30)
    with pytest.raises(CooldownActive) as exc:
        await issuer.issue(MATCH, "pickup", BUSINESS)
    assert exc.value.remaining_minutes == 1


async def test_phases_have_independent_cooldowns(issuer):
    await issuer.issue(MATCH, "pickup", TRAVELER)
    await issuer.issue(MATCH, "delivery", TRAVELER)


async def test_reissue_after_cooldown_supersedes(issuer, clock, fixed_codes):
    first = await issuer.issue(MATCH, "pickup", TRAVELER)
    clock.advance(minutes=6)
    second = await issuer.issue(MATCH, "pickup", TRAVELER)
    assert first.code == "111111"
    assert second.code == "222222"

    # the first code has not expired yet but is no longer the latest
    with pytest.raises(InvalidCode):
        await issuer.validate(MATCH.id, "pickup", "111111")
    assert (await issuer.validate(MATCH.id, "pickup", "222222")).id == second.id


async def test_validate_rejects_wrong_code(issuer, fixed_codes):
    await issuer.issue(MATCH, "pickup", TRAVELER)
    with pytest.raises(InvalidCode) as exc:
        await issuer.validate(MATCH.id, "pickup", "999999")
    assert exc.value.message == "Invalid or expired pickup code"


async def test_validate_rejects_other_phase(issuer, fixed_codes):
    await issuer.issue(MATCH, "pickup", TRAVELER)
    with pytest.raises(InvalidCode):
        await issuer.validate(MATCH.id, "delivery", "111111")


async def test_validate_rejects_expired_code(issuer, clock, fixed_codes):
    await issuer.issue(MATCH, "pickup", TRAVELER)
    clock.advance(minutes=9, seconds=59)
    await issuer.validate(MATCH.id, "pickup", "111111")
    clock.advance(seconds=1)
    with pytest.raises(InvalidCode):
        await issuer.validate(MATCH.id, "pickup", "111111")


async def test_consumed_code_cannot_be_reused(issuer, fixed_codes):
    otc = await issuer.issue(MATCH, "pickup", TRAVELER)
    await issuer.consume(otc)
    with pytest.raises(InvalidCode):
        await issuer.validate(MATCH.id, "pickup", "111111")
    # consuming does not lift the cooldown
    with pytest.raises(CooldownActive):
        await issuer.issue(MATCH, "pickup", TRAVELER)


async def test_concurrent_requests_issue_once(issuer):
    results = await asyncio.gather(
        *[issuer.issue(MATCH, "pickup", TRAVELER) for _ in range(5)], return_exceptions=True
    )
    issued = [r for r in results if not isinstance(r, Exception)]
    assert len(issued) == 1
    assert all(isinstance(r, CooldownActive) for r in results if isinstance(r, Exception))


class FlakyStore(MemoryKeyStore):
    def __init__(self, clock):
        super().__init__(clock)
        self.failures = 1

    async def put(self, key, value, ttl):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("store unavailable")
        await super().put(key, value, ttl)


async def test_failed_code_write_releases_cooldown(clock):
    issuer = CodeIssuer(FlakyStore(clock), clock)
    with pytest.raises(ConnectionError):
        await issuer.issue(MATCH, "pickup", TRAVELER)
    otc = await issuer.issue(MATCH, "pickup", TRAVELER)
    assert (await issuer.current(MATCH.id, "pickup")).id == otc.id
