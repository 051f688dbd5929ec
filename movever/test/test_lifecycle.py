import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from movever import models
from movever.cache import MemoryKeyStore
from movever.errors import (
    DuplicateMatch, InvalidCode, InvalidTransition, NotAuthorized, NotFound, NotPending, PaymentRequired,
)
from movever.services import build_services

from conftest import BUSINESS, OUTSIDER, TRAVELER


async def proposed(services, seed, **request_kwargs):
    trip = await seed.trip()
    req = await seed.request(**request_kwargs)
    return await services.lifecycle.propose(trip, req, BUSINESS)


async def accepted(services, seed, **request_kwargs):
    match = await proposed(services, seed, **request_kwargs)
    return await services.lifecycle.accept(match.id, TRAVELER)


async def paid(services, seed, **request_kwargs):
    match = await accepted(services, seed, **request_kwargs)
    init = await services.payments.initialize_payment(match.id, BUSINESS, "shop@example.com")
    await services.payments.verify_payment(init.reference)
    return match


async def picked_up(services, seed, clock):
    match = await paid(services, seed)
    otc = await services.lifecycle.request_code(match.id, "pickup", TRAVELER)
    await services.lifecycle.confirm_pickup(match.id, otc.code, TRAVELER)
    return match


async def test_propose_creates_pending_match(services, seed, sink):
    match = await proposed(services, seed)
    assert match.status == models.MATCH_PENDING
    assert match.traveler_id == TRAVELER
    assert match.business_id == BUSINESS

    await services.notifier.drain()
    assert sink.types_for(TRAVELER) == ["match_requested"]


async def test_duplicate_proposal_rejected(services, seed):
    match = await proposed(services, seed)
    with pytest.raises(DuplicateMatch):
        await services.lifecycle.propose(match.trip_id, match.delivery_request_id, TRAVELER)


async def test_duplicate_proposal_rejected_after_decline(services, seed):
    match = await proposed(services, seed)
    await services.lifecycle.decline(match.id, TRAVELER)
    with pytest.raises(DuplicateMatch):
        await services.lifecycle.propose(match.trip_id, match.delivery_request_id, BUSINESS)


async def test_propose_unknown_trip(services, seed):
    req = await seed.request()
    with pytest.raises(NotFound):
        await services.lifecycle.propose(4040, req, BUSINESS)


async def test_propose_by_outsider(services, seed):
    trip = await seed.trip()
    req = await seed.request()
    with pytest.raises(NotAuthorized):
        await services.lifecycle.propose(trip, req, OUTSIDER)


async def test_propose_needs_active_trip_and_pending_request(services, seed):
    done = await seed.trip(status=models.TRIP_COMPLETED)
    req = await seed.request()
    with pytest.raises(InvalidTransition):
        await services.lifecycle.propose(done, req, BUSINESS)

    trip = await seed.trip()
    matched = await seed.request(status=models.REQUEST_MATCHED)
    with pytest.raises(InvalidTransition):
        await services.lifecycle.propose(trip, matched, BUSINESS)


async def test_accept_marks_request_matched(services, seed, engine, sink):
    match = await accepted(services, seed)
    assert match.status == models.MATCH_ACCEPTED
    req = await seed.fetch(models.delivery_requests, match.delivery_request_id)
    assert req["status"] == models.REQUEST_MATCHED

    await services.notifier.drain()
    assert "match_accepted" in sink.types_for(BUSINESS)


async def test_accept_twice_fails(services, seed):
    match = await accepted(services, seed)
    with pytest.raises(NotPending):
        await services.lifecycle.accept(match.id, TRAVELER)


async def test_accept_by_outsider(services, seed):
    match = await proposed(services, seed)
    with pytest.raises(NotAuthorized):
        await services.lifecycle.accept(match.id, OUTSIDER)


async def test_accept_unknown_match(services, seed):
    with pytest.raises(NotFound):
        await services.lifecycle.accept(4040, TRAVELER)


async def test_concurrent_accepts_one_wins(services, seed):
    match = await proposed(services, seed)
    results = await asyncio.gather(
        services.lifecycle.accept(match.id, TRAVELER),
        services.lifecycle.accept(match.id, BUSINESS),
        return_exceptions=True,
    )
    wins = [r for r in results if not isinstance(r, Exception)]
    assert len(wins) == 1
    assert isinstance([r for r in results if isinstance(r, Exception)][0], NotPending)


async def test_decline(services, seed, sink):
    match = await proposed(services, seed)
    declined = await services.lifecycle.decline(match.id, TRAVELER)
    assert declined.status == models.MATCH_DECLINED
    with pytest.raises(NotPending):
        await services.lifecycle.accept(match.id, TRAVELER)

    await services.notifier.drain()
    assert "match_declined" in sink.types_for(BUSINESS)


async def test_pickup_code_requires_payment(services, seed):
    match = await accepted(services, seed)
    with pytest.raises(PaymentRequired):
        await services.lifecycle.request_code(match.id, "pickup", TRAVELER)


async def test_code_requires_matching_state(services, seed):
    match = await proposed(services, seed)
    with pytest.raises(InvalidTransition):
        await services.lifecycle.request_code(match.id, "pickup", TRAVELER)

    accepted_match = await services.lifecycle.accept(match.id, TRAVELER)
    with pytest.raises(InvalidTransition):
        await services.lifecycle.request_code(accepted_match.id, "delivery", TRAVELER)


async def test_code_request_by_outsider(services, seed):
    match = await paid(services, seed)
    with pytest.raises(NotAuthorized):
        await services.lifecycle.request_code(match.id, "pickup", OUTSIDER)


async def test_pickup_flow(services, seed, clock, sink, engine):
    match = await paid(services, seed)
    otc = await services.lifecycle.request_code(match.id, "pickup", TRAVELER)
    assert otc.expires_at == clock.now + timedelta(minutes=10)

    await services.notifier.drain()
    shared = [n for n in sink.sent if n["type"] == "otp_received"]
    assert shared[0]["user_id"] == BUSINESS
    assert shared[0]["metadata"]["otp"] == otc.code

    with pytest.raises(InvalidCode):
        await services.lifecycle.confirm_pickup(match.id, "000000" if otc.code != "000000" else "111111", TRAVELER)

    clock.advance(minutes=2)
    confirmed = await services.lifecycle.confirm_pickup(match.id, otc.code, TRAVELER)
    assert confirmed.status == models.MATCH_PICKUP_CONFIRMED
    assert confirmed.pickup_confirmed_at is not None
    req = await seed.fetch(models.delivery_requests, match.delivery_request_id)
    assert req["status"] == models.REQUEST_IN_TRANSIT

    # a replay finds the match already past pickup
    with pytest.raises(InvalidTransition):
        await services.lifecycle.confirm_pickup(match.id, otc.code, TRAVELER)


async def test_expired_pickup_code(services, seed, clock):
    match = await paid(services, seed)
    otc = await services.lifecycle.request_code(match.id, "pickup", TRAVELER)
    clock.advance(minutes=11)
    with pytest.raises(InvalidCode):
        await services.lifecycle.confirm_pickup(match.id, otc.code, TRAVELER)


async def test_confirm_pickup_requires_payment(services, seed):
    match = await accepted(services, seed)
    # a code obtained outside the normal request path still cannot move an unpaid match
    otc = await services.codes.issue(match, "pickup", TRAVELER)
    with pytest.raises(PaymentRequired):
        await services.lifecycle.confirm_pickup(match.id, otc.code, TRAVELER)
    assert (await services.lifecycle.get_match(match.id)).match.status == models.MATCH_ACCEPTED


async def test_only_traveler_confirms(services, seed, clock):
    match = await paid(services, seed)
    otc = await services.lifecycle.request_code(match.id, "pickup", TRAVELER)
    for user in (BUSINESS, OUTSIDER):
        with pytest.raises(NotAuthorized):
            await services.lifecycle.confirm_pickup(match.id, otc.code, user)
    # the rejected attempts leave the code usable
    confirmed = await services.lifecycle.confirm_pickup(match.id, otc.code, TRAVELER)
    assert confirmed.status == models.MATCH_PICKUP_CONFIRMED

    otc = await services.lifecycle.request_code(match.id, "delivery", BUSINESS)
    with pytest.raises(NotAuthorized):
        await services.lifecycle.confirm_delivery(match.id, otc.code, BUSINESS)
    assert (await services.lifecycle.get_match(match.id)).match.status == models.MATCH_PICKUP_CONFIRMED


async def test_delivery_completes_and_releases_escrow(services, seed, clock, sink):
    match = await picked_up(services, seed, clock)
    wallet = await services.ledger.get_wallet(TRAVELER)
    assert wallet.pending_balance == Decimal("9500.00")
    assert wallet.balance == 0

    otc = await services.lifecycle.request_code(match.id, "delivery", BUSINESS)
    completed = await services.lifecycle.confirm_delivery(match.id, otc.code, TRAVELER)
    assert completed.status == models.MATCH_COMPLETED
    assert completed.delivery_confirmed_at is not None

    wallet = await services.ledger.get_wallet(TRAVELER)
    assert wallet.pending_balance == 0
    assert wallet.balance == Decimal("9500.00")
    assert wallet.total_earned == Decimal("9500.00")

    assert (await seed.fetch(models.trips, match.trip_id))["status"] == models.TRIP_COMPLETED
    req = await seed.fetch(models.delivery_requests, match.delivery_request_id)
    assert req["status"] == models.REQUEST_DELIVERED

    await services.notifier.drain()
    assert sink.types_for(BUSINESS)[-1] == "package_delivered"


async def test_replayed_delivery_confirmation(services, seed, clock):
    match = await picked_up(services, seed, clock)
    otc = await services.lifecycle.request_code(match.id, "delivery", TRAVELER)
    await services.lifecycle.confirm_delivery(match.id, otc.code, TRAVELER)
    before = await services.ledger.get_wallet(TRAVELER)

    with pytest.raises(InvalidTransition):
        await services.lifecycle.confirm_delivery(match.id, otc.code, TRAVELER)
    assert await services.ledger.get_wallet(TRAVELER) == before


async def test_delivery_before_pickup(services, seed):
    match = await paid(services, seed)
    with pytest.raises(InvalidTransition):
        await services.lifecycle.confirm_delivery(match.id, "123456", TRAVELER)


async def test_dispute(services, seed, clock):
    match = await picked_up(services, seed, clock)
    disputed = await services.lifecycle.flag_disputed(match.id)
    assert disputed.status == models.MATCH_DISPUTED
    with pytest.raises(InvalidTransition):
        await services.lifecycle.flag_disputed(match.id)
    with pytest.raises(InvalidTransition):
        await services.lifecycle.request_code(match.id, "delivery", TRAVELER)


async def test_completed_match_cannot_be_disputed(services, seed, clock):
    match = await picked_up(services, seed, clock)
    otc = await services.lifecycle.request_code(match.id, "delivery", TRAVELER)
    await services.lifecycle.confirm_delivery(match.id, otc.code, TRAVELER)
    with pytest.raises(InvalidTransition):
        await services.lifecycle.flag_disputed(match.id)


async def test_match_detail(services, seed):
    match = await paid(services, seed)
    detail = await services.lifecycle.get_match(match.id)
    assert detail.match.id == match.id
    assert detail.request.estimated_cost == Decimal("10000.00")
    assert detail.payment.status == models.PAY_PAID
    assert detail.payment.commission == Decimal("500.00")
    assert detail.traveler.full_name == "Tunde Traveler"
    assert detail.business.full_name == "Bola Business"


async def test_listings(services, seed):
    match = await accepted(services, seed)
    pending = await proposed(services, seed)

    for_trip = await services.lifecycle.list_for_trip(match.trip_id)
    assert [d.match.id for d in for_trip] == [match.id]

    deliveries = await services.lifecycle.deliveries_for_traveler(TRAVELER)
    assert [m.id for m in deliveries] == [match.id]
    assert pending.id not in [m.id for m in deliveries]


class BrokenSink:
    async def send(self, user_id, type, title, body, metadata):
        raise RuntimeError("push service unavailable")


async def test_notification_failure_does_not_fail_transition(settings, engine, clock, geo, seed):
    svc = build_services(settings, engine=engine, store=MemoryKeyStore(clock), geocoder=geo, router=geo,
                         sink=BrokenSink(), clock=clock)
    try:
        match = await proposed(svc, seed)
        accepted_match = await svc.lifecycle.accept(match.id, TRAVELER)
        await svc.notifier.drain()
        assert accepted_match.status == models.MATCH_ACCEPTED
    finally:
        await svc.http.aclose()
