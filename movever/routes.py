from fastapi import APIRouter, Depends, Header, Request
from typing import List, Optional
import logging

from . import schemas
from .services import Services

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(x_user_id: int = Header(..., gt=0)) -> int:
    # identity is asserted by the gateway in front of this service
    return x_user_id


@router.post("/trips", response_model=schemas.Trip, status_code=201)
async def create_trip(data: schemas.TripCreate, user_id: int = Depends(current_user),
                      svc: Services = Depends(get_services)):
    return await svc.postings.create_trip(user_id, data)


@router.get("/trips", response_model=List[schemas.TripSummary])
async def my_trips(user_id: int = Depends(current_user), svc: Services = Depends(get_services)):
    return await svc.postings.trips_for_traveler(user_id)


@router.patch("/trips/{trip_id}", response_model=schemas.Trip)
async def update_trip(trip_id: int, data: schemas.TripUpdate, user_id: int = Depends(current_user),
                      svc: Services = Depends(get_services)):
    return await svc.postings.update_trip(trip_id, user_id, data)


@router.post("/trips/{trip_id}/cancel", response_model=schemas.Trip)
async def cancel_trip(trip_id: int, user_id: int = Depends(current_user), svc: Services = Depends(get_services)):
    return await svc.postings.cancel_trip(trip_id, user_id)


@router.post("/trips/search", response_model=List[schemas.RankedTrip])
async def search_trips(filt: schemas.SearchFilter, svc: Services = Depends(get_services)):
    return await svc.ranking.search_trips(filt)


@router.get("/trips/{trip_id}/matches", response_model=List[schemas.RankedRequest])
async def find_matches_for_trip(trip_id: int, svc: Services = Depends(get_services)):
    return await svc.ranking.find_matches_for_trip(trip_id)


@router.get("/trips/{trip_id}/match-requests", response_model=List[schemas.MatchDetail])
async def match_requests_for_trip(trip_id: int, svc: Services = Depends(get_services)):
    return await svc.lifecycle.list_for_trip(trip_id)


@router.post("/matches", response_model=schemas.Match, status_code=201)
async def propose_match(req: schemas.MatchCreate, user_id: int = Depends(current_user),
                        svc: Services = Depends(get_services)):
    logger.info("propose_match: trip=%s request=%s user=%s", req.trip_id, req.request_id, user_id)
    return await svc.lifecycle.propose(req.trip_id, req.request_id, user_id)


@router.get("/matches/{match_id}", response_model=schemas.MatchDetail)
async def get_match(match_id: int, user_id: int = Depends(current_user), svc: Services = Depends(get_services)):
    detail = await svc.lifecycle.get_match(match_id)
    svc.codes.ensure_party(detail.match, user_id)
    return detail


@router.post("/matches/{match_id}/accept", response_model=schemas.Match)
async def accept_match(match_id: int, user_id: int = Depends(current_user), svc: Services = Depends(get_services)):
    return await svc.lifecycle.accept(match_id, user_id)


@router.post("/matches/{match_id}/decline", response_model=schemas.Match)
async def decline_match(match_id: int, user_id: int = Depends(current_user), svc: Services = Depends(get_services)):
    return await svc.lifecycle.decline(match_id, user_id)


@router.post("/matches/{match_id}/codes", response_model=schemas.CodeIssued)
async def request_code(match_id: int, payload: schemas.CodeRequest, user_id: int = Depends(current_user),
                       svc: Services = Depends(get_services)):
    otc = await svc.lifecycle.request_code(match_id, payload.phase, user_id)
    return schemas.CodeIssued(message="OTP sent successfully", expires_at=otc.expires_at)


@router.post("/matches/{match_id}/pickup", response_model=schemas.Match)
async def confirm_pickup(match_id: int, payload: schemas.CodeConfirm, user_id: int = Depends(current_user),
                         svc: Services = Depends(get_services)):
    return await svc.lifecycle.confirm_pickup(match_id, payload.code, user_id)


@router.post("/matches/{match_id}/delivery", response_model=schemas.Match)
async def confirm_delivery(match_id: int, payload: schemas.CodeConfirm, user_id: int = Depends(current_user),
                           svc: Services = Depends(get_services)):
    return await svc.lifecycle.confirm_delivery(match_id, payload.code, user_id)


@router.get("/deliveries", response_model=List[schemas.Match])
async def my_deliveries(user_id: int = Depends(current_user), svc: Services = Depends(get_services)):
    return await svc.lifecycle.deliveries_for_traveler(user_id)


@router.post("/payments", response_model=schemas.PaymentInitOut)
async def initialize_payment(req: schemas.PaymentInit, user_id: int = Depends(current_user),
                             svc: Services = Depends(get_services)):
    return await svc.payments.initialize_payment(req.match_id, user_id, req.email)


@router.get("/payments/verify/{reference}", response_model=schemas.PaymentVerifyOut)
async def verify_payment(reference: str, svc: Services = Depends(get_services)):
    return await svc.payments.verify_payment(reference)


@router.post("/payments/webhook")
async def payment_webhook(request: Request, x_paystack_signature: Optional[str] = Header(None),
                          svc: Services = Depends(get_services)):
    body = await request.body()
    captured = await svc.payments.handle_webhook(x_paystack_signature, body)
    return {"received": True, "captured": captured}


@router.get("/wallet", response_model=schemas.Wallet)
async def get_wallet(user_id: int = Depends(current_user), svc: Services = Depends(get_services)):
    return await svc.ledger.get_wallet(user_id)


@router.post("/requests", response_model=schemas.DeliveryRequest, status_code=201)
async def create_request(data: schemas.RequestCreate, user_id: int = Depends(current_user),
                         svc: Services = Depends(get_services)):
    return await svc.postings.create_request(user_id, data)


@router.get("/requests", response_model=List[schemas.RequestSummary])
async def my_requests(user_id: int = Depends(current_user), svc: Services = Depends(get_services)):
    return await svc.postings.requests_for_business(user_id)


@router.get("/notifications", response_model=List[schemas.Notification])
async def list_notifications(unread_only: bool = False, user_id: int = Depends(current_user),
                             svc: Services = Depends(get_services)):
    return await svc.inbox.list(user_id, unread_only)


@router.get("/notifications/unread-count", response_model=schemas.UnreadCount)
async def unread_count(user_id: int = Depends(current_user), svc: Services = Depends(get_services)):
    return schemas.UnreadCount(count=await svc.inbox.unread_count(user_id))


@router.post("/notifications/read-all")
async def mark_all_read(user_id: int = Depends(current_user), svc: Services = Depends(get_services)):
    return {"updated": await svc.inbox.mark_all_read(user_id)}


@router.post("/notifications/{notification_id}/read", response_model=schemas.Notification)
async def mark_read(notification_id: int, user_id: int = Depends(current_user),
                    svc: Services = Depends(get_services)):
    return await svc.inbox.mark_read(notification_id, user_id)
