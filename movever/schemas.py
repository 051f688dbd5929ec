from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Literal, Optional
from datetime import date, datetime
from datetime import date as Day
from decimal import Decimal
import re

TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")


def _time_of_day(v):
    if v is None:
        return v
    m = TIME_RE.match(v.strip())
    if not m or int(m.group(1)) > 23 or int(m.group(2)) > 59:
        raise ValueError("time must be HH:MM")
    return v.strip()


Size = Literal["small", "medium", "large"]
Phase = Literal["pickup", "delivery"]


class Trip(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    traveler_id: int
    origin: str
    destination: str
    departure_date: date
    departure_time: Optional[str] = None
    available_space: str
    description: Optional[str] = None
    status: str
    created_at: datetime


class DeliveryRequest(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    business_id: int
    origin: str
    destination: str
    delivery_date: Optional[date] = None
    package_size: str
    item_description: Optional[str] = None
    estimated_cost: Decimal
    status: str
    created_at: datetime


class SearchFilter(BaseModel):
    origin: Optional[str] = Field(None, max_length=200)
    destination: Optional[str] = Field(None, max_length=200)
    date: Optional[Day] = None
    time: Optional[str] = Field(None, max_length=8)
    space: Optional[Size] = None
    verified_only: bool = False

    @field_validator("origin", "destination")
    @classmethod
    def blank_to_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("time")
    @classmethod
    def validate_time(cls, v):
        return _time_of_day(v)


class RankedTrip(BaseModel):
    trip: Trip
    relevance_score: float
    raw_score: float
    match_reasons: List[str]


class RankedRequest(BaseModel):
    request: DeliveryRequest
    relevance_score: float
    match_reasons: List[str]


class MatchCreate(BaseModel):
    trip_id: int = Field(..., gt=0)
    request_id: int = Field(..., gt=0)


class Match(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    trip_id: int
    delivery_request_id: int
    traveler_id: int
    business_id: int
    status: str
    created_at: datetime
    pickup_confirmed_at: Optional[datetime] = None
    delivery_confirmed_at: Optional[datetime] = None


class Payment(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    match_id: int
    business_id: int
    traveler_id: int
    amount: Decimal
    commission: Decimal
    traveler_earnings: Decimal
    reference: str
    status: str
    paid_at: Optional[datetime] = None
    released_at: Optional[datetime] = None


class UserProfile(BaseModel):
    id: int
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_verified: bool = False


class MatchDetail(BaseModel):
    match: Match
    request: Optional[DeliveryRequest] = None
    payment: Optional[Payment] = None
    traveler: Optional[UserProfile] = None
    business: Optional[UserProfile] = None


class CodeRequest(BaseModel):
    phase: Phase


class CodeIssued(BaseModel):
    message: str
    expires_at: datetime


class CodeConfirm(BaseModel):
    code: str = Field(..., min_length=1, max_length=12)

    @field_validator("code")
    @classmethod
    def validate_code(cls, v):
        v = v.strip()
        if not v.isdigit():
            raise ValueError("code must be numeric")
        return v


class PaymentInit(BaseModel):
    match_id: int = Field(..., gt=0)
    email: str = Field(..., max_length=255)


class PaymentInitOut(BaseModel):
    authorization_url: str
    access_code: Optional[str] = None
    reference: str


class PaymentVerifyOut(BaseModel):
    reference: str
    status: str


class Wallet(BaseModel):
    traveler_id: int
    balance: Decimal = Decimal("0")
    pending_balance: Decimal = Decimal("0")
    total_earned: Decimal = Decimal("0")


class Notification(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    type: str
    title: str
    message: str
    metadata: Optional[dict] = None
    is_read: bool
    created_at: datetime


class UnreadCount(BaseModel):
    count: int


class TripCreate(BaseModel):
    origin: str = Field(..., min_length=1, max_length=200)
    destination: str = Field(..., min_length=1, max_length=200)
    departure_date: date
    departure_time: Optional[str] = Field(None, max_length=8)
    available_space: Size
    description: Optional[str] = Field(None, max_length=2000)

    @field_validator("departure_time")
    @classmethod
    def validate_time(cls, v):
        return _time_of_day(v)


class TripUpdate(BaseModel):
    origin: Optional[str] = Field(None, min_length=1, max_length=200)
    destination: Optional[str] = Field(None, min_length=1, max_length=200)
    departure_date: Optional[date] = None
    departure_time: Optional[str] = Field(None, max_length=8)
    available_space: Optional[Size] = None
    description: Optional[str] = Field(None, max_length=2000)

    @field_validator("departure_time")
    @classmethod
    def validate_time(cls, v):
        return _time_of_day(v)


class TripSummary(BaseModel):
    trip: Trip
    request_count: int
    total_earnings: Decimal


class RequestCreate(BaseModel):
    origin: str = Field(..., min_length=1, max_length=200)
    destination: str = Field(..., min_length=1, max_length=200)
    delivery_date: Optional[date] = None
    package_size: Size
    item_description: Optional[str] = Field(None, max_length=2000)
    estimated_cost: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class RequestSummary(BaseModel):
    request: DeliveryRequest
    traveler_name: str
