from sqlalchemy import (
    Table,
    Column,
    Integer,
    String,
    Text,
    Date,
    DateTime,
    Numeric,
    JSON,
    Boolean,
    MetaData,
    UniqueConstraint,
    Index,
    text,
)


# Status constants
TRIP_ACTIVE = "active"
TRIP_COMPLETED = "completed"
TRIP_CANCELLED = "cancelled"

REQUEST_PENDING = "pending"
REQUEST_MATCHED = "matched"
REQUEST_IN_TRANSIT = "in_transit"
REQUEST_DELIVERED = "delivered"
REQUEST_CANCELLED = "cancelled"

MATCH_PENDING = "pending"
MATCH_ACCEPTED = "accepted"
MATCH_DECLINED = "declined"
MATCH_PICKUP_CONFIRMED = "pickup_confirmed"
MATCH_COMPLETED = "completed"
MATCH_DISPUTED = "disputed"

MATCH_TERMINAL = (MATCH_COMPLETED, MATCH_DECLINED, MATCH_DISPUTED)

PAY_PENDING = "pending"
PAY_PAID = "paid"

PHASE_PICKUP = "pickup"
PHASE_DELIVERY = "delivery"

SIZE_ORDINALS = {"small": 1, "medium": 2, "large": 3}


metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("full_name", String, nullable=True),
    Column("email", String, nullable=True),
    Column("phone", String, nullable=True),
    Column("is_verified", Boolean, default=False, nullable=False),
    Column("push_token", String, nullable=True),
)

trips = Table(
    "trips",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("traveler_id", Integer, nullable=False, index=True),
    Column("origin", String, nullable=False),
    Column("destination", String, nullable=False),
    Column("departure_date", Date, nullable=False),
    Column("departure_time", String, nullable=True),
    Column("available_space", String, nullable=False),
    Column("description", Text, nullable=True),
    Column("status", String, default=TRIP_ACTIVE, nullable=False),
    Column("created_at", DateTime, nullable=False),
)

delivery_requests = Table(
    "delivery_requests",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("business_id", Integer, nullable=False, index=True),
    Column("origin", String, nullable=False),
    Column("destination", String, nullable=False),
    Column("delivery_date", Date, nullable=True),
    Column("package_size", String, nullable=False),
    Column("item_description", Text, nullable=True),
    Column("estimated_cost", Numeric(12, 2), nullable=False),
    Column("status", String, default=REQUEST_PENDING, nullable=False),
    Column("created_at", DateTime, nullable=False),
)

matches = Table(
    "matches",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("trip_id", Integer, nullable=False),
    Column("delivery_request_id", Integer, nullable=False),
    Column("traveler_id", Integer, nullable=False, index=True),
    Column("business_id", Integer, nullable=False, index=True),
    Column("status", String, default=MATCH_PENDING, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("pickup_confirmed_at", DateTime, nullable=True),
    Column("delivery_confirmed_at", DateTime, nullable=True),
    UniqueConstraint("trip_id", "delivery_request_id", name="uq_match_trip_request"),
)

payments = Table(
    "payments",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("match_id", Integer, nullable=False, index=True),
    Column("business_id", Integer, nullable=False),
    Column("traveler_id", Integer, nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("commission", Numeric(12, 2), nullable=False),
    Column("traveler_earnings", Numeric(12, 2), nullable=False),
    Column("reference", String, unique=True, nullable=False),
    Column("authorization_url", String, nullable=True),
    Column("access_code", String, nullable=True),
    Column("status", String, default=PAY_PENDING, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("paid_at", DateTime, nullable=True),
    # set once when the escrowed earnings move to the available balance
    Column("released_at", DateTime, nullable=True),
    Column("provider_response", JSON, nullable=True),
)

# a match is captured at most once, whatever the number of payment attempts
Index(
    "uq_payment_paid_per_match",
    payments.c.match_id,
    unique=True,
    postgresql_where=text("status = 'paid'"),
    sqlite_where=text("status = 'paid'"),
)

wallets = Table(
    "wallets",
    metadata,
    Column("traveler_id", Integer, primary_key=True),
    Column("balance", Numeric(12, 2), default=0, nullable=False),
    Column("pending_balance", Numeric(12, 2), default=0, nullable=False),
    Column("total_earned", Numeric(12, 2), default=0, nullable=False),
    Column("updated_at", DateTime, nullable=True),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("type", String, nullable=False),
    Column("title", String, nullable=False),
    Column("message", Text, nullable=False),
    Column("metadata", JSON, nullable=True),
    Column("is_read", Boolean, default=False, nullable=False),
    Column("created_at", DateTime, nullable=False),
)

key_values = Table(
    "key_values",
    metadata,
    Column("key", String, primary_key=True),
    Column("value", Text, nullable=False),
    Column("expires_at", DateTime, nullable=False),
)
