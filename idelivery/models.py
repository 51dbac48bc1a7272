# models.py
from datetime import datetime

from sqlalchemy import Table, Column, String, Float, Integer, Boolean, Text, DateTime, UniqueConstraint

from idelivery.database import metadata

# ------------------------
# Parties
# ------------------------
customers = Table(
    "customers",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("email", String, nullable=True),
    Column("phone_number", String, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
)

drivers = Table(
    "drivers",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("email", String, nullable=True),
    Column("phone_number", String, nullable=True),
    Column("payment_phone_number", String, nullable=True),
    Column("bank_account_number", String, nullable=True),
    Column("vehicle", String, nullable=True),
    Column("rating", Float, nullable=False, default=0.0),
    Column("base_fee", Float, nullable=False, default=0.0),
    # JSON text columns, decoded on read
    Column("accepted_payment_methods", Text, nullable=False, default="[]"),
    Column("fees", Text, nullable=False, default="{}"),
    Column("delivery_areas", Text, nullable=False, default="{}"),
    Column("created_at", DateTime, default=datetime.utcnow),
)

restaurants = Table(
    "restaurants",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("email", String, nullable=True),
    Column("phone_number", String, nullable=True),
    Column("address", String, nullable=False),
    Column("rating", Float, nullable=False, default=0.0),
    Column("created_at", DateTime, default=datetime.utcnow),
)

# ------------------------
# Jobs
# ------------------------
orders = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("customer_id", String, nullable=False, index=True),
    Column("restaurant_id", String, nullable=False, index=True),
    Column("driver_id", String, nullable=True, index=True),
    Column("items", Text, nullable=False),
    Column("status", String, nullable=False),
    Column("food_total", Float, nullable=False),
    Column("delivery_fee", Float, nullable=False, default=0.0),
    Column("total", Float, nullable=False),
    Column("payment_method", String, nullable=True),
    Column("customer_address", String, nullable=False),
    Column("restaurant_address", String, nullable=False),
    Column("is_driver_reviewed", Boolean, nullable=False, default=False),
    Column("is_restaurant_reviewed", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, default=datetime.utcnow),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

parcels = Table(
    "parcels",
    metadata,
    Column("id", String, primary_key=True),
    Column("customer_id", String, nullable=False, index=True),
    Column("driver_id", String, nullable=True, index=True),
    Column("pickup_address", String, nullable=False),
    Column("dropoff_address", String, nullable=False),
    Column("parcels", Text, nullable=False),
    Column("status", String, nullable=False),
    Column("delivery_fee", Float, nullable=False, default=0.0),
    Column("goods_cost", Float, nullable=True),
    Column("payment_method", String, nullable=True),
    Column("total", Float, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

# ------------------------
# Money
# ------------------------
driver_earnings = Table(
    "driver_earnings",
    metadata,
    # one entry per delivered job, never updated
    Column("job_id", String, primary_key=True),
    Column("driver_id", String, nullable=False, index=True),
    Column("job_type", String, nullable=False),
    Column("amount", Float, nullable=False),
    Column("recorded_at", DateTime, default=datetime.utcnow),
)

driver_restaurant_ledger = Table(
    "driver_restaurant_ledger",
    metadata,
    Column("driver_id", String, primary_key=True),
    Column("restaurant_id", String, primary_key=True),
    Column("amount_owed", Float, nullable=False),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

restaurant_driver_ledger = Table(
    "restaurant_driver_ledger",
    metadata,
    Column("restaurant_id", String, primary_key=True),
    Column("driver_id", String, primary_key=True),
    Column("amount_owed", Float, nullable=False),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

# ------------------------
# Reviews
# ------------------------
reviews = Table(
    "reviews",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, nullable=False),
    Column("customer_id", String, nullable=False),
    Column("customer_name", String, nullable=False),
    Column("target_type", String, nullable=False),
    Column("target_id", String, nullable=False, index=True),
    Column("rating", Integer, nullable=False),
    Column("comment", Text, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
    UniqueConstraint("order_id", "target_type", name="uix_review_order_target"),
)

# ------------------------
# Notifications / events
# ------------------------
device_tokens = Table(
    "device_tokens",
    metadata,
    Column("user_id", String, primary_key=True),
    Column("token", String, nullable=False),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=True),
    Column("entity_id", String, nullable=True),
    Column("channel", String, nullable=False),
    Column("title", String, nullable=False),
    Column("message", Text, nullable=False),
    Column("created_at", DateTime, default=datetime.utcnow),
)

event_logs = Table(
    "event_logs",
    metadata,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("payload", Text, nullable=False),
    Column("trace_id", String, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
)
