import os
import tempfile

# must be set before any idelivery module builds its Database
_DB_FILE = os.path.join(tempfile.mkdtemp(prefix="idelivery-tests-"), "test.db")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_FILE}"
os.environ["USE_AWS"] = "false"
os.environ.pop("WHATSAPP_API_KEY", None)
os.environ.pop("PUSH_GATEWAY_URL", None)

import pytest

from idelivery.auth import Actor
from idelivery.database import database, engine, metadata
from idelivery.events import bus
from idelivery.schemas import CustomerCreate, DriverCreate, FeeStructure, RestaurantCreate
from idelivery.states import PaymentMethod, Role
from idelivery import models  # noqa: F401
from idelivery import profiles


@pytest.fixture
def isolated_bus():
    """Run with no subscribers so commands leave no background writes behind."""
    saved = {event_type: list(handlers) for event_type, handlers in bus._handlers.items()}
    bus._handlers.clear()
    yield bus
    bus._handlers.clear()
    bus._handlers.update(saved)


@pytest.fixture
def tables():
    metadata.drop_all(engine)
    metadata.create_all(engine)
    yield
    metadata.drop_all(engine)


@pytest.fixture
async def db(tables, isolated_bus):
    await database.connect()
    yield database
    await bus.drain()
    await database.disconnect()


# ------------------------- ACTORS -------------------------
@pytest.fixture
def customer():
    return Actor(id="cust-1", role=Role.CUSTOMER, trace_id="trace-cust")


@pytest.fixture
def other_customer():
    return Actor(id="cust-2", role=Role.CUSTOMER, trace_id="trace-cust-2")


@pytest.fixture
def driver():
    return Actor(id="drv-1", role=Role.DRIVER, trace_id="trace-drv")


@pytest.fixture
def rival_driver():
    return Actor(id="drv-2", role=Role.DRIVER, trace_id="trace-drv-2")


@pytest.fixture
def restaurant():
    return Actor(id="rest-1", role=Role.RESTAURANT, trace_id="trace-rest")


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=Role.ADMIN, trace_id="trace-admin")


def driver_profile(name="Sipho", **overrides):
    data = dict(
        name=name,
        email=f"{name.lower()}@drivers.test",
        phone_number="082 123-4567",
        vehicle="Scooter",
        base_fee=3.0,
        accepted_payment_methods=[
            PaymentMethod.CASH_ON_DELIVERY, PaymentMethod.SPEEDPOINT, PaymentMethod.PAYSHAP,
        ],
        fees={
            PaymentMethod.PAYSHAP.value: FeeStructure(base_fee=5.0),
            PaymentMethod.CASH_ON_DELIVERY.value: FeeStructure(base_fee=0.0),
        },
        delivery_areas={
            "Somerset": FeeStructure(base_fee=10.0),
            "Somerset West": FeeStructure(base_fee=20.0),
        },
    )
    data.update(overrides)
    return DriverCreate(**data)


@pytest.fixture
async def parties(db, customer, other_customer, driver, rival_driver, restaurant):
    await profiles.create_customer(
        customer, CustomerCreate(name="Thandi", email="thandi@example.test", phone_number="0821112222")
    )
    await profiles.create_customer(other_customer, CustomerCreate(name="Pieter"))
    await profiles.create_driver(driver, driver_profile("Sipho"))
    await profiles.create_driver(rival_driver, driver_profile("Lerato"))
    await profiles.create_restaurant(
        restaurant,
        RestaurantCreate(name="Mama's Kitchen", address="Somerset: 1 Main Rd", email="kitchen@example.test"),
    )
    return {
        "customer": customer,
        "other_customer": other_customer,
        "driver": driver,
        "rival_driver": rival_driver,
        "restaurant": restaurant,
    }
