# profiles.py
"""Customer, driver and restaurant profiles for already-authenticated ids."""
from datetime import datetime

from idelivery.auth import Actor
from idelivery.config import get_logger
from idelivery.database import database, dump_json
from idelivery.errors import Forbidden, ValidationError
from idelivery.models import customers, device_tokens, drivers, restaurants
from idelivery.schemas import (
    Customer, CustomerCreate, Driver, DriverConfig, DriverCreate, Restaurant, RestaurantCreate,
)
from idelivery.states import Role
from idelivery import store

logger = get_logger("idelivery.profiles")


def _require_role(actor: Actor, role: Role) -> None:
    if actor.role != role:
        raise Forbidden(f"only a {role.value} can manage a {role.value} profile")


async def _ensure_new(table, record_id: str, label: str) -> None:
    if await database.fetch_one(table.select().where(table.c.id == record_id)):
        raise ValidationError(f"{label} profile {record_id} already exists")


def _validate_areas(config: DriverConfig) -> None:
    seen = {}
    for name in config.delivery_areas:
        key = name.strip().lower()
        if not key:
            raise ValidationError("delivery area names cannot be blank")
        if key in seen:
            raise ValidationError(f"delivery areas '{seen[key]}' and '{name}' differ only by case or spacing")
        seen[key] = name


def _config_values(config: DriverConfig) -> dict:
    _validate_areas(config)
    return {
        "base_fee": config.base_fee,
        "accepted_payment_methods": dump_json([m.value for m in config.accepted_payment_methods]),
        "fees": dump_json({k: v.dict() for k, v in config.fees.items()}),
        "delivery_areas": dump_json({k: v.dict() for k, v in config.delivery_areas.items()}),
    }


async def create_customer(actor: Actor, payload: CustomerCreate) -> Customer:
    _require_role(actor, Role.CUSTOMER)
    await _ensure_new(customers, actor.id, "customer")
    await database.execute(
        customers.insert().values(id=actor.id, created_at=datetime.utcnow(), **payload.dict())
    )
    logger.info(f"[TRACE {actor.trace_id}] ✅ Customer profile {actor.id} created")
    return await store.get_customer(actor.id)


async def create_driver(actor: Actor, payload: DriverCreate) -> Driver:
    _require_role(actor, Role.DRIVER)
    await _ensure_new(drivers, actor.id, "driver")
    await database.execute(
        drivers.insert().values(
            id=actor.id,
            name=payload.name,
            email=payload.email,
            phone_number=payload.phone_number,
            payment_phone_number=payload.payment_phone_number,
            bank_account_number=payload.bank_account_number,
            vehicle=payload.vehicle,
            rating=0.0,
            created_at=datetime.utcnow(),
            **_config_values(payload),
        )
    )
    logger.info(f"[TRACE {actor.trace_id}] ✅ Driver profile {actor.id} created ({payload.vehicle or 'no vehicle'})")
    return await store.get_driver(actor.id)


async def update_driver_config(actor: Actor, driver_id: str, config: DriverConfig) -> Driver:
    if actor.role != Role.ADMIN and (actor.role != Role.DRIVER or actor.id != driver_id):
        raise Forbidden(f"{actor.role.value} {actor.id} cannot configure driver {driver_id}")
    await store.get_driver(driver_id)
    await database.execute(drivers.update().where(drivers.c.id == driver_id).values(**_config_values(config)))
    logger.info(
        f"[TRACE {actor.trace_id}] 🔧 Driver {driver_id} config updated: "
        f"methods={[m.value for m in config.accepted_payment_methods]} areas={list(config.delivery_areas)}"
    )
    return await store.get_driver(driver_id)


async def create_restaurant(actor: Actor, payload: RestaurantCreate) -> Restaurant:
    _require_role(actor, Role.RESTAURANT)
    if not payload.address or not payload.address.strip():
        raise ValidationError("restaurant address is required")
    await _ensure_new(restaurants, actor.id, "restaurant")
    await database.execute(
        restaurants.insert().values(
            id=actor.id,
            name=payload.name,
            email=payload.email,
            phone_number=payload.phone_number,
            address=payload.address.strip(),
            rating=0.0,
            created_at=datetime.utcnow(),
        )
    )
    logger.info(f"[TRACE {actor.trace_id}] ✅ Restaurant profile {actor.id} created")
    return await store.get_restaurant(actor.id)


async def register_device_token(actor: Actor, token: str) -> None:
    if not token or not token.strip():
        raise ValidationError("device token is required")
    now = datetime.utcnow()
    async with database.transaction():
        await database.execute(device_tokens.delete().where(device_tokens.c.user_id == actor.id))
        await database.execute(device_tokens.insert().values(user_id=actor.id, token=token.strip(), updated_at=now))
    logger.info(f"[TRACE {actor.trace_id}] 📱 Device token registered for {actor.id}")
