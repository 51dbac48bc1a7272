# store.py
"""Record lookups shared by the order, parcel, ledger and notification modules."""
from typing import Optional

from idelivery.database import database, row_to_dict, load_json
from idelivery.errors import NotFound
from idelivery.models import customers, drivers, restaurants, orders, parcels, device_tokens
from idelivery.schemas import Customer, Driver, Restaurant, Order, Parcel


def format_order(data: dict) -> Order:
    data = dict(data)
    data["items"] = load_json(data.get("items"), [])
    data["is_driver_reviewed"] = bool(data.get("is_driver_reviewed"))
    data["is_restaurant_reviewed"] = bool(data.get("is_restaurant_reviewed"))
    data.pop("updated_at", None)
    return Order(**data)


def format_parcel(data: dict) -> Parcel:
    data = dict(data)
    data["parcels"] = load_json(data.get("parcels"), [])
    data.pop("updated_at", None)
    return Parcel(**data)


def format_driver(data: dict) -> Driver:
    data = dict(data)
    data["accepted_payment_methods"] = load_json(data.get("accepted_payment_methods"), [])
    data["fees"] = load_json(data.get("fees"), {})
    data["delivery_areas"] = load_json(data.get("delivery_areas"), {})
    data.pop("created_at", None)
    return Driver(**data)


async def _fetch(table, record_id: str, label: str) -> dict:
    row = await database.fetch_one(table.select().where(table.c.id == record_id))
    if row is None:
        raise NotFound(f"{label} {record_id} not found")
    return row_to_dict(table, row)


async def get_order(order_id: str) -> Order:
    return format_order(await _fetch(orders, order_id, "order"))


async def get_parcel(parcel_id: str) -> Parcel:
    return format_parcel(await _fetch(parcels, parcel_id, "parcel"))


async def get_driver(driver_id: str) -> Driver:
    return format_driver(await _fetch(drivers, driver_id, "driver"))


async def get_restaurant(restaurant_id: str) -> Restaurant:
    data = await _fetch(restaurants, restaurant_id, "restaurant")
    data.pop("created_at", None)
    return Restaurant(**data)


async def get_customer(customer_id: str) -> Customer:
    data = await _fetch(customers, customer_id, "customer")
    data.pop("created_at", None)
    return Customer(**data)


async def get_device_token(user_id: str) -> Optional[str]:
    row = await database.fetch_one(device_tokens.select().where(device_tokens.c.user_id == user_id))
    return row["token"] if row else None


async def compare_and_set(table, record_id: str, expected_status: str, values: dict,
                          require_unassigned: bool = False, require_no_method: bool = False) -> bool:
    """
    Apply ``values`` only if the record is still in ``expected_status``.

    Returns False when another writer got there first. ``require_unassigned``
    additionally demands ``driver_id IS NULL`` (driver claims) and
    ``require_no_method`` demands ``payment_method IS NULL``.
    """
    query = table.update().where(table.c.id == record_id).where(table.c.status == expected_status)
    if require_unassigned:
        query = query.where(table.c.driver_id.is_(None))
    if require_no_method:
        query = query.where(table.c.payment_method.is_(None))
    row = await database.fetch_one(query.values(**values).returning(table.c.id))
    return row is not None
