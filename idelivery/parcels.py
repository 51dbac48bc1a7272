# parcels.py
"""
Parcel commands.

Parcels follow the same write path as orders but have no restaurant: the
driver fronts the cost of any goods at pickup, enters it as ``goods_cost``,
and the customer then pays ``goods_cost + delivery_fee``.
"""
import math
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from idelivery.auth import Actor
from idelivery.commands import commit_transition
from idelivery.config import get_logger
from idelivery.database import database, dump_json, row_to_dict
from idelivery.errors import Forbidden, InvalidTransition, ValidationError
from idelivery.events import publish_amount_due_changed, publish_status_changed
from idelivery.fees import compute_delivery_fee, quote_payment_options
from idelivery.metrics import STATUS_TRANSITIONS
from idelivery.models import parcels
from idelivery.schemas import FeeBreakdown, Parcel, ParcelCreate
from idelivery.states import (
    PARCEL_TRANSITIONS, Action, Effect, ParcelStatus, PaymentMethod, Role, Transition, resolve, resolve_target,
)
from idelivery import ledger, store

logger = get_logger("idelivery.parcels")

ENTITY = "parcel"


def _require_party(parcel: Parcel, actor: Actor) -> None:
    if actor.role == Role.ADMIN:
        return
    parties = {Role.CUSTOMER: parcel.customer_id, Role.DRIVER: parcel.driver_id}
    if parties.get(actor.role) != actor.id:
        raise Forbidden(f"{actor.role.value} {actor.id} is not a party to parcel {parcel.id}")


async def _apply_effect(effect: Effect, parcel: Parcel) -> None:
    if effect == Effect.RECORD_PARCEL_EARNINGS:
        await ledger.record_parcel_earnings(parcel)


async def _commit_transition(parcel: Parcel, actor: Actor, action: Action, transition: Transition, **kwargs) -> Parcel:
    return await commit_transition(
        ENTITY, parcels, store.get_parcel, _apply_effect, parcel, actor, action, transition, **kwargs
    )


def _validate_request(payload: ParcelCreate) -> None:
    if not payload.pickup_address or not payload.pickup_address.strip():
        raise ValidationError("pickup address is required")
    if not payload.dropoff_address or not payload.dropoff_address.strip():
        raise ValidationError("dropoff address is required")
    if not payload.parcels:
        raise ValidationError("a parcel request needs at least one item")
    for item in payload.parcels:
        if not item.description or not item.description.strip():
            raise ValidationError("every parcel item needs a description")
        if item.quantity < 1:
            raise ValidationError(f"invalid quantity {item.quantity} for '{item.description}'")


# ------------------------- REQUEST -------------------------
async def request_parcel(actor: Actor, payload: ParcelCreate) -> Parcel:
    if actor.role != Role.CUSTOMER:
        raise Forbidden("only customers can request parcel deliveries")
    _validate_request(payload)
    customer = await store.get_customer(actor.id)

    parcel_id = str(uuid.uuid4())
    items = [{**item.dict(), "id": item.id or str(uuid.uuid4())} for item in payload.parcels]
    now = datetime.utcnow()
    await database.execute(
        parcels.insert().values(
            id=parcel_id,
            customer_id=customer.id,
            driver_id=None,
            pickup_address=payload.pickup_address.strip(),
            dropoff_address=payload.dropoff_address.strip(),
            parcels=dump_json(items),
            status=ParcelStatus.PENDING_DRIVER_ASSIGNMENT.value,
            delivery_fee=0.0,
            goods_cost=None,
            payment_method=None,
            total=None,
            created_at=now,
            updated_at=now,
        )
    )
    logger.info(f"[TRACE {actor.trace_id}] ✅ Parcel {parcel_id} requested by {customer.id} ({len(items)} items)")
    STATUS_TRANSITIONS.labels(entity=ENTITY, status=ParcelStatus.PENDING_DRIVER_ASSIGNMENT.value).inc()
    publish_status_changed(
        ENTITY, parcel_id, None, ParcelStatus.PENDING_DRIVER_ASSIGNMENT.value, trace_id=actor.trace_id
    )
    return await store.get_parcel(parcel_id)


# ------------------------- DRIVER -------------------------
async def assign_parcel_driver(actor: Actor, parcel_id: str) -> Parcel:
    parcel = await store.get_parcel(parcel_id)
    if parcel.driver_id:
        raise InvalidTransition("parcel already has a driver assigned")
    transition = resolve(PARCEL_TRANSITIONS, ENTITY, parcel.status, parcel.payment_method, Action.CLAIM, actor.role)
    driver = await store.get_driver(actor.id)
    return await _commit_transition(
        parcel, actor, Action.CLAIM, transition, require_unassigned=True, driver_id=driver.id,
    )


async def set_goods_cost(actor: Actor, parcel_id: str, goods_cost: float) -> Parcel:
    """Driver enters what was paid for the goods at pickup (0 for a pure courier job)."""
    if goods_cost is None or not math.isfinite(goods_cost) or goods_cost < 0:
        raise ValidationError(f"goods cost must be a finite amount of zero or more, got {goods_cost}")
    parcel = await store.get_parcel(parcel_id)
    _require_party(parcel, actor)
    transition = resolve(
        PARCEL_TRANSITIONS, ENTITY, parcel.status, parcel.payment_method, Action.ENTER_GOODS_COST, actor.role
    )
    driver = await store.get_driver(parcel.driver_id)
    goods_cost = round(float(goods_cost), 2)
    fee = compute_delivery_fee(goods_cost, parcel.dropoff_address, driver, None)
    return await _commit_transition(
        parcel, actor, Action.ENTER_GOODS_COST, transition,
        goods_cost=goods_cost,
        delivery_fee=fee.delivery_fee,
        total=fee.total,
    )


# ------------------------- PAYMENT -------------------------
async def quote_parcel_payment_options(actor: Actor, parcel_id: str) -> Dict[str, FeeBreakdown]:
    parcel = await store.get_parcel(parcel_id)
    _require_party(parcel, actor)
    if not parcel.driver_id:
        raise InvalidTransition(f"parcel {parcel.id} has no driver assigned")
    driver = await store.get_driver(parcel.driver_id)
    return quote_payment_options(parcel.goods_cost or 0.0, parcel.dropoff_address, driver)


async def choose_parcel_payment_method(actor: Actor, parcel_id: str, method: PaymentMethod) -> Parcel:
    parcel = await store.get_parcel(parcel_id)
    _require_party(parcel, actor)
    if parcel.payment_method is not None:
        raise InvalidTransition(f"a payment method has already been chosen for parcel {parcel.id}")
    transition = resolve(
        PARCEL_TRANSITIONS, ENTITY, parcel.status, method, Action.CHOOSE_PAYMENT_METHOD, actor.role
    )

    driver = await store.get_driver(parcel.driver_id)
    if method not in driver.accepted_payment_methods:
        raise ValidationError(f"driver {driver.id} does not accept {method.value}")

    fee = compute_delivery_fee(parcel.goods_cost or 0.0, parcel.dropoff_address, driver, method)
    updated = await _commit_transition(
        parcel, actor, Action.CHOOSE_PAYMENT_METHOD, transition,
        require_no_method=True,
        payment_method=method.value,
        delivery_fee=fee.delivery_fee,
        total=fee.total,
    )
    # PayShap keeps the parcel in Pending Payment; the new total goes out as its own event
    if updated.status == parcel.status and updated.total != parcel.total:
        publish_amount_due_changed(updated.id, parcel.total, updated.total, trace_id=actor.trace_id)
    return updated


async def confirm_parcel_payshap_sent(actor: Actor, parcel_id: str) -> Parcel:
    parcel = await store.get_parcel(parcel_id)
    _require_party(parcel, actor)
    transition = resolve(
        PARCEL_TRANSITIONS, ENTITY, parcel.status, parcel.payment_method, Action.CONFIRM_PAYMENT_SENT, actor.role
    )
    return await _commit_transition(parcel, actor, Action.CONFIRM_PAYMENT_SENT, transition)


async def acknowledge_parcel_payshap_received(actor: Actor, parcel_id: str) -> Parcel:
    parcel = await store.get_parcel(parcel_id)
    _require_party(parcel, actor)
    transition = resolve(
        PARCEL_TRANSITIONS, ENTITY, parcel.status, parcel.payment_method, Action.ACKNOWLEDGE_PAYMENT, actor.role
    )
    return await _commit_transition(parcel, actor, Action.ACKNOWLEDGE_PAYMENT, transition)


# ------------------------- ADVANCE -------------------------
async def advance_parcel_status(actor: Actor, parcel_id: str, target: ParcelStatus) -> Parcel:
    parcel = await store.get_parcel(parcel_id)
    _require_party(parcel, actor)
    if parcel.status == ParcelStatus.AT_PICKUP and parcel.goods_cost is None:
        raise InvalidTransition("goods cost must be entered before the parcel can proceed")
    if parcel.status == ParcelStatus.PENDING_PAYMENT and parcel.payment_method is None:
        raise InvalidTransition("a payment method must be chosen before the parcel can proceed")
    action, transition = resolve_target(
        PARCEL_TRANSITIONS, ENTITY, parcel.status, parcel.payment_method, target, actor.role
    )
    return await _commit_transition(parcel, actor, action, transition)


# ------------------------- QUERIES -------------------------
def _visible_to(parcel: Parcel, actor: Actor) -> bool:
    if actor.role == Role.ADMIN:
        return True
    if actor.role == Role.CUSTOMER:
        return parcel.customer_id == actor.id
    if actor.role == Role.DRIVER:
        return parcel.driver_id == actor.id or (
            parcel.driver_id is None and parcel.status == ParcelStatus.PENDING_DRIVER_ASSIGNMENT
        )
    return False


async def view_parcel(actor: Actor, parcel_id: str) -> Parcel:
    parcel = await store.get_parcel(parcel_id)
    if not _visible_to(parcel, actor):
        raise Forbidden(f"{actor.role.value} {actor.id} cannot view parcel {parcel.id}")
    return parcel


async def list_parcels(actor: Actor, status: Optional[ParcelStatus] = None) -> List[Parcel]:
    query = parcels.select().order_by(parcels.c.created_at.desc())
    if status is not None:
        query = query.where(parcels.c.status == status.value)
    if actor.role == Role.CUSTOMER:
        query = query.where(parcels.c.customer_id == actor.id)
    rows = await database.fetch_all(query)
    result = [store.format_parcel(row_to_dict(parcels, row)) for row in rows]
    return [parcel for parcel in result if _visible_to(parcel, actor)]
