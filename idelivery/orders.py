# orders.py
"""
Order commands.

Each command validates the caller against the order's parties, resolves the
move in ``ORDER_TRANSITIONS``, then writes the status (compare-and-set on the
status it read) and any ledger effect in one transaction. The
``order.status_changed`` event is published only after that transaction
commits.
"""
import uuid
from datetime import datetime
from typing import List, Optional

from idelivery.auth import Actor
from idelivery.commands import commit_transition
from idelivery.config import get_logger
from idelivery.database import database, dump_json, row_to_dict
from idelivery.errors import Forbidden, InvalidTransition, ValidationError
from idelivery.events import publish_status_changed
from idelivery.fees import compute_delivery_fee, quote_payment_options
from idelivery.metrics import STATUS_TRANSITIONS
from idelivery.models import orders
from idelivery.schemas import FeeBreakdown, Order, OrderCreate
from idelivery.states import (
    ORDER_TRANSITIONS, Action, Effect, OrderStatus, PaymentMethod, Role, Transition, resolve, resolve_target,
)
from idelivery import ledger, store

logger = get_logger("idelivery.orders")

ENTITY = "order"


def _money(amount: float) -> float:
    return round(float(amount), 2)


def _require_party(order: Order, actor: Actor) -> None:
    """Admins pass; everyone else must be the customer, restaurant or driver of this order."""
    if actor.role == Role.ADMIN:
        return
    parties = {
        Role.CUSTOMER: order.customer_id,
        Role.RESTAURANT: order.restaurant_id,
        Role.DRIVER: order.driver_id,
    }
    if parties.get(actor.role) != actor.id:
        raise Forbidden(f"{actor.role.value} {actor.id} is not a party to order {order.id}")


async def _apply_effect(effect: Effect, order: Order) -> None:
    if effect == Effect.CREDIT_CASH_COLLECTION:
        await ledger.credit_on_cash_collection(order)
    elif effect == Effect.CREDIT_PREPAID:
        await ledger.credit_on_prepaid_confirmation(order)
    elif effect == Effect.RECORD_EARNINGS:
        await ledger.record_earnings_on_delivery(order)


async def _commit_transition(order: Order, actor: Actor, action: Action, transition: Transition, **kwargs) -> Order:
    return await commit_transition(
        ENTITY, orders, store.get_order, _apply_effect, order, actor, action, transition, **kwargs
    )


# ------------------------- PLACEMENT -------------------------
async def place_order(actor: Actor, payload: OrderCreate) -> Order:
    if actor.role != Role.CUSTOMER:
        raise Forbidden("only customers can place orders")
    if not payload.items:
        raise ValidationError("an order needs at least one item")
    if not payload.customer_address or not payload.customer_address.strip():
        raise ValidationError("customer address is required")

    customer = await store.get_customer(actor.id)
    restaurant = await store.get_restaurant(payload.restaurant_id)

    order_id = str(uuid.uuid4())
    food_total = _money(sum(item.price * item.quantity for item in payload.items))
    now = datetime.utcnow()
    await database.execute(
        orders.insert().values(
            id=order_id,
            customer_id=customer.id,
            restaurant_id=restaurant.id,
            driver_id=None,
            items=dump_json([item.dict() for item in payload.items]),
            status=OrderStatus.PENDING_CONFIRMATION.value,
            food_total=food_total,
            delivery_fee=0.0,
            total=food_total,
            payment_method=None,
            customer_address=payload.customer_address.strip(),
            restaurant_address=restaurant.address,
            is_driver_reviewed=False,
            is_restaurant_reviewed=False,
            created_at=now,
            updated_at=now,
        )
    )
    logger.info(f"[TRACE {actor.trace_id}] ✅ Order {order_id} placed by {customer.id} at {restaurant.id} (R{food_total:.2f})")
    STATUS_TRANSITIONS.labels(entity=ENTITY, status=OrderStatus.PENDING_CONFIRMATION.value).inc()
    publish_status_changed(ENTITY, order_id, None, OrderStatus.PENDING_CONFIRMATION.value, trace_id=actor.trace_id)
    return await store.get_order(order_id)


# ------------------------- RESTAURANT -------------------------
async def accept_order_as_restaurant(actor: Actor, order_id: str) -> Order:
    order = await store.get_order(order_id)
    _require_party(order, actor)
    transition = resolve(ORDER_TRANSITIONS, ENTITY, order.status, order.payment_method, Action.ACCEPT, actor.role)
    return await _commit_transition(order, actor, Action.ACCEPT, transition)


# ------------------------- DRIVER CLAIM -------------------------
async def assign_driver(actor: Actor, order_id: str) -> Order:
    """A driver claims a ready order. Exactly one concurrent claim wins."""
    order = await store.get_order(order_id)
    if order.driver_id:
        raise InvalidTransition("order already has a driver assigned")
    transition = resolve(ORDER_TRANSITIONS, ENTITY, order.status, order.payment_method, Action.CLAIM, actor.role)
    driver = await store.get_driver(actor.id)
    return await _commit_transition(
        order, actor, Action.CLAIM, transition, require_unassigned=True, driver_id=driver.id,
    )


# ------------------------- PAYMENT -------------------------
async def quote_order_payment_options(actor: Actor, order_id: str) -> dict:
    order = await store.get_order(order_id)
    _require_party(order, actor)
    if not order.driver_id:
        raise InvalidTransition(f"order {order.id} has no driver assigned")
    driver = await store.get_driver(order.driver_id)
    return quote_payment_options(order.food_total, order.customer_address, driver)


async def choose_order_payment_method(actor: Actor, order_id: str, method: PaymentMethod) -> Order:
    order = await store.get_order(order_id)
    _require_party(order, actor)
    if order.payment_method is not None:
        raise InvalidTransition(f"a payment method has already been chosen for order {order.id}")
    transition = resolve(ORDER_TRANSITIONS, ENTITY, order.status, method, Action.CHOOSE_PAYMENT_METHOD, actor.role)

    driver = await store.get_driver(order.driver_id)
    if method not in driver.accepted_payment_methods:
        raise ValidationError(f"driver {driver.id} does not accept {method.value}")

    fee: FeeBreakdown = compute_delivery_fee(order.food_total, order.customer_address, driver, method)
    return await _commit_transition(
        order, actor, Action.CHOOSE_PAYMENT_METHOD, transition,
        require_no_method=True,
        payment_method=method.value,
        delivery_fee=fee.delivery_fee,
        total=fee.total,
    )


async def confirm_payshap_sent(actor: Actor, order_id: str) -> Order:
    """Customer's "I Have Paid"."""
    order = await store.get_order(order_id)
    _require_party(order, actor)
    transition = resolve(
        ORDER_TRANSITIONS, ENTITY, order.status, order.payment_method, Action.CONFIRM_PAYMENT_SENT, actor.role
    )
    return await _commit_transition(order, actor, Action.CONFIRM_PAYMENT_SENT, transition)


async def acknowledge_payshap_received(actor: Actor, order_id: str) -> Order:
    """Driver's "Acknowledge Payment": credits the restaurant ledger for the food."""
    order = await store.get_order(order_id)
    _require_party(order, actor)
    transition = resolve(
        ORDER_TRANSITIONS, ENTITY, order.status, order.payment_method, Action.ACKNOWLEDGE_PAYMENT, actor.role
    )
    return await _commit_transition(order, actor, Action.ACKNOWLEDGE_PAYMENT, transition)


# ------------------------- ADVANCE -------------------------
async def advance_order_status(actor: Actor, order_id: str, target: OrderStatus) -> Order:
    order = await store.get_order(order_id)
    _require_party(order, actor)
    if order.status == OrderStatus.DRIVER_ASSIGNED and order.payment_method is None:
        raise InvalidTransition("a payment method must be chosen before the order can proceed")
    action, transition = resolve_target(
        ORDER_TRANSITIONS, ENTITY, order.status, order.payment_method, target, actor.role
    )
    return await _commit_transition(order, actor, action, transition)


# ------------------------- QUERIES -------------------------
def _visible_to(order: Order, actor: Actor) -> bool:
    if actor.role == Role.ADMIN:
        return True
    if actor.role == Role.CUSTOMER:
        return order.customer_id == actor.id
    if actor.role == Role.RESTAURANT:
        return order.restaurant_id == actor.id
    # drivers see their own jobs plus ready orders nobody has claimed
    return order.driver_id == actor.id or (
        order.driver_id is None and order.status == OrderStatus.PENDING_DRIVER_ASSIGNMENT
    )


async def view_order(actor: Actor, order_id: str) -> Order:
    order = await store.get_order(order_id)
    if not _visible_to(order, actor):
        raise Forbidden(f"{actor.role.value} {actor.id} cannot view order {order.id}")
    return order


async def list_orders(actor: Actor, status: Optional[OrderStatus] = None) -> List[Order]:
    query = orders.select().order_by(orders.c.created_at.desc())
    if status is not None:
        query = query.where(orders.c.status == status.value)
    if actor.role == Role.CUSTOMER:
        query = query.where(orders.c.customer_id == actor.id)
    elif actor.role == Role.RESTAURANT:
        query = query.where(orders.c.restaurant_id == actor.id)
    rows = await database.fetch_all(query)
    result = [store.format_order(row_to_dict(orders, row)) for row in rows]
    return [order for order in result if _visible_to(order, actor)]
