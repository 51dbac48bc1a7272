# states.py
"""
Order and parcel lifecycles as transition tables.

Each table maps ``(current status, payment method, action)`` to the
``Transition`` that action produces. The payment-method slot is one of:

* a concrete ``PaymentMethod`` - the row only applies on that payment branch
  (for ``CHOOSE_PAYMENT_METHOD`` it is the method being chosen);
* ``None`` - the row only applies while no method has been chosen;
* ``ANY`` - the row applies regardless of the method.
"""
from enum import Enum
from typing import Dict, NamedTuple, Optional, Tuple, Union

from idelivery.errors import InvalidTransition


class OrderStatus(str, Enum):
    PENDING_CONFIRMATION = "Pending Confirmation"
    ACCEPTED_BY_RESTAURANT = "Accepted by Restaurant"
    PENDING_DRIVER_ASSIGNMENT = "Ready for Pickup"
    DRIVER_ASSIGNED = "Driver Assigned"
    PENDING_PAYMENT = "Pending Payment"
    AWAITING_DRIVER_CONFIRMATION = "Awaiting Driver Confirmation"
    AT_RESTAURANT = "At Restaurant"
    IN_TRANSIT = "In Transit"
    AT_DROPOFF = "At Dropoff"
    DELIVERED = "Delivered"


class ParcelStatus(str, Enum):
    PENDING_DRIVER_ASSIGNMENT = "Pending Driver Assignment"
    DRIVER_ASSIGNED = "Driver Assigned"
    AT_PICKUP = "At Pickup"
    PENDING_PAYMENT = "Pending Payment"
    AWAITING_DRIVER_CONFIRMATION = "Awaiting Driver Confirmation"
    IN_TRANSIT = "In Transit"
    AT_DROPOFF = "At Dropoff"
    DELIVERED = "Delivered"


class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "Cash on Delivery"
    SPEEDPOINT = "Speedpoint"
    PAYSHAP = "PayShap"


CASH_METHODS = (PaymentMethod.CASH_ON_DELIVERY, PaymentMethod.SPEEDPOINT)


class Role(str, Enum):
    CUSTOMER = "customer"
    DRIVER = "driver"
    RESTAURANT = "restaurant"
    ADMIN = "admin"


class Action(str, Enum):
    ACCEPT = "accept"
    MARK_READY = "mark ready"
    CLAIM = "claim"
    CHOOSE_PAYMENT_METHOD = "choose a payment method for"
    ADVANCE = "advance"
    ENTER_GOODS_COST = "enter goods cost for"
    CONFIRM_PAYMENT_SENT = "confirm payment sent for"
    ACKNOWLEDGE_PAYMENT = "acknowledge payment for"


class Effect(str, Enum):
    NONE = "none"
    CREDIT_CASH_COLLECTION = "credit_cash_collection"
    CREDIT_PREPAID = "credit_prepaid"
    RECORD_EARNINGS = "record_earnings"
    RECORD_PARCEL_EARNINGS = "record_parcel_earnings"


class Transition(NamedTuple):
    target: Enum
    role: Role
    effect: Effect = Effect.NONE


ANY = "*"

MethodSlot = Union[PaymentMethod, None, str]
TransitionTable = Dict[Tuple[Enum, MethodSlot, Action], Transition]

# Actions reachable through the generic "advance to status X" command.
ADVANCE_ACTIONS = (Action.ACCEPT, Action.MARK_READY, Action.ADVANCE)


def _order_table() -> TransitionTable:
    S = OrderStatus
    table: TransitionTable = {
        (S.PENDING_CONFIRMATION, ANY, Action.ACCEPT): Transition(S.ACCEPTED_BY_RESTAURANT, Role.RESTAURANT),
        (S.ACCEPTED_BY_RESTAURANT, ANY, Action.MARK_READY): Transition(S.PENDING_DRIVER_ASSIGNMENT, Role.RESTAURANT),
        (S.PENDING_DRIVER_ASSIGNMENT, ANY, Action.CLAIM): Transition(S.DRIVER_ASSIGNED, Role.DRIVER),
        # choosing PayShap opens the two-party payment handshake
        (S.DRIVER_ASSIGNED, PaymentMethod.PAYSHAP, Action.CHOOSE_PAYMENT_METHOD): Transition(S.PENDING_PAYMENT, Role.CUSTOMER),
        (S.PENDING_PAYMENT, PaymentMethod.PAYSHAP, Action.CONFIRM_PAYMENT_SENT): Transition(S.AWAITING_DRIVER_CONFIRMATION, Role.CUSTOMER),
        (S.AWAITING_DRIVER_CONFIRMATION, PaymentMethod.PAYSHAP, Action.ACKNOWLEDGE_PAYMENT): Transition(
            S.AT_RESTAURANT, Role.DRIVER, Effect.CREDIT_PREPAID
        ),
        (S.AT_RESTAURANT, PaymentMethod.PAYSHAP, Action.ADVANCE): Transition(S.IN_TRANSIT, Role.DRIVER),
        (S.IN_TRANSIT, PaymentMethod.PAYSHAP, Action.ADVANCE): Transition(S.DELIVERED, Role.DRIVER, Effect.RECORD_EARNINGS),
    }
    for method in CASH_METHODS:
        table.update({
            (S.DRIVER_ASSIGNED, method, Action.CHOOSE_PAYMENT_METHOD): Transition(S.DRIVER_ASSIGNED, Role.CUSTOMER),
            (S.DRIVER_ASSIGNED, method, Action.ADVANCE): Transition(S.AT_RESTAURANT, Role.DRIVER),
            (S.AT_RESTAURANT, method, Action.ADVANCE): Transition(S.IN_TRANSIT, Role.DRIVER),
            (S.IN_TRANSIT, method, Action.ADVANCE): Transition(S.AT_DROPOFF, Role.DRIVER),
            (S.AT_DROPOFF, method, Action.ADVANCE): Transition(S.DELIVERED, Role.DRIVER, Effect.CREDIT_CASH_COLLECTION),
        })
    return table


def _parcel_table() -> TransitionTable:
    S = ParcelStatus
    table: TransitionTable = {
        (S.PENDING_DRIVER_ASSIGNMENT, ANY, Action.CLAIM): Transition(S.DRIVER_ASSIGNED, Role.DRIVER),
        (S.DRIVER_ASSIGNED, ANY, Action.ADVANCE): Transition(S.AT_PICKUP, Role.DRIVER),
        (S.AT_PICKUP, ANY, Action.ENTER_GOODS_COST): Transition(S.PENDING_PAYMENT, Role.DRIVER),
        (S.PENDING_PAYMENT, PaymentMethod.PAYSHAP, Action.CHOOSE_PAYMENT_METHOD): Transition(S.PENDING_PAYMENT, Role.CUSTOMER),
        (S.PENDING_PAYMENT, PaymentMethod.PAYSHAP, Action.CONFIRM_PAYMENT_SENT): Transition(S.AWAITING_DRIVER_CONFIRMATION, Role.CUSTOMER),
        (S.AWAITING_DRIVER_CONFIRMATION, PaymentMethod.PAYSHAP, Action.ACKNOWLEDGE_PAYMENT): Transition(S.IN_TRANSIT, Role.DRIVER),
        (S.IN_TRANSIT, ANY, Action.ADVANCE): Transition(S.AT_DROPOFF, Role.DRIVER),
        (S.AT_DROPOFF, ANY, Action.ADVANCE): Transition(S.DELIVERED, Role.DRIVER, Effect.RECORD_PARCEL_EARNINGS),
    }
    for method in CASH_METHODS:
        table[(S.PENDING_PAYMENT, method, Action.CHOOSE_PAYMENT_METHOD)] = Transition(S.IN_TRANSIT, Role.CUSTOMER)
    return table


ORDER_TRANSITIONS = _order_table()
PARCEL_TRANSITIONS = _parcel_table()


def resolve(
    table: TransitionTable,
    entity: str,
    status: Enum,
    method: Optional[PaymentMethod],
    action: Action,
    role: Role,
) -> Transition:
    """Look up the transition for ``action`` or raise InvalidTransition with the reason."""
    transition = table.get((status, method, action)) or table.get((status, ANY, action))
    if transition is None:
        raise InvalidTransition(f"cannot {action.value} {entity} in status '{status.value}'")
    if transition.role != role:
        raise InvalidTransition(
            f"only the {transition.role.value} can {action.value} {entity} in status '{status.value}'"
        )
    return transition


def resolve_target(
    table: TransitionTable,
    entity: str,
    status: Enum,
    method: Optional[PaymentMethod],
    target: Enum,
    role: Role,
) -> Tuple[Action, Transition]:
    """Find the advance-style action that moves ``status`` to ``target``."""
    for action in ADVANCE_ACTIONS:
        transition = table.get((status, method, action)) or table.get((status, ANY, action))
        if transition is not None and transition.target == target:
            if transition.role != role:
                raise InvalidTransition(
                    f"only the {transition.role.value} can move {entity} from '{status.value}' to '{target.value}'"
                )
            return action, transition
    raise InvalidTransition(f"cannot move {entity} from '{status.value}' to '{target.value}'")
