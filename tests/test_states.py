import pytest

from idelivery.errors import InvalidTransition
from idelivery.states import (
    ORDER_TRANSITIONS, PARCEL_TRANSITIONS, Action, Effect, OrderStatus, ParcelStatus, PaymentMethod, Role,
    resolve, resolve_target,
)

O = OrderStatus
P = ParcelStatus


def walk_order(method):
    """Follow driver advances from Driver Assigned to the end of a cash branch."""
    status, path = O.DRIVER_ASSIGNED, []
    while True:
        transition = ORDER_TRANSITIONS.get((status, method, Action.ADVANCE))
        if transition is None:
            return path
        path.append(transition.target)
        status = transition.target


@pytest.mark.parametrize("method", [PaymentMethod.CASH_ON_DELIVERY, PaymentMethod.SPEEDPOINT])
def test_cash_branch_visits_every_stage(method):
    assert walk_order(method) == [O.AT_RESTAURANT, O.IN_TRANSIT, O.AT_DROPOFF, O.DELIVERED]
    final = ORDER_TRANSITIONS[(O.AT_DROPOFF, method, Action.ADVANCE)]
    assert final.effect == Effect.CREDIT_CASH_COLLECTION


def test_payshap_branch_skips_dropoff():
    choose = resolve(ORDER_TRANSITIONS, "order", O.DRIVER_ASSIGNED, PaymentMethod.PAYSHAP,
                     Action.CHOOSE_PAYMENT_METHOD, Role.CUSTOMER)
    assert choose.target == O.PENDING_PAYMENT

    ack = resolve(ORDER_TRANSITIONS, "order", O.AWAITING_DRIVER_CONFIRMATION, PaymentMethod.PAYSHAP,
                  Action.ACKNOWLEDGE_PAYMENT, Role.DRIVER)
    assert ack.target == O.AT_RESTAURANT
    assert ack.effect == Effect.CREDIT_PREPAID

    deliver = resolve(ORDER_TRANSITIONS, "order", O.IN_TRANSIT, PaymentMethod.PAYSHAP, Action.ADVANCE, Role.DRIVER)
    assert deliver.target == O.DELIVERED
    assert deliver.effect == Effect.RECORD_EARNINGS


def test_cash_choice_keeps_driver_assigned():
    transition = resolve(ORDER_TRANSITIONS, "order", O.DRIVER_ASSIGNED, PaymentMethod.CASH_ON_DELIVERY,
                         Action.CHOOSE_PAYMENT_METHOD, Role.CUSTOMER)
    assert transition.target == O.DRIVER_ASSIGNED


def test_no_method_blocks_advance_from_driver_assigned():
    with pytest.raises(InvalidTransition):
        resolve(ORDER_TRANSITIONS, "order", O.DRIVER_ASSIGNED, None, Action.ADVANCE, Role.DRIVER)


def test_wrong_role_names_the_right_one():
    with pytest.raises(InvalidTransition) as exc:
        resolve(ORDER_TRANSITIONS, "order", O.PENDING_CONFIRMATION, None, Action.ACCEPT, Role.DRIVER)
    assert "only the restaurant" in exc.value.detail


def test_non_adjacent_target_rejected():
    with pytest.raises(InvalidTransition) as exc:
        resolve_target(ORDER_TRANSITIONS, "order", O.PENDING_CONFIRMATION, None, O.DELIVERED, Role.RESTAURANT)
    assert "Pending Confirmation" in exc.value.detail


def test_resolve_target_finds_restaurant_steps():
    action, transition = resolve_target(
        ORDER_TRANSITIONS, "order", O.ACCEPTED_BY_RESTAURANT, None, O.PENDING_DRIVER_ASSIGNMENT, Role.RESTAURANT
    )
    assert action == Action.MARK_READY
    assert transition.role == Role.RESTAURANT


def test_payshap_handshake_not_available_to_cash_orders():
    with pytest.raises(InvalidTransition):
        resolve(ORDER_TRANSITIONS, "order", O.DRIVER_ASSIGNED, PaymentMethod.SPEEDPOINT,
                Action.CONFIRM_PAYMENT_SENT, Role.CUSTOMER)


def test_parcel_goods_cost_opens_payment():
    transition = resolve(PARCEL_TRANSITIONS, "parcel", P.AT_PICKUP, None, Action.ENTER_GOODS_COST, Role.DRIVER)
    assert transition.target == P.PENDING_PAYMENT


def test_parcel_has_no_direct_pickup_to_transit():
    with pytest.raises(InvalidTransition):
        resolve_target(PARCEL_TRANSITIONS, "parcel", P.AT_PICKUP, None, P.IN_TRANSIT, Role.DRIVER)


@pytest.mark.parametrize("method,target", [
    (PaymentMethod.CASH_ON_DELIVERY, P.IN_TRANSIT),
    (PaymentMethod.SPEEDPOINT, P.IN_TRANSIT),
    (PaymentMethod.PAYSHAP, P.PENDING_PAYMENT),
])
def test_parcel_method_choice(method, target):
    transition = resolve(PARCEL_TRANSITIONS, "parcel", P.PENDING_PAYMENT, method,
                         Action.CHOOSE_PAYMENT_METHOD, Role.CUSTOMER)
    assert transition.target == target


def test_parcel_delivery_records_parcel_earnings():
    transition = PARCEL_TRANSITIONS[(P.AT_DROPOFF, "*", Action.ADVANCE)]
    assert transition.target == P.DELIVERED
    assert transition.effect == Effect.RECORD_PARCEL_EARNINGS
