import pytest

from idelivery import ledger, parcels
from idelivery.errors import Forbidden, InvalidTransition, ValidationError
from idelivery.events import PARCEL_AMOUNT_DUE_CHANGED, PARCEL_STATUS_CHANGED, bus
from idelivery.schemas import ParcelCreate, ParcelItem
from idelivery.states import ParcelStatus, PaymentMethod

S = ParcelStatus


def parcel_request(**overrides):
    data = dict(
        pickup_address="Somerset: Spar, 5 Main Rd",
        dropoff_address="Somerset West: 12 Oak Rd",
        parcels=[ParcelItem(description="Groceries", quantity=2), ParcelItem(description="Pharmacy bag")],
    )
    data.update(overrides)
    return ParcelCreate(**data)


async def at_pickup(parties):
    parcel = await parcels.request_parcel(parties["customer"], parcel_request())
    await parcels.assign_parcel_driver(parties["driver"], parcel.id)
    return await parcels.advance_parcel_status(parties["driver"], parcel.id, S.AT_PICKUP)


async def test_request_parcel(parties):
    parcel = await parcels.request_parcel(parties["customer"], parcel_request())

    assert parcel.status == S.PENDING_DRIVER_ASSIGNMENT
    assert parcel.goods_cost is None
    assert parcel.total is None
    assert all(item.id for item in parcel.parcels)


@pytest.mark.parametrize("overrides", [
    {"pickup_address": ""},
    {"dropoff_address": "   "},
    {"parcels": []},
    {"parcels": [ParcelItem(description=" ")]},
    {"parcels": [ParcelItem(description="Box", quantity=0)]},
])
async def test_request_validation(parties, overrides):
    with pytest.raises(ValidationError):
        await parcels.request_parcel(parties["customer"], parcel_request(**overrides))


async def test_goods_cost_gates_pickup(parties):
    parcel = await at_pickup(parties)

    with pytest.raises(InvalidTransition) as exc:
        await parcels.advance_parcel_status(parties["driver"], parcel.id, S.IN_TRANSIT)
    assert "goods cost" in exc.value.detail

    with pytest.raises(ValidationError):
        await parcels.set_goods_cost(parties["driver"], parcel.id, -5)

    parcel = await parcels.set_goods_cost(parties["driver"], parcel.id, 80)
    assert parcel.status == S.PENDING_PAYMENT
    assert parcel.goods_cost == 80
    # Somerset West area fee 20, no method yet
    assert parcel.delivery_fee == 20
    assert parcel.total == 100


async def test_only_driver_enters_goods_cost(parties):
    parcel = await at_pickup(parties)

    with pytest.raises(InvalidTransition):
        await parcels.set_goods_cost(parties["customer"], parcel.id, 10)


async def test_cash_parcel_earns_spread(parties):
    parcel = await at_pickup(parties)
    await parcels.set_goods_cost(parties["driver"], parcel.id, 80)

    parcel = await parcels.choose_parcel_payment_method(parties["customer"], parcel.id, PaymentMethod.CASH_ON_DELIVERY)
    assert parcel.status == S.IN_TRANSIT
    assert parcel.total == 100

    await parcels.advance_parcel_status(parties["driver"], parcel.id, S.AT_DROPOFF)
    parcel = await parcels.advance_parcel_status(parties["driver"], parcel.id, S.DELIVERED)

    account = await ledger.driver_account("drv-1")
    assert account.earnings == {parcel.id: 20.0}
    # parcels never touch the restaurant ledger
    assert account.restaurant_ledger == {}


async def test_courier_job_earns_full_fee(parties):
    parcel = await at_pickup(parties)
    await parcels.set_goods_cost(parties["driver"], parcel.id, 0)
    await parcels.choose_parcel_payment_method(parties["customer"], parcel.id, PaymentMethod.CASH_ON_DELIVERY)
    await parcels.advance_parcel_status(parties["driver"], parcel.id, S.AT_DROPOFF)
    parcel = await parcels.advance_parcel_status(parties["driver"], parcel.id, S.DELIVERED)

    assert parcel.delivery_fee == 20
    assert (await ledger.driver_account("drv-1")).earnings == {parcel.id: 20.0}


async def test_payshap_parcel_handshake(parties):
    parcel = await at_pickup(parties)
    await parcels.set_goods_cost(parties["driver"], parcel.id, 50)

    parcel = await parcels.choose_parcel_payment_method(parties["customer"], parcel.id, PaymentMethod.PAYSHAP)
    assert parcel.status == S.PENDING_PAYMENT
    assert parcel.delivery_fee == 25
    assert parcel.total == 75

    parcel = await parcels.confirm_parcel_payshap_sent(parties["customer"], parcel.id)
    assert parcel.status == S.AWAITING_DRIVER_CONFIRMATION
    parcel = await parcels.acknowledge_parcel_payshap_received(parties["driver"], parcel.id)
    assert parcel.status == S.IN_TRANSIT

    await parcels.advance_parcel_status(parties["driver"], parcel.id, S.AT_DROPOFF)
    parcel = await parcels.advance_parcel_status(parties["driver"], parcel.id, S.DELIVERED)
    assert (await ledger.driver_account("drv-1")).earnings == {parcel.id: 25.0}


async def test_method_required_before_leaving_payment(parties):
    parcel = await at_pickup(parties)
    await parcels.set_goods_cost(parties["driver"], parcel.id, 10)

    with pytest.raises(InvalidTransition) as exc:
        await parcels.advance_parcel_status(parties["driver"], parcel.id, S.IN_TRANSIT)
    assert "payment method" in exc.value.detail


async def test_parcel_claimed_once(parties):
    parcel = await parcels.request_parcel(parties["customer"], parcel_request())
    await parcels.assign_parcel_driver(parties["driver"], parcel.id)

    with pytest.raises(InvalidTransition) as exc:
        await parcels.assign_parcel_driver(parties["rival_driver"], parcel.id)
    assert exc.value.detail == "parcel already has a driver assigned"


async def test_other_driver_cannot_advance(parties):
    parcel = await parcels.request_parcel(parties["customer"], parcel_request())
    await parcels.assign_parcel_driver(parties["driver"], parcel.id)

    with pytest.raises(Forbidden):
        await parcels.advance_parcel_status(parties["rival_driver"], parcel.id, S.AT_PICKUP)


async def test_payment_options_use_goods_cost(parties):
    parcel = await at_pickup(parties)
    await parcels.set_goods_cost(parties["driver"], parcel.id, 40)

    options = await parcels.quote_parcel_payment_options(parties["customer"], parcel.id)
    assert options[PaymentMethod.PAYSHAP.value].total == 65
    assert options[PaymentMethod.CASH_ON_DELIVERY.value].total == 60
    # speedpoint has no method fee configured, so the driver's base fee applies
    assert options[PaymentMethod.SPEEDPOINT.value].payment_fee == 3


@pytest.mark.parametrize("goods_cost", [float("nan"), float("inf"), float("-inf")])
async def test_goods_cost_must_be_finite(parties, goods_cost):
    parcel = await at_pickup(parties)

    with pytest.raises(ValidationError):
        await parcels.set_goods_cost(parties["driver"], parcel.id, goods_cost)
    assert (await parcels.view_parcel(parties["driver"], parcel.id)).goods_cost is None


async def test_payshap_choice_announces_new_total(parties):
    parcel = await at_pickup(parties)
    await parcels.set_goods_cost(parties["driver"], parcel.id, 80)
    seen = []

    async def capture(event):
        seen.append((event["type"], event["data"]))

    bus.subscribe(PARCEL_AMOUNT_DUE_CHANGED, capture)
    bus.subscribe(PARCEL_STATUS_CHANGED, capture)
    parcel = await parcels.choose_parcel_payment_method(parties["customer"], parcel.id, PaymentMethod.PAYSHAP)
    await bus.drain()

    assert parcel.status == S.PENDING_PAYMENT
    assert parcel.total == 105.0
    assert seen == [
        (PARCEL_AMOUNT_DUE_CHANGED,
         {"entity_type": "parcel", "entity_id": parcel.id, "old_total": 100.0, "new_total": 105.0}),
    ]


async def test_cash_choice_moves_on_without_amount_event(parties):
    parcel = await at_pickup(parties)
    await parcels.set_goods_cost(parties["driver"], parcel.id, 80)
    seen = []

    async def capture(event):
        seen.append(event["type"])

    bus.subscribe(PARCEL_AMOUNT_DUE_CHANGED, capture)
    bus.subscribe(PARCEL_STATUS_CHANGED, capture)
    await parcels.choose_parcel_payment_method(parties["customer"], parcel.id, PaymentMethod.CASH_ON_DELIVERY)
    await bus.drain()

    assert seen == [PARCEL_STATUS_CHANGED]
