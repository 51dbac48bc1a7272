import asyncio

import pytest

from idelivery import ledger
from idelivery.database import database
from idelivery.errors import InvalidTransition, LedgerInconsistency, NotFound
from idelivery.models import driver_restaurant_ledger, restaurant_driver_ledger
from idelivery.schemas import Order, Parcel
from idelivery.states import OrderStatus, ParcelStatus, PaymentMethod


def make_order(order_id="ord-1", driver_id="drv-1", food_total=100.0, delivery_fee=25.0):
    return Order(
        id=order_id,
        customer_id="cust-1",
        restaurant_id="rest-1",
        driver_id=driver_id,
        items=[],
        status=OrderStatus.DELIVERED,
        food_total=food_total,
        delivery_fee=delivery_fee,
        total=food_total + delivery_fee,
        payment_method=PaymentMethod.CASH_ON_DELIVERY,
        customer_address="Somerset: 2 Side St",
        restaurant_address="Somerset: 1 Main Rd",
    )


async def halves(driver_id="drv-1", restaurant_id="rest-1"):
    driver_side = await ledger.ledger.driver_balances(driver_id)
    restaurant_side = await ledger.ledger.restaurant_balances(restaurant_id)
    return driver_side.get(restaurant_id, 0.0), restaurant_side.get(driver_id, 0.0)


async def test_cash_collection_credits_both_halves_and_earnings(parties):
    await ledger.credit_on_cash_collection(make_order())

    assert await halves() == (100.0, 100.0)
    account = await ledger.driver_account("drv-1")
    assert account.earnings == {"ord-1": 25.0}
    assert account.total_owed == 100.0


async def test_prepaid_confirmation_defers_earnings(parties):
    order = make_order()
    await ledger.credit_on_prepaid_confirmation(order)

    assert await halves() == (100.0, 100.0)
    assert (await ledger.driver_account("drv-1")).earnings == {}

    await ledger.record_earnings_on_delivery(order)
    assert (await ledger.driver_account("drv-1")).earnings == {"ord-1": 25.0}


async def test_earnings_land_once_per_job(parties):
    order = make_order()
    await ledger.record_earnings_on_delivery(order)
    await ledger.record_earnings_on_delivery(order)

    assert await ledger.earnings_count("ord-1") == 1


async def test_credits_accumulate_per_pair(parties):
    await ledger.credit_on_cash_collection(make_order("ord-1", food_total=100.0))
    await ledger.credit_on_prepaid_confirmation(make_order("ord-2", food_total=45.5))

    assert await halves() == (145.5, 145.5)
    view = await ledger.restaurant_ledger("rest-1")
    assert view.driver_ledger == {"drv-1": 145.5}


async def test_settle_clears_both_sides(parties):
    await ledger.credit_on_cash_collection(make_order())
    await ledger.settle("rest-1", "drv-1")

    assert await ledger.ledger.driver_balances("drv-1") == {}
    assert await ledger.ledger.restaurant_balances("rest-1") == {}
    # earnings are never touched by settlement
    assert (await ledger.driver_account("drv-1")).earnings == {"ord-1": 25.0}


async def test_settle_without_balance_is_a_noop(parties):
    await ledger.settle("rest-1", "drv-1")
    await ledger.settle("rest-1", "drv-1")

    assert await halves() == (0.0, 0.0)


async def test_mirror_holds_after_mixed_sequence(parties):
    await ledger.credit_on_cash_collection(make_order("ord-1", food_total=60.0))
    await ledger.settle("rest-1", "drv-1")
    await ledger.credit_on_prepaid_confirmation(make_order("ord-2", food_total=30.0))
    await ledger.credit_on_cash_collection(make_order("ord-3", food_total=12.25))
    await ledger.settle("rest-1", "drv-2")

    pairs = await ledger.ledger.verify_all()
    assert pairs == [("drv-1", "rest-1")]
    assert await halves() == (42.25, 42.25)


async def test_divergent_halves_are_reported(parties):
    await ledger.credit_on_cash_collection(make_order())
    await database.execute(
        restaurant_driver_ledger.update()
        .where(restaurant_driver_ledger.c.restaurant_id == "rest-1")
        .values(amount_owed=1.0)
    )

    with pytest.raises(LedgerInconsistency):
        await ledger.ledger.verify_all()
    with pytest.raises(LedgerInconsistency):
        await ledger.credit_on_cash_collection(make_order("ord-2"))


async def test_missing_half_is_reported(parties):
    await ledger.credit_on_cash_collection(make_order())
    await database.execute(driver_restaurant_ledger.delete())

    with pytest.raises(LedgerInconsistency):
        await ledger.ledger.verify_pair("drv-1", "rest-1")


async def test_failed_credit_leaves_no_partial_write(parties):
    with pytest.raises(NotFound):
        await ledger.credit_on_cash_collection(make_order(driver_id="ghost"))
    with pytest.raises(InvalidTransition):
        await ledger.credit_on_cash_collection(make_order(driver_id=None))

    assert await ledger.ledger.verify_all() == []


async def test_parcel_earning_is_total_minus_goods(parties):
    parcel = Parcel(
        id="par-1",
        customer_id="cust-1",
        driver_id="drv-1",
        pickup_address="Somerset: Shop",
        dropoff_address="Somerset West: Home",
        parcels=[],
        status=ParcelStatus.DELIVERED,
        delivery_fee=20.0,
        goods_cost=80.0,
        total=100.0,
    )
    await ledger.record_parcel_earnings(parcel)

    account = await ledger.driver_account("drv-1")
    assert account.earnings == {"par-1": 20.0}
    assert account.delivered_jobs == 1


async def test_concurrent_credits_to_one_pair_both_land(parties):
    await asyncio.gather(
        ledger.credit_on_cash_collection(make_order("ord-a")),
        ledger.credit_on_cash_collection(make_order("ord-b")),
    )

    assert await halves() == (200.0, 200.0)
    assert await ledger.earnings_count("ord-a") == 1
    assert await ledger.earnings_count("ord-b") == 1


async def test_cash_and_prepaid_credits_race_on_existing_balance(parties):
    await ledger.credit_on_cash_collection(make_order("ord-1", food_total=10.0))

    await asyncio.gather(
        ledger.credit_on_cash_collection(make_order("ord-2", food_total=100.0)),
        ledger.credit_on_prepaid_confirmation(make_order("ord-3", food_total=40.0)),
    )

    assert await halves() == (150.0, 150.0)
    assert await ledger.ledger.verify_all() == [("drv-1", "rest-1")]


async def test_divergent_pair_is_not_settled(parties):
    await ledger.credit_on_cash_collection(make_order())
    await database.execute(
        restaurant_driver_ledger.update()
        .where(restaurant_driver_ledger.c.restaurant_id == "rest-1")
        .values(amount_owed=1.0)
    )

    with pytest.raises(LedgerInconsistency):
        await ledger.settle("rest-1", "drv-1")
    assert await halves() == (100.0, 1.0)
