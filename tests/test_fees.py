from idelivery.fees import compute_delivery_fee, payment_fee, quote_payment_options, resolve_area
from idelivery.schemas import Driver, FeeStructure
from idelivery.states import PaymentMethod


def make_driver(**overrides):
    data = dict(
        id="drv-1",
        name="Sipho",
        base_fee=3.0,
        accepted_payment_methods=[PaymentMethod.CASH_ON_DELIVERY, PaymentMethod.PAYSHAP],
        fees={PaymentMethod.PAYSHAP.value: FeeStructure(base_fee=5.0)},
        delivery_areas={
            "Somerset": FeeStructure(base_fee=10.0),
            "Somerset West": FeeStructure(base_fee=15.0),
        },
    )
    data.update(overrides)
    return Driver(**data)


def test_declared_area_prefers_longest_name():
    fee = compute_delivery_fee(0, "Somerset West: 12 Oak Rd", make_driver(), None)
    assert fee.area_fee == 15


def test_declared_area_is_case_insensitive():
    assert resolve_area("somerset west: 12 Oak Rd", make_driver().delivery_areas) == "Somerset West"


def test_substring_match_picks_longest_area():
    assert resolve_area("12 Oak Rd, Somerset West, 7130", make_driver().delivery_areas) == "Somerset West"
    assert resolve_area("4 Beach Rd, Somerset", make_driver().delivery_areas) == "Somerset"


def test_equal_length_areas_break_ties_lexically():
    areas = {"Zeta": FeeStructure(base_fee=1), "Beta": FeeStructure(base_fee=2)}
    assert resolve_area("between Zeta and Beta", areas) == "Beta"


def test_unknown_area_costs_nothing():
    fee = compute_delivery_fee(50, "Paarl: 3 Long St", make_driver(), None)
    assert fee.area_fee == 0
    assert fee.delivery_fee == 0
    assert fee.total == 50


def test_payment_fee_falls_back_to_driver_base_fee():
    driver = make_driver()
    assert payment_fee(driver, PaymentMethod.PAYSHAP) == 5
    assert payment_fee(driver, PaymentMethod.CASH_ON_DELIVERY) == 3
    assert payment_fee(driver, None) == 0


def test_area_and_payshap_fees_add_up():
    driver = make_driver(delivery_areas={"Somerset West": FeeStructure(base_fee=20.0)})
    fee = compute_delivery_fee(100, "Somerset West: 12 Oak Rd", driver, PaymentMethod.PAYSHAP)
    assert fee.area_fee == 20
    assert fee.payment_fee == 5
    assert fee.delivery_fee == 25
    assert fee.total == 125


def test_fee_is_deterministic():
    driver = make_driver()
    first = compute_delivery_fee(87.5, "Somerset: 1 Main Rd", driver, PaymentMethod.PAYSHAP)
    second = compute_delivery_fee(87.5, "Somerset: 1 Main Rd", driver, PaymentMethod.PAYSHAP)
    assert first == second


def test_quote_lists_only_accepted_methods():
    quotes = quote_payment_options(100, "Somerset: 1 Main Rd", make_driver())
    assert set(quotes) == {PaymentMethod.CASH_ON_DELIVERY.value, PaymentMethod.PAYSHAP.value}
    assert quotes[PaymentMethod.PAYSHAP.value].total == 115


def test_driver_without_methods_has_empty_quote():
    assert quote_payment_options(100, "Somerset: 1 Main Rd", make_driver(accepted_payment_methods=[])) == {}


def test_case_variant_areas_resolve_to_one_name():
    areas = {"somerset": FeeStructure(base_fee=5.0), "Somerset": FeeStructure(base_fee=10.0)}

    assert resolve_area("Somerset: 1 Main Rd", areas) == "Somerset"
    assert resolve_area("Somerset: 1 Main Rd", dict(reversed(list(areas.items())))) == "Somerset"
