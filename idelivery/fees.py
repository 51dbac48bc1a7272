# fees.py
"""
Delivery fee engine.

``compute_delivery_fee`` is a pure function of the driver's fee configuration,
the delivery address and the chosen payment method, so the breakdown a
customer sees always matches what the driver's settings imply.
"""
from typing import Dict, List, Optional, Tuple

from idelivery.schemas import Driver, FeeBreakdown, FeeStructure
from idelivery.states import PaymentMethod

AREA_DELIMITER = ":"


def _money(amount: float) -> float:
    return round(float(amount), 2)


def resolve_area(address: str, areas: Dict[str, FeeStructure]) -> Optional[str]:
    """
    Pick the configured area an address belongs to.

    Addresses written as ``"Area: details"`` are matched on the declared area
    (case-insensitive). Otherwise the longest configured area name found in the
    address wins; equal lengths fall back to lexical order.
    """
    if not address or not areas:
        return None

    by_lower: Dict[str, str] = {}
    for name in sorted(areas):
        by_lower.setdefault(name.strip().lower(), name)
    if AREA_DELIMITER in address:
        declared = address.split(AREA_DELIMITER, 1)[0].strip().lower()
        if declared in by_lower:
            return by_lower[declared]

    haystack = address.lower()
    candidates: List[Tuple[int, str]] = [
        (-len(key), name) for key, name in by_lower.items() if key and key in haystack
    ]
    if not candidates:
        return None
    return min(candidates)[1]


def area_fee(address: str, driver: Driver) -> float:
    area = resolve_area(address, driver.delivery_areas)
    if area is None:
        return 0.0
    return _money(driver.delivery_areas[area].base_fee)


def payment_fee(driver: Driver, method: Optional[PaymentMethod]) -> float:
    if method is None:
        return 0.0
    fee = driver.fees.get(PaymentMethod(method).value)
    if fee is not None:
        return _money(fee.base_fee)
    return _money(driver.base_fee)


def compute_delivery_fee(
    base_total: float,
    address: str,
    driver: Driver,
    payment_method: Optional[PaymentMethod],
) -> FeeBreakdown:
    a_fee = area_fee(address, driver)
    p_fee = payment_fee(driver, payment_method)
    delivery_fee = _money(a_fee + p_fee)
    return FeeBreakdown(
        area_fee=a_fee,
        payment_fee=p_fee,
        delivery_fee=delivery_fee,
        total=_money(base_total + delivery_fee),
    )


def quote_payment_options(base_total: float, address: str, driver: Driver) -> Dict[str, FeeBreakdown]:
    """One breakdown per method the driver accepts; empty when none are configured."""
    return {
        PaymentMethod(method).value: compute_delivery_fee(base_total, address, driver, method)
        for method in driver.accepted_payment_methods
    }
