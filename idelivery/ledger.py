# ledger.py
"""
Driver/restaurant money ledger.

A driver who collects payment for food owes the restaurant that amount. The
balance is kept twice: once on the driver's side (``driver_restaurant_ledger``)
and once on the restaurant's side (``restaurant_driver_ledger``). ``Ledger``
is the only writer of either half and always writes both inside a single
transaction, so the halves can only diverge through out-of-band edits, which
``verify_pair`` / ``verify_all`` report as ``LedgerInconsistency``.

Driver earnings are append-only: one row per delivered job, keyed by job id.
"""
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite

from idelivery.config import get_logger
from idelivery.database import database
from idelivery.errors import InvalidTransition, LedgerInconsistency, NotFound
from idelivery.metrics import LEDGER_OPERATIONS
from idelivery.models import (
    drivers, restaurants, driver_earnings,
    driver_restaurant_ledger, restaurant_driver_ledger,
)
from idelivery.schemas import Order, Parcel, DriverAccount, RestaurantLedger

logger = get_logger("idelivery.ledger")

EPSILON = 1e-9

UPSERT_DIALECTS = {"postgresql": postgresql.insert, "postgres": postgresql.insert, "sqlite": sqlite.insert}


def _money(amount: float) -> float:
    return round(float(amount), 2)


class Ledger:
    def __init__(self, db):
        self.db = db

    async def _halves(self, driver_id: str, restaurant_id: str) -> Tuple[Optional[float], Optional[float]]:
        driver_side = await self.db.fetch_one(
            driver_restaurant_ledger.select()
            .where(driver_restaurant_ledger.c.driver_id == driver_id)
            .where(driver_restaurant_ledger.c.restaurant_id == restaurant_id)
        )
        restaurant_side = await self.db.fetch_one(
            restaurant_driver_ledger.select()
            .where(restaurant_driver_ledger.c.restaurant_id == restaurant_id)
            .where(restaurant_driver_ledger.c.driver_id == driver_id)
        )
        return (
            driver_side["amount_owed"] if driver_side else None,
            restaurant_side["amount_owed"] if restaurant_side else None,
        )

    def _check(self, driver_id: str, restaurant_id: str,
               driver_side: Optional[float], restaurant_side: Optional[float]) -> None:
        if (driver_side is None) != (restaurant_side is None) or (
            driver_side is not None and abs(driver_side - restaurant_side) > EPSILON
        ):
            logger.error(
                f"[LEDGER] ❌ Divergence driver={driver_id} restaurant={restaurant_id}: "
                f"driver side={driver_side} restaurant side={restaurant_side}"
            )
            raise LedgerInconsistency(
                f"ledger halves disagree for driver {driver_id} and restaurant {restaurant_id}: "
                f"{driver_side} vs {restaurant_side}"
            )

    async def verify_pair(self, driver_id: str, restaurant_id: str) -> float:
        """Return the agreed balance for the pair (0 when absent on both sides)."""
        driver_side, restaurant_side = await self._halves(driver_id, restaurant_id)
        self._check(driver_id, restaurant_id, driver_side, restaurant_side)
        return driver_side or 0.0

    async def _increment(self, table, driver_id: str, restaurant_id: str, delta: float,
                         now: datetime) -> Optional[float]:
        row = await self.db.fetch_one(
            table.update()
            .where(table.c.driver_id == driver_id)
            .where(table.c.restaurant_id == restaurant_id)
            .values(amount_owed=table.c.amount_owed + delta, updated_at=now)
            .returning(table.c.amount_owed)
        )
        return row["amount_owed"] if row else None

    async def _insert_or_increment(self, table, driver_id: str, restaurant_id: str, delta: float,
                                   now: datetime) -> float:
        insert = UPSERT_DIALECTS[self.db.url.dialect]
        stmt = insert(table).values(
            driver_id=driver_id, restaurant_id=restaurant_id, amount_owed=delta, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=list(table.primary_key.columns),
            set_={"amount_owed": table.c.amount_owed + stmt.excluded.amount_owed, "updated_at": now},
        ).returning(table.c.amount_owed)
        row = await self.db.fetch_one(stmt)
        return row["amount_owed"]

    async def upsert(self, driver_id: str, restaurant_id: str, delta: float) -> float:
        """
        Add ``delta`` to both halves of the pair and return the new balance.

        Both halves are incremented in place, never read and written back, and
        the write comes before any read. Halves that disagree afterwards roll
        the credit back with ``LedgerInconsistency``.
        """
        now = datetime.utcnow()
        async with self.db.transaction():
            driver_side = await self._increment(driver_restaurant_ledger, driver_id, restaurant_id, delta, now)
            restaurant_side = await self._increment(restaurant_driver_ledger, driver_id, restaurant_id, delta, now)
            if driver_side is None and restaurant_side is None:
                driver_side = await self._insert_or_increment(
                    driver_restaurant_ledger, driver_id, restaurant_id, delta, now
                )
                restaurant_side = await self._insert_or_increment(
                    restaurant_driver_ledger, driver_id, restaurant_id, delta, now
                )
            self._check(driver_id, restaurant_id, driver_side, restaurant_side)
        return _money(driver_side)

    async def _delete(self, table, driver_id: str, restaurant_id: str) -> Optional[float]:
        row = await self.db.fetch_one(
            table.delete()
            .where(table.c.driver_id == driver_id)
            .where(table.c.restaurant_id == restaurant_id)
            .returning(table.c.amount_owed)
        )
        return row["amount_owed"] if row else None

    async def remove(self, driver_id: str, restaurant_id: str) -> float:
        """Delete both halves and return the balance they held (0 when absent)."""
        async with self.db.transaction():
            driver_side = await self._delete(driver_restaurant_ledger, driver_id, restaurant_id)
            restaurant_side = await self._delete(restaurant_driver_ledger, driver_id, restaurant_id)
            self._check(driver_id, restaurant_id, driver_side, restaurant_side)
        return _money(driver_side or 0.0)

    async def driver_balances(self, driver_id: str) -> Dict[str, float]:
        rows = await self.db.fetch_all(
            driver_restaurant_ledger.select().where(driver_restaurant_ledger.c.driver_id == driver_id)
        )
        return {row["restaurant_id"]: row["amount_owed"] for row in rows}

    async def restaurant_balances(self, restaurant_id: str) -> Dict[str, float]:
        rows = await self.db.fetch_all(
            restaurant_driver_ledger.select().where(restaurant_driver_ledger.c.restaurant_id == restaurant_id)
        )
        return {row["driver_id"]: row["amount_owed"] for row in rows}

    async def verify_all(self) -> List[Tuple[str, str]]:
        """Check every pair present on either side; returns the pairs checked."""
        pairs = set()
        for row in await self.db.fetch_all(driver_restaurant_ledger.select()):
            pairs.add((row["driver_id"], row["restaurant_id"]))
        for row in await self.db.fetch_all(restaurant_driver_ledger.select()):
            pairs.add((row["driver_id"], row["restaurant_id"]))
        for driver_id, restaurant_id in sorted(pairs):
            await self.verify_pair(driver_id, restaurant_id)
        return sorted(pairs)


ledger = Ledger(database)


# ------------------------- EARNINGS -------------------------
async def _append_earning(driver_id: str, job_id: str, job_type: str, amount: float) -> bool:
    existing = await database.fetch_one(driver_earnings.select().where(driver_earnings.c.job_id == job_id))
    if existing:
        logger.warning(f"[EARNINGS] ⚠ Earnings already recorded for {job_type} {job_id}, skipping")
        return False
    await database.execute(
        driver_earnings.insert().values(
            job_id=job_id,
            driver_id=driver_id,
            job_type=job_type,
            amount=_money(amount),
            recorded_at=datetime.utcnow(),
        )
    )
    LEDGER_OPERATIONS.labels(operation="earnings").inc()
    logger.info(f"[EARNINGS] 💰 Driver {driver_id} earned R{amount:.2f} for {job_type} {job_id}")
    return True


async def _require_parties(order: Order) -> None:
    if not order.driver_id:
        raise InvalidTransition(f"order {order.id} has no driver assigned")
    if await database.fetch_one(drivers.select().where(drivers.c.id == order.driver_id)) is None:
        raise NotFound(f"driver {order.driver_id} not found")
    if await database.fetch_one(restaurants.select().where(restaurants.c.id == order.restaurant_id)) is None:
        raise NotFound(f"restaurant {order.restaurant_id} not found")


# ------------------------- OPERATIONS -------------------------
async def credit_on_cash_collection(order: Order) -> None:
    """Driver collected cash/card at the door: driver owes the restaurant the food total and earns the fee."""
    await _require_parties(order)
    async with database.transaction():
        await ledger.upsert(order.driver_id, order.restaurant_id, order.food_total)
        await _append_earning(order.driver_id, order.id, "order", order.delivery_fee)
    LEDGER_OPERATIONS.labels(operation="credit_cash_collection").inc()
    logger.info(
        f"[LEDGER] Cash collected for order {order.id}: driver {order.driver_id} owes "
        f"restaurant {order.restaurant_id} +R{order.food_total:.2f}"
    )


async def credit_on_prepaid_confirmation(order: Order) -> None:
    """Customer paid the driver up front (PayShap); earnings wait for delivery."""
    await _require_parties(order)
    async with database.transaction():
        await ledger.upsert(order.driver_id, order.restaurant_id, order.food_total)
    LEDGER_OPERATIONS.labels(operation="credit_prepaid").inc()
    logger.info(
        f"[LEDGER] Prepaid order {order.id} acknowledged: driver {order.driver_id} owes "
        f"restaurant {order.restaurant_id} +R{order.food_total:.2f}"
    )


async def record_earnings_on_delivery(order: Order) -> None:
    if not order.driver_id:
        raise InvalidTransition(f"order {order.id} has no driver assigned")
    await _append_earning(order.driver_id, order.id, "order", order.delivery_fee)


async def record_parcel_earnings(parcel: Parcel) -> None:
    """The driver's margin on a parcel is what the customer paid minus the goods the driver fronted."""
    if not parcel.driver_id:
        raise InvalidTransition(f"parcel {parcel.id} has no driver assigned")
    earning = (parcel.total or 0.0) - (parcel.goods_cost or 0.0)
    await _append_earning(parcel.driver_id, parcel.id, "parcel", earning)


async def settle(restaurant_id: str, driver_id: str) -> None:
    """Clear the balance between one restaurant and one driver. Safe to repeat."""
    balance = await ledger.remove(driver_id, restaurant_id)
    LEDGER_OPERATIONS.labels(operation="settle").inc()
    if balance:
        logger.info(f"[LEDGER] 🤝 Settled R{balance:.2f} between restaurant {restaurant_id} and driver {driver_id}")
    else:
        logger.info(f"[LEDGER] Nothing to settle between restaurant {restaurant_id} and driver {driver_id}")


# ------------------------- VIEWS -------------------------
async def driver_account(driver_id: str) -> DriverAccount:
    if await database.fetch_one(drivers.select().where(drivers.c.id == driver_id)) is None:
        raise NotFound(f"driver {driver_id} not found")
    rows = await database.fetch_all(driver_earnings.select().where(driver_earnings.c.driver_id == driver_id))
    earnings = {row["job_id"]: row["amount"] for row in rows}
    balances = await ledger.driver_balances(driver_id)
    return DriverAccount(
        driver_id=driver_id,
        earnings=earnings,
        restaurant_ledger=balances,
        total_earnings=_money(sum(earnings.values())),
        total_owed=_money(sum(balances.values())),
        delivered_jobs=len(earnings),
    )


async def restaurant_ledger(restaurant_id: str) -> RestaurantLedger:
    if await database.fetch_one(restaurants.select().where(restaurants.c.id == restaurant_id)) is None:
        raise NotFound(f"restaurant {restaurant_id} not found")
    balances = await ledger.restaurant_balances(restaurant_id)
    return RestaurantLedger(
        restaurant_id=restaurant_id,
        driver_ledger=balances,
        total_owed=_money(sum(balances.values())),
    )


async def earnings_count(job_id: str) -> int:
    return await database.fetch_val(
        select(func.count()).select_from(driver_earnings).where(driver_earnings.c.job_id == job_id)
    )
