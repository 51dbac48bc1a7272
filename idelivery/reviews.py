# reviews.py
"""
Customer reviews of the driver and the restaurant of a delivered order.

Reviews are an append-only log per target. The target's cached ``rating`` is
recomputed as the mean of that log (1 decimal) in the same transaction that
appends the review and sets the order's review flag.
"""
import uuid
from datetime import datetime
from typing import List

from sqlalchemy import func, select

from idelivery.auth import Actor
from idelivery.config import get_logger
from idelivery.database import database, row_to_dict
from idelivery.errors import AlreadyReviewed, Forbidden, InvalidTransition, ValidationError
from idelivery.models import drivers, orders, restaurants, reviews
from idelivery.schemas import Review, ReviewCreate
from idelivery.states import OrderStatus, Role
from idelivery import store

logger = get_logger("idelivery.reviews")

# target type -> (order flag column, target table, order column holding the target id)
REVIEW_TARGETS = {
    "driver": ("is_driver_reviewed", drivers, "driver_id"),
    "restaurant": ("is_restaurant_reviewed", restaurants, "restaurant_id"),
}


def validate_rating(rating) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError(f"rating must be a whole number from 1 to 5, got {rating!r}")
    return rating


async def average_rating(target_type: str, target_id: str) -> float:
    mean = await database.fetch_val(
        select(func.avg(reviews.c.rating))
        .where(reviews.c.target_type == target_type)
        .where(reviews.c.target_id == target_id)
    )
    return round(float(mean), 1) if mean is not None else 0.0


async def submit_review(actor: Actor, order_id: str, payload: ReviewCreate) -> Review:
    target_type = (payload.target or "").lower()
    if target_type not in REVIEW_TARGETS:
        raise ValidationError(f"review target must be 'driver' or 'restaurant', got '{payload.target}'")
    rating = validate_rating(payload.rating)

    order = await store.get_order(order_id)
    if actor.role != Role.CUSTOMER or actor.id != order.customer_id:
        raise Forbidden(f"only the customer of order {order.id} can review it")
    if order.status != OrderStatus.DELIVERED:
        raise InvalidTransition(
            f"order {order.id} can only be reviewed once delivered (status '{order.status.value}')"
        )

    flag, target_table, id_column = REVIEW_TARGETS[target_type]
    if getattr(order, flag):
        raise AlreadyReviewed(f"the {target_type} of order {order.id} has already been reviewed")
    target_id = getattr(order, id_column)
    customer = await store.get_customer(actor.id)

    review_id = str(uuid.uuid4())
    async with database.transaction():
        claimed = await database.fetch_one(
            orders.update()
            .where(orders.c.id == order.id)
            .where(orders.c[flag].is_(False))
            .values(**{flag: True, "updated_at": datetime.utcnow()})
            .returning(orders.c.id)
        )
        if claimed is None:
            raise AlreadyReviewed(f"the {target_type} of order {order.id} has already been reviewed")

        await database.execute(
            reviews.insert().values(
                id=review_id,
                order_id=order.id,
                customer_id=customer.id,
                customer_name=customer.name,
                target_type=target_type,
                target_id=target_id,
                rating=rating,
                comment=payload.comment or "",
                created_at=datetime.utcnow(),
            )
        )
        new_rating = await average_rating(target_type, target_id)
        await database.execute(
            target_table.update().where(target_table.c.id == target_id).values(rating=new_rating)
        )

    logger.info(
        f"[TRACE {actor.trace_id}] ⭐ {customer.id} rated {target_type} {target_id} {rating}/5 "
        f"on order {order.id} (now {new_rating})"
    )
    return Review(
        id=review_id,
        order_id=order.id,
        customer_id=customer.id,
        customer_name=customer.name,
        target_type=target_type,
        target_id=target_id,
        rating=rating,
        comment=payload.comment or "",
    )


async def list_reviews(target_type: str, target_id: str) -> List[Review]:
    rows = await database.fetch_all(
        reviews.select()
        .where(reviews.c.target_type == target_type)
        .where(reviews.c.target_id == target_id)
        .order_by(reviews.c.created_at)
    )
    result = []
    for row in rows:
        data = row_to_dict(reviews, row)
        data.pop("created_at", None)
        result.append(Review(**data))
    return result
