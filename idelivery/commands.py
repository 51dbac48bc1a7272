# commands.py
"""Shared write path for order and parcel status commands."""
from datetime import datetime
from typing import Awaitable, Callable

from idelivery.auth import Actor
from idelivery.config import get_logger
from idelivery.database import database
from idelivery.errors import InvalidTransition
from idelivery.events import publish_status_changed
from idelivery.metrics import STATUS_TRANSITIONS
from idelivery.states import Action, Effect, Transition
from idelivery import store

logger = get_logger("idelivery.commands")


async def commit_transition(
    entity: str,
    table,
    fetch: Callable[[str], Awaitable],
    apply_effect: Callable[[Effect, object], Awaitable[None]],
    record,
    actor: Actor,
    action: Action,
    transition: Transition,
    require_unassigned: bool = False,
    require_no_method: bool = False,
    **values,
):
    """
    Write ``transition`` for ``record`` and run its ledger effect atomically.

    The status write is a compare-and-set on the status ``record`` was read
    with; losing that race aborts the whole command. The status-changed event
    goes out only after commit, and only when the status actually moved.
    """
    old_status = record.status
    new_status = transition.target
    async with database.transaction():
        applied = await store.compare_and_set(
            table,
            record.id,
            old_status.value,
            {"status": new_status.value, "updated_at": datetime.utcnow(), **values},
            require_unassigned=require_unassigned,
            require_no_method=require_no_method,
        )
        if not applied:
            current = await fetch(record.id)
            if require_unassigned and current.driver_id:
                raise InvalidTransition(f"{entity} already has a driver assigned")
            if require_no_method and current.payment_method is not None:
                raise InvalidTransition(f"a payment method has already been chosen for {entity} {record.id}")
            raise InvalidTransition(
                f"{entity} {record.id} changed concurrently: expected '{old_status.value}', "
                f"found '{current.status.value}'"
            )
        updated = await fetch(record.id)
        await apply_effect(transition.effect, updated)

    logger.info(
        f"[TRACE {actor.trace_id}] ✅ {entity.capitalize()} {record.id}: {action.value} by "
        f"{actor.role.value} {actor.id} '{old_status.value}' → '{new_status.value}'"
    )
    if new_status != old_status:
        STATUS_TRANSITIONS.labels(entity=entity, status=new_status.value).inc()
        publish_status_changed(entity, record.id, old_status.value, new_status.value, trace_id=actor.trace_id)
    return updated
