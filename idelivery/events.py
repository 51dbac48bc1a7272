# events.py
"""
In-process event bus for committed status changes.

Commands publish a ``StatusChanged`` event only after their transaction has
committed. Every subscriber runs in its own task: the publisher never waits
for it, and a failing subscriber is logged without affecting the command or
the other subscribers.

Envelope::

    {
        "type": "order.status_changed" | "parcel.status_changed",
        "event_id": "uuid",
        "data": {"entity_type", "entity_id", "old_status", "new_status"},
        "trace_id": "uuid",
        "timestamp": "iso-8601"
    }

``parcel.amount_due_changed`` uses the same envelope with
``{"entity_type", "entity_id", "old_total", "new_total"}`` as data.
"""
import asyncio
import json
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set

import aioboto3

from idelivery.config import (
    get_logger, USE_AWS, AWS_REGION, NOTIFICATION_QUEUE_URL, ANALYTICS_QUEUE_URL,
)
from idelivery.database import database, dump_json
from idelivery.models import event_logs
from idelivery.schemas import StatusChanged
from idelivery.ws_manager import manager

logger = get_logger("idelivery.events")

ORDER_STATUS_CHANGED = "order.status_changed"
PARCEL_STATUS_CHANGED = "parcel.status_changed"
PARCEL_AMOUNT_DUE_CHANGED = "parcel.amount_due_changed"
ALL_EVENTS = "*"

Handler = Callable[[dict], Awaitable[None]]

session = aioboto3.Session()

# Explicit routing
EVENT_TARGETS = {
    ORDER_STATUS_CHANGED: ["Notification Queue", "Analytics Queue"],
    PARCEL_STATUS_CHANGED: ["Notification Queue", "Analytics Queue"],
    PARCEL_AMOUNT_DUE_CHANGED: ["Notification Queue"],
}

SERVICE_QUEUE_MAP = {
    "Notification Queue": NOTIFICATION_QUEUE_URL,
    "Analytics Queue": ANALYTICS_QUEUE_URL,
}


def get_or_create_trace_id(existing_trace_id: Optional[str] = None) -> str:
    """Return existing trace_id or generate a new one."""
    if existing_trace_id:
        return existing_trace_id
    return str(uuid.uuid4())


class EventBus:
    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event_type: str, handler: Handler) -> None:
        if handler not in self._handlers[event_type]:
            self._handlers[event_type].append(handler)

    def handlers_for(self, event_type: str) -> List[Handler]:
        return list(self._handlers.get(event_type, [])) + list(self._handlers.get(ALL_EVENTS, []))

    def publish(self, event_type: str, data: dict, trace_id: Optional[str] = None) -> dict:
        event_payload = {
            "type": event_type,
            "event_id": str(uuid.uuid4()),
            "data": data,
            "trace_id": trace_id,
            "timestamp": datetime.utcnow().isoformat(),
        }
        for handler in self.handlers_for(event_type):
            task = asyncio.create_task(self._run(handler, event_payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return event_payload

    async def _run(self, handler: Handler, event: dict) -> None:
        name = getattr(handler, "__qualname__", repr(handler))
        try:
            await handler(event)
        except Exception as e:
            logger.error(f"[TRACE {event.get('trace_id')}] ❌ Subscriber {name} failed on {event['type']}: {e}")

    async def drain(self) -> None:
        """Wait until every dispatched handler (and anything it dispatched) has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


bus = EventBus()


def publish_status_changed(
    entity_type: str,
    entity_id: str,
    old_status: Optional[str],
    new_status: str,
    trace_id: Optional[str] = None,
) -> dict:
    data = StatusChanged(
        entity_type=entity_type,
        entity_id=entity_id,
        old_status=old_status,
        new_status=new_status,
    ).dict()
    event_type = ORDER_STATUS_CHANGED if entity_type == "order" else PARCEL_STATUS_CHANGED
    event = bus.publish(event_type, data, trace_id=trace_id)
    logger.info(
        f"[TRACE {trace_id}] 📣 {event_type} {entity_id}: '{old_status}' → '{new_status}' "
        f"event_id={event['event_id']}"
    )
    return event


def publish_amount_due_changed(
    parcel_id: str,
    old_total: Optional[float],
    new_total: float,
    trace_id: Optional[str] = None,
) -> dict:
    """A parcel's total moved without a status change (PayShap adds its fee while still pending payment)."""
    data = {"entity_type": "parcel", "entity_id": parcel_id, "old_total": old_total, "new_total": new_total}
    event = bus.publish(PARCEL_AMOUNT_DUE_CHANGED, data, trace_id=trace_id)
    logger.info(
        f"[TRACE {trace_id}] 📣 {PARCEL_AMOUNT_DUE_CHANGED} {parcel_id}: R{old_total} → R{new_total} "
        f"event_id={event['event_id']}"
    )
    return event


# ------------------------- BUILT-IN SUBSCRIBERS -------------------------
async def log_event_to_db(event: dict) -> None:
    await database.execute(
        event_logs.insert().values(
            id=event["event_id"],
            event_type=event["type"],
            payload=dump_json(event["data"]),
            trace_id=event.get("trace_id"),
            created_at=datetime.utcnow(),
        )
    )
    logger.info(f"[LOGGED] {event['type']} ({event['event_id']})")


async def broadcast_to_websockets(event: dict) -> None:
    await manager.broadcast(event)


async def forward_to_sqs(event: dict) -> None:
    if not USE_AWS:
        logger.info(f"[LOCAL EVENT EMIT] {event['type']} event_id={event['event_id']}")
        return

    async with session.client("sqs", region_name=AWS_REGION) as sqs:
        for target in EVENT_TARGETS.get(event["type"], []):
            queue_url = SERVICE_QUEUE_MAP.get(target)
            if not queue_url:
                logger.warning(f"[WARN] Missing queue for {target}")
                continue
            try:
                await sqs.send_message(QueueUrl=queue_url, MessageBody=json.dumps(event))
                logger.info(f"[SQS → {target}] {event['type']} event_id={event['event_id']}")
            except Exception as e:
                logger.warning(f"[SQS ERROR → {target}] {e}")


def install_default_subscribers(event_bus: EventBus = bus) -> None:
    for event_type in (ORDER_STATUS_CHANGED, PARCEL_STATUS_CHANGED, PARCEL_AMOUNT_DUE_CHANGED):
        event_bus.subscribe(event_type, log_event_to_db)
        event_bus.subscribe(event_type, broadcast_to_websockets)
        event_bus.subscribe(event_type, forward_to_sqs)
