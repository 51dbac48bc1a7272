# notifications.py
"""
Status-change notifications.

The ``Notifier`` subscribes to the event bus and, for every committed status
change, sends templated WhatsApp messages and push notifications to the
parties of the order or parcel. E-mails are staged as rows in the
``notifications`` table for a mail worker to pick up.

Delivery is best-effort: a missing transport, a missing phone number or a
failed HTTP call is logged and counted, never raised back to the bus.
"""
import re
import uuid
from datetime import datetime
from typing import List, Optional

import httpx

from idelivery.config import (
    get_logger, WHATSAPP_API_URL, WHATSAPP_API_KEY, PUSH_GATEWAY_URL, PUSH_GATEWAY_KEY,
    APP_LINK, PHONE_COUNTRY_CODE, NOTIFICATION_TIMEOUT,
)
from idelivery.database import database
from idelivery.errors import NotFound
from idelivery.events import ORDER_STATUS_CHANGED, PARCEL_AMOUNT_DUE_CHANGED, PARCEL_STATUS_CHANGED, EventBus
from idelivery.metrics import NOTIFICATIONS_SENT, NOTIFICATIONS_FAILED
from idelivery.models import notifications
from idelivery.states import ParcelStatus
from idelivery import store

logger = get_logger("idelivery.notifications")

WHATSAPP = "whatsapp"
PUSH = "push"
EMAIL = "email"


def normalize_phone(phone: Optional[str], country_code: str = PHONE_COUNTRY_CODE) -> Optional[str]:
    """'082 123-4567' -> '27821234567'; '+27821234567' -> '27821234567'."""
    if not phone:
        return None
    clean = re.sub(r"[\s-]", "", phone)
    if clean.startswith("0"):
        clean = country_code + clean[1:]
    if clean.startswith("+"):
        clean = clean[1:]
    return clean or None


# ------------------------- TRANSPORTS -------------------------
class WhatsAppClient:
    """Campaign-template sender for the AiSensy WhatsApp API."""

    def __init__(self, api_url: str = WHATSAPP_API_URL, api_key: Optional[str] = WHATSAPP_API_KEY,
                 timeout: float = NOTIFICATION_TIMEOUT):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self.enabled = bool(api_url and api_key)
        if not self.enabled:
            logger.warning("⚠️ WhatsApp API key missing. Templated notifications disabled.")

    def build_payload(self, destination: str, template: str, params: List[str]) -> dict:
        return {
            "apiKey": self.api_key,
            "campaignName": template,
            "destination": destination,
            "userName": params[0] if params else "",
            "templateParams": params,
            "media": {},
        }

    async def send_template(self, phone: str, template: str, params: List[str]) -> None:
        destination = normalize_phone(phone)
        logger.info(f"[WhatsApp] Sending to: {destination} (Template: {template})")
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.api_url, json=self.build_payload(destination, template, params))
            response.raise_for_status()


class PushClient:
    """Posts ``{token, title, body}`` to an HTTP push gateway."""

    def __init__(self, gateway_url: Optional[str] = PUSH_GATEWAY_URL, api_key: Optional[str] = PUSH_GATEWAY_KEY,
                 timeout: float = NOTIFICATION_TIMEOUT):
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.timeout = timeout
        self.enabled = bool(gateway_url)
        if not self.enabled:
            logger.warning("⚠️ Push gateway URL missing. Push notifications disabled.")

    async def send(self, token: str, title: str, body: str) -> None:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.gateway_url,
                json={"token": token, "title": title, "body": body},
                headers=headers,
            )
            response.raise_for_status()


# ------------------------- NOTIFIER -------------------------
class Notifier:
    def __init__(self, whatsapp=None, push=None):
        self.whatsapp = whatsapp if whatsapp is not None else WhatsAppClient()
        self.push = push if push is not None else PushClient()

    def subscribe(self, bus: EventBus) -> None:
        bus.subscribe(ORDER_STATUS_CHANGED, self.handle_status_changed)
        bus.subscribe(PARCEL_STATUS_CHANGED, self.handle_status_changed)
        bus.subscribe(PARCEL_AMOUNT_DUE_CHANGED, self.handle_amount_due_changed)

    async def handle_status_changed(self, event: dict) -> None:
        data = event["data"]
        trace_id = event.get("trace_id")
        try:
            if data["entity_type"] == "parcel":
                await self.notify_parcel(data["entity_id"], data["new_status"], trace_id)
            else:
                await self.notify_order(data["entity_id"], data["new_status"], trace_id)
        except Exception as e:
            logger.error(f"[TRACE {trace_id}] ❌ Notification handling failed for {data.get('entity_id')}: {e}")

    async def handle_amount_due_changed(self, event: dict) -> None:
        """Re-send the payment request so the customer sees the total including the payment fee."""
        data = event["data"]
        trace_id = event.get("trace_id")
        try:
            await self.notify_parcel(data["entity_id"], ParcelStatus.PENDING_PAYMENT.value, trace_id)
        except Exception as e:
            logger.error(f"[TRACE {trace_id}] ❌ Amount-due notification failed for {data.get('entity_id')}: {e}")

    # ---- recording ----
    async def _record(self, channel: str, user_id: Optional[str], entity_id: str, title: str, message: str) -> None:
        await database.execute(
            notifications.insert().values(
                id=str(uuid.uuid4()),
                user_id=user_id,
                entity_id=entity_id,
                channel=channel,
                title=title,
                message=message,
                created_at=datetime.utcnow(),
            )
        )

    # ---- dispatch helpers (never raise) ----
    async def _send_template(self, user_id: str, phone: Optional[str], entity_id: str,
                             template: str, params: List[str], trace_id: Optional[str]) -> bool:
        if not phone:
            logger.info(f"[TRACE {trace_id}] No phone number for {user_id}, skipping {template}")
            return False
        if not self.whatsapp.enabled:
            logger.info(f"[TRACE {trace_id}] WhatsApp disabled, skipping {template} for {user_id}")
            return False
        try:
            await self.whatsapp.send_template(phone, template, params)
            await self._record(WHATSAPP, user_id, entity_id, template, ", ".join(params))
            NOTIFICATIONS_SENT.labels(channel=WHATSAPP).inc()
            logger.info(f"[TRACE {trace_id}] 📲 WhatsApp {template} sent to {user_id}")
            return True
        except Exception as e:
            NOTIFICATIONS_FAILED.labels(channel=WHATSAPP).inc()
            logger.warning(f"[TRACE {trace_id}] ⚠ WhatsApp {template} to {user_id} failed: {e}")
            return False

    async def _send_push(self, user_id: str, entity_id: str, title: str, body: str,
                         trace_id: Optional[str]) -> bool:
        if not self.push.enabled:
            return False
        token = await store.get_device_token(user_id)
        if not token:
            return False
        try:
            await self.push.send(token, title, body)
            await self._record(PUSH, user_id, entity_id, title, body)
            NOTIFICATIONS_SENT.labels(channel=PUSH).inc()
            logger.info(f"[TRACE {trace_id}] 🔔 Push '{title}' sent to {user_id}")
            return True
        except Exception as e:
            NOTIFICATIONS_FAILED.labels(channel=PUSH).inc()
            logger.warning(f"[TRACE {trace_id}] ⚠ Push to {user_id} failed: {e}")
            return False

    async def _stage_email(self, user_id: str, email: Optional[str], entity_id: str, subject: str,
                           text: str, trace_id: Optional[str]) -> bool:
        if not email:
            return False
        try:
            await self._record(EMAIL, user_id, entity_id, subject, f"{email}\n{text}")
            NOTIFICATIONS_SENT.labels(channel=EMAIL).inc()
            return True
        except Exception as e:
            NOTIFICATIONS_FAILED.labels(channel=EMAIL).inc()
            logger.warning(f"[TRACE {trace_id}] ⚠ Failed to stage e-mail for {user_id}: {e}")
            return False

    # ---- rules ----
    async def notify_parcel(self, parcel_id: str, status: str, trace_id: Optional[str] = None) -> None:
        try:
            parcel = await store.get_parcel(parcel_id)
            customer = await store.get_customer(parcel.customer_id)
            driver = await store.get_driver(parcel.driver_id) if parcel.driver_id else None
        except NotFound as e:
            logger.warning(f"[TRACE {trace_id}] Parcel notification skipped: {e.detail}")
            return

        amount_due = parcel.total if parcel.total is not None else (parcel.goods_cost or 0.0)
        amount = f"{amount_due:.2f}"

        if status == ParcelStatus.DRIVER_ASSIGNED.value and driver:
            await self._send_template(
                customer.id, customer.phone_number, parcel.id,
                "driver_assigned", [customer.name, driver.name, APP_LINK], trace_id,
            )
        elif status == ParcelStatus.PENDING_PAYMENT.value:
            await self._send_template(
                customer.id, customer.phone_number, parcel.id,
                "payment_request", [customer.name, amount, APP_LINK], trace_id,
            )
        elif status == ParcelStatus.AWAITING_DRIVER_CONFIRMATION.value and driver:
            await self._send_template(
                driver.id, driver.phone_number or driver.payment_phone_number, parcel.id,
                "payment_received", [amount, parcel.id[:6]], trace_id,
            )

        body = f"Status Update: {status}"
        if status == ParcelStatus.PENDING_PAYMENT.value:
            body = f"Amount Set: R{amount}. Tap to pay."
        await self._send_push(customer.id, parcel.id, "Parcel Update", body, trace_id)

    async def notify_order(self, order_id: str, status: str, trace_id: Optional[str] = None) -> None:
        try:
            order = await store.get_order(order_id)
            customer = await store.get_customer(order.customer_id)
        except NotFound as e:
            logger.warning(f"[TRACE {trace_id}] Order notification skipped: {e.detail}")
            return

        parties = [(customer.id, customer.email)]
        if order.driver_id:
            try:
                driver = await store.get_driver(order.driver_id)
                parties.append((driver.id, driver.email))
            except NotFound:
                logger.warning(f"[TRACE {trace_id}] Driver {order.driver_id} of order {order.id} not found")
        try:
            restaurant = await store.get_restaurant(order.restaurant_id)
            parties.append((restaurant.id, restaurant.email))
        except NotFound:
            logger.warning(f"[TRACE {trace_id}] Restaurant {order.restaurant_id} of order {order.id} not found")

        await self._send_template(
            customer.id, customer.phone_number, order.id,
            "order_status_update", [customer.name, status, order.id[:6]], trace_id,
        )

        subject = f"Order Update: {order.id}"
        text = f"The status of your order #{order.id} has been updated to: {status}"
        staged = 0
        for user_id, email in parties:
            if await self._stage_email(user_id, email, order.id, subject, text, trace_id):
                staged += 1
        if staged:
            logger.info(f"[TRACE {trace_id}] [{order.id}] Email queued for {staged} recipients.")

        for user_id, _ in parties:
            await self._send_push(
                user_id, order.id, "Order Status Update", f"Your order status is now: {status}", trace_id,
            )
