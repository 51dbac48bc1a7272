# main.py
from typing import Dict, List, Optional

from fastapi import FastAPI, Depends, Request, Response, WebSocket, WebSocketDisconnect, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from idelivery import __version__, ledger, orders as order_commands, parcels as parcel_commands
from idelivery import profiles, reviews as review_commands, store
from idelivery.auth import Actor, admin_required, get_current_user, get_trace_id
from idelivery.config import CORS_ORIGINS, SERVICE_NAME, get_logger
from idelivery.database import database, engine, metadata, load_json, row_to_dict
from idelivery.errors import DeliveryError, Forbidden, ValidationError
from idelivery.events import bus, install_default_subscribers
from idelivery.fees import compute_delivery_fee
from idelivery.metrics import REJECTED_COMMANDS
from idelivery.models import event_logs
from idelivery.notifications import Notifier
from idelivery.schemas import (
    AdvanceRequest, Customer, CustomerCreate, DeviceToken, Driver, DriverAccount, DriverConfig, DriverCreate,
    EventLog, FeeBreakdown, FeeQuoteRequest, GoodsCostEntry, Order, OrderCreate, Parcel, ParcelCreate,
    PaymentMethodChoice, Restaurant, RestaurantCreate, RestaurantLedger, Review, ReviewCreate, SettleRequest,
)
from idelivery.states import OrderStatus, ParcelStatus, Role
from idelivery.ws_manager import manager

logger = get_logger("idelivery.api")

app = FastAPI(title="iDelivery Core", version=__version__)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

# ------------------------- EVENT WIRING -------------------------
notifier = Notifier()
install_default_subscribers(bus)
notifier.subscribe(bus)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = get_trace_id(request)
    response = await call_next(request)
    response.headers["x-trace-id"] = trace_id
    logger.info(f"[TRACE {trace_id}] {request.method} {request.url.path} → {response.status_code}")
    return response


@app.exception_handler(DeliveryError)
async def delivery_error_handler(request: Request, exc: DeliveryError):
    trace_id = getattr(request.state, "trace_id", None)
    REJECTED_COMMANDS.labels(error=exc.code).inc()
    if exc.status_code >= 500:
        logger.error(f"[TRACE {trace_id}] ❌ {request.method} {request.url.path}: {exc.code}: {exc.detail}")
    else:
        logger.warning(f"[TRACE {trace_id}] ⚠ {request.method} {request.url.path} rejected: {exc.code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ------------------------- STARTUP / SHUTDOWN -------------------------
@app.on_event("startup")
async def startup():
    logger.info("Connecting database...")
    metadata.create_all(engine)
    await database.connect()
    logger.info("Startup complete.")


@app.on_event("shutdown")
async def shutdown():
    logger.info("Draining event subscribers...")
    await bus.drain()
    logger.info("Disconnecting database...")
    await database.disconnect()


# ------------------------- PROFILES -------------------------
@app.post("/customers", response_model=Customer)
async def create_customer(payload: CustomerCreate, user: Actor = Depends(get_current_user)):
    return await profiles.create_customer(user, payload)


@app.post("/drivers", response_model=Driver)
async def create_driver(payload: DriverCreate, user: Actor = Depends(get_current_user)):
    return await profiles.create_driver(user, payload)


@app.get("/drivers/{driver_id}", response_model=Driver)
async def get_driver(driver_id: str, user: Actor = Depends(get_current_user)):
    return await store.get_driver(driver_id)


@app.put("/drivers/{driver_id}/config", response_model=Driver)
async def update_driver_config(driver_id: str, config: DriverConfig, user: Actor = Depends(get_current_user)):
    return await profiles.update_driver_config(user, driver_id, config)


@app.post("/restaurants", response_model=Restaurant)
async def create_restaurant(payload: RestaurantCreate, user: Actor = Depends(get_current_user)):
    return await profiles.create_restaurant(user, payload)


@app.get("/restaurants/{restaurant_id}", response_model=Restaurant)
async def get_restaurant(restaurant_id: str, user: Actor = Depends(get_current_user)):
    return await store.get_restaurant(restaurant_id)


@app.post("/device-tokens")
async def register_device_token(payload: DeviceToken, user: Actor = Depends(get_current_user)):
    await profiles.register_device_token(user, payload.token)
    return {"message": "Device token registered"}


# ------------------------- ORDERS -------------------------
@app.post("/orders", response_model=Order)
async def place_order(payload: OrderCreate, user: Actor = Depends(get_current_user)):
    return await order_commands.place_order(user, payload)


@app.get("/orders", response_model=List[Order])
async def list_orders(status: Optional[OrderStatus] = Query(None), user: Actor = Depends(get_current_user)):
    return await order_commands.list_orders(user, status)


@app.get("/orders/{order_id}", response_model=Order)
async def get_order(order_id: str, user: Actor = Depends(get_current_user)):
    return await order_commands.view_order(user, order_id)


@app.post("/orders/{order_id}/accept", response_model=Order)
async def accept_order(order_id: str, user: Actor = Depends(get_current_user)):
    return await order_commands.accept_order_as_restaurant(user, order_id)


@app.post("/orders/{order_id}/assign-driver", response_model=Order)
async def assign_driver(order_id: str, user: Actor = Depends(get_current_user)):
    return await order_commands.assign_driver(user, order_id)


@app.get("/orders/{order_id}/payment-options", response_model=Dict[str, FeeBreakdown])
async def order_payment_options(order_id: str, user: Actor = Depends(get_current_user)):
    return await order_commands.quote_order_payment_options(user, order_id)


@app.post("/orders/{order_id}/payment-method", response_model=Order)
async def choose_order_payment_method(
    order_id: str, payload: PaymentMethodChoice, user: Actor = Depends(get_current_user)
):
    return await order_commands.choose_order_payment_method(user, order_id, payload.payment_method)


@app.post("/orders/{order_id}/advance", response_model=Order)
async def advance_order(order_id: str, payload: AdvanceRequest, user: Actor = Depends(get_current_user)):
    return await order_commands.advance_order_status(user, order_id, _order_status(payload.status))


@app.post("/orders/{order_id}/payshap/sent", response_model=Order)
async def confirm_order_payshap_sent(order_id: str, user: Actor = Depends(get_current_user)):
    return await order_commands.confirm_payshap_sent(user, order_id)


@app.post("/orders/{order_id}/payshap/acknowledge", response_model=Order)
async def acknowledge_order_payshap(order_id: str, user: Actor = Depends(get_current_user)):
    return await order_commands.acknowledge_payshap_received(user, order_id)


@app.post("/orders/{order_id}/reviews", response_model=Review)
async def submit_review(order_id: str, payload: ReviewCreate, user: Actor = Depends(get_current_user)):
    return await review_commands.submit_review(user, order_id, payload)


@app.get("/reviews/{target_type}/{target_id}", response_model=List[Review])
async def list_reviews(target_type: str, target_id: str, user: Actor = Depends(get_current_user)):
    return await review_commands.list_reviews(target_type, target_id)


# ------------------------- PARCELS -------------------------
@app.post("/parcels", response_model=Parcel)
async def request_parcel(payload: ParcelCreate, user: Actor = Depends(get_current_user)):
    return await parcel_commands.request_parcel(user, payload)


@app.get("/parcels", response_model=List[Parcel])
async def list_parcels(status: Optional[ParcelStatus] = Query(None), user: Actor = Depends(get_current_user)):
    return await parcel_commands.list_parcels(user, status)


@app.get("/parcels/{parcel_id}", response_model=Parcel)
async def get_parcel(parcel_id: str, user: Actor = Depends(get_current_user)):
    return await parcel_commands.view_parcel(user, parcel_id)


@app.post("/parcels/{parcel_id}/assign-driver", response_model=Parcel)
async def assign_parcel_driver(parcel_id: str, user: Actor = Depends(get_current_user)):
    return await parcel_commands.assign_parcel_driver(user, parcel_id)


@app.post("/parcels/{parcel_id}/goods-cost", response_model=Parcel)
async def set_goods_cost(parcel_id: str, payload: GoodsCostEntry, user: Actor = Depends(get_current_user)):
    return await parcel_commands.set_goods_cost(user, parcel_id, payload.goods_cost)


@app.get("/parcels/{parcel_id}/payment-options", response_model=Dict[str, FeeBreakdown])
async def parcel_payment_options(parcel_id: str, user: Actor = Depends(get_current_user)):
    return await parcel_commands.quote_parcel_payment_options(user, parcel_id)


@app.post("/parcels/{parcel_id}/payment-method", response_model=Parcel)
async def choose_parcel_payment_method(
    parcel_id: str, payload: PaymentMethodChoice, user: Actor = Depends(get_current_user)
):
    return await parcel_commands.choose_parcel_payment_method(user, parcel_id, payload.payment_method)


@app.post("/parcels/{parcel_id}/advance", response_model=Parcel)
async def advance_parcel(parcel_id: str, payload: AdvanceRequest, user: Actor = Depends(get_current_user)):
    return await parcel_commands.advance_parcel_status(user, parcel_id, _parcel_status(payload.status))


@app.post("/parcels/{parcel_id}/payshap/sent", response_model=Parcel)
async def confirm_parcel_payshap_sent(parcel_id: str, user: Actor = Depends(get_current_user)):
    return await parcel_commands.confirm_parcel_payshap_sent(user, parcel_id)


@app.post("/parcels/{parcel_id}/payshap/acknowledge", response_model=Parcel)
async def acknowledge_parcel_payshap(parcel_id: str, user: Actor = Depends(get_current_user)):
    return await parcel_commands.acknowledge_parcel_payshap_received(user, parcel_id)


# ------------------------- LEDGER -------------------------
@app.post("/ledgers/settle")
async def settle_ledger(payload: SettleRequest, user: Actor = Depends(get_current_user)):
    allowed = (
        user.role == Role.ADMIN
        or (user.role == Role.RESTAURANT and user.id == payload.restaurant_id)
        or (user.role == Role.DRIVER and user.id == payload.driver_id)
    )
    if not allowed:
        raise Forbidden(f"{user.role.value} {user.id} cannot settle this ledger")
    await ledger.settle(payload.restaurant_id, payload.driver_id)
    logger.info(f"[TRACE {user.trace_id}] Ledger settle requested by {user.role.value} {user.id}")
    return {"message": "Ledger settled", "restaurant_id": payload.restaurant_id, "driver_id": payload.driver_id}


@app.get("/drivers/{driver_id}/account", response_model=DriverAccount)
async def driver_account(driver_id: str, user: Actor = Depends(get_current_user)):
    if user.role != Role.ADMIN and user.id != driver_id:
        raise Forbidden("Access denied")
    return await ledger.driver_account(driver_id)


@app.get("/restaurants/{restaurant_id}/ledger", response_model=RestaurantLedger)
async def restaurant_ledger(restaurant_id: str, user: Actor = Depends(get_current_user)):
    if user.role != Role.ADMIN and user.id != restaurant_id:
        raise Forbidden("Access denied")
    return await ledger.restaurant_ledger(restaurant_id)


@app.get("/ledgers/verify")
async def verify_ledgers(user: Actor = Depends(admin_required)):
    pairs = await ledger.ledger.verify_all()
    return {"consistent": True, "pairs_checked": len(pairs)}


# ------------------------- FEES -------------------------
@app.post("/fees/quote", response_model=FeeBreakdown)
async def quote_fee(payload: FeeQuoteRequest, user: Actor = Depends(get_current_user)):
    driver = await store.get_driver(payload.driver_id)
    return compute_delivery_fee(payload.base_total, payload.address, driver, payload.payment_method)


# ------------------------- OPS -------------------------
@app.get("/events", response_model=List[EventLog])
async def recent_events(limit: int = Query(50, ge=1, le=500), user: Actor = Depends(admin_required)):
    rows = await database.fetch_all(event_logs.select().order_by(event_logs.c.created_at.desc()).limit(limit))
    result = []
    for row in rows:
        data = row_to_dict(event_logs, row)
        data["payload"] = load_json(data["payload"], {})
        result.append(EventLog(**data))
    return result


@app.websocket("/ws/events")
async def events_ws(websocket: WebSocket, entity_id: Optional[str] = Query(None)):
    await manager.connect(websocket, entity_id)
    try:
        while True:
            await websocket.receive_text()
            await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket)


@app.get("/health")
async def health():
    return {"status": f"{SERVICE_NAME} healthy"}


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ------------------------- HELPERS -------------------------
def _order_status(value: str) -> OrderStatus:
    return _parse_status(OrderStatus, value)


def _parcel_status(value: str) -> ParcelStatus:
    return _parse_status(ParcelStatus, value)


def _parse_status(enum, value: str):
    """Accept either the display value ('In Transit') or the member name ('IN_TRANSIT')."""
    for member in enum:
        if value in (member.value, member.name):
            return member
    raise ValidationError(f"unknown status '{value}'")
