# schemas.py
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from idelivery.states import OrderStatus, ParcelStatus, PaymentMethod


# ------------------------- CONFIG VALUES -------------------------
class FeeStructure(BaseModel):
    base_fee: float = Field(0.0, ge=0)


class FeeBreakdown(BaseModel):
    area_fee: float
    payment_fee: float
    delivery_fee: float
    total: float


# ------------------------- PARTIES -------------------------
class CustomerCreate(BaseModel):
    name: str
    email: Optional[str] = None
    phone_number: Optional[str] = None


class Customer(CustomerCreate):
    id: str


class DriverConfig(BaseModel):
    base_fee: float = Field(0.0, ge=0)
    accepted_payment_methods: List[PaymentMethod] = []
    fees: Dict[str, FeeStructure] = {}
    delivery_areas: Dict[str, FeeStructure] = {}


class DriverCreate(DriverConfig):
    name: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    payment_phone_number: Optional[str] = None
    bank_account_number: Optional[str] = None
    vehicle: Optional[str] = None


class Driver(DriverCreate):
    id: str
    rating: float = 0.0


class RestaurantCreate(BaseModel):
    name: str
    address: str
    email: Optional[str] = None
    phone_number: Optional[str] = None


class Restaurant(RestaurantCreate):
    id: str
    rating: float = 0.0


class DeviceToken(BaseModel):
    token: str


# ------------------------- ORDERS -------------------------
class MenuItem(BaseModel):
    id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    description: Optional[str] = None


class OrderCreate(BaseModel):
    restaurant_id: str
    items: List[MenuItem]
    customer_address: str


class Order(BaseModel):
    id: str
    customer_id: str
    restaurant_id: str
    driver_id: Optional[str] = None
    items: List[MenuItem]
    status: OrderStatus
    food_total: float
    delivery_fee: float = 0.0
    total: float
    payment_method: Optional[PaymentMethod] = None
    customer_address: str
    restaurant_address: str
    created_at: Optional[datetime] = None
    is_driver_reviewed: bool = False
    is_restaurant_reviewed: bool = False


# ------------------------- PARCELS -------------------------
class ParcelItem(BaseModel):
    id: Optional[str] = None
    description: str
    quantity: int = 1


class ParcelCreate(BaseModel):
    pickup_address: str
    dropoff_address: str
    parcels: List[ParcelItem]


class Parcel(BaseModel):
    id: str
    customer_id: str
    driver_id: Optional[str] = None
    pickup_address: str
    dropoff_address: str
    parcels: List[ParcelItem]
    status: ParcelStatus
    delivery_fee: float = 0.0
    goods_cost: Optional[float] = None
    payment_method: Optional[PaymentMethod] = None
    total: Optional[float] = None
    created_at: Optional[datetime] = None


class GoodsCostEntry(BaseModel):
    goods_cost: float


# ------------------------- COMMAND BODIES -------------------------
class PaymentMethodChoice(BaseModel):
    payment_method: PaymentMethod


class AdvanceRequest(BaseModel):
    status: str


class ReviewCreate(BaseModel):
    target: str  # "driver" | "restaurant"
    rating: int
    comment: Optional[str] = ""


class Review(BaseModel):
    id: str
    order_id: str
    customer_id: str
    customer_name: str
    target_type: str
    target_id: str
    rating: int
    comment: Optional[str] = ""


class SettleRequest(BaseModel):
    restaurant_id: str
    driver_id: str


class FeeQuoteRequest(BaseModel):
    driver_id: str
    base_total: float = Field(..., ge=0)
    address: str
    payment_method: Optional[PaymentMethod] = None


# ------------------------- LEDGER VIEWS -------------------------
class DriverAccount(BaseModel):
    driver_id: str
    earnings: Dict[str, float]
    restaurant_ledger: Dict[str, float]
    total_earnings: float
    total_owed: float
    delivered_jobs: int


class RestaurantLedger(BaseModel):
    restaurant_id: str
    driver_ledger: Dict[str, float]
    total_owed: float


# ------------------------- EVENTS -------------------------
class StatusChanged(BaseModel):
    entity_type: str  # "order" | "parcel"
    entity_id: str
    old_status: Optional[str] = None
    new_status: str


class EventLog(BaseModel):
    id: str
    event_type: str
    payload: dict
    trace_id: Optional[str] = None
    created_at: datetime
