"""
Database Schemas for the Marketplace

Each Pydantic model represents a collection in MongoDB. Collection name is the lowercase of the class name.
Embedded models (Location, DaySchedule, CartItem, ...) are not collections by themselves.
"""

import re
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Set

from bson import ObjectId
from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

PHONE_PATTERN = r"^\+[1-9]\d{9,14}$"
TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

STORE_CATEGORIES = ("Restaurante", "Ropa", "Tecnología", "Hogar", "Otros")

Role = Literal["client", "admin", "platform_admin"]
Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
StoreCategory = Literal["Restaurante", "Ropa", "Tecnología", "Hogar", "Otros"]
RecordStatus = Literal["active", "inactive"]
PaymentMethod = Literal["cash", "transfer", "card"]
PaymentStatus = Literal["pending", "paid", "rejected"]


def new_id() -> str:
    return str(ObjectId())


def _check_map_url(value: str) -> str:
    if not re.match(r"^https?://\S+$", value):
        raise ValueError("map_url must be an http(s) link")
    return value


MapUrl = Annotated[str, AfterValidator(_check_map_url)]


# Users

class Location(BaseModel):
    id: str = Field(default_factory=new_id)
    alias: str = Field(..., min_length=1, max_length=100, description="Display name, e.g. Home")
    map_url: MapUrl = Field(..., description="Map link for the location")
    is_default: bool = False


class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password_hash: str
    phone: str = Field(..., pattern=PHONE_PATTERN, description="International format, e.g. +525512345678")
    role: Role = "client"
    profile_image_url: Optional[str] = None
    locations: List[Location] = Field(..., min_length=1)
    current_location_index: int = Field(0, ge=0)

    @model_validator(mode="after")
    def current_location_in_range(self):
        if self.current_location_index >= len(self.locations):
            raise ValueError("current_location_index must point at an existing location")
        return self


# Stores

class DaySchedule(BaseModel):
    day: Weekday
    open: str = Field("09:00", pattern=TIME_PATTERN)
    close: str = Field("18:00", pattern=TIME_PATTERN)
    is_open: bool = True


def validate_schedule(schedule: List[DaySchedule]) -> List[DaySchedule]:
    """A schedule lists every weekday exactly once."""
    days = [entry.day for entry in schedule]
    if len(days) != len(WEEKDAYS) or set(days) != set(WEEKDAYS):
        raise ValueError("schedule must contain exactly one entry for each of the 7 weekdays")
    return schedule


def validate_categories(categories: List[str]) -> List[str]:
    if not categories:
        raise ValueError("at least one category is required")
    # keep declared order, drop repeats
    return list(dict.fromkeys(categories))


Schedule = Annotated[List[DaySchedule], AfterValidator(validate_schedule)]
Categories = Annotated[List[StoreCategory], Field(min_length=1), AfterValidator(validate_categories)]


class StoreLocation(BaseModel):
    alias: str = Field(..., min_length=1, max_length=200)
    map_url: MapUrl


class SocialMedia(BaseModel):
    facebook: Optional[str] = None
    instagram: Optional[str] = None
    tiktok: Optional[str] = None
    whatsapp: Optional[str] = None
    website: Optional[str] = None


class Store(BaseModel):
    owner_id: str = Field(..., description="Owning user _id as string")
    name: str = Field(..., min_length=1, max_length=100)
    responsible_name: Optional[str] = Field(None, max_length=100)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    categories: Categories
    description: Optional[str] = Field(None, max_length=500)
    images: List[str] = Field(default_factory=list)
    schedule: Schedule
    location: StoreLocation
    social_media: SocialMedia = Field(default_factory=SocialMedia)
    status: RecordStatus = "active"


# Catalog

class Product(BaseModel):
    store_id: str = Field(..., description="Owning store _id as string")
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., max_length=500)
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    images: List[str] = Field(..., min_length=1)
    category: str
    admin_note: Optional[str] = Field(None, max_length=200)
    status: RecordStatus = "active"


# Cart

class CartItem(BaseModel):
    product_id: str
    name: str
    description: str = ""
    price: float = Field(..., ge=0)
    image: str = ""
    quantity: int = Field(..., ge=1)
    note: Optional[str] = Field(None, max_length=200)


class Cart(BaseModel):
    """
    One cart per (session_id, store_id).
    total_items and subtotal are always derived from items, whatever the caller passes.
    """
    session_id: str
    store_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_items: int = 0
    subtotal: float = 0.0

    @model_validator(mode="after")
    def derive_totals(self):
        self.total_items = sum(item.quantity for item in self.items)
        self.subtotal = round(sum(item.price * item.quantity for item in self.items), 2)
        return self


# Orders

class OrderStatus(str, Enum):
    PENDING = "pendiente"
    IN_PROGRESS = "en_proceso"
    COMPLETED = "completado"
    CANCELLED = "cancelado"


ORDER_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED},
    OrderStatus.IN_PROGRESS: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[OrderStatus(current)]


class CustomerInfo(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    shipping_address: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    note: Optional[str] = Field(None, max_length=200)


class OrderTotals(BaseModel):
    subtotal: float = Field(..., ge=0)
    shipping: float = Field(0, ge=0)
    total: float = Field(..., ge=0)


class PaymentInfo(BaseModel):
    method: PaymentMethod
    details: str = Field(..., min_length=1)
    status: PaymentStatus = "pending"


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    order_number: str
    customer: CustomerInfo
    store_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    totals: OrderTotals
    payment: PaymentInfo
    status: OrderStatus = Field(OrderStatus.PENDING, validate_default=True)
    notes: Optional[str] = Field(None, max_length=500)
