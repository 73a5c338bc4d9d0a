from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List, Literal
from datetime import datetime
from decimal import Decimal

BookingStatus = Literal["TEMPORARY", "PENDING", "CONFIRMED", "CANCELLED"]


# --- Bookings ---
class BookingCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    order_id: int = Field(gt=0)
    quantity: Decimal = Field(gt=0)


class BookingUpdate(BaseModel):
    # Identity and price fields must never come from the client
    model_config = ConfigDict(extra="forbid")

    quantity: Optional[Decimal] = Field(default=None, gt=0)
    status: Optional[BookingStatus] = None

    @model_validator(mode="after")
    def require_a_change(self):
        if self.quantity is None and self.status is None:
            raise ValueError("Provide quantity or status")
        return self


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    slot_id: int
    order_id: int
    product_id: int
    quantity: Decimal
    price: Decimal
    status: str
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    total_value: Optional[Decimal] = None
    is_expired: Optional[bool] = None


class BookingDetail(BookingResponse):
    delivery_date: Optional[datetime] = None
    days_until_delivery: Optional[int] = None
    product_name: Optional[str] = None
    unit: Optional[str] = None
    can_modify: Optional[bool] = None


class BookingCreatedResponse(BaseModel):
    booking: BookingResponse
    expires_at: datetime
    expires_in_seconds: int


class SweepResponse(BaseModel):
    cleaned: int
    failed: int
    skipped: int = 0
    details: List[dict] = []


# --- Delivery slots ---
class SlotCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    product_id: int = Field(gt=0)
    date: datetime
    max_capacity: Decimal = Field(gt=0)


class SlotUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_capacity: Optional[Decimal] = Field(default=None, gt=0)
    is_available: Optional[bool] = None


class SlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    date: datetime
    max_capacity: Decimal
    reserved: Decimal
    is_available: bool
    available_capacity: Optional[Decimal] = None
    capacity_percentage: Optional[Decimal] = None
    is_fully_booked: Optional[bool] = None
    is_past: Optional[bool] = None
    can_book: Optional[bool] = None
    product_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class SlotListResponse(BaseModel):
    slots: List[SlotResponse]
    pagination: Pagination


class SlotCleanupResponse(BaseModel):
    deleted: int
    cancelled_bookings: int
    skipped: List[dict] = []


# --- Orders ---
class OrderItemCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    product_id: int = Field(gt=0)
    quantity: Decimal = Field(gt=0)


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: Optional[int] = None
    product_id: int
    product_name: Optional[str] = None
    quantity: Decimal
    price: Decimal
    total_value: Optional[Decimal] = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    status: str
    total: Decimal
    created_at: datetime
    updated_at: datetime
    checked_out_at: Optional[datetime] = None


class OrderDetail(OrderResponse):
    items: List[OrderItemResponse] = []
    bookings: List[BookingDetail] = []


class OrderTotalResponse(BaseModel):
    order_id: int
    total: Decimal
