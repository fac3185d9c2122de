from __future__ import annotations
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Documents are stored with camelCase keys; request bodies accept either form.

OrderStatus = Literal["pending", "preparing", "ready", "confirmed", "cancelled"]
Priority = Literal["low", "medium", "high"]
DiscountType = Literal["amount", "percentage"]

ORDER_STATUSES: tuple[str, ...] = ("pending", "preparing", "ready", "confirmed", "cancelled")
TERMINAL_STATUSES: tuple[str, ...] = ("confirmed", "cancelled")

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self, **kwargs) -> dict:
        return self.model_dump(by_alias=True, **kwargs)

class Customer(CamelModel):
    name: str
    whatsapp: str = Field(..., description="Phone number, used as the bill delivery address")
    address: str
    notes: str = ""

class OrderItemIn(CamelModel):
    product_id: str
    quantity: int = Field(..., ge=1)

class OrderCreate(CamelModel):
    customer: Customer
    items: list[OrderItemIn]
    discount: float = Field(0, ge=0)
    discount_type: DiscountType = "amount"
    priority: Priority = "medium"
    delivery_date: Optional[datetime] = None
    notes: str = ""

class OrderUpdate(CamelModel):
    customer: Optional[Customer] = None
    items: Optional[list[OrderItemIn]] = None
    discount: Optional[float] = Field(None, ge=0)
    discount_type: Optional[DiscountType] = None
    priority: Optional[Priority] = None
    delivery_date: Optional[datetime] = None
    notes: Optional[str] = None
    status: Optional[OrderStatus] = None
    acknowledged: bool = False

class StatusUpdate(CamelModel):
    status: OrderStatus
    # Second step of the confirm dialog; required for confirmed/cancelled
    acknowledged: bool = False

class SendBillRequest(CamelModel):
    image_data: Optional[str] = Field(None, description="Client rendered bill as a base64 data URL")

# Catalog. Each class => one collection, lowercased plural name

class Product(CamelModel):
    name: str
    description: str
    category: str
    sub_category: Optional[str] = None
    price: float = Field(..., ge=0)
    discounted_price: Optional[float] = Field(None, ge=0)
    min_persons: Optional[int] = None
    notes: Optional[str] = None
    is_vegetarian: bool = False
    image: Optional[str] = None
    items: list[str] = Field(default_factory=list, description="Bundle contents, shown for Deals")

class ProductUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    sub_category: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discounted_price: Optional[float] = Field(None, ge=0)
    min_persons: Optional[int] = None
    notes: Optional[str] = None
    is_vegetarian: Optional[bool] = None
    image: Optional[str] = None
    items: Optional[list[str]] = None

class CategoryIn(CamelModel):
    name: str

# WhatsApp proxy bodies

class NotificationRequest(CamelModel):
    phone_number: str
    message: str
