from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional
from datetime import datetime
from qrmenu.models.order import OrderStatus, DeliveryType

class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True

class OrderItemIn(CamelModel):
    menu_item_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    total_price: Optional[float] = Field(None, ge=0)
    special_requests: Optional[str] = None

class OrderCreate(CamelModel):
    restaurant_id: str = Field(..., min_length=1)
    table_number: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    delivery_type: Optional[DeliveryType] = None
    delivery_address: Optional[str] = None
    items: List[OrderItemIn] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)
    payment_method: str = "cash"
    special_instructions: Optional[str] = None
    estimated_time: Optional[int] = Field(None, ge=1)

class OrderPatch(CamelModel):
    status: Optional[OrderStatus] = None
    version: Optional[int] = Field(None, ge=1)
    estimated_time: Optional[int] = Field(None, ge=1)
    payment_status: Optional[str] = None
    special_instructions: Optional[str] = None
    delivery_type: Optional[DeliveryType] = None

class MenuItemRef(CamelModel):
    name: str
    price: float

class RestaurantRef(CamelModel):
    name: str

class OrderItemOut(CamelModel):
    id: str
    menu_item_id: str
    quantity: int
    unit_price: float
    total_price: float
    special_requests: Optional[str] = None
    menu_item: Optional[MenuItemRef] = None

class OrderOut(CamelModel):
    id: str
    order_number: int
    restaurant_id: str
    customer_id: Optional[str] = None
    table_number: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    delivery_type: str
    delivery_address: Optional[str] = None
    status: str
    total_amount: float
    currency: str
    payment_method: str
    payment_status: str
    special_instructions: Optional[str] = None
    estimated_time: Optional[int] = None
    version: int
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    items: List[OrderItemOut] = []
    restaurant: Optional[RestaurantRef] = None

class CustomerOrderItem(CamelModel):
    menu_item_id: str
    name: Optional[str] = None
    quantity: int
    price: float
    total: float

class CustomerOrder(CamelModel):
    id: str
    order_number: str
    status: str
    total: float
    estimated_time: Optional[int] = None
    table_number: Optional[str] = None
    restaurant_name: Optional[str] = None
    restaurant_slug: Optional[str] = None
    items: List[CustomerOrderItem] = []
    created_at: datetime

class CustomerOrderList(CamelModel):
    success: bool = True
    orders: List[CustomerOrder]

class CustomerOrderStatus(CamelModel):
    success: bool = True
    status: str
    estimated_time: Optional[int] = None

class ErrorResponse(BaseModel):
    error: str
    exception: str
    message: str
