from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
import logging
from qrmenu.core.database import get_db
from qrmenu.core.exceptions import ValidationError
from qrmenu.models.order import Order
from qrmenu.models.schemas import (
    OrderCreate, OrderPatch, OrderOut, CustomerOrder, CustomerOrderItem,
    CustomerOrderList, CustomerOrderStatus,
)
from qrmenu.services import order_service
from qrmenu.services.order_service import KITCHEN_STATUSES, DELIVERY_STATUSES
from qrmenu.utils.broadcast import Broadcaster, get_broadcaster

logger = logging.getLogger(__name__)

router = APIRouter()

def serialize_order(order: Order) -> OrderOut:
    return OrderOut.model_validate(order)

async def publish(broadcaster: Broadcaster, order: OrderOut):
    """One best-effort broadcast per successful mutation."""
    await broadcaster.broadcast(order.model_dump(mode="json", by_alias=True))

def _queue_statuses(status: Optional[str], allowed) -> List[str]:
    if status is None:
        return list(allowed)
    if status not in allowed:
        raise ValidationError(f"status must be one of: {', '.join(allowed)}")
    return [status]

@router.post("/orders", response_model=OrderOut, status_code=201)
async def create_order(payload: OrderCreate, db: Session = Depends(get_db),
                       broadcaster: Broadcaster = Depends(get_broadcaster)):
    """Customer checkout"""
    order = serialize_order(order_service.create_order(db, payload))
    await publish(broadcaster, order)
    return order

@router.get("/orders", response_model=List[OrderOut])
def list_orders(restaurant_id: Optional[str] = Query(None, alias="restaurantId"),
                status: Optional[List[str]] = Query(None),
                delivery_type: Optional[str] = Query(None, alias="deliveryType"),
                db: Session = Depends(get_db)):
    """Vendor board (scoped) and admin board (all restaurants)"""
    orders = order_service.list_orders(db, restaurant_id=restaurant_id, statuses=status,
                                       delivery_type=delivery_type)
    return [serialize_order(o) for o in orders]

@router.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: str, db: Session = Depends(get_db)):
    return serialize_order(order_service.get_order(db, order_id))

@router.patch("/orders/{order_id}", response_model=OrderOut)
async def update_order(order_id: str, patch: OrderPatch, db: Session = Depends(get_db),
                       broadcaster: Broadcaster = Depends(get_broadcaster)):
    """Status transitions from every board"""
    order, changed = order_service.patch_order(db, order_id, patch)
    order = serialize_order(order)
    if changed:
        await publish(broadcaster, order)
    return order

@router.get("/kitchen/orders", response_model=List[OrderOut])
def get_kitchen_orders(restaurant_id: str = Query(..., alias="restaurantId"),
                       status: Optional[str] = None,
                       db: Session = Depends(get_db)):
    """Kitchen display queue, oldest first"""
    orders = order_service.list_orders(db, restaurant_id=restaurant_id,
                                       statuses=_queue_statuses(status, KITCHEN_STATUSES),
                                       oldest_first=True)
    return [serialize_order(o) for o in orders]

@router.get("/delivery/orders", response_model=List[OrderOut])
def get_delivery_orders(restaurant_id: str = Query(..., alias="restaurantId"),
                        status: Optional[str] = None,
                        db: Session = Depends(get_db)):
    """Delivery queue, oldest first"""
    orders = order_service.list_orders(db, restaurant_id=restaurant_id,
                                       statuses=_queue_statuses(status, DELIVERY_STATUSES),
                                       delivery_type="delivery", oldest_first=True)
    return [serialize_order(o) for o in orders]

def to_customer_order(order: Order) -> CustomerOrder:
    return CustomerOrder(
        id=order.id,
        order_number=f"ORD{order.order_number}",
        status=order.status,
        total=order.total_amount,
        estimated_time=order.estimated_time,
        table_number=order.table_number,
        restaurant_name=order.restaurant.name if order.restaurant else None,
        restaurant_slug=order.restaurant.slug if order.restaurant else None,
        items=[
            CustomerOrderItem(
                menu_item_id=item.menu_item_id,
                name=item.menu_item.name if item.menu_item else None,
                quantity=item.quantity,
                price=item.unit_price,
                total=item.total_price,
            )
            for item in order.items
        ],
        created_at=order.created_at,
    )

@router.get("/customer/orders", response_model=CustomerOrderList)
def get_customer_orders(customer_id: str = Query(..., alias="customerId", min_length=1),
                        restaurant: Optional[str] = None,
                        db: Session = Depends(get_db)):
    """Customer order history, restaurant given by id or slug"""
    orders = order_service.list_customer_orders(db, customer_id, restaurant)
    return CustomerOrderList(orders=[to_customer_order(o) for o in orders])

@router.get("/customer/orders/{order_id}/status", response_model=CustomerOrderStatus)
def get_customer_order_status(order_id: str, db: Session = Depends(get_db)):
    """Polled by the customer order-tracking page"""
    order = order_service.get_order(db, order_id)
    return CustomerOrderStatus(status=order.status, estimated_time=order.estimated_time)
