"""
Order Service

Business logic behind the order endpoints: creating orders with their line
items, patching status through the transition rules, and the list queries
the boards and the customer site poll.
"""
import logging
import uuid
from contextlib import contextmanager
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from qrmenu.config import settings
from qrmenu.core.exceptions import ConflictError, NotFoundError, PersistenceError, ValidationError
from qrmenu.core.redis_client import next_order_number
from qrmenu.models.order import DeliveryType, MenuItem, Order, OrderItem, OrderStatus, Restaurant, utcnow
from qrmenu.models.schemas import OrderCreate, OrderPatch
from qrmenu.services import transitions

logger = logging.getLogger(__name__)

KITCHEN_STATUSES = (OrderStatus.CONFIRMED.value, OrderStatus.PREPARING.value)
DELIVERY_STATUSES = (OrderStatus.READY.value, OrderStatus.OUT_FOR_DELIVERY.value)

ORDER_NUMBER_ATTEMPTS = 3


@contextmanager
def _store_errors(db: Session, action: str):
    """Turn database failures inside the block into service errors."""
    try:
        yield
    except StaleDataError as exc:
        db.rollback()
        raise ConflictError(f"Order was modified concurrently while trying to {action}") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to %s", action)
        raise PersistenceError(f"Failed to {action}") from exc


def _commit(db: Session, action: str):
    with _store_errors(db, action):
        db.commit()


def _insert_order(db: Session, order: Order, restaurant_id: str):
    """Commit a new order, taking a fresh number if another checkout got there first."""
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        with _store_errors(db, "create order"):
            number = next_order_number(db, restaurant_id)
            order.order_number = number
            db.add(order)
            try:
                db.commit()
                return
            except IntegrityError:
                db.rollback()
                if attempt == ORDER_NUMBER_ATTEMPTS:
                    raise
                logger.warning("Order number %s already taken for restaurant %s, retrying",
                               number, restaurant_id)


def _query(db: Session):
    return db.query(Order).options(selectinload(Order.items))


def resolve_restaurant(db: Session, restaurant: str) -> Optional[Restaurant]:
    """Look a restaurant up by id, falling back to its slug."""
    return db.query(Restaurant).filter(
        or_(Restaurant.id == restaurant, Restaurant.slug == restaurant)
    ).first()


def _derive_delivery_type(payload: OrderCreate) -> DeliveryType:
    if payload.delivery_type is not None:
        return payload.delivery_type
    return DeliveryType.DINE_IN if payload.table_number else DeliveryType.TAKEAWAY


def _check_totals(payload: OrderCreate):
    items_total = round(sum(item.quantity * item.unit_price for item in payload.items), 2)
    declared = round(payload.total_amount, 2)
    if items_total == declared:
        return
    message = f"Declared total {declared} does not match item total {items_total}"
    if settings.strict_order_totals:
        raise ValidationError(message)
    logger.warning("Accepting order as sent: %s", message)


def create_order(db: Session, payload: OrderCreate) -> Order:
    menu_ids = {item.menu_item_id for item in payload.items}
    with _store_errors(db, "load restaurant menu"):
        restaurant = resolve_restaurant(db, payload.restaurant_id)
        if restaurant is None:
            raise ValidationError(f"Restaurant '{payload.restaurant_id}' not found")
        restaurant_id = restaurant.id
        known = {
            menu_item.id for menu_item in db.query(MenuItem).filter(
                MenuItem.id.in_(menu_ids), MenuItem.restaurant_id == restaurant_id
            )
        }

    delivery_type = _derive_delivery_type(payload)
    missing = sorted(menu_ids - known)
    if missing:
        raise ValidationError(f"Unknown menu items for this restaurant: {', '.join(missing)}")

    _check_totals(payload)

    order = Order(
        id=str(uuid.uuid4()),
        restaurant_id=restaurant_id,
        customer_id=payload.customer_id,
        table_number=payload.table_number,
        customer_name=payload.customer_name,
        customer_phone=payload.customer_phone,
        customer_email=payload.customer_email,
        delivery_type=delivery_type.value,
        delivery_address=payload.delivery_address,
        status=OrderStatus.PENDING.value,
        total_amount=float(payload.total_amount),
        currency=settings.currency,
        payment_method=payload.payment_method,
        payment_status="pending",
        special_instructions=payload.special_instructions,
        estimated_time=payload.estimated_time or settings.default_prep_time,
    )
    for position, item in enumerate(payload.items):
        # A client-sent totalPrice is stored as sent
        total_price = item.total_price if item.total_price is not None else item.quantity * item.unit_price
        order.items.append(OrderItem(
            menu_item_id=item.menu_item_id,
            position=position,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total_price=total_price,
            special_requests=item.special_requests,
        ))
    _insert_order(db, order, restaurant_id)
    with _store_errors(db, "create order"):
        db.refresh(order)
    logger.info("Order %s (#%s) created for restaurant %s", order.id, order.order_number, restaurant_id)
    return order


def get_order(db: Session, order_id: str) -> Order:
    with _store_errors(db, "load order"):
        order = _query(db).filter(Order.id == order_id).first()
    if order is None:
        raise NotFoundError(f"Order '{order_id}' not found")
    return order


def patch_order(db: Session, order_id: str, patch: OrderPatch) -> Tuple[Order, bool]:
    """Apply a status/field patch. Returns the order and whether anything changed."""
    order = get_order(db, order_id)

    if patch.delivery_type is not None and patch.delivery_type.value != order.delivery_type:
        raise ValidationError("deliveryType cannot be changed after an order is created")
    if patch.version is not None and patch.version != order.version:
        raise ConflictError(
            f"Order '{order_id}' is at version {order.version}, update was based on version {patch.version}"
        )

    changed = False
    if patch.status is not None and patch.status.value != order.status:
        target = transitions.validate_transition(order.status, patch.status, order.delivery_type)
        previous = order.status
        order.status = target.value
        if target == OrderStatus.COMPLETED:
            order.completed_at = utcnow()
        elif target == OrderStatus.CANCELLED:
            order.cancelled_at = utcnow()
        changed = True
        logger.info("Order %s moved %s -> %s", order.id, previous, target.value)

    for field in ("estimated_time", "payment_status", "special_instructions"):
        value = getattr(patch, field)
        if value is not None and value != getattr(order, field):
            setattr(order, field, value)
            changed = True

    if not changed:
        return order, False

    order.updated_at = utcnow()
    _commit(db, "update order")
    with _store_errors(db, "update order"):
        db.refresh(order)
    return order, True


def list_orders(db: Session, restaurant_id: Optional[str] = None,
                statuses: Optional[Iterable[str]] = None,
                delivery_type: Optional[str] = None,
                oldest_first: bool = False) -> List[Order]:
    with _store_errors(db, "list orders"):
        query = _query(db)
        if restaurant_id:
            query = query.filter(Order.restaurant_id == restaurant_id)
        if statuses:
            query = query.filter(Order.status.in_(list(statuses)))
        if delivery_type:
            query = query.filter(Order.delivery_type == delivery_type)
        if oldest_first:
            query = query.order_by(Order.created_at, Order.order_number)
        else:
            query = query.order_by(Order.created_at.desc(), Order.order_number.desc())
        return query.all()


def list_customer_orders(db: Session, customer_id: str, restaurant: Optional[str] = None) -> List[Order]:
    with _store_errors(db, "list customer orders"):
        query = _query(db).filter(Order.customer_id == customer_id)
        if restaurant:
            found = resolve_restaurant(db, restaurant)
            if found is None:
                return []
            query = query.filter(Order.restaurant_id == found.id)
        return query.order_by(Order.created_at.desc()).limit(settings.customer_orders_limit).all()
