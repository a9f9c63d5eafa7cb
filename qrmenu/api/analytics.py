from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from sqlalchemy import func
from qrmenu.core.database import get_db
from qrmenu.models.order import Order, OrderStatus
from qrmenu.services.transitions import TERMINAL
from datetime import datetime, timezone
from typing import Dict, Any, Optional

router = APIRouter(prefix="/analytics", tags=["analytics"])

@router.get("/orders")
def get_order_stats(restaurant_id: Optional[str] = Query(None, alias="restaurantId"),
                    db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Status counters for the vendor/admin order boards plus today's takings"""
    query = db.query(Order)
    if restaurant_id:
        query = query.filter(Order.restaurant_id == restaurant_id)

    counts = dict(
        query.with_entities(Order.status, func.count(Order.id)).group_by(Order.status).all()
    )
    by_status = {status.value: counts.get(status.value, 0) for status in OrderStatus}

    now = datetime.now(timezone.utc)
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    today = query.filter(Order.created_at >= start_of_day)

    revenue_today = today.filter(Order.status != OrderStatus.CANCELLED.value) \
                         .with_entities(func.coalesce(func.sum(Order.total_amount), 0)) \
                         .scalar() or 0.0
    orders_today = today.with_entities(func.count(Order.id)).scalar() or 0

    return {
        "restaurantId": restaurant_id,
        "totalOrders": sum(by_status.values()),
        "activeOrders": sum(n for s, n in by_status.items() if OrderStatus(s) not in TERMINAL),
        "byStatus": by_status,
        "revenueToday": round(float(revenue_today), 2),
        "ordersToday": orders_today,
        "date": now.date().isoformat(),
    }
