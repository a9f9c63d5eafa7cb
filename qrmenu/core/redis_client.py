import redis
import logging
from typing import Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
from qrmenu.config import settings
from qrmenu.core.exceptions import PersistenceError
from qrmenu.models.order import Order

logger = logging.getLogger(__name__)

redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)

ORDER_SEQUENCE_KEY = "order_seq:{restaurant_id}"

def check_redis(client: Optional[redis.Redis] = None) -> bool:
    try:
        return bool((client or redis_client).ping())
    except redis.RedisError:
        return False

def _max_order_number(db: Session, restaurant_id: str) -> int:
    return db.query(func.coalesce(func.max(Order.order_number), 0)) \
             .filter(Order.restaurant_id == restaurant_id) \
             .scalar() or 0

def next_order_number(db: Session, restaurant_id: str, client: Optional[redis.Redis] = None) -> int:
    """Next sequential order number for a restaurant.

    With Redis enabled the counter is an INCR key, seeded from the database
    the first time a restaurant is seen so numbers keep increasing across a
    Redis flush.
    """
    if client is None and not settings.use_redis_order_numbers:
        return _max_order_number(db, restaurant_id) + 1

    client = client or redis_client
    key = ORDER_SEQUENCE_KEY.format(restaurant_id=restaurant_id)
    try:
        if not client.exists(key):
            client.setnx(key, _max_order_number(db, restaurant_id))
        number = int(client.incr(key))
    except redis.RedisError as exc:
        logger.error("Order number sequence unavailable for restaurant %s: %s", restaurant_id, exc)
        raise PersistenceError("Order number sequence unavailable") from exc
    logger.debug("Order number %s issued for restaurant %s", number, restaurant_id)
    return number
