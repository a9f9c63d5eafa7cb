from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import logging
import threading
from fastapi.requests import HTTPConnection
from qrmenu.core.exceptions import BroadcastDeliveryError

logger = logging.getLogger(__name__)

ROLE_RESTAURANT = "restaurant"
ROLE_CUSTOMER = "customer"

EVENT_BY_ROLE = {
    ROLE_RESTAURANT: "order-update",
    ROLE_CUSTOMER: "order-status-update",
}

@dataclass(frozen=True)
class Registration:
    role: str
    restaurant_id: Optional[str] = None
    customer_id: Optional[str] = None

    def matches(self, order: Dict[str, Any]) -> bool:
        if self.role == ROLE_RESTAURANT:
            return self.restaurant_id is not None and self.restaurant_id == order.get("restaurantId")
        if self.role == ROLE_CUSTOMER:
            if self.customer_id is None or self.customer_id != order.get("customerId"):
                return False
            return self.restaurant_id is None or self.restaurant_id == order.get("restaurantId")
        return False

class Broadcaster:
    """Live connections and their scopes; fans order changes out to them.

    A connection is anything with async ``send_json`` and ``close`` (a
    Starlette WebSocket in production). The registry lock never spans an
    await, so it is safe whichever event loop or thread calls in.
    """

    def __init__(self):
        # id(connection) -> (connection, registration)
        self._connections: Dict[int, Tuple[Any, Registration]] = {}
        self._lock = threading.Lock()

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def register(self, connection, role: str, restaurant_id: Optional[str] = None,
                 customer_id: Optional[str] = None) -> Registration:
        if role not in EVENT_BY_ROLE:
            raise ValueError(f"Unknown connection role '{role}'")
        registration = Registration(role, restaurant_id, customer_id)
        with self._lock:
            self._connections[id(connection)] = (connection, registration)
        logger.info("Connection joined as %s (restaurant=%s, customer=%s)", role, restaurant_id, customer_id)
        return registration

    def unregister(self, connection) -> bool:
        with self._lock:
            return self._connections.pop(id(connection), None) is not None

    def registration_for(self, connection) -> Optional[Registration]:
        with self._lock:
            entry = self._connections.get(id(connection))
        return entry[1] if entry else None

    async def broadcast(self, order: Dict[str, Any]) -> int:
        """Send one event per matching connection. Returns the number delivered."""
        with self._lock:
            targets = [entry for entry in self._connections.values() if entry[1].matches(order)]

        delivered = 0
        for conn, reg in targets:
            message = {"type": EVENT_BY_ROLE[reg.role], "data": order}
            try:
                await conn.send_json(message)
            except Exception as exc:
                error = BroadcastDeliveryError(f"Send to {reg.role} connection failed: {exc}")
                logger.warning("Dropping connection: %s", error)
                self.unregister(conn)
                continue
            delivered += 1
        logger.debug("Order %s broadcast to %d connection(s)", order.get("id"), delivered)
        return delivered

    async def close(self):
        with self._lock:
            connections = [conn for conn, _ in self._connections.values()]
            self._connections.clear()
        for conn in connections:
            try:
                await conn.close()
            except Exception as exc:
                logger.debug("Connection already closed: %s", exc)

def get_broadcaster(connection: HTTPConnection) -> Broadcaster:
    """FastAPI dependency for the application's broadcaster."""
    return connection.app.state.broadcaster
