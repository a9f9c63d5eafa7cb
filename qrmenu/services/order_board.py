"""
Order Board

The client side of the kitchen, delivery, vendor and admin order screens.
Every screen is the same board with a different profile: which statuses it
shows, which transitions it may trigger and whether it listens for live
events. Server truth always wins; the board re-fetches after each action and
keeps its last list when a poll fails.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional

import httpx

from qrmenu.config import settings
from qrmenu.models.order import OrderStatus
from qrmenu.services import transitions

logger = logging.getLogger(__name__)

ORDER_EVENTS = ("order-update", "order-status-update")


@dataclass(frozen=True)
class BoardProfile:
    name: str
    list_path: str
    visible_statuses: Optional[FrozenSet[str]] = None
    advance_from: Optional[FrozenSet[str]] = None
    delivery_types: Optional[FrozenSet[str]] = None
    can_cancel: bool = False
    ad_hoc_status: bool = False
    realtime: bool = True
    scoped: bool = True
    oldest_first: bool = False


_KITCHEN_STATUSES = frozenset({OrderStatus.CONFIRMED.value, OrderStatus.PREPARING.value})
_DELIVERY_STATUSES = frozenset({OrderStatus.READY.value, OrderStatus.OUT_FOR_DELIVERY.value})

KITCHEN = BoardProfile(
    name="kitchen",
    list_path="/kitchen/orders",
    visible_statuses=_KITCHEN_STATUSES,
    advance_from=_KITCHEN_STATUSES,
    oldest_first=True,
)
DELIVERY = BoardProfile(
    name="delivery",
    list_path="/delivery/orders",
    visible_statuses=_DELIVERY_STATUSES,
    advance_from=_DELIVERY_STATUSES,
    delivery_types=frozenset({"delivery"}),
    oldest_first=True,
)
VENDOR = BoardProfile(name="vendor", list_path="/orders", can_cancel=True)
ADMIN = BoardProfile(
    name="admin",
    list_path="/orders",
    can_cancel=True,
    ad_hoc_status=True,
    realtime=False,
    scoped=False,
)

PROFILES = {profile.name: profile for profile in (KITCHEN, DELIVERY, VENDOR, ADMIN)}


class BoardActionError(Exception):
    """A board action the server (or the board's profile) refused."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class OrderBoard:
    def __init__(self, client: httpx.Client, profile: BoardProfile,
                 restaurant_id: Optional[str] = None, api_prefix: str = "/api/v1",
                 poll_interval: Optional[float] = None):
        if profile.scoped and not restaurant_id:
            raise ValueError(f"The {profile.name} board needs a restaurant id")
        self.client = client
        self.profile = profile
        self.restaurant_id = restaurant_id
        self.api_prefix = api_prefix.rstrip("/")
        self.poll_interval = poll_interval if poll_interval is not None else settings.board_poll_interval
        self.last_error: Optional[str] = None
        self._orders: Dict[str, Dict[str, Any]] = {}
        # Poll loop and live listener run on different threads
        self._lock = threading.Lock()

    def _url(self, path: str) -> str:
        return f"{self.api_prefix}{path}"

    def shows(self, order: Dict[str, Any]) -> bool:
        profile = self.profile
        if self.restaurant_id and order.get("restaurantId") != self.restaurant_id:
            return False
        if profile.visible_statuses is not None and order.get("status") not in profile.visible_statuses:
            return False
        if profile.delivery_types is not None and order.get("deliveryType") not in profile.delivery_types:
            return False
        return True

    @property
    def orders(self) -> List[Dict[str, Any]]:
        with self._lock:
            orders = list(self._orders.values())
        return sorted(
            orders,
            key=lambda o: (o.get("createdAt") or "", o.get("orderNumber") or 0),
            reverse=not self.profile.oldest_first,
        )

    def get(self, order_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._orders.get(order_id)

    def refresh(self) -> bool:
        """One poll tick. On failure the previous list stays on screen."""
        params = {"restaurantId": self.restaurant_id} if self.restaurant_id else {}
        try:
            response = self.client.get(self._url(self.profile.list_path), params=params)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self.last_error = str(exc)
            logger.warning("%s board refresh failed, keeping %d cached orders: %s",
                           self.profile.name, len(self._orders), exc)
            return False

        if not isinstance(payload, list):
            self.last_error = "Order list response was not a list"
            logger.warning("%s board refresh returned %s, keeping %d cached orders",
                           self.profile.name, type(payload).__name__, len(self._orders))
            return False

        orders = {}
        for order in payload:
            if not isinstance(order, dict) or not order.get("id"):
                logger.warning("%s board skipped malformed order entry: %r", self.profile.name, order)
                continue
            if self.shows(order):
                orders[order["id"]] = order
        with self._lock:
            self._orders = orders
        self.last_error = None
        return True

    def apply_event(self, message: Dict[str, Any]) -> bool:
        """Fold one live message into the board. Returns True if it was an order event."""
        if message.get("type") not in ORDER_EVENTS:
            return False
        order = message.get("data") or {}
        order_id = order.get("id")
        if not order_id:
            return False

        with self._lock:
            if not self.shows(order):
                self._orders.pop(order_id, None)
                return True
            cached = self._orders.get(order_id)
            # Events can overtake a poll response
            if cached is not None and cached.get("version", 0) > order.get("version", 0):
                return True
            self._orders[order_id] = order
        return True

    def next_action(self, order: Dict[str, Any]) -> Optional[str]:
        """The forward step this board offers for an order, if any."""
        if self.profile.advance_from is not None and order["status"] not in self.profile.advance_from:
            return None
        nxt = transitions.next_status(order["status"], order["deliveryType"])
        return nxt.value if nxt is not None else None

    def _require(self, order_id: str) -> Dict[str, Any]:
        order = self.get(order_id)
        if order is None:
            raise BoardActionError(f"Order {order_id} is not on the {self.profile.name} board")
        return order

    def advance(self, order_id: str) -> Optional[Dict[str, Any]]:
        order = self._require(order_id)
        nxt = self.next_action(order)
        if nxt is None:
            return None
        return self._patch(order, nxt)

    def cancel(self, order_id: str) -> Optional[Dict[str, Any]]:
        if not self.profile.can_cancel:
            raise BoardActionError(f"The {self.profile.name} board cannot cancel orders")
        order = self._require(order_id)
        if transitions.is_terminal(order["status"]):
            return None
        return self._patch(order, OrderStatus.CANCELLED.value)

    def set_status(self, order_id: str, status: str) -> Dict[str, Any]:
        if not self.profile.ad_hoc_status:
            raise BoardActionError(f"The {self.profile.name} board cannot pick statuses")
        order = self._require(order_id)
        allowed = {s.value for s in transitions.allowed_targets(order["status"], order["deliveryType"])}
        if status not in allowed:
            raise BoardActionError(
                f"Order {order_id} cannot move from {order['status']} to {status}; "
                f"choose one of: {', '.join(sorted(allowed)) or 'nothing'}"
            )
        return self._patch(order, status)

    def _patch(self, order: Dict[str, Any], status: str) -> Dict[str, Any]:
        body = {"status": status, "version": order.get("version")}
        try:
            response = self.client.patch(self._url(f"/orders/{order['id']}"), json=body)
        except httpx.HTTPError as exc:
            raise BoardActionError(f"Failed to update order {order['id']}: {exc}") from exc

        if response.is_error:
            try:
                error_body = response.json()
            except ValueError:
                error_body = response.text
            message = error_body.get("error") if isinstance(error_body, dict) else error_body
            raise BoardActionError(
                f"Failed to update order {order['id']}: {message}",
                status_code=response.status_code,
                body=error_body,
            )

        updated = response.json()
        logger.info("%s board moved order %s to %s", self.profile.name, order["id"], status)
        self.apply_event({"type": "order-update", "data": updated})
        self.refresh()
        return updated

    def join_message(self) -> Optional[Dict[str, Any]]:
        if not self.profile.realtime:
            return None
        return {"type": "join-restaurant", "restaurantId": self.restaurant_id}

    def listen(self, channel, max_messages: Optional[int] = None) -> int:
        """Join the live channel and apply incoming events.

        ``channel`` needs blocking ``send_json``/``receive_json``. Runs until
        ``max_messages`` messages were received; a closed channel raises
        whatever its transport raises on disconnect.
        """
        join = self.join_message()
        if join is None:
            raise BoardActionError(f"The {self.profile.name} board has no live channel")
        channel.send_json(join)
        received = 0
        while max_messages is None or received < max_messages:
            message = channel.receive_json()
            received += 1
            if message.get("type") == "error":
                logger.warning("%s board channel error: %s", self.profile.name, message.get("message"))
            self.apply_event(message)
        return received

    def run(self, stop: threading.Event):
        """Poll until ``stop`` is set, as the backstop for missed live events."""
        while not stop.is_set():
            self.refresh()
            stop.wait(self.poll_interval)


def board_for(role: str, client: httpx.Client, restaurant_id: Optional[str] = None, **kwargs) -> OrderBoard:
    try:
        profile = PROFILES[role]
    except KeyError:
        raise ValueError(f"Unknown board '{role}', expected one of: {', '.join(PROFILES)}")
    return OrderBoard(client, profile, restaurant_id=restaurant_id, **kwargs)
