"""
Order status chain. Forward steps branch on delivery type after READY;
CANCELLED is reachable from any non-terminal status.
"""
from typing import Optional, Set, Tuple, Union
from qrmenu.core.exceptions import InvalidTransitionError
from qrmenu.models.order import OrderStatus, DeliveryType

_COMMON: Tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
)

CHAINS = {
    DeliveryType.DINE_IN: _COMMON + (OrderStatus.SERVED, OrderStatus.COMPLETED),
    DeliveryType.DELIVERY: _COMMON + (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, OrderStatus.COMPLETED),
    DeliveryType.TAKEAWAY: _COMMON + (OrderStatus.COMPLETED,),
}

TERMINAL = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})


def chain_for(delivery_type: Union[str, DeliveryType]) -> Tuple[OrderStatus, ...]:
    try:
        return CHAINS[DeliveryType(delivery_type)]
    except ValueError:
        raise InvalidTransitionError(f"Unknown delivery type '{delivery_type}'")


def _status(value: Union[str, OrderStatus]) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidTransitionError(f"Unknown order status '{value}'")


def is_terminal(status: Union[str, OrderStatus]) -> bool:
    return _status(status) in TERMINAL


def next_status(status: Union[str, OrderStatus],
                delivery_type: Union[str, DeliveryType]) -> Optional[OrderStatus]:
    """Single forward step for an order, or None once it is terminal."""
    current = _status(status)
    if current in TERMINAL:
        return None
    chain = chain_for(delivery_type)
    if current not in chain:
        raise InvalidTransitionError(
            f"Status '{current.value}' is not part of the {DeliveryType(delivery_type).value} chain"
        )
    return chain[chain.index(current) + 1]


def allowed_targets(status: Union[str, OrderStatus],
                    delivery_type: Union[str, DeliveryType]) -> Set[OrderStatus]:
    nxt = next_status(status, delivery_type)
    if nxt is None:
        return set()
    return {nxt, OrderStatus.CANCELLED}


def validate_transition(current: Union[str, OrderStatus],
                        requested: Union[str, OrderStatus],
                        delivery_type: Union[str, DeliveryType]) -> OrderStatus:
    target = _status(requested)
    if target not in allowed_targets(current, delivery_type):
        raise InvalidTransitionError(
            f"Cannot move a {DeliveryType(delivery_type).value} order "
            f"from '{_status(current).value}' to '{target.value}'"
        )
    return target
