"""Legal order status transitions."""

from .errors import InvalidTransitionError
from .models import Order, OrderStatus

S = OrderStatus

# cancelled and refunded are administrative overrides on top of the forward path
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    S.PENDING: frozenset({S.PROCESSING, S.CANCELLED, S.REFUNDED}),
    S.PROCESSING: frozenset({S.SHIPPED, S.CANCELLED, S.REFUNDED}),
    S.SHIPPED: frozenset({S.DELIVERED, S.REFUNDED}),
    S.DELIVERED: frozenset({S.REFUNDED}),
    S.CANCELLED: frozenset({S.REFUNDED}),
    S.REFUNDED: frozenset(),
}

CUSTOMER_CANCELLABLE = frozenset({S.PENDING, S.PROCESSING})


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new == current or new in ALLOWED_TRANSITIONS[current]


def check_transition(order: Order, new: OrderStatus) -> None:
    """
    Raises:
        InvalidTransitionError: If ``order`` cannot move to ``new``.
    """
    if not can_transition(order.status, new):
        raise InvalidTransitionError(order.id, order.status.value, new.value)
