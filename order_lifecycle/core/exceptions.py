from typing import Any, List, Optional


class OrderLifecycleError(Exception):
    """Base class for order lifecycle errors."""


class MissingFields(OrderLifecycleError):
    def __init__(self, missing: List[str], required: List[str]) -> None:
        self.missing = missing
        self.required = required
        super().__init__(f"Missing required fields: {', '.join(missing)}")


class OrderAlreadyExists(OrderLifecycleError):
    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order {order_id} already exists")


class OrderNotFound(OrderLifecycleError):
    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class InvalidTransition(OrderLifecycleError):
    def __init__(self, current: Any, target: Any, order_id: Optional[str] = None) -> None:
        self.current = current
        self.target = target
        self.order_id = order_id
        subject = f" for order {order_id}" if order_id else ""
        super().__init__(f"Invalid transition{subject}: {current} -> {target}")


class QueueError(OrderLifecycleError):
    """Raised when the fulfillment queue cannot accept or settle a message."""


class FulfillmentFailed(OrderLifecycleError):
    """Transient fulfillment failure; the queue redelivers the message."""

    def __init__(self, order_id: Optional[str], message: str) -> None:
        self.order_id = order_id
        super().__init__(message)


class FulfillmentExhausted(OrderLifecycleError):
    def __init__(self, order_id: str, attempts: int, message: str) -> None:
        self.order_id = order_id
        self.attempts = attempts
        super().__init__(f"Fulfillment exhausted for order {order_id} after {attempts} attempts: {message}")
