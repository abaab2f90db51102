from order_lifecycle.core.database import Base
from order_lifecycle.models.order import Order, OrderStatus
from order_lifecycle.models.failed_order import FailedOrder

__all__ = ["Base", "Order", "OrderStatus", "FailedOrder"]
