from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from sqlalchemy import String, Numeric, DateTime, JSON, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from order_lifecycle.core.database import Base


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    STORED = "STORED"
    FULFILLED = "FULFILLED"
    FAILED = "FAILED"


# Current status -> statuses an update may move to. Re-applying the current
# status is always allowed so redelivered messages converge.
STATUS_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.STORED, OrderStatus.PROCESSING, OrderStatus.FULFILLED, OrderStatus.FAILED},
    OrderStatus.STORED: {OrderStatus.PROCESSING, OrderStatus.FULFILLED, OrderStatus.FAILED},
    OrderStatus.PROCESSING: {OrderStatus.FULFILLED, OrderStatus.FAILED},
    OrderStatus.FULFILLED: set(),
    OrderStatus.FAILED: set(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.FULFILLED, OrderStatus.FAILED})


def is_valid_status_transition(current: str, target: str) -> bool:
    current_status = OrderStatus(current)
    target_status = OrderStatus(target)
    if current_status == target_status:
        return True
    return target_status in STATUS_TRANSITIONS[current_status]


class Order(Base):
    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    validation_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    order_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    fulfillment_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
