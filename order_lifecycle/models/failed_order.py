from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy import String, Numeric, DateTime, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from order_lifecycle.core.database import Base


FULFILLMENT_PROCESSING_FAILED = "FULFILLMENT_PROCESSING_FAILED"


class FailedOrder(Base):
    """Append-only record of an order whose fulfillment retries ran out."""

    __tablename__ = "failed_orders"

    order_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    original_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    receive_count: Mapped[int] = mapped_column(Integer, nullable=False)
    failure_reason: Mapped[str] = mapped_column(String(64), nullable=False, default=FULFILLMENT_PROCESSING_FAILED)
