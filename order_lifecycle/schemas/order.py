from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


REQUIRED_SUBMISSION_FIELDS = ["customerId", "productId", "quantity", "price"]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timezone-aware columns back as naive UTC values
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OrderSubmission(BaseModel):
    """Intake request body. Presence is checked by the intake coordinator, not here."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    customer_id: Optional[str] = None
    product_id: Optional[str] = None
    quantity: Optional[int] = None
    price: Optional[Decimal] = None
    metadata: Optional[Dict[str, Any]] = None

    def missing_fields(self) -> List[str]:
        values = {
            "customerId": self.customer_id,
            "productId": self.product_id,
            "quantity": self.quantity,
            "price": self.price,
        }
        return [name for name in REQUIRED_SUBMISSION_FIELDS if values[name] is None or values[name] == ""]


class OrderDraft(BaseModel):
    """Order payload entering a lifecycle run, before business validation."""

    order_id: Optional[str] = None
    customer_id: Optional[str] = None
    product_id: Optional[str] = None
    quantity: Optional[int] = None
    price: Optional[Decimal] = None
    status: str = "PENDING"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ValidatedOrder(BaseModel):
    order_id: str
    customer_id: str
    product_id: str
    quantity: int
    price: Decimal
    status: str
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)
    total_amount: Decimal
    validated_at: datetime
    validation_status: str = "PASSED"


class FulfillmentDetails(BaseModel):
    tracking_number: str = Field(min_length=1)
    carrier: str = Field(min_length=1)
    estimated_delivery: datetime


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    customer_id: str
    product_id: str
    quantity: int
    price: Decimal
    total_amount: Decimal
    status: str
    validation_status: str | None = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="order_metadata")
    fulfillment_details: FulfillmentDetails | None = None
    failure_reason: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
    validated_at: datetime | None = None
    fulfilled_at: datetime | None = None
    failed_at: datetime | None = None

    @field_validator("created_at", "updated_at", "validated_at", "fulfilled_at", "failed_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class FailedOrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    customer_id: str
    product_id: str
    quantity: int
    price: Decimal
    total_amount: Decimal
    original_timestamp: datetime | None = None
    failed_at: datetime
    error_message: str
    receive_count: int
    failure_reason: str

    @field_validator("original_timestamp", "failed_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class AcceptedResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    order_id: str
    status: str = "ACCEPTED"
    run_handle: str
    message: str = "Order received and processing started"
