from datetime import datetime, timezone
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class FulfillmentRequest(BaseModel):
    """Body of a fulfillment queue message. Serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    order_id: str
    customer_id: str
    product_id: str
    quantity: int = Field(gt=0)
    price: Decimal = Field(gt=0)
    total_amount: Decimal
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "order_storage"

    def to_body(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode()

    @classmethod
    def from_body(cls, body: bytes) -> "FulfillmentRequest":
        return cls.model_validate_json(body)
