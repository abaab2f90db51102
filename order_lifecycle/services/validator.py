import logging
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import List

from order_lifecycle.schemas.lifecycle import Validated, ValidationFailed, ValidationOutcome
from order_lifecycle.schemas.order import OrderDraft, ValidatedOrder

logger = logging.getLogger(__name__)

MAX_QUANTITY = 100
MAX_PRICE = Decimal("10000")
PRICE_QUANTUM = Decimal("0.01")

CUSTOMER_ID_PATTERN = re.compile(r"CUST-[0-9]{4,}")
PRODUCT_ID_PATTERN = re.compile(r"PROD-[0-9]{4,}")


def collect_errors(draft: OrderDraft) -> List[str]:
    """Evaluate every rule and return one message per violation."""
    errors: List[str] = []

    if not draft.order_id:
        errors.append("Order ID is required")

    if not draft.customer_id:
        errors.append("Customer ID is required")

    if not draft.product_id:
        errors.append("Product ID is required")

    if draft.quantity is None or draft.quantity <= 0:
        errors.append("Quantity must be a positive number")

    if draft.price is None or draft.price <= 0:
        errors.append("Price must be a positive number")

    if draft.quantity is not None and draft.quantity > MAX_QUANTITY:
        errors.append("Quantity cannot exceed 100 items per order")

    if draft.price is not None and draft.price > MAX_PRICE:
        errors.append("Price cannot exceed $10,000 per order")

    if draft.customer_id and not CUSTOMER_ID_PATTERN.fullmatch(draft.customer_id):
        errors.append("Customer ID must be in format CUST-XXXX")

    if draft.product_id and not PRODUCT_ID_PATTERN.fullmatch(draft.product_id):
        errors.append("Product ID must be in format PROD-XXXX")

    if (
        draft.price is not None
        and 0 < draft.price <= MAX_PRICE
        and draft.price != draft.price.quantize(PRICE_QUANTUM)
    ):
        errors.append("Price must have at most 2 decimal places")

    return errors


def validate_order(draft: OrderDraft) -> ValidationOutcome:
    errors = collect_errors(draft)

    if errors:
        logger.info(f"Validation failed for order {draft.order_id}: {errors}")
        return ValidationFailed(
            errors=errors,
            original_payload=draft.model_dump(mode="json")
        )

    validated = ValidatedOrder(
        order_id=draft.order_id,
        customer_id=draft.customer_id,
        product_id=draft.product_id,
        quantity=draft.quantity,
        price=draft.price,
        status=draft.status,
        timestamp=draft.timestamp,
        metadata=draft.metadata,
        total_amount=draft.quantity * draft.price,
        validated_at=datetime.now(timezone.utc),
        validation_status="PASSED"
    )
    logger.info(f"Validation successful for order {draft.order_id}")
    return Validated(order=validated)
