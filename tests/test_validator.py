from decimal import Decimal

import pytest

from order_lifecycle.schemas.lifecycle import Validated, ValidationFailed
from order_lifecycle.schemas.order import OrderDraft
from order_lifecycle.services.validator import validate_order


def test_valid_order_passes_with_computed_total(make_draft):
    result = validate_order(make_draft())

    assert isinstance(result, Validated)
    order = result.order
    assert order.total_amount == Decimal("39.98")
    assert order.validation_status == "PASSED"
    assert order.validated_at is not None
    assert order.customer_id == "CUST-1234"
    assert order.product_id == "PROD-5678"


@pytest.mark.parametrize("quantity,price", [
    (1, Decimal("0.01")),
    (100, Decimal("10000")),
    (37, Decimal("3.33")),
    (7, Decimal("9999.99")),
])
def test_total_is_exact_product(make_draft, quantity, price):
    result = validate_order(make_draft(quantity=quantity, price=price))

    assert isinstance(result, Validated)
    assert result.order.total_amount == quantity * price


def test_long_identifiers_are_accepted(make_draft):
    result = validate_order(make_draft(customer_id="CUST-000012345", product_id="PROD-99999999"))

    assert isinstance(result, Validated)


def test_bad_customer_id_format(make_draft):
    result = validate_order(make_draft(customer_id="BAD"))

    assert isinstance(result, ValidationFailed)
    assert result.errors == ["Customer ID must be in format CUST-XXXX"]
    assert result.original_payload["customer_id"] == "BAD"
    assert result.original_payload["order_id"] == "order-1"


def test_bad_product_id_format(make_draft):
    result = validate_order(make_draft(product_id="PROD-12"))

    assert isinstance(result, ValidationFailed)
    assert result.errors == ["Product ID must be in format PROD-XXXX"]


def test_non_ascii_digits_are_rejected(make_draft):
    result = validate_order(make_draft(customer_id="CUST-١٢٣٤"))

    assert isinstance(result, ValidationFailed)
    assert "Customer ID must be in format CUST-XXXX" in result.errors


def test_zero_quantity_and_negative_price_report_both(make_draft):
    result = validate_order(make_draft(quantity=0, price=Decimal("-5")))

    assert isinstance(result, ValidationFailed)
    assert len(result.errors) >= 2
    assert "Quantity must be a positive number" in result.errors
    assert "Price must be a positive number" in result.errors


def test_upper_bounds(make_draft):
    result = validate_order(make_draft(quantity=101, price=Decimal("10000.01")))

    assert isinstance(result, ValidationFailed)
    assert result.errors == [
        "Quantity cannot exceed 100 items per order",
        "Price cannot exceed $10,000 per order",
    ]


def test_empty_payload_reports_every_rule():
    result = validate_order(OrderDraft())

    assert isinstance(result, ValidationFailed)
    assert result.errors == [
        "Order ID is required",
        "Customer ID is required",
        "Product ID is required",
        "Quantity must be a positive number",
        "Price must be a positive number",
    ]
    assert result.error == "VALIDATION_FAILED"


def test_all_violations_accumulate(make_draft):
    result = validate_order(make_draft(
        customer_id="CUST-12",
        product_id="PRD-1234",
        quantity=500,
        price=Decimal("20000")
    ))

    assert isinstance(result, ValidationFailed)
    assert len(result.errors) == 4


def test_validation_leaves_draft_untouched(make_draft):
    draft = make_draft()
    before = draft.model_dump()

    validate_order(draft)

    assert draft.model_dump() == before


@pytest.mark.parametrize("price", [Decimal("0.004"), Decimal("19.999")])
def test_sub_cent_price_is_rejected(make_draft, price):
    result = validate_order(make_draft(quantity=3, price=price))

    assert isinstance(result, ValidationFailed)
    assert result.errors == ["Price must have at most 2 decimal places"]


def test_trailing_zero_price_is_accepted(make_draft):
    result = validate_order(make_draft(price=Decimal("19.990")))

    assert isinstance(result, Validated)
    assert result.order.total_amount == Decimal("39.98")
