import json
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from order_lifecycle.api.dependencies import get_db, get_intake_coordinator
from order_lifecycle.core.exceptions import MissingFields
from order_lifecycle.repositories.failed_order import FailedOrderRepository
from order_lifecycle.repositories.order import OrderRepository
from order_lifecycle.schemas.order import AcceptedResponse, FailedOrderResponse, OrderResponse, OrderSubmission
from order_lifecycle.services.intake import IntakeCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["orders"])


def _error(status_code: int, content: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content)


@router.post("/orders", status_code=status.HTTP_202_ACCEPTED, response_model=AcceptedResponse, response_model_by_alias=True)
async def submit_order(
    request: Request,
    intake: IntakeCoordinator = Depends(get_intake_coordinator)
):
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Failed to parse request body: {e}")
        return _error(status.HTTP_400_BAD_REQUEST, {
            "error": "Invalid JSON in request body",
            "message": str(e)
        })

    if not isinstance(body, dict):
        return _error(status.HTTP_400_BAD_REQUEST, {
            "error": "Invalid JSON in request body",
            "message": "Request body must be a JSON object"
        })

    try:
        submission = OrderSubmission.model_validate(body)
    except ValidationError as e:
        return _error(status.HTTP_400_BAD_REQUEST, {
            "error": "Malformed order request",
            "message": str(e)
        })

    try:
        return await intake.submit(submission)
    except MissingFields as e:
        return _error(status.HTTP_400_BAD_REQUEST, {
            "error": "Missing required fields",
            "required": e.required,
            "missing": e.missing
        })
    except Exception as e:
        logger.error(f"Error in order intake: {e}", exc_info=True)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, {
            "error": "Internal server error",
            "message": str(e)
        })


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, db: AsyncSession = Depends(get_db)) -> OrderResponse:
    order = await OrderRepository(db).get_by_id(order_id)
    if not order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order {order_id} not found"
        )
    return OrderResponse.model_validate(order)


@router.get("/failed-orders/{order_id}", response_model=FailedOrderResponse)
async def get_failed_order(order_id: str, db: AsyncSession = Depends(get_db)) -> FailedOrderResponse:
    record = await FailedOrderRepository(db).get_by_order_id(order_id)
    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No failure record for order {order_id}"
        )
    return FailedOrderResponse.model_validate(record)
