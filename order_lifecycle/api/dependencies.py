from typing import AsyncGenerator
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from order_lifecycle.core.queue import FulfillmentQueue
from order_lifecycle.services.intake import IntakeCoordinator, RunRegistry


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    async with request.app.state.session_maker() as session:
        yield session


def get_intake_coordinator(request: Request) -> IntakeCoordinator:
    return request.app.state.intake


def get_run_registry(request: Request) -> RunRegistry:
    return request.app.state.run_registry


def get_fulfillment_queue(request: Request) -> FulfillmentQueue:
    return request.app.state.queue
