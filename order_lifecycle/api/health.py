from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from order_lifecycle.api.dependencies import get_db, get_fulfillment_queue
from order_lifecycle.core.queue import FulfillmentQueue

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db),
    queue: FulfillmentQueue = Depends(get_fulfillment_queue)
) -> dict[str, str | dict[str, str]]:
    health = {"status": "healthy", "checks": {}}

    try:
        await db.execute(text("SELECT 1"))
        health["checks"]["database"] = "healthy"
    except Exception as e:
        health["checks"]["database"] = f"unhealthy: {str(e)}"
        health["status"] = "unhealthy"

    try:
        if queue.is_healthy():
            health["checks"]["queue"] = "healthy"
        else:
            health["checks"]["queue"] = "unhealthy: not connected"
            health["status"] = "unhealthy"
    except Exception as e:
        health["checks"]["queue"] = f"unhealthy: {str(e)}"
        health["status"] = "unhealthy"

    return health
