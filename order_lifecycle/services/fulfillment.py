import logging
import random
import string
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

from order_lifecycle.core.exceptions import FulfillmentFailed
from order_lifecycle.schemas.events import FulfillmentRequest
from order_lifecycle.schemas.order import FulfillmentDetails

logger = logging.getLogger(__name__)

DEFAULT_CARRIER = "EXPRESS_SHIPPING"


class Fulfiller(ABC):
    """External fulfillment call. Raises ``FulfillmentFailed`` on a failed attempt."""

    @abstractmethod
    async def fulfill(self, request: FulfillmentRequest) -> FulfillmentDetails:
        ...


def generate_tracking_number() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f"TRK{int(time.time() * 1000)}{suffix}"


def estimate_delivery(fulfilled_at: datetime) -> datetime:
    return fulfilled_at + timedelta(days=random.randint(1, 7))


class SimulatedFulfiller(Fulfiller):
    """Succeeds when ``random.random()`` falls below ``success_rate``."""

    def __init__(self, success_rate: float, carrier: str = DEFAULT_CARRIER) -> None:
        self.success_rate = success_rate
        self.carrier = carrier

    async def fulfill(self, request: FulfillmentRequest) -> FulfillmentDetails:
        draw = random.random()
        success = draw < self.success_rate
        logger.info(
            f"Fulfillment simulation for order {request.order_id}: "
            f"random={draw}, success_rate={self.success_rate}, success={success}"
        )

        if not success:
            raise FulfillmentFailed(request.order_id, f"Fulfillment failed for order {request.order_id}")

        fulfilled_at = datetime.now(timezone.utc)
        return FulfillmentDetails(
            tracking_number=generate_tracking_number(),
            carrier=self.carrier,
            estimated_delivery=estimate_delivery(fulfilled_at)
        )
