import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from order_lifecycle.core.exceptions import MissingFields
from order_lifecycle.schemas.lifecycle import LifecycleState, RunResult, RunStatusResponse
from order_lifecycle.schemas.order import REQUIRED_SUBMISSION_FIELDS, AcceptedResponse, OrderDraft, OrderSubmission
from order_lifecycle.services.orchestrator import LifecycleOrchestrator, StateListener

logger = logging.getLogger(__name__)

RunFunction = Callable[[OrderDraft, Optional[StateListener]], Awaitable[RunResult]]


@dataclass
class RunRecord:
    run_handle: str
    order_id: str
    task: Optional[asyncio.Task] = None
    state: LifecycleState = LifecycleState.PENDING
    result: Optional[RunResult] = None
    error: Optional[str] = None

    def to_response(self) -> RunStatusResponse:
        return RunStatusResponse(
            run_handle=self.run_handle,
            order_id=self.order_id,
            state=self.state,
            done=self.task is not None and self.task.done(),
            result=self.result,
            error=self.error
        )


class RunRegistry:
    """Tracks in-flight and finished lifecycle runs by run handle.

    Finished runs are evicted oldest first once more than ``max_runs``
    records are held. In-flight runs are never evicted.
    """

    def __init__(self, max_runs: int = 1000) -> None:
        self.max_runs = max_runs
        self._runs: Dict[str, RunRecord] = {}

    def start(self, run_handle: str, draft: OrderDraft, run: RunFunction) -> RunRecord:
        self._evict_finished(keep=self.max_runs - 1)
        record = RunRecord(run_handle=run_handle, order_id=draft.order_id)
        self._runs[run_handle] = record
        record.task = asyncio.create_task(self._drive(record, draft, run), name=run_handle)
        return record

    def _evict_finished(self, keep: int) -> None:
        excess = len(self._runs) - keep
        if excess <= 0:
            return
        finished = [
            handle for handle, record in self._runs.items()
            if record.task is not None and record.task.done()
        ]
        for handle in finished[:excess]:
            del self._runs[handle]

    async def _drive(self, record: RunRecord, draft: OrderDraft, run: RunFunction) -> None:
        def on_state(state: LifecycleState) -> None:
            record.state = state

        try:
            record.result = await run(draft, on_state)
        except Exception as e:
            record.error = f"{type(e).__name__}: {e}"
            logger.error(f"Lifecycle run {record.run_handle} crashed: {e}", exc_info=True)
            return

        if record.result.succeeded:
            logger.info(f"Lifecycle run {record.run_handle} finished in {record.state.value}")
        else:
            logger.warning(
                f"Lifecycle run {record.run_handle} ended in {record.state.value}: "
                f"{record.result.outcome.model_dump_json()}"
            )

    def get(self, run_handle: str) -> Optional[RunRecord]:
        return self._runs.get(run_handle)

    async def wait(self, run_handle: str) -> RunRecord:
        record = self._runs[run_handle]
        if record.task is not None:
            await asyncio.shield(record.task)
        return record

    async def wait_all(self) -> None:
        tasks = [record.task for record in self._runs.values() if record.task and not record.task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._runs)


class IntakeCoordinator:
    def __init__(self, orchestrator: LifecycleOrchestrator, registry: RunRegistry) -> None:
        self.orchestrator = orchestrator
        self.registry = registry

    async def submit(self, submission: OrderSubmission) -> AcceptedResponse:
        """Accept an order and start its lifecycle run without waiting for it."""
        missing = submission.missing_fields()
        if missing:
            raise MissingFields(missing, list(REQUIRED_SUBMISSION_FIELDS))

        order_id = str(uuid.uuid4())
        draft = OrderDraft(
            order_id=order_id,
            customer_id=submission.customer_id,
            product_id=submission.product_id,
            quantity=submission.quantity,
            price=submission.price,
            status="PENDING",
            timestamp=datetime.now(timezone.utc),
            metadata=submission.metadata or {}
        )

        run_handle = f"order-{order_id}-{int(time.time() * 1000)}"
        logger.info(f"Starting lifecycle run {run_handle} for order {order_id}")
        self.registry.start(run_handle, draft, self.orchestrator.run)

        return AcceptedResponse(order_id=order_id, run_handle=run_handle)
